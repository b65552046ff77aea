"""
知识库 Pydantic 数据模型

包含文档 / 版本 / 切片元数据、检索参数与结果、以及各操作的输入对象。
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ---------------------------------------------------------------------------
# 枚举
# ---------------------------------------------------------------------------

class ContentType(str, Enum):
    TEXT = "text"
    MARKDOWN = "markdown"
    HTML = "html"
    JSON = "json"


class ChunkStrategy(str, Enum):
    RECURSIVE = "recursive"
    CHARACTER = "character"
    SENTENCE = "sentence"
    MARKDOWN = "markdown"


class QueryMode(str, Enum):
    VECTOR = "vector"
    KEYWORD = "keyword"
    HYBRID = "hybrid"


class OnConflict(str, Enum):
    ERROR = "error"
    SKIP = "skip"
    UPDATE = "update"


class DocumentKind(str, Enum):
    USER = "USER"
    SYSTEM = "SYSTEM"


# ---------------------------------------------------------------------------
# 切块
# ---------------------------------------------------------------------------

class ChunkOptions(BaseModel):
    strategy: ChunkStrategy = ChunkStrategy.RECURSIVE
    max_size: int = Field(default=512, ge=1)
    overlap: int = Field(default=50, ge=0)

    @model_validator(mode="after")
    def _check_overlap(self) -> "ChunkOptions":
        if self.overlap >= self.max_size:
            raise ValueError("overlap must be smaller than max_size")
        return self


class TextChunk(BaseModel):
    """切块产出: (text, metadata)，metadata 至少包含 chunk_index / char_count"""
    text: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class ChunkMetadata(BaseModel):
    """
    写入向量库的切片元数据。

    保留键固定，调用方与切块策略产生的其他字段走 extra。
    合并顺序: 调用方 metadata < 切块 metadata < 保留键 (保留键永远生效)。
    """
    model_config = ConfigDict(extra="allow")

    organization_id: Optional[str] = None
    document_id: str
    chunk_index: int
    total_chunks: int
    text: str
    source_name: str
    ingested_at: str

    RESERVED_KEYS: ClassVar[frozenset[str]] = frozenset({
        "organization_id", "document_id", "chunk_index", "total_chunks",
        "text", "source_name", "ingested_at",
    })

    def to_bag(self) -> dict[str, Any]:
        # organization_id 缺省时整个键不出现，避免与 '' 混淆
        return self.model_dump(exclude_none=True)


# ---------------------------------------------------------------------------
# 摄取
# ---------------------------------------------------------------------------

class IngestOptions(BaseModel):
    organization_id: Optional[str] = None
    type: ContentType = ContentType.TEXT
    source_id: Optional[str] = None
    source_name: Optional[str] = None
    chunk_options: Optional[ChunkOptions] = None
    metadata: Optional[dict[str, Any]] = None


class DegradedWrite(BaseModel):
    """尽力而为的写入失败记录 (不会让调用失败)"""
    store: str
    operation: str
    document_id: str
    error: str


class IngestResult(BaseModel):
    document_id: str
    chunks_ingested: int
    vector_ids: list[str]
    degraded: list[DegradedWrite] = Field(default_factory=list)

    @property
    def is_degraded(self) -> bool:
        return bool(self.degraded)


class IndexStats(BaseModel):
    index_name: str
    count: int = 0
    exists: bool = False


# ---------------------------------------------------------------------------
# 检索
# ---------------------------------------------------------------------------

class QueryOptions(BaseModel):
    organization_id: Optional[str] = None
    top_k: int = Field(default=5, ge=1, le=100)
    min_score: float = 0.5
    filter: Optional[dict[str, Any]] = None
    mode: QueryMode = QueryMode.VECTOR
    vector_weight: float = Field(default=0.5, ge=0.0, le=1.0)
    rerank: bool = False
    rerank_model: Optional[str] = None


class QueryHit(BaseModel):
    """单条检索命中；id 为确定性切片 ID {document_id}_chunk_{index}"""
    id: str
    text: str
    score: float
    metadata: dict[str, Any] = Field(default_factory=dict)


class AnswerOptions(BaseModel):
    organization_id: Optional[str] = None
    top_k: int = Field(default=5, ge=1, le=100)
    min_score: float = 0.5
    mode: QueryMode = QueryMode.VECTOR
    system_context: str = ""


class AnswerSource(BaseModel):
    text: str
    score: float
    document_id: Optional[str] = None


class RagAnswer(BaseModel):
    response: str
    sources: list[AnswerSource] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# 文档
# ---------------------------------------------------------------------------

class Document(BaseModel):
    id: str
    slug: str
    name: str
    description: Optional[str] = None
    content: str
    content_type: ContentType = ContentType.MARKDOWN
    category: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    organization_id: Optional[str] = None
    workspace_id: Optional[str] = None
    type: DocumentKind = DocumentKind.USER
    created_by: Optional[str] = None
    version: int = 1
    vector_ids: list[str] = Field(default_factory=list)
    chunk_count: int = 0
    embedded_at: Optional[datetime] = None
    last_embed_error: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class DocumentVersion(BaseModel):
    id: str
    document_id: str
    version: int
    content: str
    change_summary: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime


class DocumentList(BaseModel):
    documents: list[Document]
    total: int


class CreateDocumentInput(BaseModel):
    slug: str
    name: str
    description: Optional[str] = None
    content: str
    content_type: ContentType = ContentType.MARKDOWN
    category: Optional[str] = None
    tags: Optional[list[str]] = None
    metadata: Optional[dict[str, Any]] = None
    workspace_id: Optional[str] = None
    organization_id: Optional[str] = None
    type: DocumentKind = DocumentKind.USER
    created_by: Optional[str] = None
    chunk_options: Optional[ChunkOptions] = None
    on_conflict: OnConflict = OnConflict.ERROR


class UpdateDocumentInput(BaseModel):
    """None 表示该字段不修改；content 省略或与现值相同即为纯元数据更新"""
    name: Optional[str] = None
    description: Optional[str] = None
    content: Optional[str] = None
    content_type: Optional[ContentType] = None
    category: Optional[str] = None
    tags: Optional[list[str]] = None
    metadata: Optional[dict[str, Any]] = None
    change_summary: Optional[str] = None
    created_by: Optional[str] = None
    chunk_options: Optional[ChunkOptions] = None

    def metadata_fields(self) -> dict[str, Any]:
        fields = {
            "name": self.name,
            "description": self.description,
            "content_type": self.content_type.value if self.content_type else None,
            "category": self.category,
            "tags": self.tags,
            "metadata": self.metadata,
        }
        return {k: v for k, v in fields.items() if v is not None}


class ListDocumentsInput(BaseModel):
    organization_id: Optional[str] = None
    workspace_id: Optional[str] = None
    category: Optional[str] = None
    tags: Optional[list[str]] = None
    type: Optional[DocumentKind] = None
    skip: int = Field(default=0, ge=0)
    take: int = Field(default=50, ge=1, le=500)


class SearchDocumentsInput(BaseModel):
    query: str = Field(..., min_length=1)
    document_id: Optional[str] = None
    organization_id: Optional[str] = None
    top_k: int = Field(default=5, ge=1, le=100)
    min_score: float = 0.5
    mode: QueryMode = QueryMode.VECTOR


# ---------------------------------------------------------------------------
# HTTP 请求体
# ---------------------------------------------------------------------------

class IngestRequest(IngestOptions):
    content: str


class QueryRequest(QueryOptions):
    query: str = Field(..., min_length=1)


class AnswerRequest(AnswerOptions):
    query: str = Field(..., min_length=1)
