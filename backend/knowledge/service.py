"""
知识库文档生命周期服务

状态机: 未创建 → Created(version=1) → [内容更新] → version+1 → ... → Deleted

- 创建: slug 规范化 + 冲突策略 (error / skip / update)，关系记录同步返回，
  Embedding 提交到后台队列；后台失败写 last_embed_error，不回滚创建
- 更新: 内容缺省或未变 → 仅元数据，不升版本不重嵌入；
  内容变化 → 切块校验 → 按 slug 删除旧向量/关键词行 → 同步重新摄取
  → 旧内容入 document_versions → 写回内容、向量 ID、切片数、embedded_at、version+1；
  摄取失败时不写快照不升版本，清空嵌入状态并记录 last_embed_error
- 删除: 尽力清理向量 (失败只记日志) → 删除记录 (版本级联删除)
- 重嵌入: 用当前内容删除后重新摄取，不留版本快照，不升版本
"""
from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Optional

from .chunk_repository import ChunkRepository
from .chunking import chunk_document
from .config import KnowledgeSettings, get_settings
from .document_repository import DocumentRepository, DocumentStore
from .embedding import OpenAIEmbedder
from .errors import ConflictError, InvalidSlugError, NotFoundError
from .generation import OpenAIGenerator
from .models import (
    ChunkOptions,
    CreateDocumentInput,
    Document,
    DocumentList,
    DocumentVersion,
    IngestOptions,
    IngestResult,
    ListDocumentsInput,
    OnConflict,
    QueryHit,
    QueryOptions,
    SearchDocumentsInput,
    UpdateDocumentInput,
)
from .pipeline import IngestionPipeline, check_organization_id
from .query import HybridQueryEngine
from .tasks import EmbeddingTaskQueue
from .vector_store import MilvusVectorStore

logger = logging.getLogger("knowledge.service")

_SLUG_INVALID_RE = re.compile(r"[^a-z0-9]+")


def normalize_slug(raw: str) -> str:
    """小写，非字母数字连续段替换为 '-'，去掉首尾 '-'；结果为空则报错"""
    slug = _SLUG_INVALID_RE.sub("-", (raw or "").lower()).strip("-")
    if not slug:
        raise InvalidSlugError(raw)
    return slug


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DocumentService:

    def __init__(
        self,
        *,
        documents: DocumentStore,
        pipeline: IngestionPipeline,
        engine: HybridQueryEngine,
        tasks: EmbeddingTaskQueue,
    ):
        self.documents = documents
        self.pipeline = pipeline
        self.engine = engine
        self.tasks = tasks

    # ------------------------------------------------------------------
    # 辅助
    # ------------------------------------------------------------------
    async def _load(self, id_or_slug: str, organization_id: Optional[str] = None) -> Document:
        row = await self.documents.get(id_or_slug, organization_id)
        if not row:
            raise NotFoundError(id_or_slug)
        return Document(**row)

    def _ingest_options(
        self,
        doc: Document,
        *,
        content_type: Any = None,
        name: Optional[str] = None,
        organization_id: Optional[str] = None,
        chunk_options: Optional[ChunkOptions] = None,
    ) -> IngestOptions:
        """向量 / 关键词行以 slug 作为 document_id，删除与文档内检索都按 slug 进行"""
        return IngestOptions(
            organization_id=organization_id or doc.organization_id,
            type=content_type or doc.content_type,
            source_id=doc.slug,
            source_name=name or doc.name,
            chunk_options=chunk_options,
            metadata={
                "document_record_id": doc.id,
                "document_name": name or doc.name,
                "category": doc.category,
            },
        )

    @staticmethod
    def _embedded_fields(result: IngestResult) -> dict[str, Any]:
        return {
            "vector_ids": result.vector_ids,
            "chunk_count": result.chunks_ingested,
            "embedded_at": _utcnow(),
            "last_embed_error": None,
        }

    async def _embed_in_background(self, doc_id: str, chunk_options: Optional[ChunkOptions]) -> None:
        row = await self.documents.get(doc_id)
        if not row:
            logger.warning(f"[KB] 后台 Embedding 跳过，文档已不存在: {doc_id}")
            return
        doc = Document(**row)
        try:
            result = await self.pipeline.ingest(
                doc.content, self._ingest_options(doc, chunk_options=chunk_options),
            )
        except Exception as e:
            logger.error(f"[KB] 后台 Embedding 失败: slug={doc.slug}, err={e}")
            await self.documents.update(doc.id, {"last_embed_error": str(e)})
            return
        await self.documents.update(doc.id, self._embedded_fields(result))
        logger.info(f"[KB] 后台 Embedding 完成: slug={doc.slug}, chunks={result.chunks_ingested}")

    # ------------------------------------------------------------------
    # 创建
    # ------------------------------------------------------------------
    async def create_document(self, data: CreateDocumentInput) -> Document:
        slug = normalize_slug(data.slug)

        existing = await self.documents.get_by_slug(slug)
        if existing:
            if data.on_conflict == OnConflict.SKIP:
                return Document(**existing)
            if data.on_conflict == OnConflict.UPDATE:
                return await self.update_document(existing["id"], UpdateDocumentInput(
                    name=data.name,
                    description=data.description,
                    content=data.content,
                    content_type=data.content_type,
                    category=data.category,
                    tags=data.tags,
                    metadata=data.metadata,
                    created_by=data.created_by,
                    chunk_options=data.chunk_options,
                ))
            raise ConflictError(slug)

        organization_id = check_organization_id(data.organization_id)
        if organization_id is None and data.workspace_id:
            organization_id = await self.documents.get_workspace_organization(data.workspace_id)

        row = await self.documents.create(
            slug=slug,
            name=data.name,
            description=data.description,
            content=data.content,
            content_type=data.content_type.value,
            category=data.category,
            tags=data.tags or [],
            metadata=data.metadata or {},
            organization_id=organization_id,
            workspace_id=data.workspace_id,
            type=data.type.value,
            created_by=data.created_by,
        )
        doc = Document(**row)

        chunk_options = data.chunk_options
        await self.tasks.submit(
            f"embed:{doc.slug}", lambda: self._embed_in_background(doc.id, chunk_options),
        )
        logger.info(f"[KB] 文档已创建: slug={doc.slug}, id={doc.id}")
        return doc

    # ------------------------------------------------------------------
    # 更新
    # ------------------------------------------------------------------
    async def update_document(self, id_or_slug: str, data: UpdateDocumentInput) -> Document:
        doc = await self._load(id_or_slug)
        fields = data.metadata_fields()

        if data.content is None or data.content == doc.content:
            if not fields:
                return doc
            return Document(**await self.documents.update(doc.id, fields))

        options = self._ingest_options(
            doc,
            content_type=data.content_type,
            name=data.name,
            chunk_options=data.chunk_options,
        )
        # 先切块校验，空内容在任何写入之前失败
        chunk_document(data.content, options.type, options.chunk_options)

        try:
            await self.pipeline.delete_document(doc.slug)
            result = await self.pipeline.ingest(data.content, options)
        except Exception as e:
            # 旧向量可能已删除: 记录失败并清空嵌入状态，内容与版本保持不变，可重试或重嵌入
            logger.error(f"[KB] 内容更新的重新摄取失败: slug={doc.slug}, err={e}")
            await self.documents.update(doc.id, {
                "vector_ids": [],
                "chunk_count": 0,
                "embedded_at": None,
                "last_embed_error": str(e),
            })
            raise

        # 摄取成功后才写版本快照，失败的更新不会留下历史记录
        await self.documents.create_version(
            document_id=doc.id,
            version=doc.version,
            content=doc.content,
            change_summary=data.change_summary,
            created_by=data.created_by,
        )
        updated = await self.documents.update(doc.id, {
            **fields,
            "content": data.content,
            "version": doc.version + 1,
            **self._embedded_fields(result),
        })
        logger.info(f"[KB] 文档内容已更新: slug={doc.slug}, version={doc.version + 1}")
        return Document(**updated)

    # ------------------------------------------------------------------
    # 删除
    # ------------------------------------------------------------------
    async def delete_document(self, id_or_slug: str) -> Document:
        doc = await self._load(id_or_slug)
        try:
            await self.pipeline.delete_document(doc.slug)
        except Exception as e:
            logger.warning(f"[KB] 向量清理失败，继续删除文档记录: slug={doc.slug}, err={e}")
        await self.documents.delete(doc.id)
        logger.info(f"[KB] 文档已删除: slug={doc.slug}")
        return doc

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------
    async def get_document(self, id_or_slug: str, organization_id: Optional[str] = None) -> Document:
        return await self._load(id_or_slug, check_organization_id(organization_id))

    async def list_documents(self, data: ListDocumentsInput | None = None) -> DocumentList:
        data = data or ListDocumentsInput()
        rows, total = await self.documents.list_documents(
            organization_id=check_organization_id(data.organization_id),
            workspace_id=data.workspace_id,
            category=data.category,
            tags=data.tags,
            type=data.type.value if data.type else None,
            skip=data.skip,
            take=data.take,
        )
        return DocumentList(documents=[Document(**r) for r in rows], total=total)

    async def search_documents(self, data: SearchDocumentsInput) -> list[QueryHit]:
        """在知识库 (或单篇文档) 内检索；单篇文档时按 slug 过滤并沿用文档的租户"""
        organization_id = check_organization_id(data.organization_id)
        filter: dict[str, Any] = {}
        if data.document_id:
            doc = await self._load(data.document_id, organization_id)
            filter["document_id"] = doc.slug
            organization_id = organization_id or doc.organization_id

        return await self.engine.query(data.query, QueryOptions(
            organization_id=organization_id,
            top_k=data.top_k,
            min_score=data.min_score,
            mode=data.mode,
            filter=filter or None,
        ))

    async def get_document_versions(self, id_or_slug: str) -> list[DocumentVersion]:
        doc = await self._load(id_or_slug)
        rows = await self.documents.list_versions(doc.id)
        return [DocumentVersion(**r) for r in rows]

    # ------------------------------------------------------------------
    # 重嵌入
    # ------------------------------------------------------------------
    async def reembed_document(
        self,
        id_or_slug: str,
        chunk_options: Optional[ChunkOptions] = None,
    ) -> Document:
        doc = await self._load(id_or_slug)

        fields: dict[str, Any] = {}
        organization_id = doc.organization_id
        # 回填租户: 历史文档可能没有 organization_id
        if organization_id is None and doc.workspace_id:
            organization_id = await self.documents.get_workspace_organization(doc.workspace_id)
            if organization_id:
                fields["organization_id"] = organization_id

        await self.pipeline.delete_document(doc.slug)
        result = await self.pipeline.ingest(
            doc.content,
            self._ingest_options(doc, organization_id=organization_id, chunk_options=chunk_options),
        )
        updated = await self.documents.update(doc.id, {**fields, **self._embedded_fields(result)})
        logger.info(f"[KB] 文档已重新嵌入: slug={doc.slug}, chunks={result.chunks_ingested}")
        return Document(**updated)


# ---------------------------------------------------------------------------
# 默认装配 (Milvus + PostgreSQL + OpenAI)
# ---------------------------------------------------------------------------

_service: DocumentService | None = None


def build_document_service(settings: KnowledgeSettings | None = None) -> DocumentService:
    s = settings or get_settings()
    embedder = OpenAIEmbedder.from_settings(s)
    vector_store = MilvusVectorStore.from_settings(s)
    keyword_store = ChunkRepository(s.postgres_dsn)
    generator = OpenAIGenerator.from_settings(s)

    pipeline = IngestionPipeline(
        embedder=embedder,
        vector_store=vector_store,
        keyword_store=keyword_store,
        index_name=s.index_name,
    )
    engine = HybridQueryEngine(
        embedder=embedder,
        vector_store=vector_store,
        keyword_store=keyword_store,
        index_name=s.index_name,
        generator=generator,
        rrf_k=s.rrf_k,
        rerank_window=s.rerank_window,
    )
    return DocumentService(
        documents=DocumentRepository(s.postgres_dsn),
        pipeline=pipeline,
        engine=engine,
        tasks=EmbeddingTaskQueue(workers=s.embed_workers, maxsize=s.embed_queue_size),
    )


def get_document_service() -> DocumentService:
    global _service
    if _service is None:
        _service = build_document_service()
    return _service


async def shutdown_document_service() -> None:
    """关闭后台队列；服务未被使用过时什么也不做"""
    global _service
    if _service is not None:
        await _service.tasks.close()
        _service = None
