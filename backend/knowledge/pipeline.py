"""
摄取 Pipeline

切块 → 单次批量 Embedding → 向量库 upsert (强保证) → 关键词表双写 (尽力而为)

- 向量 ID 确定性: {document_id}_chunk_{index}，重复摄取同一 source_id 覆盖而不重复
- 关键词双写失败只记日志并在 IngestResult.degraded 中体现，不让摄取失败
- 调用方义务: 新内容切片数变少时，旧版本高位 ID 会残留，直接调用 ingest 的一方
  需先 delete_document(document_id)；DocumentService 在重新摄取前总是先删除
"""
from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Optional

from .chunk_repository import KeywordStore
from .chunking import chunk_document
from .embedding import Embedder
from .errors import EmptyDocumentError, ValidationError
from .models import ChunkMetadata, DegradedWrite, IndexStats, IngestOptions, IngestResult
from .vector_store import VectorStore

logger = logging.getLogger("knowledge.pipeline")


def chunk_id(document_id: str, index: int) -> str:
    return f"{document_id}_chunk_{index}"


def check_organization_id(organization_id: Any) -> Optional[str]:
    """organization_id 只能是非空字符串或缺省，空串绝不能变成 = '' 过滤条件"""
    if organization_id is None:
        return None
    if not isinstance(organization_id, str) or not organization_id.strip():
        raise ValidationError("organization_id must be a non-empty identifier or omitted")
    return organization_id


class IngestionPipeline:

    def __init__(
        self,
        *,
        embedder: Embedder,
        vector_store: VectorStore,
        keyword_store: KeywordStore,
        index_name: str,
    ):
        self.embedder = embedder
        self.vector_store = vector_store
        self.keyword_store = keyword_store
        self.index_name = index_name

    # ------------------------------------------------------------------
    # 索引
    # ------------------------------------------------------------------
    async def index_exists(self) -> bool:
        return self.index_name in await self.vector_store.list_indexes()

    async def ensure_index(self) -> None:
        """不存在则创建: 维度取 Embedder 输出宽度，余弦相似度"""
        if await self.index_exists():
            return
        await self.vector_store.create_index(self.index_name, self.embedder.dimension, "cosine")
        logger.info(f"[KB] 创建向量索引 {self.index_name} (dim={self.embedder.dimension})")

    async def index_stats(self) -> IndexStats:
        if not await self.index_exists():
            return IndexStats(index_name=self.index_name, count=0, exists=False)
        info = await self.vector_store.describe_index(self.index_name)
        return IndexStats(index_name=self.index_name, count=int(info.get("count", 0)), exists=True)

    # ------------------------------------------------------------------
    # 摄取
    # ------------------------------------------------------------------
    async def ingest(self, content: str, options: IngestOptions | None = None) -> IngestResult:
        """
        摄取一篇文档，返回 {document_id, chunks_ingested, vector_ids, degraded}。

        Raises:
            EmptyDocumentError: 内容切不出切片
            ValidationError: organization_id 为空串
        其余 Embedding / 向量库异常原样抛出。
        """
        opts = options or IngestOptions()
        organization_id = check_organization_id(opts.organization_id)

        chunks = chunk_document(content, opts.type, opts.chunk_options)
        if not chunks:
            raise EmptyDocumentError()

        embeddings = await self.embedder.embed_batch([c.text for c in chunks])

        document_id = opts.source_id or f"doc_{int(time.time() * 1000)}"
        source_name = opts.source_name or document_id
        ingested_at = datetime.now(timezone.utc).isoformat()
        total = len(chunks)

        ids: list[str] = []
        bags: list[dict[str, Any]] = []
        for index, chunk in enumerate(chunks):
            merged: dict[str, Any] = {
                **(opts.metadata or {}),
                **chunk.metadata,
                "organization_id": organization_id,
                "document_id": document_id,
                "source_name": source_name,
                "text": chunk.text,
                "chunk_index": index,
                "total_chunks": total,
                "ingested_at": ingested_at,
            }
            bags.append(ChunkMetadata(**merged).to_bag())
            ids.append(chunk_id(document_id, index))

        await self.ensure_index()
        await self.vector_store.upsert(self.index_name, embeddings, bags, ids)

        result = IngestResult(document_id=document_id, chunks_ingested=total, vector_ids=ids)

        rows = [
            {
                "id": vid,
                "document_id": document_id,
                "organization_id": organization_id,
                "chunk_index": bag["chunk_index"],
                "text": bag["text"],
                "source_name": source_name,
                "metadata": {k: v for k, v in bag.items() if k != "text"},
            }
            for vid, bag in zip(ids, bags)
        ]
        try:
            await self.keyword_store.insert_chunks(rows)
        except Exception as e:
            logger.warning(f"[KB] 关键词表双写失败，该文档仅支持向量检索: document_id={document_id}, err={e}")
            result.degraded.append(DegradedWrite(
                store="keyword", operation="insert", document_id=document_id, error=str(e),
            ))

        logger.info(f"[KB] 摄取完成: document_id={document_id}, chunks={total}")
        return result

    # ------------------------------------------------------------------
    # 删除
    # ------------------------------------------------------------------
    async def delete_document(self, document_id: str) -> list[DegradedWrite]:
        """
        删除一篇文档的关键词行与向量。

        关键词行删除失败只记日志 (返回 DegradedWrite)；向量删除异常原样抛出，
        是否吞掉由调用方决定。索引不存在时跳过向量删除。
        """
        degraded: list[DegradedWrite] = []
        try:
            await self.keyword_store.delete_by_document(document_id)
        except Exception as e:
            logger.warning(f"[KB] 关键词行删除失败: document_id={document_id}, err={e}")
            degraded.append(DegradedWrite(
                store="keyword", operation="delete", document_id=document_id, error=str(e),
            ))

        if await self.index_exists():
            await self.vector_store.delete_vectors(self.index_name, {"document_id": document_id})
        return degraded
