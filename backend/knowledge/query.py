"""
混合检索引擎

三种模式:
  - keyword: 仅关键词表全文检索 (ts_rank)，取 top_k
  - vector:  Query 向量化一次，向量库余弦检索 (min_score 硬下限)，可选精排
  - hybrid:  向量 (2×top_k) 与关键词 (2×top_k) 并发召回 → 加权 RRF 融合 → 可选精排

租户: organization_id 缺省时告警但照常检索 (系统内容允许无租户查询)；
给定时并入每一路的过滤条件；空串直接拒绝。
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator

from .chunk_repository import KeywordStore
from .embedding import Embedder
from .errors import RetrievalError
from .generation import TextGenerator
from .models import AnswerOptions, AnswerSource, QueryHit, QueryMode, QueryOptions, RagAnswer
from .pipeline import check_organization_id, chunk_id
from .reranker import RERANK_WINDOW, rerank_results
from .vector_store import VectorStore

logger = logging.getLogger("knowledge.query")

RRF_K = 60
SOURCE_PREVIEW_CHARS = 200

# 关键词表中以列存储的过滤键，其余键走 metadata @> jsonb
_KEYWORD_COLUMNS = ("organization_id", "document_id")


@dataclass
class RagAnswerStream:
    """流式回答: 来源在检索后即确定，正文经 text_stream 增量产出"""
    sources: list[AnswerSource]
    text_stream: AsyncIterator[str]


def rrf_fuse(
    vector_hits: list[QueryHit],
    keyword_hits: list[QueryHit],
    vector_weight: float = 0.5,
    k: int = RRF_K,
) -> list[QueryHit]:
    """
    加权 Reciprocal Rank Fusion。

    每个列表中排名 rank (0 起) 的条目得分 weight / (k + rank + 1)，
    同一切片 ID 在两个列表中的得分相加。权重为 0 的列表不参与融合，
    因此 vector_weight=1.0 等价于纯向量排序，0.0 等价于纯关键词排序。
    结果按融合分降序，同分保持首次出现顺序 (向量在前)。
    """
    scores: dict[str, float] = {}
    hits: dict[str, QueryHit] = {}

    for weight, ranked in ((vector_weight, vector_hits), (1.0 - vector_weight, keyword_hits)):
        if weight <= 0:
            continue
        for rank, hit in enumerate(ranked):
            scores[hit.id] = scores.get(hit.id, 0.0) + weight / (k + rank + 1)
            hits.setdefault(hit.id, hit)

    fused = sorted(scores.items(), key=lambda item: item[1], reverse=True)
    return [hits[hid].model_copy(update={"score": score}) for hid, score in fused]


def build_answer_prompt(query: str, passages: list[str], system_context: str = "") -> str:
    context = "\n\n".join(f"[Source {i + 1}]: {text}" for i, text in enumerate(passages))
    return (
        f"{system_context}\n\n"
        "Use the following context to answer the question. "
        "If the context doesn't contain relevant information, say so.\n\n"
        f"CONTEXT:\n{context}\n\n"
        f"QUESTION: {query}\n\n"
        "Provide a comprehensive answer based on the context above."
    )


class HybridQueryEngine:

    def __init__(
        self,
        *,
        embedder: Embedder,
        vector_store: VectorStore,
        keyword_store: KeywordStore,
        index_name: str,
        generator: TextGenerator | None = None,
        rrf_k: int = RRF_K,
        rerank_window: int = RERANK_WINDOW,
    ):
        self.embedder = embedder
        self.vector_store = vector_store
        self.keyword_store = keyword_store
        self.index_name = index_name
        self.generator = generator
        self.rrf_k = rrf_k
        self.rerank_window = rerank_window

    # ------------------------------------------------------------------
    # 单路召回
    # ------------------------------------------------------------------
    async def _vector_search(
        self,
        query_text: str,
        filter: dict[str, Any],
        limit: int,
        min_score: float,
    ) -> list[QueryHit]:
        # 尚未摄取过任何文档时索引不存在，视为空结果
        if self.index_name not in await self.vector_store.list_indexes():
            return []

        query_vector = await self.embedder.embed_one(query_text)
        results = await self.vector_store.query(
            self.index_name, query_vector, limit, min_score=min_score, filter=filter or None,
        )

        hits = []
        for r in results:
            meta = r.get("metadata") or {}
            if "document_id" in meta and "chunk_index" in meta:
                hid = chunk_id(meta["document_id"], meta["chunk_index"])
            else:
                hid = str(r.get("id", ""))
            hits.append(QueryHit(id=hid, text=meta.get("text", ""), score=float(r["score"]), metadata=meta))
        return hits

    async def _keyword_search(
        self,
        query_text: str,
        filter: dict[str, Any],
        limit: int,
    ) -> list[QueryHit]:
        metadata_filter = {k: v for k, v in filter.items() if k not in _KEYWORD_COLUMNS}
        rows = await self.keyword_store.search(
            query_text,
            organization_id=filter.get("organization_id"),
            document_id=filter.get("document_id"),
            metadata_filter=metadata_filter or None,
            limit=limit,
        )
        return [
            QueryHit(
                id=row["id"],
                text=row.get("text", ""),
                score=float(row.get("score", 0.0)),
                metadata=row.get("metadata") or {},
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # 检索入口
    # ------------------------------------------------------------------
    async def query(self, query_text: str, options: QueryOptions | None = None) -> list[QueryHit]:
        """
        Raises:
            ValidationError: organization_id 为空串
            RetrievalError: 单路模式该路失败，或 hybrid 两路均失败
        """
        opts = options or QueryOptions()
        organization_id = check_organization_id(opts.organization_id)

        filter = {k: v for k, v in (opts.filter or {}).items() if v is not None}
        check_organization_id(filter.get("organization_id"))
        if organization_id is not None:
            filter["organization_id"] = organization_id
        elif "organization_id" not in filter:
            logger.warning("[KB] 检索未指定 organization_id，结果不做租户隔离")

        top_k = opts.top_k
        rerank = opts.rerank and self.generator is not None
        if opts.rerank and self.generator is None:
            logger.warning("[KB] 请求了 rerank 但未配置生成模型，跳过精排")

        if opts.mode == QueryMode.KEYWORD:
            try:
                hits = await self._keyword_search(query_text, filter, top_k)
            except Exception as e:
                raise RetrievalError(f"Keyword search failed: {e}") from e
            return hits[:top_k]

        if opts.mode == QueryMode.VECTOR:
            limit = top_k * 2 if rerank else top_k
            try:
                hits = await self._vector_search(query_text, filter, limit, opts.min_score)
            except Exception as e:
                raise RetrievalError(f"Vector search failed: {e}") from e
        else:
            vector_res, keyword_res = await asyncio.gather(
                self._vector_search(query_text, filter, top_k * 2, opts.min_score),
                self._keyword_search(query_text, filter, top_k * 2),
                return_exceptions=True,
            )
            if isinstance(vector_res, BaseException) and isinstance(keyword_res, BaseException):
                raise RetrievalError(
                    f"Hybrid search failed on both paths: vector={vector_res}, keyword={keyword_res}"
                ) from vector_res
            if isinstance(vector_res, BaseException):
                logger.warning(f"[KB] 向量召回失败，仅使用关键词结果: {vector_res}")
                vector_res = []
            if isinstance(keyword_res, BaseException):
                logger.warning(f"[KB] 关键词召回失败，仅使用向量结果: {keyword_res}")
                keyword_res = []
            hits = rrf_fuse(vector_res, keyword_res, opts.vector_weight, self.rrf_k)

        if rerank:
            hits = await rerank_results(
                query_text, hits, top_k, self.generator,
                model=opts.rerank_model, window=self.rerank_window,
            )
        return hits[:top_k]

    # ------------------------------------------------------------------
    # RAG 回答合成
    # ------------------------------------------------------------------
    async def _answer_context(self, query_text: str, opts: AnswerOptions) -> tuple[str, list[AnswerSource]]:
        """检索并拼装回答 prompt，返回 (prompt, 来源摘要)"""
        if self.generator is None:
            raise RuntimeError("未配置生成模型，无法合成回答")

        hits = await self.query(
            query_text,
            QueryOptions(
                organization_id=opts.organization_id,
                top_k=opts.top_k,
                min_score=opts.min_score,
                mode=opts.mode,
            ),
        )
        prompt = build_answer_prompt(query_text, [h.text for h in hits], opts.system_context)

        sources = []
        for h in hits:
            preview = h.text[:SOURCE_PREVIEW_CHARS]
            if len(h.text) > SOURCE_PREVIEW_CHARS:
                preview += "..."
            sources.append(AnswerSource(
                text=preview, score=h.score, document_id=h.metadata.get("document_id"),
            ))
        return prompt, sources

    async def generate_answer(self, query_text: str, options: AnswerOptions | None = None) -> RagAnswer:
        prompt, sources = await self._answer_context(query_text, options or AnswerOptions())
        response = await self.generator.generate(prompt)
        return RagAnswer(response=response, sources=sources)

    async def generate_answer_stream(
        self,
        query_text: str,
        options: AnswerOptions | None = None,
    ) -> RagAnswerStream:
        """
        流式 RAG 回答: 检索在返回前完成 (检索错误同步抛出)，
        text_stream 在被消费时才调用生成模型。
        """
        prompt, sources = await self._answer_context(query_text, options or AnswerOptions())
        return RagAnswerStream(sources=sources, text_stream=self.generator.stream(prompt))
