"""
rag_chunk 表 CRUD (asyncpg)

关键词检索的关系型投影: 每个已向量化切片一行，search_vector 为生成列
(to_tsvector('english', text))，GIN 索引加速 plainto_tsquery 匹配。
"""
from __future__ import annotations

import json
from typing import Any, Optional, Protocol

import asyncpg

from .config import get_settings


class KeywordStore(Protocol):
    async def insert_chunks(self, rows: list[dict[str, Any]]) -> int: ...

    async def search(
        self,
        query: str,
        *,
        organization_id: Optional[str] = None,
        document_id: Optional[str] = None,
        metadata_filter: Optional[dict[str, Any]] = None,
        limit: int = 10,
    ) -> list[dict[str, Any]]: ...

    async def delete_by_document(self, document_id: str) -> int: ...


def _row_to_dict(row: asyncpg.Record | None) -> dict[str, Any]:
    if row is None:
        return {}
    d = dict(row)
    if "metadata" in d and isinstance(d["metadata"], str):
        try:
            d["metadata"] = json.loads(d["metadata"])
        except (json.JSONDecodeError, TypeError):
            d["metadata"] = {}
    return d


class ChunkRepository:

    def __init__(self, dsn: str | None = None):
        self._dsn = dsn

    async def _conn(self) -> asyncpg.Connection:
        return await asyncpg.connect(self._dsn or get_settings().postgres_dsn)

    # ------------------------------------------------------------------
    # 批量插入 (同 ID 跳过)
    # ------------------------------------------------------------------
    async def insert_chunks(self, rows: list[dict[str, Any]]) -> int:
        """
        批量写入切片，主键冲突跳过，返回提交条数。
        每条 row 包含:
            id, document_id, organization_id, chunk_index, text, source_name, metadata
        """
        if not rows:
            return 0
        conn = await self._conn()
        try:
            stmt = await conn.prepare("""
                INSERT INTO rag_chunk (
                    id, document_id, organization_id,
                    chunk_index, text, source_name, metadata
                ) VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb)
                ON CONFLICT (id) DO NOTHING
            """)
            await stmt.executemany([
                (
                    r["id"],
                    r["document_id"],
                    r.get("organization_id") or None,
                    r["chunk_index"],
                    r["text"],
                    r.get("source_name"),
                    json.dumps(r.get("metadata") or {}, ensure_ascii=False),
                )
                for r in rows
            ])
            return len(rows)
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    # 全文检索
    # ------------------------------------------------------------------
    async def search(
        self,
        query: str,
        *,
        organization_id: Optional[str] = None,
        document_id: Optional[str] = None,
        metadata_filter: Optional[dict[str, Any]] = None,
        limit: int = 10,
    ) -> list[dict[str, Any]]:
        """
        ts_rank 排序的全文检索。

        organization_id / document_id 作为列谓词，其余过滤键走 metadata @> jsonb。
        organization_id 为 None 时不加租户谓词 (调用方已校验空串)。
        """
        if not query or not query.strip():
            return []

        conn = await self._conn()
        try:
            params: list[Any] = [query.strip()]
            conditions = ["search_vector @@ plainto_tsquery('english', $1)"]

            if organization_id is not None:
                params.append(organization_id)
                conditions.append(f"organization_id = ${len(params)}")
            if document_id is not None:
                params.append(document_id)
                conditions.append(f"document_id = ${len(params)}")
            if metadata_filter:
                params.append(json.dumps(metadata_filter, ensure_ascii=False))
                conditions.append(f"metadata @> ${len(params)}::jsonb")

            params.append(limit)
            sql = f"""
                SELECT id, document_id, organization_id, chunk_index,
                       text, source_name, metadata,
                       ts_rank(search_vector, plainto_tsquery('english', $1)) AS score
                FROM rag_chunk
                WHERE {" AND ".join(conditions)}
                ORDER BY score DESC
                LIMIT ${len(params)}
            """
            rows = await conn.fetch(sql, *params)
            results = []
            for r in rows:
                d = _row_to_dict(r)
                d["score"] = float(r["score"])
                results.append(d)
            return results
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    # 删除
    # ------------------------------------------------------------------
    async def delete_by_document(self, document_id: str) -> int:
        conn = await self._conn()
        try:
            result = await conn.execute(
                "DELETE FROM rag_chunk WHERE document_id = $1", document_id,
            )
            parts = result.split()
            return int(parts[-1]) if parts else 0
        finally:
            await conn.close()
