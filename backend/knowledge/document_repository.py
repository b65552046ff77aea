"""
documents / document_versions 表 CRUD (asyncpg)

提供文档的创建、按 ID 或 slug 查询、字段更新、分页列表、删除 (级联版本)，
以及版本快照的追加与查询。
"""
from __future__ import annotations

import json
import uuid
from typing import Any, Optional, Protocol

import asyncpg

from .config import get_settings
from .errors import ConflictError


class DocumentStore(Protocol):
    async def create(self, **fields: Any) -> dict[str, Any]: ...

    async def get(self, id_or_slug: str, organization_id: Optional[str] = None) -> dict[str, Any]: ...

    async def get_by_slug(self, slug: str) -> dict[str, Any]: ...

    async def update(self, doc_id: str, fields: dict[str, Any]) -> dict[str, Any]: ...

    async def delete(self, doc_id: str) -> bool: ...

    async def list_documents(
        self,
        *,
        organization_id: Optional[str] = None,
        workspace_id: Optional[str] = None,
        category: Optional[str] = None,
        tags: Optional[list[str]] = None,
        type: Optional[str] = None,
        skip: int = 0,
        take: int = 50,
    ) -> tuple[list[dict[str, Any]], int]: ...

    async def create_version(
        self,
        *,
        document_id: str,
        version: int,
        content: str,
        change_summary: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> dict[str, Any]: ...

    async def list_versions(self, document_id: str) -> list[dict[str, Any]]: ...

    async def get_workspace_organization(self, workspace_id: str) -> Optional[str]: ...


def _row_to_dict(row: asyncpg.Record | None) -> dict[str, Any]:
    if row is None:
        return {}
    d = dict(row)
    if "metadata" in d and isinstance(d["metadata"], str):
        try:
            d["metadata"] = json.loads(d["metadata"])
        except (json.JSONDecodeError, TypeError):
            d["metadata"] = {}
    for key in ("tags", "vector_ids"):
        if key in d and d[key] is None:
            d[key] = []
    return d


_COLUMNS = """
    id, slug, name, description, content, content_type,
    category, tags, metadata,
    organization_id, workspace_id, type, created_by,
    version, vector_ids, chunk_count, embedded_at, last_embed_error,
    created_at, updated_at
"""

_VERSION_COLUMNS = "id, document_id, version, content, change_summary, created_by, created_at"

# update() 允许写入的列
_UPDATABLE = {
    "name", "description", "content", "content_type", "category", "tags", "metadata",
    "organization_id", "version", "vector_ids", "chunk_count", "embedded_at",
    "last_embed_error",
}


class DocumentRepository:

    def __init__(self, dsn: str | None = None):
        self._dsn = dsn

    async def _conn(self) -> asyncpg.Connection:
        return await asyncpg.connect(self._dsn or get_settings().postgres_dsn)

    # ------------------------------------------------------------------
    # 创建
    # ------------------------------------------------------------------
    async def create(
        self,
        *,
        slug: str,
        name: str,
        content: str,
        content_type: str = "markdown",
        description: str | None = None,
        category: str | None = None,
        tags: list[str] | None = None,
        metadata: dict | None = None,
        organization_id: str | None = None,
        workspace_id: str | None = None,
        type: str = "USER",
        created_by: str | None = None,
        id: str | None = None,
    ) -> dict[str, Any]:
        conn = await self._conn()
        try:
            row = await conn.fetchrow(
                f"""
                INSERT INTO documents (
                    id, slug, name, description, content, content_type,
                    category, tags, metadata,
                    organization_id, workspace_id, type, created_by
                ) VALUES (
                    $1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb, $10, $11, $12, $13
                )
                RETURNING {_COLUMNS}
                """,
                id or uuid.uuid4().hex, slug, name, description, content, content_type,
                category, tags or [], json.dumps(metadata or {}, ensure_ascii=False),
                organization_id, workspace_id, type, created_by,
            )
            return _row_to_dict(row)
        except asyncpg.UniqueViolationError as e:
            # 并发创建同 slug: 查重之后才插入的一方落到这里
            raise ConflictError(slug) from e
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------
    async def get(self, id_or_slug: str, organization_id: Optional[str] = None) -> dict[str, Any]:
        """按 ID 或 slug 查询；给定 organization_id 时限定租户"""
        conn = await self._conn()
        try:
            sql = f"SELECT {_COLUMNS} FROM documents WHERE (id = $1 OR slug = $1)"
            params: list[Any] = [id_or_slug]
            if organization_id is not None:
                sql += " AND organization_id = $2"
                params.append(organization_id)
            row = await conn.fetchrow(sql + " LIMIT 1", *params)
            return _row_to_dict(row)
        finally:
            await conn.close()

    async def get_by_slug(self, slug: str) -> dict[str, Any]:
        conn = await self._conn()
        try:
            row = await conn.fetchrow(
                f"SELECT {_COLUMNS} FROM documents WHERE slug = $1", slug,
            )
            return _row_to_dict(row)
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    # 更新
    # ------------------------------------------------------------------
    async def update(self, doc_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"不可更新的字段: {sorted(unknown)}")

        conn = await self._conn()
        try:
            sets: list[str] = []
            params: list[Any] = [doc_id]
            for key, value in fields.items():
                params.append(json.dumps(value, ensure_ascii=False) if key == "metadata" else value)
                cast = "::jsonb" if key == "metadata" else ""
                sets.append(f"{key} = ${len(params)}{cast}")
            sets.append("updated_at = CURRENT_TIMESTAMP")

            row = await conn.fetchrow(
                f"""
                UPDATE documents
                SET {", ".join(sets)}
                WHERE id = $1
                RETURNING {_COLUMNS}
                """,
                *params,
            )
            return _row_to_dict(row)
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    # 删除 (document_versions 经外键级联删除)
    # ------------------------------------------------------------------
    async def delete(self, doc_id: str) -> bool:
        conn = await self._conn()
        try:
            result = await conn.execute("DELETE FROM documents WHERE id = $1", doc_id)
            return result.endswith("1")
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    # 列表
    # ------------------------------------------------------------------
    async def list_documents(
        self,
        *,
        organization_id: Optional[str] = None,
        workspace_id: Optional[str] = None,
        category: Optional[str] = None,
        tags: Optional[list[str]] = None,
        type: Optional[str] = None,
        skip: int = 0,
        take: int = 50,
    ) -> tuple[list[dict[str, Any]], int]:
        """返回 (当前页文档, 满足条件的总数)，按 updated_at 倒序"""
        conditions: list[str] = []
        params: list[Any] = []
        for column, value in (
            ("organization_id", organization_id),
            ("workspace_id", workspace_id),
            ("category", category),
            ("type", type),
        ):
            if value is not None:
                params.append(value)
                conditions.append(f"{column} = ${len(params)}")
        if tags:
            params.append(tags)
            conditions.append(f"tags && ${len(params)}::text[]")
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        conn = await self._conn()
        try:
            total = await conn.fetchval(f"SELECT COUNT(*) FROM documents {where}", *params)
            rows = await conn.fetch(
                f"""
                SELECT {_COLUMNS}
                FROM documents
                {where}
                ORDER BY updated_at DESC
                LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}
                """,
                *params, take, skip,
            )
            return [_row_to_dict(r) for r in rows], int(total or 0)
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    # 版本快照
    # ------------------------------------------------------------------
    async def create_version(
        self,
        *,
        document_id: str,
        version: int,
        content: str,
        change_summary: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> dict[str, Any]:
        conn = await self._conn()
        try:
            row = await conn.fetchrow(
                f"""
                INSERT INTO document_versions (
                    id, document_id, version, content, change_summary, created_by
                ) VALUES ($1, $2, $3, $4, $5, $6)
                RETURNING {_VERSION_COLUMNS}
                """,
                uuid.uuid4().hex, document_id, version, content, change_summary, created_by,
            )
            return _row_to_dict(row)
        finally:
            await conn.close()

    async def list_versions(self, document_id: str) -> list[dict[str, Any]]:
        conn = await self._conn()
        try:
            rows = await conn.fetch(
                f"""
                SELECT {_VERSION_COLUMNS}
                FROM document_versions
                WHERE document_id = $1
                ORDER BY version DESC
                """,
                document_id,
            )
            return [_row_to_dict(r) for r in rows]
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    # 工作区 → 组织
    # ------------------------------------------------------------------
    async def get_workspace_organization(self, workspace_id: str) -> Optional[str]:
        conn = await self._conn()
        try:
            return await conn.fetchval(
                "SELECT organization_id FROM workspaces WHERE id = $1", workspace_id,
            )
        finally:
            await conn.close()
