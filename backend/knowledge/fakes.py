"""
内存版协作方 (测试与本地调试用)

- InMemoryVectorStore: 余弦相似度 + 元数据等值过滤，行为对齐 MilvusVectorStore
- InMemoryKeywordStore: 词项 AND 匹配 (近似 plainto_tsquery)，得分为命中次数
- InMemoryDocumentStore: documents / document_versions / workspaces
- RuleEmbedder: 按子串规则给出固定向量，便于构造“语义相关但字面不相关”的语料
- ScriptedGenerator / FailingGenerator: 生成模型替身

各 fail_* 开关用于注入故障。
"""
from __future__ import annotations

import math
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Optional, Union

from .errors import ConflictError

_TOKEN_RE = re.compile(r"[a-z0-9]+")


def _tokens(text: str) -> list[str]:
    return _TOKEN_RE.findall(text.lower())


def _cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    if na == 0 or nb == 0:
        return 0.0
    return dot / (na * nb)


# ---------------------------------------------------------------------------
# Embedding
# ---------------------------------------------------------------------------

class RuleEmbedder:
    """
    rules: [(子串, 向量), ...]，取第一个出现在文本 (小写) 中的规则；
    都不命中时返回最后一维的单位向量。
    """

    def __init__(self, rules: Optional[list[tuple[str, list[float]]]] = None, dimension: int = 4):
        self.rules = [(key.lower(), vec) for key, vec in (rules or [])]
        self._dimension = dimension
        self.batch_calls: list[int] = []
        self.fail = False

    @property
    def dimension(self) -> int:
        return self._dimension

    def _vector(self, text: str) -> list[float]:
        lowered = text.lower()
        for key, vec in self.rules:
            if key in lowered:
                return list(vec)
        fallback = [0.0] * self._dimension
        fallback[-1] = 1.0
        return fallback

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if self.fail:
            raise RuntimeError("embedding provider unavailable")
        self.batch_calls.append(len(texts))
        return [self._vector(t) for t in texts]

    async def embed_one(self, text: str) -> list[float]:
        return (await self.embed_batch([text]))[0]


# ---------------------------------------------------------------------------
# 向量库
# ---------------------------------------------------------------------------

class InMemoryVectorStore:

    def __init__(self):
        self.indexes: dict[str, dict[str, Any]] = {}
        self.upsert_calls = 0
        self.fail_query = False
        self.fail_delete = False

    async def list_indexes(self) -> list[str]:
        return list(self.indexes)

    async def create_index(self, name: str, dimension: int, metric: str = "cosine") -> None:
        self.indexes.setdefault(name, {"dimension": dimension, "metric": metric, "records": {}})

    async def upsert(
        self,
        index: str,
        vectors: list[list[float]],
        metadata: list[dict[str, Any]],
        ids: list[str],
    ) -> int:
        if index not in self.indexes:
            raise RuntimeError(f"index {index} does not exist")
        self.upsert_calls += 1
        records = self.indexes[index]["records"]
        for vid, vec, meta in zip(ids, vectors, metadata):
            records[vid] = (list(vec), dict(meta))
        return len(ids)

    @staticmethod
    def _matches(meta: dict[str, Any], filter: Optional[dict[str, Any]]) -> bool:
        if not filter:
            return True
        return all(meta.get(k) == v for k, v in filter.items() if v is not None)

    async def query(
        self,
        index: str,
        query_vector: list[float],
        top_k: int,
        min_score: Optional[float] = None,
        filter: Optional[dict[str, Any]] = None,
    ) -> list[dict[str, Any]]:
        if self.fail_query:
            raise RuntimeError("vector store unavailable")
        if index not in self.indexes:
            return []
        scored = []
        for vid, (vec, meta) in self.indexes[index]["records"].items():
            if not self._matches(meta, filter):
                continue
            score = _cosine(query_vector, vec)
            if min_score is not None and score < min_score:
                continue
            scored.append({"id": vid, "score": score, "metadata": dict(meta)})
        scored.sort(key=lambda r: r["score"], reverse=True)
        return scored[:top_k]

    async def delete_vectors(self, index: str, filter: dict[str, Any]) -> int:
        if self.fail_delete:
            raise RuntimeError("vector delete failed")
        if not filter:
            raise ValueError("delete_vectors 需要非空过滤条件")
        if index not in self.indexes:
            return 0
        records = self.indexes[index]["records"]
        doomed = [vid for vid, (_, meta) in records.items() if self._matches(meta, filter)]
        for vid in doomed:
            del records[vid]
        return len(doomed)

    async def describe_index(self, index: str) -> dict[str, Any]:
        if index not in self.indexes:
            return {"count": 0}
        return {"count": len(self.indexes[index]["records"])}


# ---------------------------------------------------------------------------
# 关键词表
# ---------------------------------------------------------------------------

class InMemoryKeywordStore:

    def __init__(self):
        self.rows: dict[str, dict[str, Any]] = {}
        self.fail_insert = False
        self.fail_search = False
        self.fail_delete = False

    async def insert_chunks(self, rows: list[dict[str, Any]]) -> int:
        if self.fail_insert:
            raise RuntimeError("keyword store unavailable")
        for r in rows:
            # ON CONFLICT (id) DO NOTHING
            self.rows.setdefault(r["id"], {
                **r,
                "organization_id": r.get("organization_id") or None,
                "metadata": dict(r.get("metadata") or {}),
            })
        return len(rows)

    async def search(
        self,
        query: str,
        *,
        organization_id: Optional[str] = None,
        document_id: Optional[str] = None,
        metadata_filter: Optional[dict[str, Any]] = None,
        limit: int = 10,
    ) -> list[dict[str, Any]]:
        if self.fail_search:
            raise RuntimeError("keyword store unavailable")
        terms = _tokens(query)
        if not terms:
            return []

        results = []
        for row in self.rows.values():
            if organization_id is not None and row["organization_id"] != organization_id:
                continue
            if document_id is not None and row["document_id"] != document_id:
                continue
            if metadata_filter and any(row["metadata"].get(k) != v for k, v in metadata_filter.items()):
                continue
            words = _tokens(row["text"])
            if not all(t in words for t in terms):
                continue
            score = float(sum(words.count(t) for t in terms))
            results.append({**row, "score": score})

        results.sort(key=lambda r: r["score"], reverse=True)
        return results[:limit]

    async def delete_by_document(self, document_id: str) -> int:
        if self.fail_delete:
            raise RuntimeError("keyword delete failed")
        doomed = [rid for rid, row in self.rows.items() if row["document_id"] == document_id]
        for rid in doomed:
            del self.rows[rid]
        return len(doomed)


# ---------------------------------------------------------------------------
# 文档表
# ---------------------------------------------------------------------------

_UPDATABLE = {
    "name", "description", "content", "content_type", "category", "tags", "metadata",
    "organization_id", "version", "vector_ids", "chunk_count", "embedded_at",
    "last_embed_error",
}


class InMemoryDocumentStore:

    def __init__(self, workspaces: Optional[dict[str, str]] = None):
        self.docs: dict[str, dict[str, Any]] = {}
        self.versions: list[dict[str, Any]] = []
        self.workspaces = dict(workspaces or {})
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def _now(self) -> datetime:
        # 单调递增，保证 updated_at 排序稳定
        self._clock += timedelta(seconds=1)
        return self._clock

    @staticmethod
    def _copy(row: dict[str, Any]) -> dict[str, Any]:
        return {
            **row,
            "tags": list(row.get("tags") or []),
            "vector_ids": list(row.get("vector_ids") or []),
            "metadata": dict(row.get("metadata") or {}),
        }

    async def create(self, **fields: Any) -> dict[str, Any]:
        slug = fields["slug"]
        if any(d["slug"] == slug for d in self.docs.values()):
            raise ConflictError(slug)
        now = self._now()
        row = {
            "id": fields.get("id") or uuid.uuid4().hex,
            "slug": slug,
            "name": fields["name"],
            "description": fields.get("description"),
            "content": fields["content"],
            "content_type": fields.get("content_type", "markdown"),
            "category": fields.get("category"),
            "tags": list(fields.get("tags") or []),
            "metadata": dict(fields.get("metadata") or {}),
            "organization_id": fields.get("organization_id"),
            "workspace_id": fields.get("workspace_id"),
            "type": fields.get("type", "USER"),
            "created_by": fields.get("created_by"),
            "version": 1,
            "vector_ids": [],
            "chunk_count": 0,
            "embedded_at": None,
            "last_embed_error": None,
            "created_at": now,
            "updated_at": now,
        }
        self.docs[row["id"]] = row
        return self._copy(row)

    async def get(self, id_or_slug: str, organization_id: Optional[str] = None) -> dict[str, Any]:
        for row in self.docs.values():
            if row["id"] != id_or_slug and row["slug"] != id_or_slug:
                continue
            if organization_id is not None and row["organization_id"] != organization_id:
                continue
            return self._copy(row)
        return {}

    async def get_by_slug(self, slug: str) -> dict[str, Any]:
        for row in self.docs.values():
            if row["slug"] == slug:
                return self._copy(row)
        return {}

    async def update(self, doc_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"不可更新的字段: {sorted(unknown)}")
        row = self.docs.get(doc_id)
        if row is None:
            return {}
        row.update(fields)
        row["updated_at"] = self._now()
        return self._copy(row)

    async def delete(self, doc_id: str) -> bool:
        if self.docs.pop(doc_id, None) is None:
            return False
        self.versions = [v for v in self.versions if v["document_id"] != doc_id]
        return True

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
        rows = [
            r for r in self.docs.values()
            if (organization_id is None or r["organization_id"] == organization_id)
            and (workspace_id is None or r["workspace_id"] == workspace_id)
            and (category is None or r["category"] == category)
            and (type is None or r["type"] == type)
            and (not tags or set(tags) & set(r["tags"]))
        ]
        rows.sort(key=lambda r: r["updated_at"], reverse=True)
        return [self._copy(r) for r in rows[skip:skip + take]], len(rows)

    async def create_version(
        self,
        *,
        document_id: str,
        version: int,
        content: str,
        change_summary: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> dict[str, Any]:
        # UNIQUE (document_id, version)
        if any(v["document_id"] == document_id and v["version"] == version for v in self.versions):
            raise ValueError(f"duplicate version {version} for document {document_id}")
        row = {
            "id": uuid.uuid4().hex,
            "document_id": document_id,
            "version": version,
            "content": content,
            "change_summary": change_summary,
            "created_by": created_by,
            "created_at": self._now(),
        }
        self.versions.append(row)
        return dict(row)

    async def list_versions(self, document_id: str) -> list[dict[str, Any]]:
        rows = [dict(v) for v in self.versions if v["document_id"] == document_id]
        rows.sort(key=lambda v: v["version"], reverse=True)
        return rows

    async def get_workspace_organization(self, workspace_id: str) -> Optional[str]:
        return self.workspaces.get(workspace_id)


# ---------------------------------------------------------------------------
# 生成模型
# ---------------------------------------------------------------------------

class ScriptedGenerator:
    """按顺序返回预设回复 (或调用函数生成)，记录收到的 prompt；stream 按词切片逐段产出"""

    def __init__(self, responses: Union[list[str], Callable[[str], str], None] = None):
        self.responses = responses if responses is not None else []
        self.prompts: list[str] = []
        self.models: list[Optional[str]] = []

    def _next(self, prompt: str, model: Optional[str]) -> str:
        self.prompts.append(prompt)
        self.models.append(model)
        if callable(self.responses):
            return self.responses(prompt)
        if not self.responses:
            return ""
        return self.responses.pop(0)

    async def generate(self, prompt: str, model: Optional[str] = None) -> str:
        return self._next(prompt, model)

    async def stream(self, prompt: str, model: Optional[str] = None) -> AsyncIterator[str]:
        for piece in re.findall(r"\S+\s*", self._next(prompt, model)):
            yield piece


class FailingGenerator:

    def __init__(self, error: Exception | None = None):
        self.error = error or RuntimeError("model call failed")
        self.calls = 0

    async def generate(self, prompt: str, model: Optional[str] = None) -> str:
        self.calls += 1
        raise self.error

    async def stream(self, prompt: str, model: Optional[str] = None) -> AsyncIterator[str]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        yield ""
