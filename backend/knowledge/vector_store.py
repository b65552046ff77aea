"""
Milvus 向量存储适配器

- 每个部署一个共享 Collection (索引名来自配置)，租户 / 文档隔离全部依赖元数据过滤
- 主键为确定性切片 ID，upsert 覆盖同 ID 旧向量
- organization_id / document_id 为标量字段，其余过滤键走 metadata JSON 字段
- pymilvus 为同步客户端，所有调用经 asyncio.to_thread 执行
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Optional, Protocol

from pymilvus import (
    Collection,
    CollectionSchema,
    DataType,
    FieldSchema,
    MilvusException,
    connections,
    utility,
)

from .config import KnowledgeSettings, get_settings

logger = logging.getLogger("knowledge.vector_store")

_SCALAR_FILTER_FIELDS = ("organization_id", "document_id")
_ID_MAX_LENGTH = 512


class VectorStore(Protocol):
    async def list_indexes(self) -> list[str]: ...

    async def create_index(self, name: str, dimension: int, metric: str = "cosine") -> None: ...

    async def upsert(
        self,
        index: str,
        vectors: list[list[float]],
        metadata: list[dict[str, Any]],
        ids: list[str],
    ) -> int: ...

    async def query(
        self,
        index: str,
        query_vector: list[float],
        top_k: int,
        min_score: Optional[float] = None,
        filter: Optional[dict[str, Any]] = None,
    ) -> list[dict[str, Any]]: ...

    async def delete_vectors(self, index: str, filter: dict[str, Any]) -> int: ...

    async def describe_index(self, index: str) -> dict[str, Any]: ...


def _entity_field(entity: Any, key: str, default: Any = "") -> Any:
    """兼容 pymilvus 2.2/2.4: entity 可能是 dict 或 Hit"""
    if entity is None:
        return default
    if isinstance(entity, dict):
        return entity.get(key, default)
    try:
        val = getattr(entity, key, None)
        return default if val is None else val
    except Exception:
        return default


def build_filter_expr(filter: Optional[dict[str, Any]]) -> str:
    """
    元数据过滤 dict → Milvus 布尔表达式 (各键 AND)。

    标量字段直接比较，其余键比较 metadata JSON 字段；值用 json.dumps 转义。
    值为 None 的键忽略。
    """
    if not filter:
        return ""
    parts: list[str] = []
    for key, value in filter.items():
        if value is None:
            continue
        literal = json.dumps(value, ensure_ascii=False)
        if key in _SCALAR_FILTER_FIELDS:
            parts.append(f"{key} == {literal}")
        else:
            parts.append(f"metadata[{json.dumps(key)}] == {literal}")
    return " and ".join(parts)


class MilvusVectorStore:

    def __init__(
        self,
        *,
        host: str = "localhost",
        port: str = "19530",
        alias: str = "default",
        max_retries: int = 2,
        retry_delay_ms: int = 800,
    ):
        self._params = {"host": host, "port": port}
        self._alias = alias
        self._max_retries = max_retries
        self._retry_delay_ms = retry_delay_ms
        self._collections: dict[str, Collection] = {}

    @classmethod
    def from_settings(cls, settings: KnowledgeSettings | None = None) -> "MilvusVectorStore":
        s = settings or get_settings()
        return cls(host=s.milvus_host, port=s.milvus_port)

    def _connect(self) -> None:
        connections.connect(self._alias, **self._params)

    def _get_collection(self, name: str) -> Collection | None:
        coll = self._collections.get(name)
        if coll is not None:
            return coll
        self._connect()
        if not utility.has_collection(name, using=self._alias):
            return None
        coll = Collection(name, using=self._alias)
        self._collections[name] = coll
        return coll

    # ------------------------------------------------------------------
    # 索引管理
    # ------------------------------------------------------------------
    async def list_indexes(self) -> list[str]:
        def _list():
            self._connect()
            return list(utility.list_collections(using=self._alias))

        return await asyncio.to_thread(_list)

    async def create_index(self, name: str, dimension: int, metric: str = "cosine") -> None:
        """幂等创建: 已存在则直接返回"""

        def _create():
            self._connect()
            if utility.has_collection(name, using=self._alias):
                return

            fields = [
                FieldSchema(name="id", dtype=DataType.VARCHAR, max_length=_ID_MAX_LENGTH, is_primary=True),
                FieldSchema(name="organization_id", dtype=DataType.VARCHAR, max_length=128),
                FieldSchema(name="document_id", dtype=DataType.VARCHAR, max_length=_ID_MAX_LENGTH),
                FieldSchema(name="metadata", dtype=DataType.JSON),
                FieldSchema(name="embedding", dtype=DataType.FLOAT_VECTOR, dim=dimension),
            ]
            schema = CollectionSchema(
                fields=fields,
                description="Knowledge base chunk vectors",
                enable_dynamic_field=False,
            )
            coll = Collection(name=name, schema=schema, using=self._alias)
            coll.create_index(
                field_name="embedding",
                index_params={
                    "metric_type": metric.upper(),
                    "index_type": "HNSW",
                    "params": {"M": 16, "efConstruction": 256},
                },
            )
            self._collections[name] = coll
            logger.info(f"[KB] Milvus collection '{name}' created (dim={dimension}, metric={metric})")

        await asyncio.to_thread(_create)

    async def describe_index(self, index: str) -> dict[str, Any]:
        def _describe():
            coll = self._get_collection(index)
            if coll is None:
                return {"count": 0}
            return {"count": int(coll.num_entities)}

        return await asyncio.to_thread(_describe)

    # ------------------------------------------------------------------
    # 写入
    # ------------------------------------------------------------------
    async def upsert(
        self,
        index: str,
        vectors: list[list[float]],
        metadata: list[dict[str, Any]],
        ids: list[str],
    ) -> int:
        """单次调用写入全部向量，同 ID 覆盖"""
        if not ids:
            return 0
        if not (len(vectors) == len(metadata) == len(ids)):
            raise ValueError("Milvus upsert 参数长度不一致")

        entities = [
            ids,
            [m.get("organization_id") or "" for m in metadata],
            [str(m.get("document_id", "")) for m in metadata],
            metadata,
            vectors,
        ]

        def _upsert():
            attempt = 0
            while True:
                try:
                    coll = self._get_collection(index)
                    if coll is None:
                        raise RuntimeError(f"Milvus collection '{index}' does not exist")
                    coll.upsert(entities)
                    coll.flush()
                    return len(ids)
                except MilvusException as e:
                    if attempt >= self._max_retries:
                        raise
                    logger.warning(
                        "[KB] Milvus upsert 失败，准备重试: "
                        f"attempt={attempt + 1}/{self._max_retries + 1}, err={e}"
                    )
                    # 强制重连并指数退避
                    try:
                        connections.disconnect(self._alias)
                    except Exception:
                        pass
                    self._collections.pop(index, None)
                    time.sleep((self._retry_delay_ms * (2 ** attempt)) / 1000.0)
                    attempt += 1

        return await asyncio.to_thread(_upsert)

    # ------------------------------------------------------------------
    # 检索
    # ------------------------------------------------------------------
    async def query(
        self,
        index: str,
        query_vector: list[float],
        top_k: int,
        min_score: Optional[float] = None,
        filter: Optional[dict[str, Any]] = None,
    ) -> list[dict[str, Any]]:
        """
        余弦相似度检索。

        返回 [{id, score, metadata}, ...]，score 降序；min_score 为硬下限。
        """
        expr = build_filter_expr(filter)

        def _search():
            coll = self._get_collection(index)
            if coll is None:
                return []
            coll.load()
            results = coll.search(
                data=[query_vector],
                anns_field="embedding",
                param={"metric_type": "COSINE", "params": {"ef": max(128, top_k)}},
                limit=top_k,
                expr=expr or None,
                output_fields=["metadata"],
            )
            hits = []
            for hit in results[0]:
                entity = getattr(hit, "entity", None)
                score = float(hit.distance)
                if min_score is not None and score < min_score:
                    continue
                hits.append({
                    "id": hit.id,
                    "score": score,
                    "metadata": _entity_field(entity, "metadata", {}) or {},
                })
            return hits

        return await asyncio.to_thread(_search)

    # ------------------------------------------------------------------
    # 删除
    # ------------------------------------------------------------------
    async def delete_vectors(self, index: str, filter: dict[str, Any]) -> int:
        """按元数据过滤批量删除；空过滤条件拒绝执行 (避免清空整个索引)"""
        expr = build_filter_expr(filter)
        if not expr:
            raise ValueError("delete_vectors 需要非空过滤条件")

        def _delete():
            coll = self._get_collection(index)
            if coll is None:
                return 0
            coll.load()
            res = coll.delete(expr)
            coll.flush()
            return getattr(res, "delete_count", 0)

        return await asyncio.to_thread(_delete)
