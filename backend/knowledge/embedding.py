"""
Embedding 服务封装

- OpenAI 兼容 /embeddings 接口 (AsyncOpenAI)，模型与维度由 KnowledgeSettings 决定
- 一次摄取只发一次请求: embed_batch 不做客户端分批，切片再多也是单次往返
"""
from __future__ import annotations

import logging
from typing import Any, Protocol

from openai import AsyncOpenAI

from .config import KnowledgeSettings, get_settings

logger = logging.getLogger("knowledge.embedding")


class Embedder(Protocol):
    """文本 → 固定维度向量"""

    @property
    def dimension(self) -> int: ...

    async def embed_batch(self, texts: list[str]) -> list[list[float]]: ...

    async def embed_one(self, text: str) -> list[float]: ...


class OpenAIEmbedder:
    def __init__(
        self,
        *,
        model: str,
        dimension: int,
        api_key: str = "",
        base_url: str | None = None,
        client: AsyncOpenAI | None = None,
    ):
        self.model = model
        self._dimension = dimension
        self._client = client or AsyncOpenAI(api_key=api_key, base_url=base_url)

    @classmethod
    def from_settings(cls, settings: KnowledgeSettings | None = None) -> "OpenAIEmbedder":
        s = settings or get_settings()
        return cls(
            model=s.embedding_model,
            dimension=s.embedding_dim,
            api_key=s.embedding_api_key,
            base_url=s.embedding_base_url,
        )

    @property
    def dimension(self) -> int:
        return self._dimension

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """批量生成稠密向量，返回顺序与输入一致"""
        if not texts:
            return []

        kwargs: dict[str, Any] = {"model": self.model, "input": texts}
        # text-embedding-3 系列支持 dimensions 参数，与索引维度对齐
        if self.model.startswith("text-embedding-3") or "text-embedding-v" in self.model:
            kwargs["dimensions"] = self._dimension

        resp = await self._client.embeddings.create(**kwargs)
        sorted_data = sorted(resp.data, key=lambda x: x.index)
        vectors = [d.embedding for d in sorted_data]
        if len(vectors) != len(texts):
            raise RuntimeError(
                f"Embedding 返回数量不一致: expected={len(texts)}, got={len(vectors)}"
            )
        logger.debug(f"[KB] embedded {len(texts)} texts with {self.model}")
        return vectors

    async def embed_one(self, text: str) -> list[float]:
        """单条文本生成稠密向量"""
        results = await self.embed_batch([text])
        return results[0]
