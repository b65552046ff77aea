"""
生成模型封装 (OpenAI 兼容 /chat/completions)

Rerank 与 RAG 回答合成共用同一个 generate(prompt) 接口；
流式回答走 stream(prompt)，逐段产出增量文本。
"""
from __future__ import annotations

from typing import AsyncIterator, Optional, Protocol

from openai import AsyncOpenAI

from .config import KnowledgeSettings, get_settings


class TextGenerator(Protocol):
    async def generate(self, prompt: str, model: Optional[str] = None) -> str: ...

    def stream(self, prompt: str, model: Optional[str] = None) -> AsyncIterator[str]: ...


class OpenAIGenerator:

    def __init__(
        self,
        *,
        model: str,
        api_key: str = "",
        base_url: str | None = None,
        temperature: float = 0.2,
        client: AsyncOpenAI | None = None,
    ):
        self.model = model
        self.temperature = temperature
        self._client = client or AsyncOpenAI(api_key=api_key, base_url=base_url)

    @classmethod
    def from_settings(cls, settings: KnowledgeSettings | None = None) -> "OpenAIGenerator":
        s = settings or get_settings()
        return cls(model=s.llm_model, api_key=s.llm_api_key, base_url=s.llm_base_url)

    async def _create_completion(self, prompt: str, model: Optional[str], stream: bool):
        return await self._client.chat.completions.create(
            model=model or self.model,
            messages=[{"role": "user", "content": prompt}],
            temperature=self.temperature,
            stream=stream,
        )

    async def generate(self, prompt: str, model: Optional[str] = None) -> str:
        resp = await self._create_completion(prompt, model, stream=False)
        return (resp.choices[0].message.content or "").strip()

    async def stream(self, prompt: str, model: Optional[str] = None) -> AsyncIterator[str]:
        """流式生成"""
        response = await self._create_completion(prompt, model, stream=True)
        async for chunk in response:
            if chunk.choices and chunk.choices[0].delta.content:
                yield chunk.choices[0].delta.content
