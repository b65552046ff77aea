"""
知识库配置

所有外部依赖 (Embedding / LLM / Milvus / PostgreSQL) 的连接参数统一从环境变量读取，
启动时先 load_dotenv()，再由 KnowledgeSettings.from_env() 组装。
向量索引名作为显式配置传入 VectorStore / Pipeline，不再使用模块级常量。
"""
from __future__ import annotations

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict


def _env_int(name: str, default: int, min_value: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None:
        return max(min_value, default)
    try:
        return max(min_value, int(raw.strip()))
    except Exception:
        return max(min_value, default)


class KnowledgeSettings(BaseModel):
    """知识库运行时配置"""

    index_name: str = "rag_documents"

    # Embedding (OpenAI 兼容接口)
    embedding_model: str = "text-embedding-3-small"
    embedding_dim: int = 1536
    embedding_api_key: str = ""
    embedding_base_url: Optional[str] = None

    # 生成模型 (Rerank + RAG 回答)
    llm_model: str = "gpt-4o-mini"
    llm_api_key: str = ""
    llm_base_url: Optional[str] = None

    # Milvus
    milvus_host: str = "localhost"
    milvus_port: str = "19530"

    # PostgreSQL
    postgres_host: str = "localhost"
    postgres_port: str = "5432"
    postgres_user: str = "aiweb"
    postgres_password: str = "aiweb"
    postgres_db: str = "aiweb"

    # 后台 Embedding 队列
    embed_workers: int = 2
    embed_queue_size: int = 100

    # 检索
    rrf_k: int = 60
    rerank_window: int = 20

    # 允许 model_name 之类字段名
    model_config = ConfigDict(protected_namespaces=())

    @property
    def postgres_dsn(self) -> str:
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @classmethod
    def from_env(cls) -> "KnowledgeSettings":
        load_dotenv()
        openai_key = os.getenv("OPENAI_API_KEY", "")
        openai_base = os.getenv("OPENAI_API_BASE") or None
        return cls(
            index_name=os.getenv("KB_INDEX_NAME", "rag_documents"),
            embedding_model=os.getenv("KB_EMBEDDING_MODEL", "text-embedding-3-small"),
            embedding_dim=_env_int("KB_EMBEDDING_DIM", 1536),
            embedding_api_key=os.getenv("KB_EMBEDDING_API_KEY") or openai_key,
            embedding_base_url=os.getenv("KB_EMBEDDING_BASE_URL") or openai_base,
            llm_model=os.getenv("KB_LLM_MODEL", "gpt-4o-mini"),
            llm_api_key=os.getenv("KB_LLM_API_KEY") or openai_key,
            llm_base_url=os.getenv("KB_LLM_BASE_URL") or openai_base,
            milvus_host=os.getenv("MILVUS_HOST", "localhost"),
            milvus_port=os.getenv("MILVUS_PORT", "19530"),
            postgres_host=os.getenv("POSTGRES_HOST", "localhost"),
            postgres_port=os.getenv("POSTGRES_PORT", "5432"),
            postgres_user=os.getenv("POSTGRES_USER", "aiweb"),
            postgres_password=os.getenv("POSTGRES_PASSWORD", "aiweb"),
            postgres_db=os.getenv("POSTGRES_DB", "aiweb"),
            embed_workers=_env_int("KB_EMBED_WORKERS", 2),
            embed_queue_size=_env_int("KB_EMBED_QUEUE_SIZE", 100),
            rrf_k=_env_int("KB_RRF_K", 60),
            rerank_window=_env_int("KB_RERANK_WINDOW", 20),
        )


_settings: KnowledgeSettings | None = None


def get_settings() -> KnowledgeSettings:
    global _settings
    if _settings is None:
        _settings = KnowledgeSettings.from_env()
    return _settings
