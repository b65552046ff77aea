"""
知识库异常体系

- 同步抛出: ValidationError / NotFoundError / ConflictError / RetrievalError
- 不抛出: 关键词双写失败、向量清理失败 (记日志 + DegradedWrite)，
  后台 Embedding 失败 (记日志 + documents.last_embed_error)，Rerank 失败 (降级原顺序)
"""
from __future__ import annotations


class KnowledgeError(Exception):
    """知识库异常基类"""


class ValidationError(KnowledgeError):
    """输入导致数据结构不一致 (空 slug、空切片、非法参数)"""


class InvalidSlugError(ValidationError):
    def __init__(self, raw: str):
        super().__init__(f"Slug must contain at least one alphanumeric character: {raw!r}")
        self.raw = raw


class EmptyDocumentError(ValidationError):
    def __init__(self, message: str = "No chunks generated from document"):
        super().__init__(message)


class NotFoundError(KnowledgeError):
    def __init__(self, id_or_slug: str):
        super().__init__(f"Document not found: {id_or_slug}")
        self.id_or_slug = id_or_slug


class ConflictError(KnowledgeError):
    def __init__(self, slug: str):
        super().__init__(f'Document with slug "{slug}" already exists')
        self.slug = slug


class RetrievalError(KnowledgeError):
    """检索路径全部失败 (单路模式该路失败，或 hybrid 两路均失败)"""
