"""
知识库系统 (混合 RAG)

模块职责:
- chunking: 四种切块策略 + html/json 预处理
- embedding / generation: OpenAI 兼容接口封装
- vector_store: Milvus 向量索引 (租户与文档经元数据过滤)
- chunk_repository: rag_chunk 全文检索表 (PostgreSQL)
- document_repository: documents / document_versions
- pipeline: 切块 → Embedding → 向量库 + 关键词表双写
- query: 向量 / 关键词 / 混合检索，RRF 融合，精排，RAG 回答
- service: 文档生命周期 (创建、版本化更新、删除、重嵌入)
- router: FastAPI HTTP 接口
"""
from .router import install_error_handlers, router

__all__ = ["router", "install_error_handlers"]
