"""
知识库后端
基于 FastAPI 构建的混合检索 (向量 + 关键词) RAG 服务
"""
import logging
import sys
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# 配置知识库模块日志，确保 [KB] 切块/向量化/检索过程输出到终端
for _name in (
    "knowledge.pipeline",
    "knowledge.query",
    "knowledge.reranker",
    "knowledge.service",
    "knowledge.tasks",
    "knowledge.vector_store",
    "knowledge.router",
):
    _kb_log = logging.getLogger(_name)
    _kb_log.setLevel(logging.INFO)
    if not _kb_log.handlers:
        _h = logging.StreamHandler(sys.stdout)
        _h.setFormatter(logging.Formatter("%(message)s"))
        _kb_log.addHandler(_h)

# 必须先加载 .env，再导入依赖环境变量的路由模块
load_dotenv()

from knowledge import install_error_handlers, router as knowledge_router  # noqa: E402
from knowledge.service import shutdown_document_service  # noqa: E402


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    print("🚀 知识库服务启动中...")
    yield
    # 取消后台 Embedding worker，未完成的任务在 documents.embedded_at 上仍为空，可重嵌入
    await shutdown_document_service()
    print("👋 知识库服务已关闭")


app = FastAPI(
    title="知识库服务 📚",
    description="""
多租户知识库：文档切块 → Embedding → Milvus 向量索引 + PostgreSQL 全文检索双写。

## 检索模式

- vector：向量余弦检索，min_score 硬下限
- keyword：PostgreSQL ts_rank 全文检索
- hybrid：两路并发召回 → 加权 RRF 融合，可选 LLM 精排

## 文档生命周期

创建（后台 Embedding）→ 内容更新（旧版本快照，version+1，同步重嵌入）→ 删除（向量尽力清理，版本级联删除）。
    """,
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/ping", tags=["debug"])
async def ping_root():
    return {"pong": True, "message": "backend ok"}


@app.get("/api/ping", tags=["debug"])
async def api_ping():
    return {"pong": True, "message": "backend ok"}


# CORS 配置：allow_credentials=True 时不能使用 allow_origins=["*"]，否则浏览器会拦截
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

install_error_handlers(app)
app.include_router(knowledge_router, prefix="/api")


@app.get("/", tags=["root"])
async def root():
    """根路径"""
    return {
        "message": "欢迎使用知识库服务",
        "docs": "/docs",
        "version": "1.0.0"
    }


@app.get("/health", tags=["health"])
async def health_check():
    """健康检查"""
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)
