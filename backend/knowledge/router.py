"""
知识库 FastAPI 路由（挂载于 /api/knowledge）

文档生命周期 (创建/更新/删除/重嵌入/版本) 走 DocumentService；
ingest / query / answer / index stats 直接暴露 Pipeline 与检索引擎。
"""
from __future__ import annotations

import json
import logging
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse

from .errors import ConflictError, KnowledgeError, NotFoundError, RetrievalError, ValidationError
from .models import (
    AnswerRequest,
    ChunkOptions,
    CreateDocumentInput,
    Document,
    DocumentKind,
    DocumentList,
    DocumentVersion,
    IndexStats,
    IngestRequest,
    IngestResult,
    ListDocumentsInput,
    QueryHit,
    QueryRequest,
    RagAnswer,
    SearchDocumentsInput,
    UpdateDocumentInput,
)
from .query import RagAnswerStream
from .service import DocumentService, get_document_service

logger = logging.getLogger("knowledge.router")

router = APIRouter(prefix="/knowledge", tags=["knowledge"])

_STATUS_BY_ERROR: list[tuple[type[KnowledgeError], int]] = [
    (ValidationError, 422),
    (NotFoundError, 404),
    (ConflictError, 409),
    (RetrievalError, 503),
]


async def _knowledge_error_handler(request: Request, exc: KnowledgeError) -> JSONResponse:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return JSONResponse(status_code=status, content={"detail": str(exc)})
    logger.error(f"[KB] 未分类的知识库异常: {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"detail": str(exc)})


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(KnowledgeError, _knowledge_error_handler)


# ---------------------------------------------------------------------------
# 文档
# ---------------------------------------------------------------------------

@router.post("/documents", response_model=Document, status_code=201, summary="创建文档")
async def create_document(
    body: CreateDocumentInput,
    svc: DocumentService = Depends(get_document_service),
):
    """记录同步创建并返回；Embedding 在后台完成，轮询 embedded_at 观察"""
    return await svc.create_document(body)


@router.get("/documents", response_model=DocumentList, summary="文档列表")
async def list_documents(
    organization_id: Optional[str] = None,
    workspace_id: Optional[str] = None,
    category: Optional[str] = None,
    tags: Optional[list[str]] = Query(None),
    type: Optional[DocumentKind] = None,
    skip: int = Query(0, ge=0),
    take: int = Query(50, ge=1, le=500),
    svc: DocumentService = Depends(get_document_service),
):
    return await svc.list_documents(ListDocumentsInput(
        organization_id=organization_id,
        workspace_id=workspace_id,
        category=category,
        tags=tags,
        type=type,
        skip=skip,
        take=take,
    ))


@router.post("/documents/search", response_model=list[QueryHit], summary="文档内检索")
async def search_documents(
    body: SearchDocumentsInput,
    svc: DocumentService = Depends(get_document_service),
):
    return await svc.search_documents(body)


@router.get("/documents/{id_or_slug}", response_model=Document, summary="文档详情")
async def get_document(
    id_or_slug: str,
    organization_id: Optional[str] = None,
    svc: DocumentService = Depends(get_document_service),
):
    return await svc.get_document(id_or_slug, organization_id)


@router.patch("/documents/{id_or_slug}", response_model=Document, summary="更新文档")
async def update_document(
    id_or_slug: str,
    body: UpdateDocumentInput,
    svc: DocumentService = Depends(get_document_service),
):
    """内容变化时同步重新摄取并升版本；仅元数据变化不升版本"""
    return await svc.update_document(id_or_slug, body)


@router.delete("/documents/{id_or_slug}", summary="删除文档")
async def delete_document(
    id_or_slug: str,
    svc: DocumentService = Depends(get_document_service),
):
    doc = await svc.delete_document(id_or_slug)
    return {"ok": True, "id": doc.id, "slug": doc.slug}


@router.get("/documents/{id_or_slug}/versions", response_model=list[DocumentVersion], summary="版本历史")
async def get_document_versions(
    id_or_slug: str,
    svc: DocumentService = Depends(get_document_service),
):
    return await svc.get_document_versions(id_or_slug)


@router.post("/documents/{id_or_slug}/reembed", response_model=Document, summary="重新嵌入")
async def reembed_document(
    id_or_slug: str,
    body: Optional[ChunkOptions] = None,
    svc: DocumentService = Depends(get_document_service),
):
    return await svc.reembed_document(id_or_slug, body)


# ---------------------------------------------------------------------------
# 摄取 / 检索
# ---------------------------------------------------------------------------

@router.post("/ingest", response_model=IngestResult, summary="直接摄取")
async def ingest(
    body: IngestRequest,
    svc: DocumentService = Depends(get_document_service),
):
    """绕过文档记录直接摄取；内容变短时需先删除旧 document_id 的向量"""
    return await svc.pipeline.ingest(body.content, body)


@router.post("/query", response_model=list[QueryHit], summary="混合检索")
async def query(
    body: QueryRequest,
    svc: DocumentService = Depends(get_document_service),
):
    return await svc.engine.query(body.query, body)


@router.post("/answer", response_model=RagAnswer, summary="RAG 回答")
async def answer(
    body: AnswerRequest,
    svc: DocumentService = Depends(get_document_service),
):
    return await svc.engine.generate_answer(body.query, body)


@router.get("/index/stats", response_model=IndexStats, summary="向量索引统计")
async def index_stats(svc: DocumentService = Depends(get_document_service)):
    return await svc.pipeline.index_stats()


async def generate_answer_sse(answer: RagAnswerStream) -> AsyncIterator[str]:
    """SSE 格式: 先发来源，再逐段发正文，最后发完成标记；生成中途出错发 error 事件"""
    sources = [s.model_dump() for s in answer.sources]
    yield f"data: {json.dumps({'sources': sources, 'done': False}, ensure_ascii=False)}\n\n"
    try:
        async for content in answer.text_stream:
            data = json.dumps({"content": content, "done": False}, ensure_ascii=False)
            yield f"data: {data}\n\n"
        yield f"data: {json.dumps({'content': '', 'done': True})}\n\n"
    except Exception as e:
        logger.error(f"[KB] 流式回答生成失败: {e}")
        error_data = json.dumps({"error": str(e), "done": True}, ensure_ascii=False)
        yield f"data: {error_data}\n\n"


@router.post("/answer/stream", summary="RAG 回答 (SSE 流式)")
async def answer_stream(
    body: AnswerRequest,
    svc: DocumentService = Depends(get_document_service),
):
    """检索同步完成 (失败按错误码返回)，正文以 text/event-stream 推送"""
    answer = await svc.engine.generate_answer_stream(body.query, body)
    return StreamingResponse(
        generate_answer_sse(answer),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
