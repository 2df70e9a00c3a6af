"""
RAG Engine HTTP API
- /api/rag/ask:        问答（JSON 或 SSE 流式）
- /api/rag/documents:  文档入库（JSON 或 multipart 上传）
- /api/rag/config:     应用 RAG 配置
- /api/rag/sessions:   会话与消息
- /api/vector/...:     Collection 管理
"""
import logging
from datetime import datetime
from functools import lru_cache
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from rag_engine.config_store import RAGConfigStore
from rag_engine.db import get_session_factory
from rag_engine.errors import InvalidRequestError, RAGError, SessionNotFoundError
from rag_engine.llm import LLMClient
from rag_engine.loaders import extract_text
from rag_engine.models import Caller, IngestDocument
from rag_engine.service import RAGService
from rag_engine.sessions import SessionStore
from rag_engine.settings import get_settings
from rag_engine.streaming import SSE_HEADERS, format_sse, stream_answer_events
from rag_engine.vector_store import QdrantVectorStore, create_qdrant_client

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
# 减少访问日志
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)

app = FastAPI(title="RAG Engine API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache(maxsize=1)
def get_rag_service() -> RAGService:
    """进程内共享的 RAGService（测试中通过 dependency_overrides 替换）"""
    session_factory = get_session_factory()
    logger.info("🚀 初始化 RAG 服务...")
    service = RAGService(
        config_store=RAGConfigStore(session_factory),
        session_store=SessionStore(session_factory),
        vector_store=QdrantVectorStore(create_qdrant_client(settings)),
        llm=LLMClient(settings.llm_api_key, settings.llm_base_url, settings.llm_model),
        history_rounds=settings.history_rounds,
    )
    logger.info("✅ RAG 服务初始化完成")
    return service


def get_caller(
    x_user_id: Optional[int] = Header(None),
    x_user_name: Optional[str] = Header(None),
) -> Caller:
    """调用方身份（由前置认证网关写入请求头）"""
    return Caller(user_id=x_user_id, user_name=x_user_name)


def ok(data: Any = None, message: str = "success") -> Dict[str, Any]:
    return {"code": 200, "message": message, "data": data}


@app.exception_handler(RAGError)
async def rag_error_handler(request: Request, exc: RAGError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} 失败: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"code": exc.status_code, "message": exc.message, "error": exc.to_dict()},
    )


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"code": exc.status_code, "message": exc.detail},
    )


class AskRequest(BaseModel):
    question: str
    stream: bool = False
    sessionId: Optional[int] = None
    topK: Optional[int] = None
    threshold: Optional[float] = None


class DeleteDataRequest(BaseModel):
    ids: Optional[List[str]] = None
    expr: Optional[str] = None


class SessionCreate(BaseModel):
    title: Optional[str] = None


@app.get("/")
def read_root():
    return {"status": "ok", "message": "RAG Engine API is running"}


# ----------------------------------------------------------------------
# 问答
# ----------------------------------------------------------------------
@app.post("/api/rag/ask/{app_id}")
async def ask(
    app_id: int,
    body: AskRequest,
    request: Request,
    stream: Optional[str] = Query(None),
    caller: Caller = Depends(get_caller),
    service: RAGService = Depends(get_rag_service),
):
    """
    RAG 问答
    Body: { question, stream?, sessionId?, topK?, threshold? }；也支持 ?stream=1
    """
    question = body.question.strip()
    if not question:
        raise InvalidRequestError("question 不能为空")
    is_stream = body.stream or stream in ("1", "true")

    if not is_stream:
        answer = await run_in_threadpool(
            service.ask, app_id, question, caller, body.sessionId, body.topK, body.threshold
        )
        return ok(answer.to_api())

    async def open_stream():
        return await service.ask_stream(app_id, question, caller, body.sessionId, body.topK, body.threshold)

    return StreamingResponse(
        stream_answer_events(open_stream, request.is_disconnected),
        media_type="text/event-stream; charset=utf-8",
        headers=SSE_HEADERS,
    )


# ----------------------------------------------------------------------
# 文档入库
# ----------------------------------------------------------------------
class UploadReport:
    """multipart 入库时逐个文件解析，记录成功 / 跳过 / 失败的文件"""

    def __init__(self, texts: List[str]):
        self.documents: List[IngestDocument] = [IngestDocument(text=t) for t in texts]
        self.success_files: List[dict] = []
        self.skipped_files: List[dict] = []
        self.failed_files: List[dict] = []

    async def add_file(self, filename: str, data: bytes, mime: Optional[str]) -> bool:
        """解析一个文件，成功时加入待入库文档并返回 True"""
        result = await run_in_threadpool(extract_text, data, filename, mime)
        if result.skipped:
            self.skipped_files.append({"filename": filename, "reason": "不支持的文件格式"})
            return False
        if result.error:
            self.failed_files.append({"filename": filename, "reason": result.error})
            return False
        self.documents.append(IngestDocument(text=result.text, metadata={"source": filename}))
        self.success_files.append({"filename": filename})
        return True

    def summary(self) -> Dict[str, Any]:
        return {
            "successCount": len(self.success_files),
            "failedFiles": self.failed_files,
            "skippedFiles": self.skipped_files,
            "summary": {
                "totalProcessed": len(self.documents),
                "skipped": len(self.skipped_files),
                "failed": len(self.failed_files),
            },
        }


async def _read_multipart(request: Request):
    """读取表单：返回 (texts, files, 是否流式)，files 为 [(filename, bytes, mime)]"""
    form = await request.form()
    try:
        texts = [
            t for t in form.getlist("texts") + form.getlist("texts[]")
            if isinstance(t, str) and t.strip()
        ]
        files = []
        for upload in form.getlist("files") + form.getlist("files[]"):
            if isinstance(upload, str):
                continue
            files.append((upload.filename or "未知文件", await upload.read(), upload.content_type))
        stream_field = form.get("stream")
    finally:
        await form.close()
    return texts, files, stream_field in ("1", "true")


async def _upload_events(service: RAGService, app_id: int, report: UploadReport, files):
    """
    流式入库事件：ready → (file_uploaded → file_completed?)* → file_all_completed | error
    """
    yield format_sse("ready", {"message": "stream start"})
    try:
        for filename, data, mime in files:
            yield format_sse("file_uploaded", {"filename": filename, "size": len(data)})
            if await report.add_file(filename, data, mime):
                yield format_sse("file_completed", {"filename": filename})

        payload = report.summary()
        payload["chunkCount"] = 0
        if report.documents:
            result = await run_in_threadpool(service.ingest, app_id, report.documents)
            payload["chunkCount"] = result.chunk_count
        yield format_sse("file_all_completed", payload)
    except RAGError as e:
        logger.error(f"[RAG 入库] 流式入库失败: {e.message}")
        yield format_sse("error", {"message": "RAG 文档入库失败", "error": e.message})
    except Exception as e:
        logger.exception(f"[RAG 入库] 流式入库异常: {e}")
        yield format_sse("error", {"message": "RAG 文档入库失败", "error": str(e)})


@app.post("/api/rag/documents/{app_id}")
async def add_documents(
    app_id: int,
    request: Request,
    stream: Optional[str] = Query(None),
    service: RAGService = Depends(get_rag_service),
):
    """
    文档入库
    - JSON: { documents: [{ text, metadata?, id? }] }
    - multipart/form-data: files[]=<pdf/md/txt> 或 texts[]=<string>
    - multipart 且 ?stream=1（或表单字段 stream=1）时按文件推送 SSE 进度事件
    """
    if "multipart/form-data" in request.headers.get("content-type", ""):
        texts, files, stream_field = await _read_multipart(request)
        report = UploadReport(texts)
        if stream_field or stream in ("1", "true"):
            return StreamingResponse(
                _upload_events(service, app_id, report, files),
                media_type="text/event-stream; charset=utf-8",
                headers=SSE_HEADERS,
            )
        for filename, data, mime in files:
            await report.add_file(filename, data, mime)
    else:
        try:
            payload = await request.json()
        except ValueError:
            raise InvalidRequestError("请求体必须是 JSON")
        report = UploadReport([])
        raw_docs = payload.get("documents") if isinstance(payload, dict) else None
        for doc in raw_docs if isinstance(raw_docs, list) else []:
            if isinstance(doc, dict) and isinstance(doc.get("text"), str) and doc["text"].strip():
                report.documents.append(IngestDocument(
                    text=doc["text"],
                    metadata=doc.get("metadata") or {},
                    id=doc.get("id"),
                ))

    if not report.documents:
        return JSONResponse(status_code=400, content={
            "code": 400,
            "message": "没有成功处理的文档",
            "data": {"skippedFiles": report.skipped_files, "failedFiles": report.failed_files},
        })

    result = await run_in_threadpool(service.ingest, app_id, report.documents)
    chunk_config = await run_in_threadpool(service.config_store.get_chunk_config, app_id)
    data = result.to_api()
    data.update({
        "chunkConfig": chunk_config.to_api(),
        "successFiles": report.success_files,
        "skippedFiles": report.skipped_files,
        "failedFiles": report.failed_files,
    })
    return ok(data)


# ----------------------------------------------------------------------
# RAG 配置
# ----------------------------------------------------------------------
@app.get("/api/rag/config/{app_id}")
def get_rag_config(app_id: int, service: RAGService = Depends(get_rag_service)):
    return ok(service.config_store.get_config(app_id).to_api())


@app.put("/api/rag/config/{app_id}")
def update_rag_config(
    app_id: int,
    patch: Dict[str, Any],
    caller: Caller = Depends(get_caller),
    service: RAGService = Depends(get_rag_service),
):
    config = service.config_store.update_config(app_id, patch, updater=caller.user_name)
    return ok(config.to_api(), message="配置已更新")


@app.delete("/api/rag/config/{app_id}")
def reset_rag_config(
    app_id: int,
    caller: Caller = Depends(get_caller),
    service: RAGService = Depends(get_rag_service),
):
    config = service.config_store.reset_config(app_id, service.app_name(app_id), updater=caller.user_name)
    return ok(config.to_api(), message="配置已重置为默认值")


@app.post("/api/rag/config/{app_id}")
def init_rag_config(
    app_id: int,
    caller: Caller = Depends(get_caller),
    service: RAGService = Depends(get_rag_service),
):
    config = service.config_store.init_config(app_id, service.app_name(app_id), creator=caller.user_name)
    return ok(config.to_api())


# ----------------------------------------------------------------------
# 会话
# ----------------------------------------------------------------------
def _owned_session(service: RAGService, app_id: int, session_id: int, caller: Caller):
    session = service.session_store.get_session(session_id)
    if session is None:
        raise SessionNotFoundError(session_id)
    if session.app_id != app_id:
        raise HTTPException(status_code=400, detail="会话不属于该应用")
    if caller.user_id and session.user_id != caller.user_id:
        raise HTTPException(status_code=403, detail="无权访问该会话")
    return session


@app.post("/api/rag/sessions/{app_id}")
def create_session(
    app_id: int,
    body: Optional[SessionCreate] = None,
    caller: Caller = Depends(get_caller),
    service: RAGService = Depends(get_rag_service),
):
    session_id = service.session_store.create_session(app_id, caller, (body.title if body else None))
    return ok({"sessionId": session_id})


@app.get("/api/rag/sessions/{app_id}")
def list_sessions(
    app_id: int,
    page: int = 1,
    pageSize: int = 20,
    userId: Optional[int] = None,
    status: Optional[int] = None,
    startTime: Optional[datetime] = None,
    endTime: Optional[datetime] = None,
    service: RAGService = Depends(get_rag_service),
):
    result = service.session_store.list_sessions(
        app_id, page, pageSize, user_id=userId, status=status, start_time=startTime, end_time=endTime
    )
    return ok(result.to_api())


@app.get("/api/rag/sessions/{app_id}/{session_id}/messages")
def list_session_messages(
    app_id: int,
    session_id: int,
    page: int = 1,
    pageSize: int = 50,
    role: Optional[str] = None,
    caller: Caller = Depends(get_caller),
    service: RAGService = Depends(get_rag_service),
):
    _owned_session(service, app_id, session_id, caller)
    role = role if role in ("user", "assistant") else None
    return ok(service.session_store.list_messages(session_id, page, pageSize, role=role).to_api())


@app.delete("/api/rag/sessions/{app_id}/{session_id}")
def delete_session(
    app_id: int,
    session_id: int,
    caller: Caller = Depends(get_caller),
    service: RAGService = Depends(get_rag_service),
):
    _owned_session(service, app_id, session_id, caller)
    service.session_store.delete_session(session_id)
    return ok(message="会话及其消息已删除")


# ----------------------------------------------------------------------
# Collection 管理
# ----------------------------------------------------------------------
@app.get("/api/vector/collections")
def list_collections(service: RAGService = Depends(get_rag_service)):
    names = service.vector_store.list_collections()
    return ok({"collections": names, "total": len(names)})


@app.get("/api/vector/collections/{name}")
def get_collection_info(name: str, service: RAGService = Depends(get_rag_service)):
    return ok(service.vector_store.get_collection_info(name))


@app.get("/api/vector/collections/{name}/data")
def query_collection(
    name: str,
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    expr: Optional[str] = None,
    outputFields: Optional[str] = None,
    service: RAGService = Depends(get_rag_service),
):
    fields = [f.strip() for f in outputFields.split(",") if f.strip()] if outputFields else None
    return ok(service.vector_store.query_collection(name, limit, offset, expr, fields))


@app.get("/api/vector/collections/{name}/count")
def count_collection(name: str, expr: Optional[str] = None, service: RAGService = Depends(get_rag_service)):
    count = service.vector_store.count_collection(name, expr)
    return ok({"collectionName": name, "count": count})


@app.delete("/api/vector/collections/{name}/data")
def delete_collection_data(
    name: str,
    body: DeleteDataRequest,
    service: RAGService = Depends(get_rag_service),
):
    """按 ids 或过滤表达式删除（二选一，ids 优先）"""
    if body.ids:
        count = service.vector_store.delete_documents(name, body.ids)
        return ok({"collectionName": name, "deletedCount": count})
    if body.expr and body.expr.strip():
        service.vector_store.delete_by_expr(name, body.expr)
        return ok({"collectionName": name, "expr": body.expr})
    raise InvalidRequestError("必须提供 ids 或 expr 参数")


@app.delete("/api/vector/collections/{name}")
def drop_collection(name: str, service: RAGService = Depends(get_rag_service)):
    existed = service.vector_store.delete_collection(name)
    return ok({"collectionName": name, "existed": existed})


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=8000,
        access_log=False,
        log_level=settings.log_level.lower(),
    )
