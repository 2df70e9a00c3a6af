"""
RAG 引擎异常定义
所有对外错误都带有可读的 message，以及（如有）上游服务的状态码和信息
"""
from typing import Optional


class RAGError(Exception):
    """RAG 引擎异常基类"""
    status_code = 500

    def __init__(
        self,
        message: str,
        upstream_status: Optional[int] = None,
        upstream_message: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.upstream_status = upstream_status
        self.upstream_message = upstream_message

    def to_dict(self) -> dict:
        data = {"message": self.message}
        if self.upstream_status is not None:
            data["upstreamStatus"] = self.upstream_status
        if self.upstream_message:
            data["upstreamMessage"] = self.upstream_message
        return data


class InvalidRequestError(RAGError):
    """请求参数无效"""
    status_code = 400


class ConfigNotFoundError(RAGError):
    """应用没有 RAG 配置"""
    status_code = 404

    def __init__(self, app_id: int):
        super().__init__(f"应用 {app_id} 的 RAG 配置不存在")
        self.app_id = app_id


class EmbeddingError(RAGError):
    """向量化失败（后端错误、输入无效或返回的向量不合法）"""
    status_code = 502


class QueryEmbeddingError(EmbeddingError):
    """查询向量为空"""


class RetrievalError(RAGError):
    """向量库不可用或查询不合法"""
    status_code = 502


class CollectionNotFoundError(RetrievalError):
    status_code = 404

    def __init__(self, collection_name: str):
        super().__init__(f"Collection {collection_name} 不存在")
        self.collection_name = collection_name


class DimensionMismatchError(RetrievalError):
    status_code = 409


class GenerationError(RAGError):
    """LLM 调用失败"""
    status_code = 502


class SessionError(RAGError):
    """会话操作无效"""
    status_code = 400


class SessionNotFoundError(SessionError):
    status_code = 404

    def __init__(self, session_id: int):
        super().__init__(f"会话 {session_id} 不存在")
        self.session_id = session_id


class PersistenceWarning(RAGError):
    """会话/消息写入失败，只记录日志，不影响回答"""
