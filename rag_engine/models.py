"""
RAG 模块数据模型定义
对外序列化统一使用 camelCase（by_alias=True），内部字段保持 snake_case
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_api(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class DocumentChunk(CamelModel):
    """入库的文档片段"""
    id: str                                                 # 片段 ID，collection 内唯一
    text: str                                               # 片段文本
    vector: List[float] = Field(default_factory=list)       # 向量
    metadata: Dict[str, Any] = Field(default_factory=dict)


class IngestDocument(CamelModel):
    """入库请求中的单个文档（未分段）"""
    text: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    id: Optional[str] = None


class SearchResult(CamelModel):
    """检索结果（不单独持久化，只嵌入到消息的 sourceDocs 中）"""
    id: str
    text: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    score: float


class SourceDoc(CamelModel):
    text: str
    score: float
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_result(cls, result: SearchResult) -> "SourceDoc":
        return cls(text=result.text, score=result.score, metadata=result.metadata)


class Usage(CamelModel):
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


class RAGAnswer(CamelModel):
    """RAG 最终结果"""
    answer: str
    sources: List[SourceDoc] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)
    response_time: int = 0                  # 毫秒
    session_id: Optional[int] = None


class IngestResult(CamelModel):
    success: bool = True
    count: int = 0
    chunk_count: int = 0


class ChunkConfig(CamelModel):
    max_length: int = 2048
    overlap: int = 100
    separators: List[str] = Field(default_factory=list)


class CommonQuestion(CamelModel):
    question: str
    order: int


class RAGConfig(CamelModel):
    """应用级 RAG 配置"""
    config_id: Optional[int] = None
    app_id: int
    collection_name: str
    vector_dimension: int = 1024
    embedding_model: str = "text-embedding-v4"
    llm_model: str = "qwen-plus"
    user_prompt_template: Optional[str] = None
    llm_temperature: float = 0.7
    llm_max_tokens: int = 2000
    llm_top_p: float = 0.8
    top_k: int = 5
    similarity_threshold: float = 0.4
    index_type: str = "HNSW"
    index_params: Dict[str, Any] = Field(default_factory=dict)
    rerank_enabled: bool = False
    rerank_model: Optional[str] = None
    rerank_top_k: int = 10
    rerank_params: Dict[str, Any] = Field(default_factory=dict)
    chunk_max_length: int = 2048
    chunk_overlap: int = 100
    chunk_separators: List[str] = Field(default_factory=list)
    common_questions: Optional[List[CommonQuestion]] = None
    status: bool = True
    remark: Optional[str] = None
    create_time: Optional[datetime] = None
    update_time: Optional[datetime] = None
    creator: Optional[str] = None
    updater: Optional[str] = None

    @property
    def chunk_config(self) -> ChunkConfig:
        return ChunkConfig(
            max_length=self.chunk_max_length,
            overlap=self.chunk_overlap,
            separators=list(self.chunk_separators),
        )


class Caller(BaseModel):
    """已认证的调用方（由外部认证模块提供）"""
    user_id: Optional[int] = None
    user_name: Optional[str] = None


class SessionInfo(CamelModel):
    session_id: int
    app_id: int
    user_id: int
    user_name: Optional[str] = None
    session_title: str
    status: int = 0
    extra: Optional[Dict[str, Any]] = None
    create_time: Optional[datetime] = None
    update_time: Optional[datetime] = None


class NewMessage(BaseModel):
    """待追加的会话消息"""
    role: Literal["user", "assistant"]
    content: str
    source_docs: Optional[List[SourceDoc]] = None
    tokens_used: int = 0
    response_time: int = 0
    streamed: bool = False


class MessageInfo(CamelModel):
    message_id: int
    session_id: int
    app_id: int
    user_id: Optional[int] = None
    role: str
    content: str
    source_docs: Optional[List[SourceDoc]] = None
    tokens_used: int = 0
    response_time: int = 0
    streamed: bool = False
    create_time: Optional[datetime] = None


class Page(CamelModel):
    total: int
    page: int
    page_size: int
    total_pages: int
    list: List[Any] = Field(default_factory=list)
