"""
RAGService - RAG 统一服务接口
# HTTP 层和入库脚本只需调用 RAGService 即可完成完整流程

问答流程：
Question → Query Embedding → 向量检索（阈值过滤，可选 LLM 重排）
→ 有上下文 / 无上下文 Prompt → LLM 生成（一次性或流式）→ 写入会话消息
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from fastapi.concurrency import run_in_threadpool

from rag_engine.chunking import RecursiveTextSplitter, build_chunk_documents, next_chunk_stamp
from rag_engine.config_store import RAGConfigStore, default_collection_name
from rag_engine.embedding import EmbeddingBackend, create_embedding_backend
from rag_engine.errors import ConfigNotFoundError, InvalidRequestError, PersistenceWarning, QueryEmbeddingError
from rag_engine.llm import LLMClient, LLMReranker, LLMStream
from rag_engine.models import (
    Caller,
    DocumentChunk,
    IngestDocument,
    IngestResult,
    NewMessage,
    RAGAnswer,
    RAGConfig,
    SearchResult,
    SourceDoc,
    Usage,
)
from rag_engine.prompts import DEFAULT_APP_NAME, build_context_prompt, build_no_context_prompt, default_templates
from rag_engine.sessions import SessionStore
from rag_engine.settings import get_settings
from rag_engine.vector_store import QdrantVectorStore

logger = logging.getLogger(__name__)

EmbeddingFactory = Callable[[str, int], EmbeddingBackend]


def default_embedding_factory(model: str, dimension: int) -> EmbeddingBackend:
    settings = get_settings()
    return create_embedding_backend(model, dimension, settings.embed_api_key, settings.embed_batch_size)


@dataclass
class PromptPlan:
    """一次问答的 Prompt 组装结果"""
    config: RAGConfig
    prompt: str
    results: List[SearchResult] = field(default_factory=list)
    has_context: bool = False

    @property
    def sources(self) -> List[SourceDoc]:
        return [SourceDoc.from_result(r) for r in self.results]


def _elapsed_ms(started: float) -> int:
    return int((time.time() - started) * 1000)


class AnswerStream:
    """
    流式回答
    异步迭代得到文本增量；迭代结束后调用 finish() 写入会话并得到 RAGAnswer
    中途停止时调用 aclose()，不会写入任何消息
    """

    def __init__(
        self,
        service: "RAGService",
        plan: PromptPlan,
        llm_stream: LLMStream,
        app_id: int,
        question: str,
        caller: Optional[Caller],
        session_id: Optional[int],
        started: float,
    ):
        self.service = service
        self.plan = plan
        self.llm_stream = llm_stream
        self.app_id = app_id
        self.question = question
        self.caller = caller
        self.session_id = session_id
        self.started = started

    def __aiter__(self) -> AsyncIterator[str]:
        return self.llm_stream.__aiter__()

    @property
    def answer(self) -> str:
        return self.llm_stream.text

    @property
    def usage(self) -> Usage:
        return self.llm_stream.usage

    async def finish(self) -> RAGAnswer:
        response_time = _elapsed_ms(self.started)
        await run_in_threadpool(
            self.service._persist_turn,
            self.app_id, self.session_id, self.question, self.answer,
            self.plan, self.usage, response_time, self.caller, True,
        )
        return RAGAnswer(
            answer=self.answer,
            sources=self.plan.sources,
            usage=self.usage,
            response_time=response_time,
            session_id=self.session_id,
        )

    async def aclose(self) -> None:
        await self.llm_stream.aclose()


class RAGService:
    """
    RAG 统一服务

    Args:
        config_store: 应用 RAG 配置
        session_store: 会话与消息
        vector_store: 向量库
        llm: 生成用 LLM 客户端（重排也复用它）
        embedding_factory: (model, dimension) -> EmbeddingBackend
        templates: 提示词模板（默认读取 rag_engine/templates）
        app_name_resolver: app_id -> 应用名称
        history_rounds: 注入 Prompt 的历史轮次
    """

    def __init__(
        self,
        config_store: RAGConfigStore,
        session_store: SessionStore,
        vector_store: QdrantVectorStore,
        llm: LLMClient,
        embedding_factory: EmbeddingFactory = default_embedding_factory,
        templates: Optional[Mapping[str, str]] = None,
        app_name_resolver: Optional[Callable[[int], Optional[str]]] = None,
        history_rounds: int = 3,
    ):
        self.config_store = config_store
        self.session_store = session_store
        self.vector_store = vector_store
        self.llm = llm
        self.embedding_factory = embedding_factory
        self.templates = templates if templates is not None else default_templates()
        self.app_name_resolver = app_name_resolver
        self.history_rounds = history_rounds
        self._backends: Dict[Tuple[str, int], EmbeddingBackend] = {}
        self._backends_lock = threading.Lock()

    # ------------------------------------------------------------------
    # 组件准备
    # ------------------------------------------------------------------
    def _embedding_for(self, config: RAGConfig) -> EmbeddingBackend:
        key = (config.embedding_model, config.vector_dimension)
        with self._backends_lock:
            backend = self._backends.get(key)
            if backend is None:
                backend = self._backends[key] = self.embedding_factory(*key)
            return backend

    def _prepare(self, app_id: int) -> Tuple[RAGConfig, EmbeddingBackend]:
        """读取配置、选择 Embedding 后端、确保 Collection 存在且可检索"""
        config = self.config_store.get_config(app_id)
        backend = self._embedding_for(config)
        self.vector_store.create_collection(
            config.collection_name,
            config.vector_dimension,
            index_type=config.index_type,
            index_params=config.index_params,
        )
        self.vector_store.ensure_loaded(config.collection_name)
        return config, backend

    def app_name(self, app_id: int) -> str:
        if self.app_name_resolver is None:
            return DEFAULT_APP_NAME
        return self.app_name_resolver(app_id) or DEFAULT_APP_NAME

    # ------------------------------------------------------------------
    # 检索 + Prompt
    # ------------------------------------------------------------------
    def retrieve(
        self,
        config: RAGConfig,
        backend: EmbeddingBackend,
        question: str,
        top_k: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> List[SearchResult]:
        query_vector = backend.embed_query(question)
        if not query_vector:
            raise QueryEmbeddingError("查询向量为空")

        top_k = top_k if top_k is not None else config.top_k
        threshold = threshold if threshold is not None else config.similarity_threshold
        if not config.rerank_enabled:
            return self.vector_store.similarity_search(config.collection_name, query_vector, top_k, threshold)

        candidates = self.vector_store.similarity_search(
            config.collection_name, query_vector, max(config.rerank_top_k, top_k), threshold
        )
        reranker = LLMReranker(self.llm, model=config.rerank_model)
        return reranker.rerank(question, candidates, top_k=top_k)

    def build_prompt(
        self,
        app_id: int,
        question: str,
        session_id: Optional[int] = None,
        top_k: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> PromptPlan:
        """
        检索并组装 Prompt

        Returns:
            PromptPlan（含检索结果和是否有上下文）
        """
        if not isinstance(question, str) or not question.strip():
            raise InvalidRequestError("问题不能为空")
        config, backend = self._prepare(app_id)
        app_name = self.app_name(app_id)

        results = self.retrieve(config, backend, question, top_k, threshold)
        if not results:
            logger.info(f"[RAG] 应用 {app_id} 未检索到相关文档，使用无上下文 Prompt")
            prompt = build_no_context_prompt(self.templates, app_name, question)
            return PromptPlan(config=config, prompt=prompt, results=[], has_context=False)

        history = self.session_store.get_history(session_id, self.history_rounds) if session_id else ""
        prompt = build_context_prompt(
            self.templates,
            app_name,
            question,
            results,
            history=history,
            user_template=config.user_prompt_template,
        )
        logger.info(f"[RAG] 应用 {app_id} 检索到 {len(results)} 条相关文档")
        return PromptPlan(config=config, prompt=prompt, results=results, has_context=True)

    # ------------------------------------------------------------------
    # 问答
    # ------------------------------------------------------------------
    def _persist_turn(
        self,
        app_id: int,
        session_id: Optional[int],
        question: str,
        answer: str,
        plan: PromptPlan,
        usage: Usage,
        response_time: int,
        caller: Optional[Caller],
        streamed: bool,
    ) -> None:
        """同一事务写入一问一答；回答为空时整轮跳过，失败只记录日志"""
        if not session_id:
            return
        try:
            self.session_store.append_turn(
                app_id,
                session_id,
                NewMessage(role="user", content=question, streamed=streamed),
                NewMessage(
                    role="assistant",
                    content=answer,
                    source_docs=plan.sources or None,
                    tokens_used=usage.total_tokens,
                    response_time=response_time,
                    streamed=streamed,
                ),
                caller,
            )
        except PersistenceWarning as e:
            logger.warning(f"[RAG 会话] 保存会话消息失败（不影响回答）: {e.message}")

    def _generate_kwargs(self, config: RAGConfig) -> dict:
        return {
            "model": config.llm_model,
            "temperature": config.llm_temperature,
            "max_tokens": config.llm_max_tokens,
            "top_p": config.llm_top_p,
        }

    def ask(
        self,
        app_id: int,
        question: str,
        caller: Optional[Caller] = None,
        session_id: Optional[int] = None,
        top_k: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> RAGAnswer:
        """完整 RAG 流程（一次性返回）"""
        started = time.time()
        plan = self.build_prompt(app_id, question, session_id, top_k, threshold)
        result = self.llm.generate(plan.prompt, **self._generate_kwargs(plan.config))
        response_time = _elapsed_ms(started)

        self._persist_turn(
            app_id, session_id, question, result.text, plan, result.usage, response_time, caller, False
        )
        logger.info(f"[RAG] 应用 {app_id} 回答完成，耗时 {response_time}ms，Token: {result.usage.total_tokens}")
        return RAGAnswer(
            answer=result.text,
            sources=plan.sources,
            usage=result.usage,
            response_time=response_time,
            session_id=session_id,
        )

    async def ask_stream(
        self,
        app_id: int,
        question: str,
        caller: Optional[Caller] = None,
        session_id: Optional[int] = None,
        top_k: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> AnswerStream:
        """
        流式问答：检索和 Prompt 组装在线程池中完成，
        返回的 AnswerStream 迭代时才向 LLM 发起请求
        """
        started = time.time()
        plan = await run_in_threadpool(self.build_prompt, app_id, question, session_id, top_k, threshold)
        llm_stream = self.llm.stream(plan.prompt, **self._generate_kwargs(plan.config))
        return AnswerStream(self, plan, llm_stream, app_id, question, caller, session_id, started)

    # ------------------------------------------------------------------
    # 入库 / 删除
    # ------------------------------------------------------------------
    def ingest(self, app_id: int, documents: Sequence[IngestDocument]) -> IngestResult:
        """
        文档入库：按应用分段配置切分 → 批量向量化 → 一次性写入
        任一环节失败整批不写入
        """
        if not documents:
            raise InvalidRequestError("documents 不能为空")
        config, backend = self._prepare(app_id)
        splitter = RecursiveTextSplitter(config.chunk_max_length, config.chunk_overlap, config.chunk_separators)

        stamp_prefix = f"chunk_{next_chunk_stamp()}"
        chunk_docs: List[dict] = []
        for doc in documents:
            if not isinstance(doc.text, str) or not doc.text.strip():
                continue
            chunks = splitter.split_text(doc.text)
            if doc.id:
                chunk_docs.extend(build_chunk_documents(chunks, doc.metadata, id_prefix=doc.id))
            else:
                chunk_docs.extend(
                    build_chunk_documents(chunks, doc.metadata, id_prefix=stamp_prefix, start_index=len(chunk_docs))
                )
        if not chunk_docs:
            raise InvalidRequestError("没有可入库的文本内容")

        vectors = backend.embed_documents([d["text"] for d in chunk_docs])
        points = [
            DocumentChunk(id=d["id"], text=d["text"], vector=vector, metadata=d["metadata"])
            for d, vector in zip(chunk_docs, vectors)
        ]
        self.vector_store.add_documents(config.collection_name, points)
        logger.info(f"[RAG 入库] 应用 {app_id}: {len(documents)} 个文档，{len(points)} 个片段")
        return IngestResult(success=True, count=len(documents), chunk_count=len(points))

    def ingest_texts(self, app_id: int, texts: Sequence[str], metadata: Optional[dict] = None) -> IngestResult:
        documents = [IngestDocument(text=t, metadata=dict(metadata or {})) for t in texts if isinstance(t, str)]
        return self.ingest(app_id, documents)

    def drop_app(self, app_id: int) -> bool:
        """应用删除时清理其 Collection"""
        try:
            collection_name = self.config_store.get_config(app_id).collection_name
        except ConfigNotFoundError:
            collection_name = default_collection_name(app_id)
        return self.vector_store.delete_collection(collection_name)
