import math

import pytest
from qdrant_client import QdrantClient

from rag_engine.config_store import RAGConfigStore
from rag_engine.db import create_db_engine, create_session_factory, init_db
from rag_engine.embedding import EmbeddingBackend
from rag_engine.llm import LLMResult
from rag_engine.models import Caller, Usage
from rag_engine.service import RAGService
from rag_engine.sessions import SessionStore
from rag_engine.vector_store import QdrantVectorStore

# 每个关键词占一维，最后一维是很小的常量，保证向量非零
TOPICS = ["退货", "发货", "支付", "会员", "发票", "物流", "客服"]
DIMENSION = len(TOPICS) + 1
APP_ID = 1


def topic_vector(text: str) -> list:
    vector = [float(text.count(topic)) for topic in TOPICS]
    vector.append(0.1)
    return vector


def cosine(a, b) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    return dot / (math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b)))


class FakeEmbedding(EmbeddingBackend):
    """按关键词出现次数生成向量"""

    def __init__(self, dimension: int = DIMENSION):
        super().__init__("fake-embedding", dimension, api_key="test-key")
        self.document_calls = 0
        self.query_calls = 0

    def embed_documents(self, texts):
        self.document_calls += 1
        return [topic_vector(t) for t in texts]

    def embed_query(self, text):
        self.query_calls += 1
        return topic_vector(text)


class FakeLLMStream:
    def __init__(self, deltas, usage, fail_after=None):
        self.deltas = list(deltas)
        self.usage = Usage()
        self.text = ""
        self.closed = False
        self._final_usage = usage
        self._fail_after = fail_after

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        from rag_engine.errors import GenerationError

        for i, delta in enumerate(self.deltas):
            if self._fail_after is not None and i >= self._fail_after:
                raise GenerationError("LLM 流式调用失败 (500): upstream boom", upstream_status=500)
            self.text += delta
            yield delta
        self.usage = self._final_usage

    async def aclose(self):
        self.closed = True


class FakeLLM:
    """记录 prompt 并返回固定回答"""

    def __init__(self, answer="根据文档，订单会在 48 小时内发货。", rerank_reply="[0]"):
        self.answer = answer
        self.rerank_reply = rerank_reply
        self.prompts = []
        self.calls = []
        self.streams = []
        self.stream_deltas = ["订单", "会在 48 小时内", "发货。"]
        self.stream_fail_after = None

    def generate(self, prompt, model=None, temperature=0.7, max_tokens=2000, top_p=0.8):
        self.calls.append({"model": model, "temperature": temperature, "max_tokens": max_tokens, "top_p": top_p})
        if "只输出 JSON 数组" in prompt:
            return LLMResult(text=self.rerank_reply, usage=Usage(input_tokens=5, output_tokens=2, total_tokens=7))
        self.prompts.append(prompt)
        return LLMResult(text=self.answer, usage=Usage(input_tokens=100, output_tokens=20, total_tokens=120))

    def stream(self, prompt, model=None, temperature=0.7, max_tokens=2000, top_p=0.8):
        self.prompts.append(prompt)
        stream = FakeLLMStream(
            self.stream_deltas,
            Usage(input_tokens=80, output_tokens=10, total_tokens=90),
            fail_after=self.stream_fail_after,
        )
        self.streams.append(stream)
        return stream


@pytest.fixture
def session_factory():
    engine = create_db_engine("sqlite:///:memory:")
    init_db(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def qdrant_client():
    client = QdrantClient(location=":memory:")
    yield client
    client.close()


@pytest.fixture
def vector_store(qdrant_client):
    return QdrantVectorStore(qdrant_client)


@pytest.fixture
def config_store(session_factory):
    return RAGConfigStore(session_factory)


@pytest.fixture
def session_store(session_factory):
    return SessionStore(session_factory)


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def fake_embedding():
    return FakeEmbedding()


@pytest.fixture
def caller():
    return Caller(user_id=7, user_name="alice")


@pytest.fixture
def rag_service(config_store, session_store, vector_store, fake_llm, fake_embedding):
    config_store.init_config(APP_ID, "商城助手")
    config_store.update_config(APP_ID, {"vectorDimension": DIMENSION})
    return RAGService(
        config_store=config_store,
        session_store=session_store,
        vector_store=vector_store,
        llm=fake_llm,
        embedding_factory=lambda model, dimension: fake_embedding,
        app_name_resolver=lambda app_id: "商城助手" if app_id == APP_ID else None,
    )
