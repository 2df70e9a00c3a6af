import pytest

from rag_engine.errors import ConfigNotFoundError, InvalidRequestError, PersistenceWarning, QueryEmbeddingError
from rag_engine.models import IngestDocument
from rag_engine.sessions import HISTORY_HEADING

from tests.conftest import APP_ID, DIMENSION

SHIPPING = "发货说明：付款后 48 小时内发货，节假日发货顺延。"
RETURNS = "退货政策：签收后七天内可以申请退货。"


@pytest.fixture
def stocked(rag_service):
    rag_service.ingest(APP_ID, [
        IngestDocument(text=SHIPPING, metadata={"source": "shipping.md"}),
        IngestDocument(text=RETURNS, metadata={"source": "returns.md"}),
    ])
    return rag_service


def test_ingest_reports_counts_and_writes_chunks(rag_service, vector_store):
    result = rag_service.ingest(APP_ID, [IngestDocument(text=SHIPPING), IngestDocument(text="   ")])
    assert result.success is True
    assert result.count == 2
    assert result.chunk_count == 1

    data = vector_store.query_collection(f"rag_app_{APP_ID}")["data"]
    assert data[0]["id"].startswith("chunk_")
    assert data[0]["metadata"]["chunkIndex"] == 0


def test_ingest_with_document_id_prefixes_chunks(rag_service, vector_store):
    rag_service.ingest(APP_ID, [IngestDocument(id="faq", text=RETURNS)])
    assert vector_store.count_collection(f"rag_app_{APP_ID}", "id == 'faq_0'") == 1


def test_ingest_rejects_empty_input(rag_service):
    with pytest.raises(InvalidRequestError):
        rag_service.ingest(APP_ID, [])
    with pytest.raises(InvalidRequestError):
        rag_service.ingest_texts(APP_ID, ["", "  "])


def test_ask_with_relevant_context(stocked, fake_llm):
    answer = stocked.ask(APP_ID, "多久发货？")

    assert answer.answer == fake_llm.answer
    assert answer.sources[0].text == SHIPPING
    assert answer.sources[0].metadata["source"] == "shipping.md"
    assert answer.usage.total_tokens == 120
    assert answer.session_id is None

    prompt = fake_llm.prompts[-1]
    assert "商城助手" in prompt
    assert f"[1] {SHIPPING}" in prompt
    assert "多久发货？" in prompt


def test_shipping_question_returns_single_verbatim_source(stocked):
    answer = stocked.ask(APP_ID, "多久发货？", top_k=1, threshold=0.3)

    assert len(answer.sources) == 1
    assert answer.sources[0].text == SHIPPING
    assert answer.sources[0].score >= 0.3


def test_ask_uses_config_generation_parameters(stocked, config_store, fake_llm):
    config_store.update_config(APP_ID, {"llmModel": "qwen-max", "llmTemperature": 0.2, "llmMaxTokens": 512})
    stocked.ask(APP_ID, "多久发货？")
    assert fake_llm.calls[-1] == {"model": "qwen-max", "temperature": 0.2, "max_tokens": 512, "top_p": 0.8}


def test_no_context_fallback(rag_service, fake_llm):
    answer = rag_service.ask(APP_ID, "你们几点下班？")

    assert answer.sources == []
    assert "你们几点下班？" in fake_llm.prompts[-1]
    assert "[1]" not in fake_llm.prompts[-1]


def test_threshold_override_filters_everything(stocked, fake_llm):
    answer = stocked.ask(APP_ID, "多久发货？", threshold=1.0)
    assert answer.sources == []


def test_session_continuity(stocked, session_store, caller, fake_llm):
    session_id = session_store.create_session(APP_ID, caller)

    first = stocked.ask(APP_ID, "多久发货？", caller=caller, session_id=session_id)
    assert first.session_id == session_id
    assert HISTORY_HEADING not in fake_llm.prompts[-1]

    stocked.ask(APP_ID, "节假日发货呢？", caller=caller, session_id=session_id)
    second_prompt = fake_llm.prompts[-1]
    assert HISTORY_HEADING in second_prompt
    assert "[用户] 多久发货？" in second_prompt
    assert second_prompt.index("[用户] 多久发货？") < second_prompt.index(f"[1] {SHIPPING}")

    messages = session_store.list_messages(session_id).list
    assert [m.role for m in messages] == ["user", "assistant", "user", "assistant"]
    assert messages[1].source_docs[0].text == SHIPPING
    assert messages[1].tokens_used == 120
    assert messages[1].streamed is False
    assert session_store.get_session(session_id).session_title == "节假日发货呢？"


def test_no_context_answer_skips_history(stocked, session_store, caller, fake_llm):
    session_id = session_store.create_session(APP_ID, caller)
    stocked.ask(APP_ID, "多久发货？", caller=caller, session_id=session_id)
    stocked.ask(APP_ID, "你们几点下班？", caller=caller, session_id=session_id)

    assert HISTORY_HEADING not in fake_llm.prompts[-1]
    messages = session_store.list_messages(session_id).list
    assert len(messages) == 4
    assert messages[3].source_docs is None


def test_persistence_failure_still_answers(stocked, session_store, caller, monkeypatch):
    def broken(*args, **kwargs):
        raise PersistenceWarning("数据库不可用")

    session_id = session_store.create_session(APP_ID, caller)
    monkeypatch.setattr(session_store, "append_turn", broken)

    answer = stocked.ask(APP_ID, "多久发货？", caller=caller, session_id=session_id)
    assert answer.answer
    assert answer.session_id == session_id


def test_empty_answer_leaves_no_half_turn(stocked, session_store, caller, fake_llm):
    session_id = session_store.create_session(APP_ID, caller)
    fake_llm.answer = ""

    answer = stocked.ask(APP_ID, "多久发货？", caller=caller, session_id=session_id)

    assert answer.answer == ""
    assert session_store.list_messages(session_id).total == 0


def test_missing_config(rag_service):
    with pytest.raises(ConfigNotFoundError):
        rag_service.ask(999, "多久发货？")


@pytest.mark.parametrize("question", ["", "   ", None])
def test_empty_question_is_rejected(rag_service, question):
    with pytest.raises(InvalidRequestError):
        rag_service.build_prompt(APP_ID, question)


def test_empty_query_vector(rag_service, fake_embedding, monkeypatch):
    monkeypatch.setattr(fake_embedding, "embed_query", lambda text: [])
    with pytest.raises(QueryEmbeddingError):
        rag_service.ask(APP_ID, "多久发货？")


def test_build_prompt_reports_context(stocked):
    plan = stocked.build_prompt(APP_ID, "怎么退货")
    assert plan.has_context is True
    assert plan.results[0].text == RETURNS
    assert plan.config.collection_name == f"rag_app_{APP_ID}"

    plan = stocked.build_prompt(APP_ID, "你好")
    assert plan.has_context is False
    assert plan.sources == []


def test_rerank_reorders_candidates(rag_service, config_store, fake_llm):
    rag_service.ingest_texts(APP_ID, ["发货发货发货", "发货 退货", "发货 支付 会员 发票"])
    config_store.update_config(APP_ID, {"rerankEnabled": True, "rerankModel": "qwen-turbo"})
    fake_llm.rerank_reply = "[2, 0]"

    answer = rag_service.ask(APP_ID, "发货", top_k=1, threshold=0.0)

    assert [s.text for s in answer.sources] == ["发货 支付 会员 发票"]
    rerank_call = fake_llm.calls[0]
    assert rerank_call["model"] == "qwen-turbo"
    assert rerank_call["temperature"] == 0.0


def test_rerank_falls_back_on_bad_reply(rag_service, config_store, fake_llm):
    rag_service.ingest_texts(APP_ID, ["发货发货发货", "发货 退货", "发货 支付 会员 发票"])
    config_store.update_config(APP_ID, {"rerankEnabled": True})
    fake_llm.rerank_reply = "我觉得第一个最好"

    answer = rag_service.ask(APP_ID, "发货", top_k=2, threshold=0.0)
    assert [s.text for s in answer.sources] == ["发货发货发货", "发货 退货"]


def test_rerank_falls_back_on_broken_array(rag_service, config_store, fake_llm):
    rag_service.ingest_texts(APP_ID, ["发货发货发货", "发货 退货", "发货 支付 会员 发票"])
    config_store.update_config(APP_ID, {"rerankEnabled": True})
    fake_llm.rerank_reply = "结果：[1,]"

    answer = rag_service.ask(APP_ID, "发货", top_k=2, threshold=0.0)
    assert [s.text for s in answer.sources] == ["发货发货发货", "发货 退货"]


async def test_stream_then_finish_persists_turn(stocked, session_store, caller, fake_llm):
    session_id = session_store.create_session(APP_ID, caller)

    stream = await stocked.ask_stream(APP_ID, "多久发货？", caller=caller, session_id=session_id)
    deltas = [delta async for delta in stream]
    answer = await stream.finish()
    await stream.aclose()

    assert deltas == fake_llm.stream_deltas
    assert answer.answer == "".join(fake_llm.stream_deltas)
    assert answer.usage.total_tokens == 90
    assert answer.sources[0].text == SHIPPING

    messages = session_store.list_messages(session_id).list
    assert [m.role for m in messages] == ["user", "assistant"]
    assert all(m.streamed for m in messages)
    assert messages[1].content == answer.answer


async def test_closed_stream_persists_nothing(stocked, session_store, caller, fake_llm):
    session_id = session_store.create_session(APP_ID, caller)

    stream = await stocked.ask_stream(APP_ID, "多久发货？", caller=caller, session_id=session_id)
    async for _ in stream:
        break
    await stream.aclose()

    assert fake_llm.streams[-1].closed is True
    assert session_store.list_messages(session_id).total == 0


async def test_empty_stream_leaves_no_half_turn(stocked, session_store, caller, fake_llm):
    session_id = session_store.create_session(APP_ID, caller)
    fake_llm.stream_deltas = []

    stream = await stocked.ask_stream(APP_ID, "多久发货？", caller=caller, session_id=session_id)
    deltas = [delta async for delta in stream]
    answer = await stream.finish()

    assert deltas == []
    assert answer.answer == ""
    assert session_store.list_messages(session_id).total == 0


def test_drop_app_removes_collection(stocked, vector_store):
    assert stocked.drop_app(APP_ID) is True
    assert f"rag_app_{APP_ID}" not in vector_store.list_collections()
    assert stocked.drop_app(APP_ID) is False


def test_collection_uses_configured_dimension(stocked, vector_store):
    info = vector_store.get_collection_info(f"rag_app_{APP_ID}")
    vector_field = next(f for f in info["schema"] if f["name"] == "vector")
    assert vector_field["dim"] == DIMENSION
