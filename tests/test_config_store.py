import pytest

from rag_engine.chunking import DEFAULT_SEPARATORS
from rag_engine.errors import ConfigNotFoundError, InvalidRequestError

APP_ID = 3


@pytest.fixture
def store(config_store):
    config_store.init_config(APP_ID, app_name="商城助手", creator="admin")
    return config_store


def test_init_config_creates_defaults_once(store):
    config = store.get_config(APP_ID)
    assert config.collection_name == f"rag_app_{APP_ID}"
    assert config.top_k == 5
    assert config.similarity_threshold == 0.4
    assert config.chunk_separators == list(DEFAULT_SEPARATORS)
    assert config.creator == "admin"

    again = store.init_config(APP_ID, creator="someone-else")
    assert again.config_id == config.config_id
    assert again.creator == "admin"


def test_missing_config_raises(config_store):
    with pytest.raises(ConfigNotFoundError):
        config_store.get_config(404)
    with pytest.raises(ConfigNotFoundError):
        config_store.update_config(404, {"topK": 3})


def test_update_accepts_camel_and_snake_case(store):
    config = store.update_config(APP_ID, {"topK": 8, "similarity_threshold": 0.6, "unknownField": 1}, updater="bob")
    assert config.top_k == 8
    assert config.similarity_threshold == 0.6
    assert config.updater == "bob"
    assert store.get_config(APP_ID).top_k == 8


def test_numeric_fields_are_clamped(store):
    config = store.update_config(APP_ID, {
        "llmTemperature": 5,
        "llmMaxTokens": 99999,
        "llmTopP": -1,
        "topK": 0,
        "similarityThreshold": 1.7,
    })
    assert config.llm_temperature == 2
    assert config.llm_max_tokens == 8000
    assert config.llm_top_p == 0
    assert config.top_k == 1
    assert config.similarity_threshold == 1


def test_update_requires_at_least_one_field(store):
    with pytest.raises(InvalidRequestError):
        store.update_config(APP_ID, {})
    with pytest.raises(InvalidRequestError):
        store.update_config(APP_ID, {"notAConfigField": True})


def test_non_numeric_value_is_rejected(store):
    with pytest.raises(InvalidRequestError):
        store.update_config(APP_ID, {"topK": "many"})


@pytest.mark.parametrize("separators", [[], "。", [1, 2], None])
def test_separators_must_be_non_empty_string_list(store, separators):
    with pytest.raises(InvalidRequestError):
        store.update_config(APP_ID, {"chunkSeparators": separators})


def test_overlap_must_be_smaller_than_max_length(store):
    with pytest.raises(InvalidRequestError):
        store.update_config(APP_ID, {"chunkMaxLength": 100, "chunkOverlap": 100})
    with pytest.raises(InvalidRequestError):
        store.update_config(APP_ID, {"chunkOverlap": 5000})

    config = store.update_config(APP_ID, {"chunkMaxLength": 300, "chunkOverlap": 30, "chunkSeparators": ["\n\n", "。"]})
    chunk_config = store.get_chunk_config(APP_ID)
    assert (chunk_config.max_length, chunk_config.overlap) == (300, 30)
    assert chunk_config.separators == ["\n\n", "。"]
    assert config.chunk_config == chunk_config


def test_common_questions(store):
    config = store.update_config(APP_ID, {"commonQuestions": [
        {"question": "  怎么退货？ "},
        {"question": "多久发货？", "order": 5},
    ]})
    assert [(q.question, q.order) for q in config.common_questions] == [("怎么退货？", 1), ("多久发货？", 5)]

    cleared = store.update_config(APP_ID, {"commonQuestions": []})
    assert cleared.common_questions is None


@pytest.mark.parametrize("questions", [
    [{"question": "a"}, {"question": "b"}, {"question": "c"}, {"question": "d"}],
    [{"question": "   "}],
    ["怎么退货？"],
    {"question": "a"},
])
def test_invalid_common_questions(store, questions):
    with pytest.raises(InvalidRequestError):
        store.update_config(APP_ID, {"commonQuestions": questions})


def test_reset_restores_defaults(store):
    store.update_config(APP_ID, {"topK": 9, "userPromptTemplate": "只回答售后问题"})
    config = store.reset_config(APP_ID, updater="admin")
    assert config.top_k == 5
    assert config.user_prompt_template is None
    assert config.updater == "admin"


def test_disabled_config_is_not_found(store):
    store.update_config(APP_ID, {"status": False})
    with pytest.raises(ConfigNotFoundError):
        store.get_config(APP_ID)
