from types import SimpleNamespace
from unittest.mock import patch

import pytest

from rag_engine.embedding import (
    MultiModalEmbeddingBackend,
    TextEmbeddingBackend,
    create_embedding_backend,
)
from rag_engine.errors import EmbeddingError


def _response(embeddings, status_code=200, code="", message=""):
    return SimpleNamespace(
        status_code=status_code,
        code=code,
        message=message,
        output={"embeddings": embeddings} if embeddings is not None else None,
    )


def _batch_reply(model, input, api_key, text_type, dimension):
    # 故意倒序返回，验证按 text_index 还原顺序
    items = [{"text_index": i, "embedding": [float(len(t)), float(i)]} for i, t in enumerate(input)]
    return _response(list(reversed(items)))


def test_text_backend_batches_and_preserves_order():
    backend = TextEmbeddingBackend("text-embedding-v4", 2, api_key="k", batch_size=2)
    with patch("rag_engine.embedding.TextEmbedding.call", side_effect=_batch_reply) as call:
        vectors = backend.embed_documents(["a", "bb", "ccc"])

    assert vectors == [[1.0, 0.0], [2.0, 1.0], [3.0, 0.0]]
    assert call.call_count == 2
    first = call.call_args_list[0].kwargs
    assert first["input"] == ["a", "bb"]
    assert first["text_type"] == "document"
    assert first["dimension"] == 2


def test_text_backend_query_uses_query_type():
    backend = TextEmbeddingBackend("text-embedding-v4", 2, api_key="k")
    with patch("rag_engine.embedding.TextEmbedding.call", side_effect=_batch_reply) as call:
        vector = backend.embed_query("怎么退货")

    assert vector == [4.0, 0.0]
    assert call.call_args.kwargs["text_type"] == "query"


def test_upstream_error_carries_status_and_message():
    backend = TextEmbeddingBackend("text-embedding-v4", 2, api_key="k")
    reply = _response(None, status_code=401, code="InvalidApiKey", message="Invalid API-key provided.")
    with patch("rag_engine.embedding.TextEmbedding.call", return_value=reply):
        with pytest.raises(EmbeddingError) as exc_info:
            backend.embed_documents(["a"])

    assert exc_info.value.upstream_status == 401
    assert exc_info.value.upstream_message == "Invalid API-key provided."


def test_vector_count_mismatch_fails():
    backend = TextEmbeddingBackend("text-embedding-v4", 2, api_key="k")
    reply = _response([{"text_index": 0, "embedding": [1.0, 2.0]}])
    with patch("rag_engine.embedding.TextEmbedding.call", return_value=reply):
        with pytest.raises(EmbeddingError, match="数量不匹配"):
            backend.embed_documents(["a", "b"])


def test_empty_vector_fails():
    backend = TextEmbeddingBackend("text-embedding-v4", 2, api_key="k")
    reply = _response([{"text_index": 0, "embedding": []}])
    with patch("rag_engine.embedding.TextEmbedding.call", return_value=reply):
        with pytest.raises(EmbeddingError, match="为空"):
            backend.embed_query("退货")


def test_invalid_text_reports_position():
    backend = TextEmbeddingBackend("text-embedding-v4", 2, api_key="k")
    with patch("rag_engine.embedding.TextEmbedding.call") as call:
        with pytest.raises(EmbeddingError, match="第 2 条文本无效"):
            backend.embed_documents(["ok", "  "])
        with pytest.raises(EmbeddingError):
            backend.embed_documents([])
    call.assert_not_called()


def test_blank_query_fails_before_network_call():
    backend = TextEmbeddingBackend("text-embedding-v4", 2, api_key="k")
    with patch("rag_engine.embedding.TextEmbedding.call") as call:
        with pytest.raises(EmbeddingError):
            backend.embed_query("   ")
    call.assert_not_called()


def test_missing_api_key_is_rejected():
    with pytest.raises(EmbeddingError):
        TextEmbeddingBackend("text-embedding-v4", 2, api_key=None)


def test_multimodal_backend_calls_once_per_text():
    backend = MultiModalEmbeddingBackend("qwen2.5-vl-embedding", 2, api_key="k", request_interval=0)
    replies = [_response([{"index": 0, "embedding": [0.1, 0.2]}]), _response([{"index": 0, "embedding": [0.3, 0.4]}])]
    with patch("rag_engine.embedding.MultiModalEmbedding.call", side_effect=replies) as call:
        vectors = backend.embed_documents(["第一段", "第二段"])

    assert vectors == [[0.1, 0.2], [0.3, 0.4]]
    assert call.call_count == 2
    assert call.call_args_list[1].kwargs["input"] == [{"text": "第二段"}]


def test_multimodal_failure_reports_position():
    backend = MultiModalEmbeddingBackend("qwen2.5-vl-embedding", 2, api_key="k", request_interval=0)
    replies = [_response([{"embedding": [0.1, 0.2]}]), _response(None, status_code=500, message="busy")]
    with patch("rag_engine.embedding.MultiModalEmbedding.call", side_effect=replies):
        with pytest.raises(EmbeddingError, match="第 2 条文本向量化失败") as exc_info:
            backend.embed_documents(["a", "b"])
    assert exc_info.value.upstream_status == 500


def test_backend_is_selected_by_model_name():
    assert isinstance(create_embedding_backend("text-embedding-v4", 1024, "k"), TextEmbeddingBackend)
    assert isinstance(create_embedding_backend("qwen2.5-vl-embedding", 1024, "k"), MultiModalEmbeddingBackend)
