"""
Embedding 工具模块
封装 DashScope embedding 调用，按模型名在配置加载时选定一次后端策略：
- 文本模型（text-embedding-*）：批量接口，文档/查询分别使用 document/query 类型
- 多模态模型（如 qwen2.5-vl-embedding）：逐条请求，请求间简单限流
"""
import logging
import time
from abc import ABC, abstractmethod
from http import HTTPStatus
from typing import Any, List, Optional, Sequence

from dashscope import MultiModalEmbedding, TextEmbedding

from rag_engine.errors import EmbeddingError

logger = logging.getLogger(__name__)

TEXT_MODEL_PREFIX = "text-embedding"
MULTIMODAL_REQUEST_INTERVAL = 0.08  # 秒


class EmbeddingBackend(ABC):
    """向量化后端接口"""

    def __init__(self, model: str, dimension: int, api_key: Optional[str]):
        if not api_key:
            raise EmbeddingError("需要配置 EMBED_API_KEY 或 DASHSCOPE_API_KEY 环境变量")
        self.model = model
        self.dimension = dimension
        self.api_key = api_key

    @abstractmethod
    def embed_documents(self, texts: Sequence[str]) -> List[List[float]]:
        """为入库文档生成向量，返回顺序与输入一致"""

    @abstractmethod
    def embed_query(self, text: str) -> List[float]:
        """为检索问题生成向量"""


def _validate_texts(texts: Sequence[Any]) -> None:
    if not isinstance(texts, (list, tuple)) or len(texts) == 0:
        raise EmbeddingError("文本数组不能为空")
    for i, text in enumerate(texts):
        if not isinstance(text, str) or not text.strip():
            raise EmbeddingError(f"第 {i + 1} 条文本无效")


def _validate_query(text: Any) -> None:
    if not isinstance(text, str) or not text.strip():
        raise EmbeddingError("查询文本不能为空")


def _check_response(response) -> None:
    if response.status_code != HTTPStatus.OK:
        raise EmbeddingError(
            f"DashScope API 调用失败 ({response.status_code}): {response.message or response.code}",
            upstream_status=int(response.status_code),
            upstream_message=response.message or response.code,
        )


def _extract_vectors(response, expected: int) -> List[List[float]]:
    output = response.output or {}
    items = output.get("embeddings") or []
    if not isinstance(items, list) or len(items) != expected:
        raise EmbeddingError(
            f"DashScope API 返回的向量数量不匹配: 期望{expected}，实际{len(items) if isinstance(items, list) else 0}"
        )
    # 批量接口带 text_index，按输入顺序还原
    if all(isinstance(item, dict) and "text_index" in item for item in items):
        items = sorted(items, key=lambda item: item["text_index"])

    vectors = []
    for item in items:
        vector = item.get("embedding") if isinstance(item, dict) else None
        if not isinstance(vector, list) or len(vector) == 0:
            raise EmbeddingError("DashScope API 返回的向量数据为空")
        vectors.append(vector)
    return vectors


class TextEmbeddingBackend(EmbeddingBackend):
    """DashScope 文本向量模型（批量）"""

    def __init__(self, model: str, dimension: int, api_key: Optional[str], batch_size: int = 10):
        super().__init__(model, dimension, api_key)
        self.batch_size = max(1, batch_size)

    def _call(self, texts: List[str], text_type: str) -> List[List[float]]:
        response = TextEmbedding.call(
            model=self.model,
            input=texts,
            api_key=self.api_key,
            text_type=text_type,
            dimension=self.dimension,
        )
        _check_response(response)
        return _extract_vectors(response, len(texts))

    def embed_documents(self, texts: Sequence[str]) -> List[List[float]]:
        _validate_texts(texts)
        texts = list(texts)
        all_embeddings: List[List[float]] = []
        for i in range(0, len(texts), self.batch_size):
            batch = texts[i:i + self.batch_size]
            try:
                all_embeddings.extend(self._call(batch, "document"))
            except EmbeddingError as e:
                raise EmbeddingError(
                    f"批量文本向量化失败 (batch {i // self.batch_size}): {e.message}",
                    upstream_status=e.upstream_status,
                    upstream_message=e.upstream_message,
                ) from e
            except Exception as e:
                raise EmbeddingError(f"批量文本向量化失败 (batch {i // self.batch_size}): {e}") from e

        if len(all_embeddings) != len(texts):
            raise EmbeddingError(
                f"向量数量与文本数量不一致: texts={len(texts)}, vectors={len(all_embeddings)}"
            )
        return all_embeddings

    def embed_query(self, text: str) -> List[float]:
        _validate_query(text)
        try:
            return self._call([text], "query")[0]
        except EmbeddingError as e:
            raise EmbeddingError(
                f"查询文本向量化失败: {e.message}",
                upstream_status=e.upstream_status,
                upstream_message=e.upstream_message,
            ) from e
        except Exception as e:
            raise EmbeddingError(f"查询文本向量化失败: {e}") from e


class MultiModalEmbeddingBackend(EmbeddingBackend):
    """DashScope 多模态向量模型（逐条请求）"""

    def __init__(
        self,
        model: str,
        dimension: int,
        api_key: Optional[str],
        request_interval: float = MULTIMODAL_REQUEST_INTERVAL,
    ):
        super().__init__(model, dimension, api_key)
        self.request_interval = request_interval

    def _embed_one(self, text: str) -> List[float]:
        response = MultiModalEmbedding.call(
            model=self.model,
            input=[{"text": text}],
            api_key=self.api_key,
        )
        _check_response(response)
        return _extract_vectors(response, 1)[0]

    def embed_documents(self, texts: Sequence[str]) -> List[List[float]]:
        _validate_texts(texts)
        results: List[List[float]] = []
        for i, text in enumerate(texts):
            try:
                results.append(self._embed_one(text))
            except EmbeddingError as e:
                raise EmbeddingError(
                    f"第 {i + 1} 条文本向量化失败: {e.message}",
                    upstream_status=e.upstream_status,
                    upstream_message=e.upstream_message,
                ) from e
            except Exception as e:
                raise EmbeddingError(f"第 {i + 1} 条文本向量化失败: {e}") from e
            # 简单限流
            if i + 1 < len(texts) and self.request_interval > 0:
                time.sleep(self.request_interval)
        return results

    def embed_query(self, text: str) -> List[float]:
        _validate_query(text)
        return self.embed_documents([text])[0]


def is_text_model(model: str) -> bool:
    return model.startswith(TEXT_MODEL_PREFIX)


def create_embedding_backend(
    model: str,
    dimension: int,
    api_key: Optional[str],
    batch_size: int = 10,
) -> EmbeddingBackend:
    """按模型名选择后端（只在加载配置时调用一次）"""
    if is_text_model(model):
        backend: EmbeddingBackend = TextEmbeddingBackend(model, dimension, api_key, batch_size=batch_size)
    else:
        backend = MultiModalEmbeddingBackend(model, dimension, api_key)
    logger.info(f"使用 DashScope Embedding: {model} ({type(backend).__name__}, dim={dimension})")
    return backend
