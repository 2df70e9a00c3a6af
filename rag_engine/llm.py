"""
LLM 模块
- LLMClient: OpenAI 兼容接口（默认 DashScope compatible-mode），一次性生成 / 流式生成
- LLMReranker: 使用 LLM 对候选片段进行相关性重排序
"""
import json
import logging
import re
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Optional

from openai import APIConnectionError, APIStatusError, AsyncOpenAI, OpenAI, OpenAIError

from rag_engine.errors import GenerationError
from rag_engine.models import SearchResult, Usage

logger = logging.getLogger(__name__)

DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 2000
DEFAULT_TOP_P = 0.8


@dataclass
class LLMResult:
    text: str
    usage: Usage = field(default_factory=Usage)


def _usage_from(raw) -> Usage:
    if raw is None:
        return Usage()
    return Usage(
        input_tokens=raw.prompt_tokens or 0,
        output_tokens=raw.completion_tokens or 0,
        total_tokens=raw.total_tokens or 0,
    )


def _wrap_error(prefix: str, error: Exception) -> GenerationError:
    if isinstance(error, APIStatusError):
        upstream = error.message
        if isinstance(error.body, dict) and error.body.get("message"):
            upstream = error.body["message"]
        return GenerationError(
            f"{prefix} ({error.status_code}): {upstream}",
            upstream_status=error.status_code,
            upstream_message=upstream,
        )
    if isinstance(error, APIConnectionError):
        return GenerationError(f"{prefix}: 请求失败 {error}")
    return GenerationError(f"{prefix}: {error}")


class LLMStream:
    """
    流式生成句柄
    异步迭代得到文本增量；结束后 usage 为上游返回的 token 统计
    aclose() 会关闭底层 HTTP 响应
    """

    def __init__(self, client: AsyncOpenAI, request: dict):
        self._client = client
        self._request = request
        self._response = None
        self._iterator = None
        self.usage = Usage()
        self.text = ""

    def __aiter__(self) -> AsyncIterator[str]:
        if self._iterator is None:
            self._iterator = self._iterate()
        return self._iterator

    async def _iterate(self) -> AsyncIterator[str]:
        try:
            self._response = await self._client.chat.completions.create(**self._request)
            async for chunk in self._response:
                if chunk.usage is not None:
                    self.usage = _usage_from(chunk.usage)
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content or ""
                if delta:
                    self.text += delta
                    yield delta
        except OpenAIError as e:
            logger.error(f"LLM 流式生成失败: {e}")
            raise _wrap_error("LLM 流式调用失败", e) from e
        finally:
            await self._close_response()

    async def _close_response(self) -> None:
        response, self._response = self._response, None
        if response is not None:
            await response.close()

    async def aclose(self) -> None:
        """停止迭代并释放连接（可重复调用）"""
        if self._iterator is not None:
            await self._iterator.aclose()
        await self._close_response()


class LLMClient:
    """OpenAI 兼容 Chat Completions 客户端"""

    def __init__(self, api_key: Optional[str], base_url: str, default_model: str = "qwen-plus"):
        self.api_key = api_key
        self.base_url = base_url
        self.default_model = default_model
        self._client: Optional[OpenAI] = None
        self._async_client: Optional[AsyncOpenAI] = None

    def _require_key(self) -> None:
        if not self.api_key:
            raise GenerationError("LLM API Key 未配置（LLM_API_KEY 或 DASHSCOPE_API_KEY）")

    @property
    def client(self) -> OpenAI:
        self._require_key()
        if self._client is None:
            self._client = OpenAI(api_key=self.api_key, base_url=self.base_url)
        return self._client

    @property
    def async_client(self) -> AsyncOpenAI:
        self._require_key()
        if self._async_client is None:
            self._async_client = AsyncOpenAI(api_key=self.api_key, base_url=self.base_url)
        return self._async_client

    def _request(
        self,
        prompt: str,
        model: Optional[str],
        temperature: float,
        max_tokens: int,
        top_p: float,
    ) -> dict:
        # 完整 prompt 作为一条 user 消息发送
        return {
            "model": model or self.default_model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": temperature,
            "max_tokens": max_tokens,
            "top_p": top_p,
        }

    def generate(
        self,
        prompt: str,
        model: Optional[str] = None,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        top_p: float = DEFAULT_TOP_P,
    ) -> LLMResult:
        """
        一次性生成

        Returns:
            LLMResult(text, usage)
        """
        request = self._request(prompt, model, temperature, max_tokens, top_p)
        try:
            response = self.client.chat.completions.create(**request)
        except OpenAIError as e:
            logger.error(f"LLM 生成失败: {e}")
            raise _wrap_error("LLM 调用失败", e) from e

        if not response.choices:
            raise GenerationError("LLM 返回的响应为空")
        text = response.choices[0].message.content or ""
        usage = _usage_from(response.usage)
        logger.debug(f"LLM 生成成功，模型: {request['model']}, Token 使用: {usage.total_tokens}")
        return LLMResult(text=text, usage=usage)

    def stream(
        self,
        prompt: str,
        model: Optional[str] = None,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        top_p: float = DEFAULT_TOP_P,
    ) -> LLMStream:
        """流式生成，返回可异步迭代的句柄（迭代时才发起请求）"""
        request = self._request(prompt, model, temperature, max_tokens, top_p)
        request["stream"] = True
        request["stream_options"] = {"include_usage": True}
        return LLMStream(self.async_client, request)


RERANK_PROMPT_TEMPLATE = """你是一个知识库检索助手，需要判断候选文档片段与用户问题的相关性。

用户问题：{query}

以下是候选文档片段（编号从 0 开始）：
{chunk_list}

请从中选出最有助于回答用户问题的 {top_k} 个片段，并按相关性从高到低排序。
只需返回一个 JSON 数组，包含选中片段的编号，例如：[2, 0, 5, 3]
不要输出任何其他内容，只输出 JSON 数组。"""


def _parse_indices(content: str):
    """解析 LLM 返回的编号数组；整体不是 JSON 时从文本中提取第一个数组，失败返回 None"""
    try:
        return json.loads(content)
    except json.JSONDecodeError:
        match = re.search(r"\[[\d\s,]+\]", content)
    if not match:
        return None
    try:
        return json.loads(match.group())
    except json.JSONDecodeError:
        # 形如 [1,] / [0,,2] 的残缺数组
        return None


class LLMReranker:
    """使用 LLM 对候选片段重排序"""

    def __init__(self, llm: LLMClient, model: Optional[str] = None):
        self.llm = llm
        self.model = model

    def rerank(self, query: str, candidates: List[SearchResult], top_k: int = 5) -> List[SearchResult]:
        """
        Args:
            query: 用户问题
            candidates: 向量检索返回的候选（按相似度降序）
            top_k: 最终保留数量

        Returns:
            重排序后的 top_k 个候选；LLM 失败时退回原始排序
        """
        if len(candidates) <= top_k:
            return list(candidates)

        chunk_list = "\n\n".join(
            f"[{i}] {c.text[:300]}..." if len(c.text) > 300 else f"[{i}] {c.text}"
            for i, c in enumerate(candidates)
        )
        prompt = RERANK_PROMPT_TEMPLATE.format(query=query, chunk_list=chunk_list, top_k=top_k)

        try:
            content = self.llm.generate(prompt, model=self.model, temperature=0.0, max_tokens=200).text.strip()
        except GenerationError as e:
            logger.error(f"Re-Ranking 失败: {e}，退回到原始排序")
            return list(candidates[:top_k])

        indices = _parse_indices(content)
        if not isinstance(indices, list):
            logger.warning(f"Re-Ranking LLM 返回格式异常: {content}")
            return list(candidates[:top_k])

        picked: List[int] = []
        for idx in indices:
            if isinstance(idx, int) and 0 <= idx < len(candidates) and idx not in picked:
                picked.append(idx)
            if len(picked) >= top_k:
                break
        # 不足 top_k 时按原始顺序补齐
        for idx in range(len(candidates)):
            if len(picked) >= top_k:
                break
            if idx not in picked:
                picked.append(idx)

        logger.info(f"Re-Ranking 完成，选出 {len(picked)} 个片段")
        return [candidates[i] for i in picked]
