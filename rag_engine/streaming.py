"""
SSE 流式输出
事件顺序：ready → answer* → end | error（终止事件恰好一个）
"""
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable

from rag_engine.errors import RAGError

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def format_sse(event: str, data: Any) -> str:
    """编码一个 SSE 事件（保留中文，不转义）"""
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


async def stream_answer_events(
    open_stream: Callable[[], Awaitable[Any]],
    is_disconnected: Callable[[], Awaitable[bool]],
) -> AsyncIterator[str]:
    """
    把流式回答转换成 SSE 事件

    Args:
        open_stream: 打开回答流的协程函数，返回 AnswerStream
        is_disconnected: 检测客户端是否已断开

    客户端断开时停止转发并关闭上游 LLM 连接，不再发送任何事件，也不写入会话
    """
    yield format_sse("ready", {"message": "stream start"})

    stream = None
    try:
        stream = await open_stream()
        async for delta in stream:
            if await is_disconnected():
                logger.info("[SSE] 客户端已断开，停止推送")
                return
            if delta:
                yield format_sse("answer", {"delta": delta, "done": False})

        if await is_disconnected():
            logger.info("[SSE] 客户端已断开，丢弃本轮回答")
            return
        answer = await stream.finish()
        yield format_sse("end", {
            "done": True,
            "responseTime": answer.response_time,
            "usage": answer.usage.to_api(),
            "sessionId": answer.session_id,
        })
    except RAGError as e:
        logger.error(f"[SSE] 流式回答失败: {e.message}")
        yield format_sse("error", {"message": "流式回答失败", "error": e.message})
    except Exception as e:
        logger.exception(f"[SSE] 流式回答异常: {e}")
        yield format_sse("error", {"message": "流式回答失败", "error": str(e)})
    finally:
        if stream is not None:
            await stream.aclose()
