"""
运行配置
从 .env / 环境变量读取一次，之后以只读对象形式在各模块间共享
"""
import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict

load_dotenv()

DEFAULT_LLM_BASE_URL = "https://dashscope.aliyuncs.com/compatible-mode/v1"


class Settings(BaseModel):
    """进程级配置（应用级 RAG 参数见 RAGConfig）"""
    model_config = ConfigDict(frozen=True)

    # Embedding
    embed_api_key: Optional[str] = None
    embed_model: str = "text-embedding-v4"
    embed_dimension: int = 1024
    embed_batch_size: int = 10

    # LLM（OpenAI 兼容接口）
    llm_api_key: Optional[str] = None
    llm_base_url: str = DEFAULT_LLM_BASE_URL
    llm_model: str = "qwen-plus"

    # Qdrant
    qdrant_url: Optional[str] = None
    qdrant_api_key: Optional[str] = None
    qdrant_path: str = ":memory:"

    # 会话 / 配置库
    database_url: str = "sqlite:///./data/rag_engine.db"
    history_rounds: int = 3

    log_level: str = "INFO"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"环境变量 {name} 必须是整数，当前值: {raw}")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """读取环境变量生成 Settings（进程内只解析一次）"""
    dashscope_key = os.getenv("DASHSCOPE_API_KEY")
    return Settings(
        embed_api_key=os.getenv("EMBED_API_KEY") or dashscope_key,
        embed_model=os.getenv("EMBED_MODEL_NAME", "text-embedding-v4"),
        embed_dimension=_int_env("EMBED_DIMENSION", 1024),
        embed_batch_size=max(1, _int_env("EMBED_BATCH_SIZE", 10)),
        llm_api_key=os.getenv("LLM_API_KEY") or dashscope_key,
        llm_base_url=os.getenv("LLM_BASE_URL", DEFAULT_LLM_BASE_URL),
        llm_model=os.getenv("LLM_MODEL_ID", "qwen-plus"),
        qdrant_url=os.getenv("QDRANT_URL") or None,
        qdrant_api_key=os.getenv("QDRANT_API_KEY") or None,
        qdrant_path=os.getenv("QDRANT_PATH", ":memory:"),
        database_url=os.getenv("RAG_DATABASE_URL", "sqlite:///./data/rag_engine.db"),
        history_rounds=max(1, _int_env("RAG_HISTORY_ROUNDS", 3)),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
