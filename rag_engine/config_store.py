"""
应用 RAG 配置存储（rag_config 表）
"""
import logging
import re
from typing import Any, Dict, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from rag_engine.chunking import DEFAULT_CHUNK_MAX_LENGTH, DEFAULT_CHUNK_OVERLAP, DEFAULT_SEPARATORS
from rag_engine.errors import ConfigNotFoundError, InvalidRequestError, RAGError
from rag_engine.models import ChunkConfig, CommonQuestion, RAGConfig
from rag_engine.settings import get_settings
from rag_engine.tables import RagConfigRow

logger = logging.getLogger(__name__)

MAX_COMMON_QUESTIONS = 3


def default_collection_name(app_id: int) -> str:
    return f"rag_app_{app_id}"


def _default_values(app_id: int) -> Dict[str, Any]:
    settings = get_settings()
    return {
        "collection_name": default_collection_name(app_id),
        "vector_dimension": settings.embed_dimension,
        "embedding_model": settings.embed_model,
        "llm_model": settings.llm_model,
        "user_prompt_template": None,
        "llm_temperature": 0.7,
        "llm_max_tokens": 2000,
        "llm_top_p": 0.8,
        "top_k": 5,
        "similarity_threshold": 0.4,
        "index_type": "HNSW",
        "index_params": None,
        "rerank_enabled": False,
        "rerank_model": None,
        "rerank_top_k": 10,
        "rerank_params": None,
        "chunk_max_length": DEFAULT_CHUNK_MAX_LENGTH,
        "chunk_overlap": DEFAULT_CHUNK_OVERLAP,
        "chunk_separators": list(DEFAULT_SEPARATORS),
        "common_questions": None,
        "status": True,
        "remark": None,
    }


def _snake(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def _number(key: str, value: Any, lo: Optional[float] = None, hi: Optional[float] = None, integer: bool = False):
    try:
        number = int(value) if integer else float(value)
    except (TypeError, ValueError):
        raise InvalidRequestError(f"{key} 必须是数字")
    if lo is not None:
        number = max(lo, number)
    if hi is not None:
        number = min(hi, number)
    return int(number) if integer else number


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _optional_dict(key: str, value: Any) -> Optional[Dict[str, Any]]:
    if value is None or value == "":
        return None
    if not isinstance(value, dict):
        raise InvalidRequestError(f"{key} 必须是对象")
    return value


def _common_questions(value: Any) -> Optional[list]:
    if value is None or value == "" or value == []:
        return None
    if not isinstance(value, list):
        raise InvalidRequestError("commonQuestions 必须是数组、null 或空数组")
    if len(value) > MAX_COMMON_QUESTIONS:
        raise InvalidRequestError(f"常用问题最多只能设置{MAX_COMMON_QUESTIONS}个")
    processed = []
    for index, item in enumerate(value):
        if not isinstance(item, dict):
            raise InvalidRequestError("常用问题格式错误：每个问题必须是一个对象")
        question = item.get("question")
        if not isinstance(question, str):
            raise InvalidRequestError("常用问题格式错误：question 字段必须是字符串")
        if not question.strip():
            raise InvalidRequestError("常用问题不能为空")
        order = item.get("order")
        processed.append(CommonQuestion(
            question=question.strip(),
            order=index + 1 if order is None else _number("order", order, integer=True),
        ).model_dump())
    return processed


# 字段 → 规范化函数（部分更新时逐个字段校验/截断）
_NORMALIZERS = {
    "collection_name": lambda v: str(v),
    "vector_dimension": lambda v: _number("vectorDimension", v, lo=1, integer=True),
    "embedding_model": lambda v: str(v),
    "llm_model": lambda v: str(v),
    "user_prompt_template": _optional_str,
    "llm_temperature": lambda v: _number("llmTemperature", v, 0, 2),
    "llm_max_tokens": lambda v: _number("llmMaxTokens", v, 1, 8000, integer=True),
    "llm_top_p": lambda v: _number("llmTopP", v, 0, 1),
    "top_k": lambda v: _number("topK", v, lo=1, integer=True),
    "similarity_threshold": lambda v: _number("similarityThreshold", v, 0, 1),
    "index_type": lambda v: str(v).upper(),
    "index_params": lambda v: _optional_dict("indexParams", v),
    "rerank_enabled": bool,
    "rerank_model": _optional_str,
    "rerank_top_k": lambda v: _number("rerankTopK", v, lo=1, integer=True),
    "rerank_params": lambda v: _optional_dict("rerankParams", v),
    "chunk_max_length": lambda v: _number("chunkMaxLength", v, lo=1, integer=True),
    "chunk_overlap": lambda v: _number("chunkOverlap", v, lo=0, integer=True),
    "chunk_separators": lambda v: _separators(v),
    "common_questions": _common_questions,
    "status": bool,
    "remark": _optional_str,
}


def _separators(value: Any) -> list:
    if not isinstance(value, list) or len(value) == 0 or any(not isinstance(s, str) for s in value):
        raise InvalidRequestError("chunkSeparators 必须是非空字符串数组")
    return value


def _to_model(row: RagConfigRow) -> RAGConfig:
    return RAGConfig(
        config_id=row.id,
        app_id=row.app_id,
        collection_name=row.collection_name or default_collection_name(row.app_id),
        vector_dimension=row.vector_dimension,
        embedding_model=row.embedding_model,
        llm_model=row.llm_model,
        user_prompt_template=row.user_prompt_template,
        llm_temperature=row.llm_temperature,
        llm_max_tokens=row.llm_max_tokens,
        llm_top_p=row.llm_top_p,
        top_k=row.top_k,
        similarity_threshold=row.similarity_threshold,
        index_type=row.index_type,
        index_params=row.index_params or {},
        rerank_enabled=row.rerank_enabled,
        rerank_model=row.rerank_model,
        rerank_top_k=row.rerank_top_k,
        rerank_params=row.rerank_params or {},
        chunk_max_length=row.chunk_max_length,
        chunk_overlap=row.chunk_overlap,
        chunk_separators=row.chunk_separators or list(DEFAULT_SEPARATORS),
        common_questions=row.common_questions,
        status=row.status,
        remark=row.remark,
        create_time=row.create_time,
        update_time=row.update_time,
        creator=row.creator,
        updater=row.updater,
    )


class RAGConfigStore:
    """应用级 RAG 配置的读写"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def _find(self, db, app_id: int, enabled_only: bool = True) -> Optional[RagConfigRow]:
        stmt = select(RagConfigRow).where(RagConfigRow.app_id == app_id)
        if enabled_only:
            stmt = stmt.where(RagConfigRow.status)
        return db.execute(stmt).scalars().first()

    def init_config(self, app_id: int, app_name: Optional[str] = None, creator: Optional[str] = None) -> RAGConfig:
        """为应用创建默认配置（已存在时直接返回）"""
        try:
            with self.session_factory() as db:
                row = self._find(db, app_id, enabled_only=False)
                if row is None:
                    row = RagConfigRow(app_id=app_id, creator=creator, updater=creator, **_default_values(app_id))
                    db.add(row)
                    db.commit()
                    logger.info(f"[RAG 配置] 已为应用 {app_id}（{app_name or '-'}）创建默认配置")
                return _to_model(row)
        except SQLAlchemyError as e:
            logger.error(f"[RAG 配置] 初始化配置失败: {e}")
            raise RAGError(f"初始化 RAG 配置失败: {e}") from e

    def get_config(self, app_id: int) -> RAGConfig:
        """读取启用状态的配置；不存在则抛 ConfigNotFoundError"""
        try:
            with self.session_factory() as db:
                row = self._find(db, app_id)
        except SQLAlchemyError as e:
            logger.error(f"[RAG 配置] 获取 RAG 配置失败: {e}")
            raise RAGError(f"获取 RAG 配置失败: {e}") from e
        if row is None:
            raise ConfigNotFoundError(app_id)
        return _to_model(row)

    def update_config(self, app_id: int, patch: Mapping[str, Any], updater: Optional[str] = None) -> RAGConfig:
        """
        部分更新配置（键名可以是 camelCase 或 snake_case）
        数值字段按范围截断；未知字段忽略；至少需要一个有效字段
        """
        values: Dict[str, Any] = {}
        for key, value in (patch or {}).items():
            field = _snake(key)
            normalizer = _NORMALIZERS.get(field)
            if normalizer is not None:
                values[field] = normalizer(value)
        if not values:
            raise InvalidRequestError("至少需要提供一个配置参数")

        try:
            with self.session_factory() as db:
                row = self._find(db, app_id)
                if row is None:
                    raise ConfigNotFoundError(app_id)
                chunk_max = values.get("chunk_max_length", row.chunk_max_length)
                chunk_overlap = values.get("chunk_overlap", row.chunk_overlap)
                if chunk_overlap >= chunk_max:
                    raise InvalidRequestError(
                        f"分段重叠长度 ({chunk_overlap}) 必须小于最大长度 ({chunk_max})"
                    )
                for field, value in values.items():
                    setattr(row, field, value)
                if updater:
                    row.updater = updater
                db.commit()
                logger.info(f"[RAG 配置] 应用 {app_id} 配置已更新: {', '.join(values)}")
                return _to_model(row)
        except SQLAlchemyError as e:
            logger.error(f"[RAG 配置] 设置 RAG 配置失败: {e}")
            raise RAGError(f"设置 RAG 配置失败: {e}") from e

    def reset_config(self, app_id: int, app_name: Optional[str] = None, updater: Optional[str] = None) -> RAGConfig:
        """把配置重置为默认值（保留行）"""
        try:
            with self.session_factory() as db:
                row = self._find(db, app_id)
                if row is None:
                    raise ConfigNotFoundError(app_id)
                for field, value in _default_values(app_id).items():
                    setattr(row, field, value)
                if updater:
                    row.updater = updater
                db.commit()
                logger.info(f"[RAG 配置] 应用 {app_id}（{app_name or '-'}）配置已重置为默认值")
                return _to_model(row)
        except SQLAlchemyError as e:
            logger.error(f"[RAG 配置] 删除 RAG 配置失败: {e}")
            raise RAGError(f"重置 RAG 配置失败: {e}") from e

    def get_chunk_config(self, app_id: int) -> ChunkConfig:
        return self.get_config(app_id).chunk_config
