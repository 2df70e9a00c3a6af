"""
数据库连接（会话、消息、RAG 配置）
默认使用 SQLite: ./data/rag_engine.db，可通过 RAG_DATABASE_URL 覆盖
"""
import logging
from functools import lru_cache
from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from rag_engine.settings import get_settings

logger = logging.getLogger(__name__)

Base = declarative_base()


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(url: str) -> Engine:
    """创建 Engine；SQLite 文件库会先创建所在目录，内存库共享同一连接"""
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True, echo=False)

    kwargs = {"connect_args": {"check_same_thread": False}, "echo": False}
    if url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    else:
        db_path = url.split("sqlite:///", 1)[-1]
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(url, **kwargs)
    event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine: Engine) -> None:
    """建表（启动时调用一次）"""
    from rag_engine import tables  # noqa: F401
    Base.metadata.create_all(bind=engine)
    logger.info(f"数据库初始化完成: {engine.url.render_as_string(hide_password=True)}")


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine(get_settings().database_url)


@lru_cache(maxsize=1)
def get_session_factory() -> sessionmaker:
    engine = get_engine()
    init_db(engine)
    return create_session_factory(engine)
