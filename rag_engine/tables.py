"""
ORM 表定义
- rag_config: 应用级 RAG 配置（每个应用一行）
- rag_session / rag_session_message: 会话与消息，删除会话时级联删除消息
"""
from datetime import datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from rag_engine.db import Base


class RagConfigRow(Base):
    __tablename__ = "rag_config"

    id = Column(Integer, primary_key=True, autoincrement=True)
    app_id = Column(Integer, unique=True, nullable=False, index=True)
    collection_name = Column(String(255), nullable=False)
    vector_dimension = Column(Integer, nullable=False, default=1024)
    embedding_model = Column(String(100), nullable=False, default="text-embedding-v4")
    llm_model = Column(String(100), nullable=False, default="qwen-plus")
    user_prompt_template = Column(Text, nullable=True)
    llm_temperature = Column(Float, nullable=False, default=0.7)
    llm_max_tokens = Column(Integer, nullable=False, default=2000)
    llm_top_p = Column(Float, nullable=False, default=0.8)
    top_k = Column(Integer, nullable=False, default=5)
    similarity_threshold = Column(Float, nullable=False, default=0.4)
    index_type = Column(String(20), nullable=False, default="HNSW")
    index_params = Column(JSON, nullable=True)
    rerank_enabled = Column(Boolean, nullable=False, default=False)
    rerank_model = Column(String(100), nullable=True)
    rerank_top_k = Column(Integer, nullable=False, default=10)
    rerank_params = Column(JSON, nullable=True)
    chunk_max_length = Column(Integer, nullable=False, default=2048)
    chunk_overlap = Column(Integer, nullable=False, default=100)
    chunk_separators = Column(JSON, nullable=True)
    common_questions = Column(JSON, nullable=True)
    status = Column(Boolean, nullable=False, default=True)
    remark = Column(String(500), nullable=True)
    create_time = Column(DateTime, default=datetime.now, nullable=False)
    update_time = Column(DateTime, default=datetime.now, onupdate=datetime.now, nullable=False)
    creator = Column(String(100), nullable=True)
    updater = Column(String(100), nullable=True)


class RagSessionRow(Base):
    __tablename__ = "rag_session"

    id = Column(Integer, primary_key=True, autoincrement=True)
    app_id = Column(Integer, nullable=False, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    user_name = Column(String(100), nullable=True)
    session_title = Column(String(255), nullable=False, default="新会话")
    status = Column(Integer, nullable=False, default=0)
    extra = Column(JSON, nullable=True)
    create_time = Column(DateTime, default=datetime.now, nullable=False, index=True)
    update_time = Column(DateTime, default=datetime.now, onupdate=datetime.now, nullable=False)

    messages = relationship(
        "RagMessageRow",
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class RagMessageRow(Base):
    __tablename__ = "rag_session_message"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(Integer, ForeignKey("rag_session.id", ondelete="CASCADE"), nullable=False, index=True)
    app_id = Column(Integer, nullable=False, index=True)
    user_id = Column(Integer, nullable=True)  # assistant 消息为空
    role = Column(String(20), nullable=False)
    content = Column(Text, nullable=False)
    source_docs = Column(JSON, nullable=True)
    tokens_used = Column(Integer, nullable=False, default=0)
    response_time = Column(Integer, nullable=False, default=0)
    streamed = Column(Boolean, nullable=False, default=False)
    create_time = Column(DateTime, default=datetime.now, nullable=False)

    session = relationship("RagSessionRow", back_populates="messages")
