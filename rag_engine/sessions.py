"""
RAG 会话管理
负责：会话创建、消息追加、历史拼接、分页查询、级联删除
"""
import logging
import math
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from rag_engine.errors import PersistenceWarning, RAGError, SessionError
from rag_engine.models import Caller, MessageInfo, NewMessage, Page, SessionInfo, SourceDoc
from rag_engine.tables import RagMessageRow, RagSessionRow

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TITLE = "新会话"
MAX_TITLE_LENGTH = 50
HISTORY_HEADING = "你和用户之前的对话历史（仅供参考）："
MAX_SESSION_PAGE_SIZE = 100
MAX_MESSAGE_PAGE_SIZE = 200


def normalize_title(title: Optional[str]) -> str:
    return (title or "").strip()[:MAX_TITLE_LENGTH] or DEFAULT_SESSION_TITLE


def _session_info(row: RagSessionRow) -> SessionInfo:
    return SessionInfo(
        session_id=row.id,
        app_id=row.app_id,
        user_id=row.user_id,
        user_name=row.user_name,
        session_title=row.session_title,
        status=row.status,
        extra=row.extra,
        create_time=row.create_time,
        update_time=row.update_time,
    )


def _message_info(row: RagMessageRow) -> MessageInfo:
    return MessageInfo(
        message_id=row.id,
        session_id=row.session_id,
        app_id=row.app_id,
        user_id=row.user_id,
        role=row.role,
        content=row.content,
        source_docs=[SourceDoc(**doc) for doc in row.source_docs] if row.source_docs else None,
        tokens_used=row.tokens_used,
        response_time=row.response_time,
        streamed=row.streamed,
        create_time=row.create_time,
    )


def _message_row(app_id: int, session_id: int, message: NewMessage, caller: Optional[Caller]) -> RagMessageRow:
    # 助手消息不记录用户 ID
    is_user = message.role == "user"
    user_id = caller.user_id if is_user and caller and caller.user_id and caller.user_id > 0 else None
    return RagMessageRow(
        session_id=session_id,
        app_id=app_id,
        user_id=user_id,
        role=message.role,
        content=message.content,
        source_docs=[doc.model_dump() for doc in message.source_docs] if message.source_docs else None,
        tokens_used=message.tokens_used,
        response_time=message.response_time,
        streamed=message.streamed,
    )


def format_history(rows: List[RagMessageRow], max_rounds: int) -> str:
    """
    按时间正序配对 user → assistant，丢弃未配对的消息，保留最后 max_rounds 轮

    Args:
        rows: 时间正序的消息
        max_rounds: 最多保留的轮次

    Returns:
        带标题的历史文本，末尾两个换行；没有完整轮次时返回空字符串
    """
    rounds = []
    pending = None
    for row in rows:
        if row.role == "user":
            pending = row
        elif row.role == "assistant" and pending is not None:
            rounds.append((pending.content, row.content))
            pending = None

    rounds = rounds[-max_rounds:] if max_rounds > 0 else []
    if not rounds:
        return ""
    lines = []
    for question, answer in rounds:
        lines.append(f"[用户] {question}")
        lines.append(f"[助手] {answer}")
    return f"{HISTORY_HEADING}\n" + "\n".join(lines) + "\n\n"


class SessionStore:
    """会话与消息存储（SQLAlchemy）"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def create_session(self, app_id: int, caller: Caller, title: Optional[str] = DEFAULT_SESSION_TITLE) -> int:
        """创建会话，返回会话 ID；调用方必须有有效的用户 ID"""
        if caller is None or not caller.user_id or caller.user_id <= 0:
            raise SessionError("创建会话失败：缺少有效的用户ID")
        try:
            with self.session_factory() as db:
                row = RagSessionRow(
                    app_id=app_id,
                    user_id=caller.user_id,
                    user_name=caller.user_name,
                    session_title=normalize_title(title),
                    status=0,
                )
                db.add(row)
                db.commit()
                logger.info(f"[RAG 会话] 创建会话 {row.id}（应用 {app_id}，用户 {caller.user_id}）")
                return row.id
        except SQLAlchemyError as e:
            logger.error(f"[RAG 会话] 创建会话失败: {e}")
            raise RAGError(f"创建会话失败: {e}") from e

    def get_session(self, session_id: Optional[int]) -> Optional[SessionInfo]:
        if not session_id:
            return None
        try:
            with self.session_factory() as db:
                row = db.get(RagSessionRow, session_id)
                return _session_info(row) if row else None
        except SQLAlchemyError as e:
            logger.error(f"[RAG 会话] 获取会话信息失败: {e}")
            raise RAGError(f"获取会话信息失败: {e}") from e

    def append_message(
        self,
        app_id: int,
        session_id: Optional[int],
        message: NewMessage,
        caller: Optional[Caller] = None,
    ) -> Optional[int]:
        """
        追加一条消息；用户消息同时把会话标题更新为问题内容
        无会话 ID 或内容为空时跳过并返回 None；数据库失败抛 PersistenceWarning
        """
        if not session_id or not message.content:
            return None

        return self._write_messages(app_id, session_id, [message], caller)[0]

    def append_turn(
        self,
        app_id: int,
        session_id: Optional[int],
        question: NewMessage,
        answer: NewMessage,
        caller: Optional[Caller] = None,
    ) -> Optional[Tuple[int, int]]:
        """
        在同一事务中写入一问一答，返回 (用户消息 ID, 助手消息 ID)
        无会话 ID 时返回 None；问题或回答为空时整轮跳过，不留下半轮对话
        """
        if not session_id:
            return None
        if not question.content or not answer.content:
            logger.warning(f"[RAG 会话] 会话 {session_id} 的问题或回答为空，本轮不保存")
            return None
        user_id, assistant_id = self._write_messages(app_id, session_id, [question, answer], caller)
        return user_id, assistant_id

    def _write_messages(
        self,
        app_id: int,
        session_id: int,
        messages: List[NewMessage],
        caller: Optional[Caller],
    ) -> List[int]:
        try:
            with self.session_factory() as db:
                session_row = db.get(RagSessionRow, session_id)
                if session_row is None:
                    raise PersistenceWarning(f"会话 {session_id} 不存在，消息未保存")
                rows = []
                for message in messages:
                    rows.append(_message_row(app_id, session_id, message, caller))
                    if message.role == "user":
                        session_row.session_title = normalize_title(message.content)
                db.add_all(rows)
                db.commit()
                return [row.id for row in rows]
        except SQLAlchemyError as e:
            raise PersistenceWarning(f"保存会话消息失败: {e}") from e

    def get_history(self, session_id: Optional[int], max_rounds: int = 3) -> str:
        """最近 max_rounds 轮对话（用于上下文记忆）"""
        if not session_id or max_rounds <= 0:
            return ""
        try:
            with self.session_factory() as db:
                rows = db.execute(
                    select(RagMessageRow)
                    .where(RagMessageRow.session_id == session_id)
                    .order_by(RagMessageRow.create_time.desc(), RagMessageRow.id.desc())
                    .limit(max_rounds * 2)
                ).scalars().all()
        except SQLAlchemyError as e:
            logger.warning(f"[RAG 会话] 获取历史对话失败: {e}")
            return ""
        return format_history(list(reversed(rows)), max_rounds)

    def delete_session(self, session_id: int) -> bool:
        """删除会话及其全部消息（同一事务）"""
        if not session_id:
            raise SessionError("sessionId 参数无效")
        try:
            with self.session_factory() as db:
                with db.begin():
                    db.execute(delete(RagMessageRow).where(RagMessageRow.session_id == session_id))
                    result = db.execute(delete(RagSessionRow).where(RagSessionRow.id == session_id))
                deleted = result.rowcount > 0
        except SQLAlchemyError as e:
            logger.error(f"[RAG 会话] 删除会话失败: {e}")
            raise RAGError(f"删除会话失败: {e}") from e
        if deleted:
            logger.info(f"[RAG 会话] 已删除会话 {session_id}")
        return deleted

    def list_sessions(
        self,
        app_id: int,
        page: int = 1,
        page_size: int = 20,
        user_id: Optional[int] = None,
        status: Optional[int] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
    ) -> Page:
        """分页查询会话（按创建时间倒序）"""
        page = max(1, page)
        page_size = max(1, min(page_size, MAX_SESSION_PAGE_SIZE))
        conditions = [RagSessionRow.app_id == app_id]
        if user_id is not None:
            conditions.append(RagSessionRow.user_id == user_id)
        if status is not None:
            conditions.append(RagSessionRow.status == status)
        if start_time is not None:
            conditions.append(RagSessionRow.create_time >= start_time)
        if end_time is not None:
            conditions.append(RagSessionRow.create_time <= end_time)

        try:
            with self.session_factory() as db:
                total = db.execute(select(func.count()).select_from(RagSessionRow).where(*conditions)).scalar_one()
                rows = db.execute(
                    select(RagSessionRow)
                    .where(*conditions)
                    .order_by(RagSessionRow.create_time.desc(), RagSessionRow.id.desc())
                    .offset((page - 1) * page_size)
                    .limit(page_size)
                ).scalars().all()
        except SQLAlchemyError as e:
            logger.error(f"[RAG 会话] 获取会话列表失败: {e}")
            raise RAGError(f"获取会话列表失败: {e}") from e

        return Page(
            total=total,
            page=page,
            page_size=page_size,
            total_pages=math.ceil(total / page_size),
            list=[_session_info(r) for r in rows],
        )

    def list_messages(
        self,
        session_id: int,
        page: int = 1,
        page_size: int = 50,
        role: Optional[str] = None,
    ) -> Page:
        """分页查询会话消息（按时间正序）"""
        page = max(1, page)
        page_size = max(1, min(page_size, MAX_MESSAGE_PAGE_SIZE))
        conditions = [RagMessageRow.session_id == session_id]
        if role:
            conditions.append(RagMessageRow.role == role)

        try:
            with self.session_factory() as db:
                total = db.execute(select(func.count()).select_from(RagMessageRow).where(*conditions)).scalar_one()
                rows = db.execute(
                    select(RagMessageRow)
                    .where(*conditions)
                    .order_by(RagMessageRow.create_time.asc(), RagMessageRow.id.asc())
                    .offset((page - 1) * page_size)
                    .limit(page_size)
                ).scalars().all()
        except SQLAlchemyError as e:
            logger.error(f"[RAG 会话] 获取会话消息失败: {e}")
            raise RAGError(f"获取会话消息失败: {e}") from e

        return Page(
            total=total,
            page=page,
            page_size=page_size,
            total_pages=math.ceil(total / page_size),
            list=[_message_info(r) for r in rows],
        )
