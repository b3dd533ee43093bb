from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import SessionNotFoundError, SessionPermissionError, StorageError
from app.db.session import SessionLocal
from app.models.chat_message import ChatMessage
from app.models.chat_session import ChatSession, utc_now
from app.schemas.chat import ArticleSource, ChatMessageRead, ChatSessionRead

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TITLE = "New Conversation"


def build_default_title(message: str) -> str:
    cleaned = " ".join(message.split()).strip()
    if len(cleaned) <= 60:
        return cleaned or DEFAULT_SESSION_TITLE
    return f"{cleaned[:57]}..."


class SessionStore:
    """Authoritative store for chat sessions and their messages."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal) -> None:
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Chat storage operation failed: %s", exc)
            raise StorageError("Failed to access chat storage. Please try again.") from exc
        finally:
            db.close()

    @staticmethod
    def _owned_session(db: Session, session_id: str, user_id: str) -> ChatSession:
        chat_session = db.get(ChatSession, session_id)
        if chat_session is None:
            raise SessionNotFoundError(session_id)
        if chat_session.user_id != user_id:
            raise SessionPermissionError(session_id, user_id)
        return chat_session

    @staticmethod
    def _to_read(chat_session: ChatSession, message_count: int) -> ChatSessionRead:
        return ChatSessionRead(
            id=chat_session.id,
            user_id=chat_session.user_id,
            title=chat_session.title,
            created_at=chat_session.created_at,
            updated_at=chat_session.updated_at,
            message_count=message_count,
        )

    def create_session(self, user_id: str, title: str | None = None) -> ChatSessionRead:
        with self._session() as db:
            chat_session = ChatSession(user_id=user_id, title=title or DEFAULT_SESSION_TITLE)
            db.add(chat_session)
            db.commit()
            db.refresh(chat_session)
            logger.info("Created chat session %s for %s", chat_session.id, user_id)
            return self._to_read(chat_session, 0)

    def get_session(self, session_id: str, user_id: str) -> ChatSessionRead:
        with self._session() as db:
            chat_session = self._owned_session(db, session_id, user_id)
            return self._to_read(chat_session, self._count(db, session_id))

    def list_sessions(self, user_id: str) -> list[ChatSessionRead]:
        with self._session() as db:
            count_column = func.count(ChatMessage.id)
            stmt = (
                select(ChatSession, count_column)
                .outerjoin(ChatMessage, ChatMessage.session_id == ChatSession.id)
                .where(ChatSession.user_id == user_id)
                .group_by(ChatSession.id)
                .order_by(ChatSession.updated_at.desc(), ChatSession.created_at.desc())
            )
            return [self._to_read(row, count) for row, count in db.execute(stmt).all()]

    def delete_session(self, session_id: str, user_id: str) -> None:
        with self._session() as db:
            chat_session = self._owned_session(db, session_id, user_id)
            db.delete(chat_session)
            db.commit()
            logger.info("Deleted chat session %s", session_id)

    def touch_session(self, session_id: str) -> None:
        with self._session() as db:
            chat_session = db.get(ChatSession, session_id)
            if chat_session is None:
                raise SessionNotFoundError(session_id)
            chat_session.updated_at = utc_now()
            db.commit()

    def update_session_title(self, session_id: str, user_id: str, title: str) -> ChatSessionRead:
        with self._session() as db:
            chat_session = self._owned_session(db, session_id, user_id)
            chat_session.title = title
            db.commit()
            db.refresh(chat_session)
            return self._to_read(chat_session, self._count(db, session_id))

    def save_message(
        self,
        session_id: str,
        role: str,
        content: str,
        sources: Sequence[ArticleSource] | None = None,
    ) -> ChatMessageRead:
        with self._session() as db:
            chat_session = db.get(ChatSession, session_id)
            if chat_session is None:
                raise SessionNotFoundError(session_id)

            message = ChatMessage(
                session_id=session_id,
                role=role,
                content=content,
                sources=[source.model_dump() for source in sources] if sources is not None else None,
            )
            db.add(message)
            chat_session.updated_at = utc_now()
            db.commit()
            db.refresh(message)
            return ChatMessageRead.model_validate(message)

    def get_messages(self, session_id: str, limit: int | None = None) -> list[ChatMessageRead]:
        """Messages oldest first; with ``limit``, only the most recent ``limit`` of them."""
        with self._session() as db:
            if limit is None:
                stmt = (
                    select(ChatMessage)
                    .where(ChatMessage.session_id == session_id)
                    .order_by(ChatMessage.created_at.asc())
                )
                rows = list(db.execute(stmt).scalars().all())
            else:
                stmt = (
                    select(ChatMessage)
                    .where(ChatMessage.session_id == session_id)
                    .order_by(ChatMessage.created_at.desc())
                    .limit(limit)
                )
                rows = list(db.execute(stmt).scalars().all())
                rows.reverse()
            return [ChatMessageRead.model_validate(row) for row in rows]

    def count_messages(self, session_id: str) -> int:
        with self._session() as db:
            return self._count(db, session_id)

    @staticmethod
    def _count(db: Session, session_id: str) -> int:
        stmt = select(func.count(ChatMessage.id)).where(ChatMessage.session_id == session_id)
        return db.execute(stmt).scalar_one()
