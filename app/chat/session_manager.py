"""
Client-side owner of conversation state.

The manager keeps the session list, the messages of the current session and
the streaming status for one signed-in identity. It drives a
:class:`~app.chat.backend.ChatBackend`, assembles streamed tokens into a live
assistant message and reconciles with the authoritative store once a turn
completes.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import aclosing
from datetime import datetime, timezone
from enum import Enum

from app.chat.backend import ChatBackend
from app.chat.mirror import MirrorSnapshot, SessionMirror
from app.chat.stream_parser import iter_stream_chunks
from app.core.errors import ChatError
from app.core.security import Identity
from app.core.single_flight import SingleFlight
from app.schemas.chat import (
    ArticleSource,
    ChatMessageRead,
    ChatSessionRead,
    ContentChunk,
    DoneChunk,
    ErrorChunk,
    SourcesChunk,
)
from app.services.session_store import build_default_title

logger = logging.getLogger(__name__)

TEMP_USER_PREFIX = "temp-user-"
TEMP_ASSISTANT_PREFIX = "temp-assistant-"
UNEXPECTED_FAILURE_MESSAGE = "Something went wrong while sending your message. Please try again."


class ChatState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    ERROR = "error"


def _temp_message(prefix: str, session_id: str, role: str, content: str) -> ChatMessageRead:
    return ChatMessageRead(
        id=f"{prefix}{time.time_ns()}",
        session_id=session_id,
        role=role,
        content=content,
        created_at=datetime.now(timezone.utc),
    )


class ChatSessionManager:
    def __init__(self, backend: ChatBackend, mirror: SessionMirror | None = None) -> None:
        self.backend = backend
        self.mirror = mirror or SessionMirror()
        self.identity: Identity | None = None

        self.sessions: list[ChatSessionRead] = []
        self.current_session_id: str | None = None
        self.messages: list[ChatMessageRead] = []

        self.state = ChatState.IDLE
        self.error: str | None = None
        self.last_error: ChatError | None = None
        self.last_message: str | None = None
        self.composing = False

        self._loads = SingleFlight()
        self._send_task: asyncio.Task | None = None
        self._cancel_requested = False

    @property
    def is_streaming(self) -> bool:
        return self.state in (ChatState.SENDING, ChatState.STREAMING)

    def _require_identity(self) -> Identity:
        if self.identity is None:
            raise ChatError("Sign in to use the chat.")
        return self.identity

    def _save_mirror(self) -> None:
        if self.identity is None:
            return
        self.mirror.save(
            MirrorSnapshot(
                identity_key=self.identity.key,
                current_session_id=self.current_session_id,
                sessions=self.sessions,
                messages=[m for m in self.messages if not m.id.startswith((TEMP_USER_PREFIX, TEMP_ASSISTANT_PREFIX))],
            )
        )

    def _reset_state(self) -> None:
        self.sessions = []
        self.current_session_id = None
        self.messages = []
        self.state = ChatState.IDLE
        self.error = None
        self.last_error = None
        self.last_message = None
        self.composing = False

    def clear_error(self) -> None:
        self.error = None
        self.last_error = None
        if self.state is ChatState.ERROR:
            self.state = ChatState.IDLE

    async def sign_in(self, identity: Identity) -> None:
        if self.identity is not None and self.identity.key != identity.key:
            self.sign_out()
        self.identity = identity
        await self.load_sessions()

    def sign_out(self) -> None:
        self.cancel()
        self.identity = None
        self._reset_state()
        self.mirror.clear()
        logger.info("Cleared chat state on sign-out")

    async def load_sessions(self) -> None:
        identity = self._require_identity()
        await self._loads.do(identity.key, lambda: self._load_sessions(identity))

    def _restore_from_mirror(self, identity: Identity) -> None:
        cached = self.mirror.load()
        if cached is None or cached.identity_key != identity.key or not cached.sessions:
            return
        self.sessions = cached.sessions
        if cached.current_session_id:
            self.current_session_id = cached.current_session_id
            self.messages = cached.messages

    async def _load_sessions(self, identity: Identity) -> None:
        if not self.sessions:
            self._restore_from_mirror(identity)

        try:
            sessions = await self.backend.list_sessions(identity)
        except ChatError as exc:
            self.error = exc.message
            self.last_error = exc
            raise

        if self.identity is not identity:
            # Signed out (or switched accounts) while the load was in flight.
            return

        self.sessions = sessions
        known = {session.id for session in sessions}
        if self.current_session_id not in known:
            self.current_session_id = sessions[0].id if sessions else None

        if self.current_session_id is not None:
            self.messages = await self.backend.get_messages(identity, self.current_session_id)
        else:
            self.messages = []
        self._save_mirror()

    async def create_new_session(self, title: str | None = None) -> str:
        identity = self._require_identity()
        self.last_message = None
        try:
            session = await self.backend.create_session(identity, title)
        except ChatError as exc:
            self.error = exc.message
            self.last_error = exc
            raise

        self.sessions = [session, *self.sessions]
        self.current_session_id = session.id
        self.messages = []
        self._save_mirror()
        return session.id

    async def switch_session(self, session_id: str) -> None:
        identity = self._require_identity()
        self.current_session_id = session_id
        try:
            self.messages = await self.backend.get_messages(identity, session_id)
        except ChatError as exc:
            self.error = exc.message
            self.last_error = exc
            raise
        self._save_mirror()

    async def delete_session(self, session_id: str) -> None:
        identity = self._require_identity()
        try:
            await self.backend.delete_session(identity, session_id)
        except ChatError as exc:
            self.error = exc.message
            self.last_error = exc
            raise

        remaining = [session for session in self.sessions if session.id != session_id]
        self.sessions = remaining
        if self.current_session_id != session_id:
            self._save_mirror()
            return

        if remaining:
            await self.switch_session(remaining[0].id)
        else:
            self.current_session_id = None
            self.messages = []
            self._save_mirror()

    async def send_message(self, text: str) -> None:
        """
        Send ``text`` in the current session, creating one when needed.

        Raises :class:`ChatError` (with ``error`` set) when the turn fails.
        A turn stopped with :meth:`cancel` returns quietly in the idle state.
        """
        identity = self._require_identity()
        message = text.strip()
        if not message:
            raise ChatError("Message cannot be empty")
        if self.is_streaming:
            raise ChatError("A message is already being sent")

        self.state = ChatState.SENDING
        self.error = None
        self.last_error = None
        self._cancel_requested = False
        task = asyncio.ensure_future(self._send(identity, message))
        self._send_task = task
        try:
            await task
        except asyncio.CancelledError:
            if self._cancel_requested and not self._current_task_cancelling():
                return
            raise
        finally:
            self._send_task = None
            self._cancel_requested = False

    @staticmethod
    def _current_task_cancelling() -> bool:
        current = asyncio.current_task()
        return current is not None and current.cancelling() > 0

    def cancel(self) -> bool:
        if self._send_task is None or self._send_task.done():
            return False
        self._cancel_requested = True
        self._send_task.cancel()
        return True

    async def retry_last_message(self) -> None:
        if not self.last_message:
            return
        message = self.last_message
        if self.messages and self.messages[-1].id.startswith(TEMP_USER_PREFIX):
            self.messages.pop()
        await self.send_message(message)

    def _discard_placeholder(self, placeholder: ChatMessageRead | None) -> None:
        if placeholder is None:
            return
        self.messages = [m for m in self.messages if m.id != placeholder.id]

    def _fail(self, exc: ChatError, placeholder: ChatMessageRead | None, completed: bool) -> None:
        self._discard_placeholder(placeholder)
        if completed:
            # The reply already landed in the store; there is nothing to resend.
            self.last_message = None
        self.state = ChatState.ERROR
        self.error = exc.message
        self.last_error = exc

    async def _send(self, identity: Identity, message: str) -> None:
        placeholder: ChatMessageRead | None = None
        completed = False
        self.composing = True
        try:
            session_id = self.current_session_id
            if session_id is None:
                session_id = await self.create_new_session(title=build_default_title(message))
            self.last_message = message
            self.messages.append(_temp_message(TEMP_USER_PREFIX, session_id, "user", message))

            sources: list[ArticleSource] = []
            raw = self.backend.stream_message(identity, session_id, message)
            async with aclosing(iter_stream_chunks(raw)) as chunks:
                async for chunk in chunks:
                    if isinstance(chunk, ErrorChunk):
                        raise ChatError(chunk.data, retryable=chunk.retryable)
                    if isinstance(chunk, ContentChunk):
                        if placeholder is None:
                            placeholder = _temp_message(TEMP_ASSISTANT_PREFIX, session_id, "assistant", "")
                            self.messages.append(placeholder)
                            self.state = ChatState.STREAMING
                            self.composing = False
                        placeholder.content += chunk.data
                    elif isinstance(chunk, SourcesChunk):
                        sources = chunk.data
                    elif isinstance(chunk, DoneChunk):
                        break

            if placeholder is not None and sources:
                placeholder.sources = sources
            # The reply is complete from here on; a failed refresh must not drop it.
            placeholder = None
            completed = True

            # The store is authoritative: replace the optimistic copies.
            self.messages = await self.backend.get_messages(identity, session_id)
            self.sessions = await self.backend.list_sessions(identity)
            self.state = ChatState.IDLE
            self._save_mirror()
        except asyncio.CancelledError:
            self._discard_placeholder(placeholder)
            self.state = ChatState.IDLE
            logger.info("Chat send cancelled")
            raise
        except ChatError as exc:
            self._fail(exc, placeholder, completed)
            logger.error("Chat send failed: %s", exc.message)
            raise
        except Exception:
            self._fail(ChatError(UNEXPECTED_FAILURE_MESSAGE, retryable=True), placeholder, completed)
            logger.exception("Unexpected error while sending chat message")
            raise
        finally:
            self.composing = False
