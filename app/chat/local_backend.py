from __future__ import annotations

from collections.abc import AsyncIterator

from fastapi.concurrency import run_in_threadpool

from app.chat.backend import ChatBackend
from app.core.errors import ChatError
from app.core.security import Identity
from app.schemas.chat import ChatMessageRead, ChatSessionRead
from app.services.chat_service import ChatPipeline, encode_event_stream


class LocalChatBackend(ChatBackend):
    """Drives a :class:`ChatPipeline` in-process, using the same wire frames as HTTP."""

    def __init__(self, pipeline: ChatPipeline) -> None:
        self.pipeline = pipeline

    @staticmethod
    def _check(identity: Identity) -> str:
        if not identity.email_verified:
            raise ChatError("Email verification required")
        return identity.key

    async def list_sessions(self, identity: Identity) -> list[ChatSessionRead]:
        return await run_in_threadpool(self.pipeline.store.list_sessions, self._check(identity))

    async def create_session(self, identity: Identity, title: str | None = None) -> ChatSessionRead:
        return await run_in_threadpool(self.pipeline.store.create_session, self._check(identity), title)

    async def get_messages(self, identity: Identity, session_id: str) -> list[ChatMessageRead]:
        await self.pipeline.verify_session(self._check(identity), session_id)
        return await run_in_threadpool(self.pipeline.store.get_messages, session_id)

    async def delete_session(self, identity: Identity, session_id: str) -> None:
        await run_in_threadpool(self.pipeline.store.delete_session, session_id, self._check(identity))

    async def stream_message(self, identity: Identity, session_id: str, message: str) -> AsyncIterator[str]:
        key = self._check(identity)
        self.pipeline.admit(key)
        await self.pipeline.verify_session(key, session_id)
        async for frame in encode_event_stream(self.pipeline.stream_reply(key, session_id, message)):
            yield frame
