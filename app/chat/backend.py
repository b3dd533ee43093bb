from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable

import httpx
from pydantic import TypeAdapter, ValidationError

from app.core.config import settings
from app.core.errors import (
    AdmissionDeniedError,
    ChatError,
    SessionNotFoundError,
    SessionPermissionError,
)
from app.core.security import Identity, create_access_token
from app.schemas.chat import ChatMessageRead, ChatSessionDetail, ChatSessionRead

logger = logging.getLogger(__name__)

_session_list = TypeAdapter(list[ChatSessionRead])


class ChatBackend(ABC):
    """Transport used by the session manager to reach the chat service."""

    @abstractmethod
    async def list_sessions(self, identity: Identity) -> list[ChatSessionRead]:
        ...

    @abstractmethod
    async def create_session(self, identity: Identity, title: str | None = None) -> ChatSessionRead:
        ...

    @abstractmethod
    async def get_messages(self, identity: Identity, session_id: str) -> list[ChatMessageRead]:
        ...

    @abstractmethod
    async def delete_session(self, identity: Identity, session_id: str) -> None:
        ...

    @abstractmethod
    def stream_message(self, identity: Identity, session_id: str, message: str) -> AsyncIterator[str]:
        """
        Post ``message`` and yield the raw event-stream text as it arrives.

        Raises
        ------
        AdmissionDeniedError
            The caller is over the request budget; nothing was streamed.
        ChatError
            Any other refusal before streaming began.
        """


def _default_token(identity: Identity) -> str:
    return create_access_token(identity.key, email_verified=identity.email_verified)


def _raise_for_status(response: httpx.Response, session_id: str | None, identity: Identity) -> None:
    if response.status_code < 400:
        return
    if response.status_code == 404 and session_id:
        raise SessionNotFoundError(session_id)
    if response.status_code == 403 and session_id:
        raise SessionPermissionError(session_id, identity.key)
    if response.status_code in (401, 403):
        raise ChatError("You need to sign in with a verified account to use the chat.")
    raise ChatError(
        f"Chat service request failed with status {response.status_code}",
        retryable=response.status_code >= 500,
    )


async def _admission_error(response: httpx.Response) -> AdmissionDeniedError:
    await response.aread()
    try:
        body = response.json()
    except ValueError:
        body = {}
    wait_time_ms = body.get("wait_time_ms")
    if wait_time_ms is None:
        wait_time_ms = int(body.get("retry_after") or response.headers.get("Retry-After") or 60) * 1000
    return AdmissionDeniedError(int(wait_time_ms))


class HttpChatBackend(ChatBackend):
    def __init__(
        self,
        base_url: str | None = None,
        token_for: Callable[[Identity], str] = _default_token,
        timeout_seconds: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or settings.chat_api_base_url).rstrip("/")
        self._token_for = token_for
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def _client(self, identity: Identity) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {self._token_for(identity)}"},
            timeout=self.timeout_seconds,
            transport=self._transport,
        )

    async def _request(
        self,
        identity: Identity,
        method: str,
        path: str,
        session_id: str | None = None,
        **kwargs,
    ) -> httpx.Response:
        try:
            async with self._client(identity) as client:
                response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise ChatError(f"Could not reach the chat service: {exc}", retryable=True) from exc
        _raise_for_status(response, session_id, identity)
        return response

    async def list_sessions(self, identity: Identity) -> list[ChatSessionRead]:
        response = await self._request(identity, "GET", "/chat/sessions")
        try:
            return _session_list.validate_python(response.json())
        except (ValueError, ValidationError) as exc:
            raise ChatError("Failed to load sessions", retryable=True) from exc

    async def create_session(self, identity: Identity, title: str | None = None) -> ChatSessionRead:
        response = await self._request(identity, "POST", "/chat/sessions", json={"title": title})
        try:
            return ChatSessionRead.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise ChatError("Failed to create session", retryable=True) from exc

    async def get_messages(self, identity: Identity, session_id: str) -> list[ChatMessageRead]:
        response = await self._request(identity, "GET", f"/chat/sessions/{session_id}", session_id=session_id)
        try:
            return ChatSessionDetail.model_validate(response.json()).messages
        except (ValueError, ValidationError) as exc:
            raise ChatError("Failed to load messages", retryable=True) from exc

    async def delete_session(self, identity: Identity, session_id: str) -> None:
        await self._request(identity, "DELETE", f"/chat/sessions/{session_id}", session_id=session_id)

    async def stream_message(self, identity: Identity, session_id: str, message: str) -> AsyncIterator[str]:
        try:
            async with self._client(identity) as client:
                async with client.stream(
                    "POST",
                    "/chat/message",
                    json={"session_id": session_id, "message": message},
                ) as response:
                    if response.status_code == 429:
                        raise await _admission_error(response)
                    if response.status_code >= 400:
                        await response.aread()
                        _raise_for_status(response, session_id, identity)
                    async for text in response.aiter_text():
                        yield text
        except httpx.HTTPError as exc:
            logger.error("Chat stream for session %s failed: %s", session_id, exc)
            raise ChatError(
                "Connection interrupted while receiving response. Please try again.",
                retryable=True,
            ) from exc
