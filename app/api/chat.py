from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, HTTPException, Response, status
from fastapi.responses import JSONResponse, StreamingResponse

from app.core.errors import (
    AdmissionDeniedError,
    SessionNotFoundError,
    SessionPermissionError,
    StorageError,
)
from app.core.security import Identity, get_verified_identity
from app.schemas.chat import (
    ChatRequest,
    ChatSessionDetail,
    ChatSessionRead,
    RateLimitDetail,
    SessionCreate,
)
from app.services.chat_service import ChatPipeline, encode_event_stream, get_chat_pipeline
from app.services.session_store import SessionStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat", tags=["chat"])


def get_store(pipeline: ChatPipeline = Depends(get_chat_pipeline)) -> SessionStore:
    return pipeline.store


def _to_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, SessionNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    if isinstance(exc, SessionPermissionError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="You do not have access to this session")
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def _rate_limited(exc: AdmissionDeniedError) -> JSONResponse:
    reset_at = datetime.now(timezone.utc) + timedelta(milliseconds=exc.wait_time_ms)
    detail = RateLimitDetail(
        message=exc.message,
        wait_time_ms=exc.wait_time_ms,
        retry_after=exc.retry_after_seconds,
    )
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content=detail.model_dump(),
        headers={
            "Retry-After": str(exc.retry_after_seconds),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": reset_at.isoformat(),
        },
    )


@router.post("/message")
async def send_message(
    request: ChatRequest,
    identity: Identity = Depends(get_verified_identity),
    pipeline: ChatPipeline = Depends(get_chat_pipeline),
):
    try:
        decision = pipeline.admit(identity.key)
    except AdmissionDeniedError as exc:
        return _rate_limited(exc)

    if not request.message.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Message is required and cannot be empty",
        )

    try:
        await pipeline.verify_session(identity.key, request.session_id)
    except (SessionNotFoundError, SessionPermissionError, StorageError) as exc:
        raise _to_http_error(exc) from exc

    chunks = pipeline.stream_reply(identity.key, request.session_id, request.message)
    return StreamingResponse(
        encode_event_stream(chunks),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
            "X-RateLimit-Remaining": str(decision.remaining),
        },
    )


@router.get("/sessions", response_model=list[ChatSessionRead])
def list_sessions(
    identity: Identity = Depends(get_verified_identity),
    store: SessionStore = Depends(get_store),
):
    try:
        return store.list_sessions(identity.key)
    except StorageError as exc:
        raise _to_http_error(exc) from exc


@router.post("/sessions", response_model=ChatSessionRead, status_code=status.HTTP_201_CREATED)
def create_session(
    payload: SessionCreate | None = None,
    identity: Identity = Depends(get_verified_identity),
    store: SessionStore = Depends(get_store),
):
    title = payload.title.strip() if payload and payload.title else None
    try:
        return store.create_session(identity.key, title=title or None)
    except StorageError as exc:
        raise _to_http_error(exc) from exc


@router.get("/sessions/{session_id}", response_model=ChatSessionDetail)
def get_session(
    session_id: str,
    identity: Identity = Depends(get_verified_identity),
    store: SessionStore = Depends(get_store),
):
    try:
        session = store.get_session(session_id, identity.key)
        messages = store.get_messages(session_id)
    except (SessionNotFoundError, SessionPermissionError, StorageError) as exc:
        raise _to_http_error(exc) from exc
    return ChatSessionDetail(**session.model_dump(), messages=messages)


@router.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_session(
    session_id: str,
    identity: Identity = Depends(get_verified_identity),
    store: SessionStore = Depends(get_store),
):
    try:
        store.delete_session(session_id, identity.key)
    except (SessionNotFoundError, SessionPermissionError, StorageError) as exc:
        raise _to_http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)
