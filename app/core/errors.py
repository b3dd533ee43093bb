"""
Error taxonomy shared by the chat pipeline, its HTTP surface and the
client-side session manager.

Every error carries a ``retryable`` flag so callers can decide whether to
offer a retry action.
"""

from __future__ import annotations


class ChatError(RuntimeError):
    retryable: bool = False

    def __init__(self, message: str, *, retryable: bool | None = None) -> None:
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable


class AdmissionDeniedError(ChatError):
    """The throttle rejected the request; surfaced immediately, never retried."""

    retryable = True

    def __init__(self, wait_time_ms: int, message: str | None = None) -> None:
        self.wait_time_ms = max(0, int(wait_time_ms))
        super().__init__(message or format_wait_message(self.wait_time_ms))

    @property
    def retry_after_seconds(self) -> int:
        return -(-self.wait_time_ms // 1000)


class UpstreamTransientError(ChatError):
    retryable = True

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UpstreamFatalError(ChatError):
    retryable = False

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StreamParseError(ChatError):
    retryable = False


class StorageError(ChatError):
    retryable = True


class SessionNotFoundError(ChatError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Chat session not found: {session_id}")
        self.session_id = session_id


class SessionPermissionError(ChatError):
    def __init__(self, session_id: str, owner: str) -> None:
        super().__init__(f"User {owner} does not have permission to access session {session_id}")
        self.session_id = session_id


def format_wait_message(wait_time_ms: int) -> str:
    wait_seconds = -(-max(0, wait_time_ms) // 1000)
    minutes, seconds = divmod(wait_seconds, 60)
    if minutes:
        display = (
            f"{minutes} minute{'s' if minutes > 1 else ''} "
            f"and {seconds} second{'s' if seconds != 1 else ''}"
        )
    else:
        display = f"{seconds} second{'s' if seconds != 1 else ''}"
    return f"Too many requests. Please wait {display} before trying again."
