from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

import httpx

from app.core.config import settings
from app.core.errors import AdmissionDeniedError, ChatError

logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_RATIO = 0.25


class BackoffExhaustedError(RuntimeError):
    pass


def is_retryable_error(exc: BaseException) -> bool:
    """Transient upstream failures are retried; everything else surfaces at once."""
    if isinstance(exc, AdmissionDeniedError):
        return False
    if isinstance(exc, ChatError):
        return exc.retryable
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in {429, 500, 502, 503, 504}
    return isinstance(exc, (httpx.TimeoutException, httpx.TransportError))


class BackoffScheduler:
    def __init__(
        self,
        base_delay_ms: int | None = None,
        max_delay_ms: int | None = None,
        max_retries: int | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.base_delay_ms = base_delay_ms if base_delay_ms is not None else settings.backoff_base_delay_ms
        self.max_delay_ms = max_delay_ms if max_delay_ms is not None else settings.backoff_max_delay_ms
        self.max_retries = max_retries if max_retries is not None else settings.backoff_max_retries
        self._sleep = sleep
        self._rng = rng

    def calculate_delay(self, attempt: int) -> int:
        if attempt >= self.max_retries:
            raise BackoffExhaustedError(f"Max retries ({self.max_retries}) exceeded")

        exponential = self.base_delay_ms * (2**attempt)
        jitter = self._rng() * JITTER_RATIO * exponential
        return int(min(exponential + jitter, self.max_delay_ms))

    async def execute_with_retry(
        self,
        fn: Callable[[], Awaitable[T]],
        should_retry: Callable[[BaseException], bool] | None = None,
    ) -> T:
        """
        Await ``fn`` until it succeeds or the retry budget is spent.

        Parameters
        ----------
        fn : callable
            Zero-argument coroutine factory; called once per attempt.
        should_retry : callable, optional
            Predicate deciding whether a failure is worth another attempt.
            Defaults to :func:`is_retryable_error`.

        Returns
        -------
        T
            Whatever the first successful attempt returned. The last error is
            re-raised once ``max_retries`` attempts have failed.
        """
        predicate = should_retry or is_retryable_error
        last_error: BaseException | None = None

        for attempt in range(self.max_retries):
            try:
                return await fn()
            except Exception as exc:
                last_error = exc
                if not predicate(exc):
                    raise
                if attempt + 1 >= self.max_retries:
                    break

                delay_ms = self.calculate_delay(attempt)
                logger.warning(
                    "Retry attempt %d/%d after %dms: %s",
                    attempt + 1,
                    self.max_retries,
                    delay_ms,
                    exc,
                )
                await self._sleep(delay_ms / 1000)

        logger.error("Giving up after %d attempts: %s", self.max_retries, last_error)
        if last_error is None:
            raise BackoffExhaustedError("No attempts were made")
        raise last_error
