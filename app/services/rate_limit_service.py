from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from app.core.config import settings

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RateLimitEntry:
    count: int
    reset_time_ms: float


@dataclass(slots=True)
class AdmissionDecision:
    allowed: bool
    wait_time_ms: int = 0
    remaining: int = 0


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


class RequestThrottler:
    """Fixed-window admission control keyed by caller identity."""

    def __init__(
        self,
        max_requests: int | None = None,
        window_ms: int | None = None,
        clock: Callable[[], float] = _monotonic_ms,
    ) -> None:
        self.max_requests = max(1, max_requests or settings.rate_limit_max_requests)
        self.window_ms = max(1, window_ms or settings.rate_limit_window_ms)
        self._clock = clock
        self._entries: dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()

    def check_limit(self, identity: str) -> AdmissionDecision:
        with self._lock:
            now = self._clock()
            entry = self._entries.get(identity)

            if entry is None or now >= entry.reset_time_ms:
                self._entries[identity] = RateLimitEntry(count=1, reset_time_ms=now + self.window_ms)
                return AdmissionDecision(allowed=True, remaining=self.max_requests - 1)

            if entry.count < self.max_requests:
                entry.count += 1
                return AdmissionDecision(allowed=True, remaining=self.max_requests - entry.count)

            wait_time_ms = max(0, int(entry.reset_time_ms - now))

        logger.warning("Rate limit exceeded for %s; retry in %dms", identity, wait_time_ms)
        return AdmissionDecision(allowed=False, wait_time_ms=wait_time_ms, remaining=0)

    def get_count(self, identity: str) -> int:
        with self._lock:
            entry = self._entries.get(identity)
            if entry is None or self._clock() >= entry.reset_time_ms:
                return 0
            return entry.count

    def reset(self, identity: str) -> None:
        with self._lock:
            self._entries.pop(identity, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
