"""Process-wide admission control keyed by client identity.

Each key gets a fixed window: the first request opens it, up to ``limit``
requests are admitted inside it, and the first request after it closes opens
a fresh one. Denied callers are told to retry after the full window length,
not the time actually left.

When the table tracks more than ``sweep_threshold`` keys, the request that
notices it pays for an inline sweep of every expired entry. There is no
background timer. The table lives in memory only, so a restart or a second
process starts with empty counters.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

DEFAULT_LIMIT = 10
DEFAULT_WINDOW_SECONDS = 60 * 60
DEFAULT_SWEEP_THRESHOLD = 1000


@dataclass
class RateLimitRecord:
    count: int
    reset_time: float


@dataclass(frozen=True)
class Admission:
    allowed: bool
    remaining: int
    limit: int
    retry_after: int


class RateLimiter:
    def __init__(
        self,
        limit: int = DEFAULT_LIMIT,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        *,
        sweep_threshold: int = DEFAULT_SWEEP_THRESHOLD,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.limit = limit
        self.window_seconds = window_seconds
        self.sweep_threshold = sweep_threshold
        self._clock = clock
        self._records: Dict[str, RateLimitRecord] = {}
        self._lock = threading.Lock()

    def admit(self, client_key: str) -> Admission:
        with self._lock:
            now = self._clock()
            if len(self._records) > self.sweep_threshold:
                self._sweep(now)

            record = self._records.get(client_key)
            if record is None or now > record.reset_time:
                self._records[client_key] = RateLimitRecord(count=1, reset_time=now + self.window_seconds)
                return self._admission(True, self.limit - 1)

            if record.count >= self.limit:
                return self._admission(False, 0)

            record.count += 1
            return self._admission(True, self.limit - record.count)

    def reset(self, client_key: Optional[str] = None) -> None:
        """Forget one key, or every key when ``client_key`` is None."""
        with self._lock:
            if client_key is None:
                self._records.clear()
            else:
                self._records.pop(client_key, None)

    def sweep(self) -> int:
        with self._lock:
            return self._sweep(self._clock())

    def __len__(self) -> int:
        return len(self._records)

    def _sweep(self, now: float) -> int:
        expired = [key for key, record in self._records.items() if now > record.reset_time]
        for key in expired:
            del self._records[key]
        return len(expired)

    def _admission(self, allowed: bool, remaining: int) -> Admission:
        return Admission(
            allowed=allowed,
            remaining=remaining,
            limit=self.limit,
            retry_after=int(self.window_seconds),
        )
