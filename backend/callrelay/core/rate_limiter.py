"""
Call Escalation Relay - Rate Limiter

Fixed-window request limiting per source address.

Each source gets a counter and a window reset time. The first request after
the window has passed starts a new window with a count of one. State lives in
an injected RateLimitStore so a shared backend can replace the in-memory one.
"""

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Tuple


@dataclass(frozen=True)
class RateLimitDecision:
    """
    Result of one rate-limit check.

    ``retry_after`` is only meaningful when ``allowed`` is False.
    """
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: int = 0

    def headers(self) -> Dict[str, str]:
        """X-RateLimit-* response headers, plus Retry-After when limited."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(math.ceil(self.reset_at))),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class RateLimitStore(Protocol):
    """Atomic increment-or-reset storage for window counters."""

    def hit(self, source_id: str, now: float, window_seconds: float) -> Tuple[int, float]:
        """Count one request; return (count, window_reset_time)."""
        ...

    def purge(self, now: float, window_seconds: float) -> int:
        """Drop entries inactive for longer than one window."""
        ...


class InMemoryRateLimitStore:
    """Process-local store guarded by a lock."""

    def __init__(self):
        self._entries: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()

    def hit(self, source_id: str, now: float, window_seconds: float) -> Tuple[int, float]:
        with self._lock:
            entry = self._entries.get(source_id)
            if entry is None or now > entry[1]:
                entry = (1, now + window_seconds)
            else:
                entry = (entry[0] + 1, entry[1])
            self._entries[source_id] = entry
            return entry

    def purge(self, now: float, window_seconds: float) -> int:
        with self._lock:
            stale = [
                source_id
                for source_id, (_, reset_at) in self._entries.items()
                if now - reset_at > window_seconds
            ]
            for source_id in stale:
                del self._entries[source_id]
            return len(stale)

    def __len__(self) -> int:
        return len(self._entries)


class RateLimiter:
    """
    Per-source fixed-window limiter.

    Usage:
        limiter = RateLimiter(max_requests=100, window_seconds=60)
        decision = limiter.check("203.0.113.7")
        if not decision.allowed:
            ...  # respond 429 with decision.headers()
    """

    def __init__(
        self,
        max_requests: int = 100,
        window_seconds: float = 60.0,
        store: Optional[RateLimitStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.store = store if store is not None else InMemoryRateLimitStore()
        self._clock = clock
        self._last_purge = 0.0

    def check(self, source_id: str, now: Optional[float] = None) -> RateLimitDecision:
        if now is None:
            now = self._clock()

        self._maybe_purge(now)

        count, reset_at = self.store.hit(source_id, now, self.window_seconds)
        remaining = max(0, self.max_requests - count)

        if count > self.max_requests:
            retry_after = max(1, int(math.ceil(reset_at - now)))
            return RateLimitDecision(
                allowed=False,
                limit=self.max_requests,
                remaining=0,
                reset_at=reset_at,
                retry_after=retry_after,
            )

        return RateLimitDecision(
            allowed=True,
            limit=self.max_requests,
            remaining=remaining,
            reset_at=reset_at,
        )

    def _maybe_purge(self, now: float) -> None:
        # Garbage collection runs at most once per window
        if now - self._last_purge >= self.window_seconds:
            self.store.purge(now, self.window_seconds)
            self._last_purge = now
