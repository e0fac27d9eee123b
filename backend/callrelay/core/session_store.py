"""
Call Escalation Relay - Call Session Store

Keyed storage for CallSession objects with per-call locking.

Every read-modify-write of a session happens inside ``store.lock(call_id)``,
which serialises concurrent events for the same call while leaving other
calls untouched. The in-memory implementation also evicts stale sessions in
a background loop and stays bounded.
"""

from __future__ import annotations

import asyncio
import logging
from abc import abstractmethod
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator, Dict, Optional, Protocol, runtime_checkable

from .logging import mask_call_id
from .types import CallSession, utcnow

logger = logging.getLogger(__name__)


# =============================================================================
# Protocol
# =============================================================================

@runtime_checkable
class CallSessionStore(Protocol):
    """
    Protocol for call session storage.

    Implementations must guarantee at most one session per call id and
    mutual exclusion for holders of ``lock(call_id)``.
    """

    @abstractmethod
    def lock(self, call_id: str):
        """Async context manager holding the call's exclusive lock."""
        ...

    @abstractmethod
    async def get(self, call_id: str) -> Optional[CallSession]:
        ...

    @abstractmethod
    async def create(self, session: CallSession) -> CallSession:
        """Insert unless present; returns the stored session either way."""
        ...

    @abstractmethod
    async def save(self, session: CallSession) -> None:
        ...

    @abstractmethod
    async def count(self) -> int:
        ...

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...


# =============================================================================
# In-Memory Implementation
# =============================================================================

class InMemoryCallSessionStore:
    """
    In-memory session store for a single service instance.

    Usage:
        store = InMemoryCallSessionStore(max_sessions=1000)
        await store.start()

        async with store.lock("call-123"):
            session = await store.get("call-123")
            ...

        await store.stop()
    """

    def __init__(
        self,
        max_sessions: int = 1000,
        session_ttl_minutes: int = 120,
        ended_grace_minutes: int = 5,
        cleanup_interval_seconds: int = 60,
    ):
        """
        Initialize the call session store.

        Args:
            max_sessions: Maximum sessions kept in memory
            session_ttl_minutes: Evict any session older than this
            ended_grace_minutes: Keep ended sessions this long for redeliveries
            cleanup_interval_seconds: Background cleanup interval
        """
        self._sessions: Dict[str, CallSession] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        # Holders and waiters per call lock; a call in use is never evicted
        self._lock_users: Dict[str, int] = {}
        self._guard = asyncio.Lock()
        self._max_sessions = max_sessions
        self._session_ttl = timedelta(minutes=session_ttl_minutes)
        self._ended_grace = timedelta(minutes=ended_grace_minutes)
        self._cleanup_interval = cleanup_interval_seconds
        self._cleanup_task: Optional[asyncio.Task] = None
        self._started = False

    async def start(self) -> None:
        """Start background cleanup task."""
        if self._started:
            return

        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        self._started = True

        logger.info(
            "InMemoryCallSessionStore started: max=%d, ttl=%s, cleanup_interval=%ds",
            self._max_sessions,
            self._session_ttl,
            self._cleanup_interval,
        )

    async def stop(self) -> None:
        """Stop background tasks."""
        if not self._started:
            return

        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass

        self._started = False
        logger.info("InMemoryCallSessionStore stopped: %d sessions in memory", len(self._sessions))

    @asynccontextmanager
    async def lock(self, call_id: str) -> AsyncIterator[None]:
        async with self._guard:
            call_lock = self._locks.get(call_id)
            if call_lock is None:
                call_lock = asyncio.Lock()
                self._locks[call_id] = call_lock
            self._lock_users[call_id] = self._lock_users.get(call_id, 0) + 1

        try:
            async with call_lock:
                yield
        finally:
            remaining = self._lock_users[call_id] - 1
            if remaining:
                self._lock_users[call_id] = remaining
            else:
                del self._lock_users[call_id]

    async def get(self, call_id: str) -> Optional[CallSession]:
        return self._sessions.get(call_id)

    async def create(self, session: CallSession) -> CallSession:
        existing = self._sessions.get(session.call_id)
        if existing is not None:
            return existing

        if len(self._sessions) >= self._max_sessions:
            self._evict_oldest()

        self._sessions[session.call_id] = session
        logger.debug("Call session stored: call=%s", mask_call_id(session.call_id))
        return session

    async def save(self, session: CallSession) -> None:
        session.updated_at = utcnow()
        self._sessions[session.call_id] = session

    async def count(self) -> int:
        return len(self._sessions)

    def in_use(self, call_id: str) -> bool:
        """True while any request holds or waits for the call's lock."""
        return call_id in self._lock_users

    def _evict_oldest(self) -> None:
        """Drop one session, preferring ended ones, to stay within bounds."""
        idle = [s for s in self._sessions.values() if not self.in_use(s.call_id)]
        if not idle:
            logger.warning("Session store at capacity (%d) with every call in use", self._max_sessions)
            return
        ended = [s for s in idle if not s.is_active]
        pool = ended or idle
        victim = min(pool, key=lambda s: s.updated_at)
        del self._sessions[victim.call_id]
        self._locks.pop(victim.call_id, None)
        logger.warning(
            "Session store at capacity (%d): evicted call=%s (status=%s)",
            self._max_sessions,
            mask_call_id(victim.call_id),
            victim.status.value,
        )

    def evict_stale(self) -> int:
        """Remove ended sessions past the grace period and any past the TTL."""
        now = utcnow()
        stale_ids = []

        for call_id, session in self._sessions.items():
            if session.ended_at and (now - session.ended_at) > self._ended_grace:
                stale_ids.append(call_id)
            elif (now - session.started_at) > self._session_ttl:
                stale_ids.append(call_id)

        removed = 0
        for call_id in stale_ids:
            if self.in_use(call_id):
                continue
            del self._sessions[call_id]
            self._locks.pop(call_id, None)
            removed += 1

        return removed

    async def _cleanup_loop(self) -> None:
        """Background task to evict stale sessions."""
        while True:
            try:
                await asyncio.sleep(self._cleanup_interval)

                async with self._guard:
                    removed = self.evict_stale()

                if removed:
                    logger.info("Cleaned up %d stale call sessions", removed)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in session cleanup loop: %s", str(e))
