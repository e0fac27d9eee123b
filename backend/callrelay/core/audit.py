"""
Call Escalation Relay - Audit Recorder

Append-only trail of inbound events and outbound actions.

Entries are kept in a bounded in-memory trail and written to the persistence
gateway in the background so the webhook response never waits on storage.
A write that fails is not dropped: the full entry goes to the
``callrelay.audit.fallback`` logger, which operators ship with the rest of
the logs.
"""

from __future__ import annotations

import asyncio
import json
import logging
from threading import Lock
from typing import Any, Dict, List, Optional, Set

from .types import AuditEntry

logger = logging.getLogger(__name__)
fallback_logger = logging.getLogger("callrelay.audit.fallback")


class AuditRecorder:
    """
    Records AuditEntry objects.

    Usage:
        recorder = AuditRecorder(gateway=persistence)
        recorder.record("EventAccepted", call_id="c1", outcome="applied")
        await recorder.flush()
    """

    def __init__(self, gateway=None, max_entries: int = 10000):
        """
        Args:
            gateway: PersistenceGateway with ``append_audit``; None keeps memory only
            max_entries: Bound on the in-memory trail
        """
        self._gateway = gateway
        self._max_entries = max_entries
        self._lock = Lock()
        self._entries: List[AuditEntry] = []
        self._pending: Set[asyncio.Task] = set()
        self.failed_writes = 0

    def record(
        self,
        event_type: str,
        call_id: Optional[str] = None,
        actor: str = "webhook",
        outcome: str = "ok",
        detail: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        """Append an entry and schedule its persistent write."""
        entry = AuditEntry(
            event_type=event_type,
            call_id=call_id,
            actor=actor,
            outcome=outcome,
            detail=dict(detail or {}),
        )

        with self._lock:
            self._entries.append(entry)
            if len(self._entries) > self._max_entries:
                excess = len(self._entries) - self._max_entries
                self._entries = self._entries[excess:]

        if self._gateway is not None:
            task = asyncio.get_running_loop().create_task(self._write(entry))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

        return entry

    async def _write(self, entry: AuditEntry) -> None:
        try:
            await self._gateway.append_audit(entry.to_dict())
        except Exception as e:
            self.failed_writes += 1
            logger.error("Audit write failed for %s: %s", entry.event_type, e)
            fallback_logger.error(json.dumps(entry.to_dict(), ensure_ascii=False, default=str))

    async def flush(self) -> None:
        """Wait for every scheduled write to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def pending_writes(self) -> int:
        return len(self._pending)

    def entries(
        self,
        event_type: Optional[str] = None,
        call_id: Optional[str] = None,
    ) -> List[AuditEntry]:
        """Entries in recording order, optionally filtered."""
        with self._lock:
            result = list(self._entries)
        if event_type is not None:
            result = [e for e in result if e.event_type == event_type]
        if call_id is not None:
            result = [e for e in result if e.call_id == call_id]
        return result

    def recent(self, limit: int = 100) -> List[AuditEntry]:
        """Most recent entries, newest first."""
        with self._lock:
            return list(reversed(self._entries[-limit:]))
