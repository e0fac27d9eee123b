"""
Call Escalation Relay - Persistence Gateway

Storage collaborator for calls, leads, alerts, notification attempts and the
audit trail.

Implementations:
    - InMemoryPersistenceGateway: process-local tables, used by default and in tests
    - SupabasePersistenceGateway: PostgREST upserts against a Supabase project

Every write is an upsert keyed by a natural id so redelivered webhooks never
create duplicate rows. Failures raise PersistenceError; callers log and
continue rather than failing the request.
"""

from __future__ import annotations

import copy
import logging
from abc import abstractmethod
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import httpx

from callrelay.config import Settings
from callrelay.core.exceptions import PersistenceError

logger = logging.getLogger(__name__)


# Table names and their conflict keys
CALLS_TABLE = "vapi_calls"
LEADS_TABLE = "leads"
ALERTS_TABLE = "internal_alerts"
ATTEMPTS_TABLE = "notification_attempts"
AUDIT_TABLE = "audit_log"

_CONFLICT_KEYS = {
    CALLS_TABLE: "call_id",
    LEADS_TABLE: "phone",
    ALERTS_TABLE: "escalation_id",
    ATTEMPTS_TABLE: "attempt_id",
    AUDIT_TABLE: "entry_id",
}


# =============================================================================
# Protocol
# =============================================================================

@runtime_checkable
class PersistenceGateway(Protocol):
    """Protocol for the storage backend."""

    @abstractmethod
    async def upsert_call(self, record: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def upsert_lead(self, record: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def create_alert(self, record: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def create_notification_attempt(self, record: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def update_notification_attempt(self, record: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def append_audit(self, record: Dict[str, Any]) -> None:
        ...


# =============================================================================
# In-Memory Implementation
# =============================================================================

class InMemoryPersistenceGateway:
    """
    Dictionary-backed tables keyed by each table's conflict key.

    Audit rows are append-only; an existing entry id is never overwritten.
    """

    def __init__(self):
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = {
            table: {} for table in _CONFLICT_KEYS
        }

    def _upsert(self, table: str, record: Dict[str, Any]) -> None:
        key = record.get(_CONFLICT_KEYS[table])
        if key is None:
            raise PersistenceError(
                f"{table} row missing {_CONFLICT_KEYS[table]}",
                operation=f"upsert:{table}",
            )
        existing = self.tables[table].get(key, {})
        merged = {**existing, **copy.deepcopy(record)}
        self.tables[table][key] = merged

    async def upsert_call(self, record: Dict[str, Any]) -> None:
        self._upsert(CALLS_TABLE, record)

    async def upsert_lead(self, record: Dict[str, Any]) -> None:
        self._upsert(LEADS_TABLE, record)

    async def create_alert(self, record: Dict[str, Any]) -> None:
        self._upsert(ALERTS_TABLE, record)

    async def create_notification_attempt(self, record: Dict[str, Any]) -> None:
        self._upsert(ATTEMPTS_TABLE, record)

    async def update_notification_attempt(self, record: Dict[str, Any]) -> None:
        self._upsert(ATTEMPTS_TABLE, record)

    async def append_audit(self, record: Dict[str, Any]) -> None:
        if record.get("entry_id") in self.tables[AUDIT_TABLE]:
            return
        self._upsert(AUDIT_TABLE, record)

    def rows(self, table: str) -> List[Dict[str, Any]]:
        """All rows of a table, in insertion order."""
        return list(self.tables[table].values())

    def get(self, table: str, key: str) -> Optional[Dict[str, Any]]:
        return self.tables[table].get(key)


# =============================================================================
# Supabase (PostgREST) Implementation
# =============================================================================

class SupabasePersistenceGateway:
    """
    Upserts over the Supabase REST API.

    Rows are POSTed to ``/rest/v1/{table}`` with
    ``Prefer: resolution=merge-duplicates`` and an ``on_conflict`` key.
    """

    def __init__(
        self,
        *,
        base_url: str,
        service_key: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.service_key = service_key
        self.timeout = timeout
        self._client = client

    def _headers(self) -> dict:
        return {
            "apikey": self.service_key,
            "Authorization": f"Bearer {self.service_key}",
            "Content-Type": "application/json",
            "Prefer": "resolution=merge-duplicates,return=minimal",
        }

    async def _post(self, table: str, record: Dict[str, Any]) -> None:
        url = f"{self.base_url}/rest/v1/{table}"
        params = {"on_conflict": _CONFLICT_KEYS[table]}
        try:
            if self._client is not None:
                resp = await self._client.post(
                    url, json=record, headers=self._headers(), params=params
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(
                        url, json=record, headers=self._headers(), params=params
                    )
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise PersistenceError(
                f"Supabase rejected {table} write: HTTP {e.response.status_code}",
                operation=f"upsert:{table}",
                details={"body": e.response.text[:500]},
            ) from e
        except httpx.HTTPError as e:
            raise PersistenceError(
                f"Supabase unreachable for {table} write: {e}",
                operation=f"upsert:{table}",
            ) from e

    async def upsert_call(self, record: Dict[str, Any]) -> None:
        await self._post(CALLS_TABLE, record)

    async def upsert_lead(self, record: Dict[str, Any]) -> None:
        await self._post(LEADS_TABLE, record)

    async def create_alert(self, record: Dict[str, Any]) -> None:
        await self._post(ALERTS_TABLE, record)

    async def create_notification_attempt(self, record: Dict[str, Any]) -> None:
        await self._post(ATTEMPTS_TABLE, record)

    async def update_notification_attempt(self, record: Dict[str, Any]) -> None:
        await self._post(ATTEMPTS_TABLE, record)

    async def append_audit(self, record: Dict[str, Any]) -> None:
        await self._post(AUDIT_TABLE, record)


# =============================================================================
# Factory Function
# =============================================================================

def create_persistence_gateway(settings: Settings) -> PersistenceGateway:
    """
    Create a persistence gateway based on settings.

    Args:
        settings: Application settings

    Returns:
        Configured PersistenceGateway instance
    """
    backend = settings.persistence_backend.lower()

    if backend == "supabase":
        logger.info("Creating SupabasePersistenceGateway")
        return SupabasePersistenceGateway(
            base_url=settings.supabase_url,
            service_key=settings.supabase_service_key,
            timeout=settings.supabase_timeout_seconds,
        )

    if backend != "memory":
        logger.warning("Unknown persistence backend '%s', using in-memory gateway", backend)

    logger.info("Creating InMemoryPersistenceGateway")
    return InMemoryPersistenceGateway()
