"""
Call Escalation Relay - Core Package

Contains the central orchestration logic and domain types:
- types: Events, sessions, tiers, plans, attempts, audit entries
- exceptions: Error taxonomy with HTTP status codes
- session_store / rate_limiter: Injected shared state
- audit: Append-only audit trail
- pipeline: Webhook processing orchestrator (import from callrelay.core.pipeline)
"""

from .types import (
    EventType,
    PriorityTier,
    CallStatus,
    InboundEvent,
    CallSession,
    EscalationPlan,
    NotificationAttempt,
    AttemptStatus,
    AuditEntry,
)
from .exceptions import (
    RelayError,
    InvalidSignatureError,
    RateLimitedError,
    MalformedPayloadError,
    DispatchError,
    PersistenceError,
    ConfigurationError,
)

__all__ = [
    # Types
    "EventType",
    "PriorityTier",
    "CallStatus",
    "InboundEvent",
    "CallSession",
    "EscalationPlan",
    "NotificationAttempt",
    "AttemptStatus",
    "AuditEntry",
    # Errors
    "RelayError",
    "InvalidSignatureError",
    "RateLimitedError",
    "MalformedPayloadError",
    "DispatchError",
    "PersistenceError",
    "ConfigurationError",
]
