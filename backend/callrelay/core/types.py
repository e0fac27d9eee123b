"""
Call Escalation Relay - Core Domain Types

Internal type definitions for the webhook pipeline. These are domain objects
used within the core and service layers, independent of API serialization.

Design Notes:
- Inbound events form a closed set of frozen dataclasses; the API layer
  validates wire JSON with Pydantic and converts it into these types.
- CallSession and NotificationAttempt are the only mutable objects. Sessions
  are mutated only under the session store's per-call lock.
- PriorityTier ordering is by severity: P1 is the most severe.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Set, Tuple


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class EventType(str, Enum):
    """Call-lifecycle event kinds understood by the pipeline."""
    CALL_STARTED = "call-started"
    TRANSCRIPT = "transcript"
    FUNCTION_CALL = "function-call"
    CALL_ENDED = "call-ended"
    SPEECH_UPDATE = "speech-update"
    ERROR = "error"
    UNKNOWN = "unknown"


class PriorityTier(str, Enum):
    """
    Urgency tier of a call.

    P1 = life-safety / flooding emergency
    P2 = municipal / commercial account
    P3 = scheduled major service
    P4 = standard request
    """
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"
    P4 = "P4"

    @property
    def severity(self) -> int:
        """Higher is more severe (P1 = 4, P4 = 1)."""
        return _SEVERITY[self]

    @property
    def sla_seconds(self) -> int:
        """Target response time for the tier."""
        return _SLA_SECONDS[self]

    def outranks(self, other: Optional["PriorityTier"]) -> bool:
        """True if this tier is strictly more severe than ``other``."""
        if other is None:
            return True
        return self.severity > other.severity

    @classmethod
    def most_severe(
        cls,
        current: Optional["PriorityTier"],
        candidate: Optional["PriorityTier"],
    ) -> Optional["PriorityTier"]:
        """Return whichever tier is more severe; a stored tier never drops."""
        if candidate is None:
            return current
        if current is None or candidate.outranks(current):
            return candidate
        return current


_SEVERITY = {
    PriorityTier.P1: 4,
    PriorityTier.P2: 3,
    PriorityTier.P3: 2,
    PriorityTier.P4: 1,
}

_SLA_SECONDS = {
    PriorityTier.P1: 0,
    PriorityTier.P2: 120,
    PriorityTier.P3: 3600,
    PriorityTier.P4: 1800,
}


class CallStatus(str, Enum):
    """Lifecycle status of a call session."""
    ACTIVE = "active"
    ENDED = "ended"


class AttemptStatus(str, Enum):
    """Terminal status of a notification attempt."""
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class Channel(str, Enum):
    """Outbound notification channel."""
    SMS = "sms"


class RecipientRole(str, Enum):
    """Role-based recipient groups used by the routing table."""
    LEAD = "lead"
    MANAGER = "manager"
    ON_CALL = "on_call"


class TrackOutcome(str, Enum):
    """What the state tracker did with an event."""
    CREATED = "created"
    APPLIED = "applied"
    ENDED = "ended"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    ORPHAN = "orphan"
    SESSION_ENDED = "session_ended"


class AuditKind:
    """Event-type labels written to the audit trail."""
    INVALID_SIGNATURE = "InvalidSignature"
    RATE_LIMITED = "RateLimited"
    MALFORMED_PAYLOAD = "MalformedPayload"
    EVENT_ACCEPTED = "EventAccepted"
    UNKNOWN_EVENT_TYPE = "UnknownEventType"
    DUPLICATE_EVENT = "DuplicateEvent"
    CLASSIFICATION = "Classification"
    ESCALATION = "Escalation"
    NOTIFICATION_ATTEMPT = "NotificationAttempt"
    DISPATCH_FAILURE = "DispatchFailure"
    PERSISTENCE_FAILURE = "PersistenceFailure"
    INTERNAL_ERROR = "InternalError"


# Transcript roles spoken by the caller (as opposed to the AI assistant)
CALLER_ROLES = frozenset({"user", "customer", "caller"})


# =============================================================================
# Inbound Events (closed tagged union)
# =============================================================================

@dataclass(frozen=True)
class InboundEvent:
    """
    Base for all call-lifecycle events.

    Attributes:
        call_id: Platform call identifier, stable for the call's lifetime
        event_id: Platform event id, or a fingerprint of the raw body
        timestamp: When the platform emitted the event
        raw_type: The ``type`` string exactly as received
    """
    event_type: ClassVar[EventType] = EventType.UNKNOWN

    call_id: str
    event_id: str
    timestamp: datetime
    raw_type: str = ""


@dataclass(frozen=True)
class CallStarted(InboundEvent):
    event_type: ClassVar[EventType] = EventType.CALL_STARTED

    phone_number: Optional[str] = None
    assistant_id: Optional[str] = None
    started_at: Optional[datetime] = None


@dataclass(frozen=True)
class Transcript(InboundEvent):
    event_type: ClassVar[EventType] = EventType.TRANSCRIPT

    role: str = "user"
    text: str = ""
    is_final: bool = True


@dataclass(frozen=True)
class FunctionCall(InboundEvent):
    event_type: ClassVar[EventType] = EventType.FUNCTION_CALL

    name: str = ""
    parameters: Dict[str, Any] = field(default_factory=dict)
    tool_call_ids: Tuple[str, ...] = ()


@dataclass(frozen=True)
class CallEnded(InboundEvent):
    event_type: ClassVar[EventType] = EventType.CALL_ENDED

    ended_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    structured_data: Dict[str, Any] = field(default_factory=dict)
    summary: Optional[str] = None
    # Call metadata, used when the report is the first event seen for a call
    phone_number: Optional[str] = None
    assistant_id: Optional[str] = None
    started_at: Optional[datetime] = None


@dataclass(frozen=True)
class SpeechUpdate(InboundEvent):
    event_type: ClassVar[EventType] = EventType.SPEECH_UPDATE

    role: str = ""
    status: str = ""


@dataclass(frozen=True)
class PlatformError(InboundEvent):
    event_type: ClassVar[EventType] = EventType.ERROR

    message: str = ""


@dataclass(frozen=True)
class UnknownEvent(InboundEvent):
    event_type: ClassVar[EventType] = EventType.UNKNOWN


# =============================================================================
# Call Session
# =============================================================================

@dataclass
class TranscriptLine:
    role: str
    text: str
    timestamp: datetime


@dataclass
class CallSession:
    """
    Per-call state accumulated across the events of one phone call.

    Owned by the session store; mutated only while holding the call's lock.
    ``escalated_tiers`` lists tiers already notified, in firing order.
    """
    call_id: str
    phone_number: Optional[str] = None
    assistant_id: Optional[str] = None
    started_at: datetime = field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    status: CallStatus = CallStatus.ACTIVE

    transcript: List[TranscriptLine] = field(default_factory=list)
    fields: Dict[str, Any] = field(default_factory=dict)
    summary: Optional[str] = None
    duration_seconds: Optional[float] = None

    priority: Optional[PriorityTier] = None
    priority_reason: Optional[str] = None
    escalated_tiers: List[PriorityTier] = field(default_factory=list)
    applied_event_ids: Set[str] = field(default_factory=set)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == CallStatus.ACTIVE

    @property
    def transcript_text(self) -> str:
        """Full accumulated transcript, all speakers."""
        return " ".join(line.text for line in self.transcript)

    @property
    def caller_text(self) -> str:
        """Transcript restricted to what the caller said."""
        return " ".join(
            line.text for line in self.transcript if line.role.lower() in CALLER_ROLES
        )

    @property
    def highest_escalated_tier(self) -> Optional[PriorityTier]:
        highest: Optional[PriorityTier] = None
        for tier in self.escalated_tiers:
            highest = PriorityTier.most_severe(highest, tier)
        return highest

    def to_record(self) -> Dict[str, Any]:
        """Row shape written to the ``calls`` table."""
        return {
            "call_id": self.call_id,
            "phone_number": self.phone_number,
            "assistant_id": self.assistant_id,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration_seconds": self.duration_seconds,
            "transcript": self.transcript_text,
            "client_name": self.fields.get("name"),
            "address": self.fields.get("address"),
            "problem_description": self.fields.get("problem"),
            "extracted_fields": dict(self.fields),
            "summary": self.summary,
            "priority": self.priority.value if self.priority else None,
            "priority_reason": self.priority_reason,
            "sla_seconds": self.priority.sla_seconds if self.priority else None,
            "escalated_tiers": [tier.value for tier in self.escalated_tiers],
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class TrackResult:
    """Outcome of applying one event to the state tracker."""
    session: Optional[CallSession]
    outcome: TrackOutcome
    should_classify: bool = False
    final: bool = False


# =============================================================================
# Classification & Escalation
# =============================================================================

@dataclass(frozen=True)
class Classification:
    """Result of one rule evaluation by the priority classifier."""
    tier: PriorityTier
    reason: str
    matched: Optional[str] = None


@dataclass(frozen=True)
class Recipient:
    role: RecipientRole
    phone_number: str
    channel: Channel = Channel.SMS


@dataclass(frozen=True)
class EscalationPlan:
    """Derived routing decision: who gets notified, with which template."""
    call_id: str
    tier: PriorityTier
    template_key: str
    recipients: Tuple[Recipient, ...]
    escalation_id: str = field(default_factory=lambda: f"esc_{uuid.uuid4().hex[:12]}")

    def to_record(self) -> Dict[str, Any]:
        """Row shape written to the ``alerts`` table."""
        return {
            "escalation_id": self.escalation_id,
            "call_id": self.call_id,
            "priority": self.tier.value,
            "template_key": self.template_key,
            "recipients": [
                {"role": r.role.value, "phone_number": r.phone_number, "channel": r.channel.value}
                for r in self.recipients
            ],
            "created_at": utcnow().isoformat(),
        }


# =============================================================================
# Notification Attempt (retry state machine)
# =============================================================================

@dataclass
class NotificationAttempt:
    """
    Delivery state for one (call, recipient) pair of one escalation.

    State machine:
        PENDING --send ok--> DELIVERED
        PENDING --send failed, budget left--> PENDING (next_eligible_at set)
        PENDING --send failed, budget spent or not retryable--> FAILED

    Times are epoch seconds from the dispatcher's injected clock.
    """
    call_id: str
    escalation_id: str
    recipient: Recipient
    tier: PriorityTier
    max_attempts: int
    backoff_seconds: float
    attempt_id: str = field(default_factory=lambda: f"att_{uuid.uuid4().hex[:12]}")
    attempt_count: int = 0
    status: AttemptStatus = AttemptStatus.PENDING
    last_attempt_at: Optional[float] = None
    next_eligible_at: Optional[float] = None
    last_error: Optional[str] = None
    provider_message_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != AttemptStatus.PENDING

    def is_ready(self, now: float) -> bool:
        return self.next_eligible_at is None or now >= self.next_eligible_at

    def begin(self, now: float) -> None:
        """Mark the start of a send; only valid while pending."""
        if self.is_terminal:
            raise ValueError(f"attempt {self.attempt_id} already {self.status.value}")
        self.attempt_count += 1
        self.last_attempt_at = now
        self.next_eligible_at = None

    def record_success(self, message_id: Optional[str]) -> None:
        self.status = AttemptStatus.DELIVERED
        self.provider_message_id = message_id
        self.last_error = None

    def record_failure(self, error: str, retryable: bool = True) -> None:
        self.last_error = error
        if not retryable or self.attempt_count >= self.max_attempts:
            self.status = AttemptStatus.FAILED
            self.next_eligible_at = None
        else:
            self.next_eligible_at = (self.last_attempt_at or 0.0) + self.backoff_seconds

    def to_record(self) -> Dict[str, Any]:
        """Row shape written to the ``notification_attempts`` table."""
        return {
            "attempt_id": self.attempt_id,
            "escalation_id": self.escalation_id,
            "call_id": self.call_id,
            "recipient": self.recipient.phone_number,
            "role": self.recipient.role.value,
            "channel": self.recipient.channel.value,
            "priority": self.tier.value,
            "attempt_count": self.attempt_count,
            "max_attempts": self.max_attempts,
            "status": self.status.value,
            "last_attempt_at": (
                datetime.fromtimestamp(self.last_attempt_at, tz=timezone.utc).isoformat()
                if self.last_attempt_at is not None else None
            ),
            "last_error": self.last_error,
            "provider_message_id": self.provider_message_id,
        }


# =============================================================================
# Audit
# =============================================================================

@dataclass(frozen=True)
class AuditEntry:
    """
    One immutable line of the audit trail.

    Never updated or deleted by the pipeline.
    """
    event_type: str
    actor: str
    outcome: str
    call_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    detail: Dict[str, Any] = field(default_factory=dict)
    entry_id: str = field(default_factory=lambda: f"aud_{uuid.uuid4().hex[:16]}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to serializable dictionary."""
        return {
            "entry_id": self.entry_id,
            "event_type": self.event_type,
            "call_id": self.call_id,
            "actor": self.actor,
            "outcome": self.outcome,
            "timestamp": self.timestamp.isoformat(),
            "detail": dict(self.detail),
        }
