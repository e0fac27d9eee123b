"""
Call Escalation Relay - Notification Dispatcher

Formats escalation messages and delivers them to every recipient of an
EscalationPlan with per-tier retry.

Each (call, recipient) pair gets a NotificationAttempt that is persisted
before the first send and after every attempt. Recipients are served
concurrently; one recipient's failures never delay or fail another's.
Timing goes through an injected clock and sleep function so retry
schedules are testable without real waits.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Mapping, Optional

from callrelay.config import Settings
from callrelay.core.audit import AuditRecorder
from callrelay.core.exceptions import DispatchError
from callrelay.core.logging import mask_call_id
from callrelay.core.privacy import mask_phone_number
from callrelay.core.types import (
    AttemptStatus,
    AuditKind,
    CallSession,
    EscalationPlan,
    NotificationAttempt,
    PriorityTier,
)
from callrelay.services.sms_gateway import SMS_MAX_LENGTH, SmsGateway

logger = logging.getLogger(__name__)


# =============================================================================
# Retry Policy
# =============================================================================

@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    backoff_seconds: float


DEFAULT_RETRY_POLICIES: Dict[PriorityTier, RetryPolicy] = {
    PriorityTier.P1: RetryPolicy(max_attempts=3, backoff_seconds=1.0),
    PriorityTier.P2: RetryPolicy(max_attempts=2, backoff_seconds=5.0),
    PriorityTier.P3: RetryPolicy(max_attempts=1, backoff_seconds=10.0),
    PriorityTier.P4: RetryPolicy(max_attempts=1, backoff_seconds=10.0),
}


def retry_policies_from_settings(settings: Settings) -> Dict[PriorityTier, RetryPolicy]:
    return {
        PriorityTier(name): RetryPolicy(max_attempts=max(1, attempts), backoff_seconds=backoff)
        for name, (attempts, backoff) in settings.retry_policies.items()
    }


# =============================================================================
# Message Templates
# =============================================================================

MESSAGE_TEMPLATES: Dict[str, str] = {
    "escalation.p1": (
        "🚨 {tier} URGENCE - intervention immédiate\n"
        "Client: {name}\n"
        "Tél: {phone}\n"
        "Adresse: {address}\n"
        "Problème: {problem}"
    ),
    "escalation.p2": (
        "⚠️ {tier} Client municipal/commercial\n"
        "Client: {name}\n"
        "Tél: {phone}\n"
        "Adresse: {address}\n"
        "Problème: {problem}"
    ),
    "escalation.p3": (
        "📋 {tier} Service majeur à planifier\n"
        "Client: {name}\n"
        "Tél: {phone}\n"
        "Adresse: {address}\n"
        "Problème: {problem}"
    ),
    "escalation.p4": (
        "📞 {tier} Nouvelle demande\n"
        "Client: {name}\n"
        "Tél: {phone}\n"
        "Problème: {problem}"
    ),
}

MISSING_VALUE = "N/D"


def render_message(template_key: str, session: CallSession, tier: PriorityTier) -> str:
    """
    Interpolate the call's details into a template.

    Missing values render as ``N/D``. The result is cut to the SMS length
    limit on a character boundary, so multi-byte text and emoji stay intact.
    """
    template = MESSAGE_TEMPLATES.get(template_key, MESSAGE_TEMPLATES["escalation.p4"])
    fields = session.fields

    problem = fields.get("problem") or session.summary or session.caller_text
    values = {
        "tier": tier.value,
        "name": fields.get("name") or MISSING_VALUE,
        "phone": session.phone_number or fields.get("phone") or MISSING_VALUE,
        "address": fields.get("address") or MISSING_VALUE,
        "problem": problem or MISSING_VALUE,
    }
    body = template.format(**{k: str(v).strip() for k, v in values.items()})
    if len(body) > SMS_MAX_LENGTH:
        body = body[: SMS_MAX_LENGTH - 1] + "…"
    return body


# =============================================================================
# Dispatcher
# =============================================================================

class NotificationDispatcher:
    """
    Delivers an EscalationPlan with retry and failure accounting.

    Usage:
        dispatcher = NotificationDispatcher(gateway, persistence, audit)
        attempts = await dispatcher.dispatch(plan, session)
    """

    def __init__(
        self,
        gateway: SmsGateway,
        persistence=None,
        audit: Optional[AuditRecorder] = None,
        retry_policies: Optional[Mapping[PriorityTier, RetryPolicy]] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._gateway = gateway
        self._persistence = persistence
        self._audit = audit
        self._policies = dict(DEFAULT_RETRY_POLICIES)
        if retry_policies:
            self._policies.update(retry_policies)
        self._clock = clock
        self._sleep = sleep

    def policy_for(self, tier: PriorityTier) -> RetryPolicy:
        return self._policies[tier]

    async def dispatch(self, plan: EscalationPlan, session: CallSession) -> List[NotificationAttempt]:
        """Send the plan's message to every recipient; never raises DispatchError."""
        body = render_message(plan.template_key, session, plan.tier)
        policy = self.policy_for(plan.tier)

        await self._write("create_alert", plan.to_record(), plan.call_id)

        attempts = [
            NotificationAttempt(
                call_id=plan.call_id,
                escalation_id=plan.escalation_id,
                recipient=recipient,
                tier=plan.tier,
                max_attempts=policy.max_attempts,
                backoff_seconds=policy.backoff_seconds,
            )
            for recipient in plan.recipients
        ]

        for attempt in attempts:
            await self._write("create_notification_attempt", attempt.to_record(), plan.call_id)

        results = await asyncio.gather(
            *(self._deliver(attempt, body) for attempt in attempts),
            return_exceptions=True,
        )

        for attempt, result in zip(attempts, results):
            if isinstance(result, Exception):
                logger.error(
                    "Delivery to %s aborted: %s",
                    mask_phone_number(attempt.recipient.phone_number),
                    result,
                )
                if not attempt.is_terminal:
                    attempt.status = AttemptStatus.FAILED
                    attempt.last_error = str(result)

        delivered = sum(1 for a in attempts if a.status == AttemptStatus.DELIVERED)
        logger.info(
            "Escalation %s for call=%s: %d/%d delivered",
            plan.tier.value,
            mask_call_id(plan.call_id),
            delivered,
            len(attempts),
        )
        return attempts

    async def _deliver(self, attempt: NotificationAttempt, body: str) -> None:
        recipient = attempt.recipient.phone_number

        while not attempt.is_terminal:
            now = self._clock()
            if not attempt.is_ready(now):
                await self._sleep(attempt.next_eligible_at - now)

            attempt.begin(self._clock())
            try:
                message_id = await self._gateway.send(recipient, body)
            except DispatchError as e:
                attempt.record_failure(e.message, retryable=e.retryable)
            except Exception as e:
                attempt.record_failure(str(e) or type(e).__name__, retryable=True)
            else:
                attempt.record_success(message_id)

            await self._write("update_notification_attempt", attempt.to_record(), attempt.call_id)
            self._record(
                AuditKind.NOTIFICATION_ATTEMPT,
                attempt,
                outcome=attempt.status.value if attempt.is_terminal else "retry_scheduled",
            )

        if attempt.status == AttemptStatus.FAILED:
            logger.error(
                "Notification to %s failed after %d attempt(s): %s",
                mask_phone_number(recipient),
                attempt.attempt_count,
                attempt.last_error,
            )
            self._record(AuditKind.DISPATCH_FAILURE, attempt, outcome="failed")

    def _record(self, kind: str, attempt: NotificationAttempt, outcome: str) -> None:
        if self._audit is None:
            return
        self._audit.record(
            kind,
            call_id=attempt.call_id,
            actor="dispatcher",
            outcome=outcome,
            detail={
                "attempt_id": attempt.attempt_id,
                "escalation_id": attempt.escalation_id,
                "recipient": mask_phone_number(attempt.recipient.phone_number),
                "tier": attempt.tier.value,
                "attempt": attempt.attempt_count,
                "error": attempt.last_error,
            },
        )

    async def _write(self, operation: str, record: dict, call_id: str) -> None:
        """Persistence write that degrades to a log line and an audit entry."""
        if self._persistence is None:
            return
        try:
            await getattr(self._persistence, operation)(record)
        except Exception as e:
            logger.error("Persistence %s failed for call=%s: %s", operation, mask_call_id(call_id), e)
            if self._audit is not None:
                self._audit.record(
                    AuditKind.PERSISTENCE_FAILURE,
                    call_id=call_id,
                    actor="dispatcher",
                    outcome="failed",
                    detail={"operation": operation, "error": str(e)},
                )
