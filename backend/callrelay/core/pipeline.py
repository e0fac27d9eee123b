"""
Call Escalation Relay - Webhook Pipeline Orchestrator

Single entry point for every inbound call-platform webhook.

Architecture:
    Each request runs a linear sequence of stages:

    1. AUTHENTICATE: HMAC signature over the raw body (401 on failure)
    2. THROTTLE: Fixed-window limit per source (429 on failure)
    3. PARSE: Raw body -> typed InboundEvent (400 on failure)
    4. TRACK: Apply the event to the call's session
    5. CLASSIFY: Re-derive the priority tier when content changed
    6. ROUTE: Decide whether the tier warrants a new escalation
    7. DISPATCH: Send notifications in the background
    8. AUDIT: Record what happened at every step

    Stages 4-6 run under the call's session lock, so concurrent events for
    one call are applied in sequence while other calls proceed in parallel.

Design Principles:
    - Fail closed on authentication, fail soft on dependencies
    - Persistence and audit failures degrade their step, never the response
    - Every request gets a response; unexpected errors become a 500 body
    - Idempotent: redelivered events are recognised and acknowledged

Usage:
    from callrelay.core.pipeline import create_pipeline
    from callrelay.config import get_settings

    pipeline = create_pipeline(get_settings())
    await pipeline.startup()

    response = await pipeline.handle(raw_body, signature, source_id="203.0.113.7")
    response.status_code, response.body, response.headers
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from callrelay.api.schemas import WebhookResponse
from callrelay.config import Settings
from callrelay.core.audit import AuditRecorder
from callrelay.core.exceptions import (
    InvalidSignatureError,
    MalformedPayloadError,
    RateLimitedError,
    RelayError,
)
from callrelay.core.logging import LogContext, mask_call_id
from callrelay.core.rate_limiter import RateLimiter
from callrelay.core.session_store import CallSessionStore
from callrelay.core.types import (
    AttemptStatus,
    AuditKind,
    CallSession,
    EscalationPlan,
    EventType,
    FunctionCall,
    InboundEvent,
    TrackOutcome,
    utcnow,
)
from callrelay.services.call_tracker import CallStateTracker
from callrelay.services.classifier import PriorityClassifier
from callrelay.services.event_parser import parse_event
from callrelay.services.notifier import NotificationDispatcher
from callrelay.services.router import EscalationRouter
from callrelay.services.signature import SignatureVerifier

logger = logging.getLogger(__name__)

_STATE_CHANGING = {TrackOutcome.CREATED, TrackOutcome.APPLIED, TrackOutcome.ENDED}


# =============================================================================
# Response & Metrics
# =============================================================================

@dataclass
class PipelineResponse:
    """What the HTTP layer sends back to the call platform."""
    status_code: int
    body: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class PipelineMetrics:
    """Metrics for a single webhook."""
    request_id: str
    event_type: Optional[str] = None
    outcome: Optional[str] = None
    status_code: int = 200
    escalated: bool = False
    total_ms: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "request_id": self.request_id,
            "event_type": self.event_type,
            "outcome": self.outcome,
            "status_code": self.status_code,
            "escalated": self.escalated,
            "total_ms": round(self.total_ms, 2) if self.total_ms else None,
        }


# =============================================================================
# Pipeline
# =============================================================================

class EventPipeline:
    """
    Central orchestrator for webhook processing.

    Attributes:
        verifier: Webhook signature verification
        rate_limiter: Per-source request limiting
        store: Call session storage with per-call locks
        tracker: Session state transitions
        classifier: Priority tier rules
        router: Escalation decisions and recipient plans
        dispatcher: Notification delivery with retry
        audit: Audit trail
    """

    def __init__(
        self,
        verifier: SignatureVerifier,
        rate_limiter: RateLimiter,
        store: CallSessionStore,
        tracker: CallStateTracker,
        classifier: PriorityClassifier,
        router: EscalationRouter,
        dispatcher: NotificationDispatcher,
        audit: AuditRecorder,
        persistence=None,
        dispatch_response_timeout: float = 2.5,
    ):
        self.verifier = verifier
        self.rate_limiter = rate_limiter
        self.store = store
        self.tracker = tracker
        self.classifier = classifier
        self.router = router
        self.dispatcher = dispatcher
        self.audit = audit
        self.persistence = persistence
        self._dispatch_timeout = dispatch_response_timeout
        self._tasks: Set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def handle(
        self,
        raw_body: bytes,
        signature: Optional[str],
        source_id: str,
    ) -> PipelineResponse:
        """
        Process one webhook delivery.

        Args:
            raw_body: Exact request bytes (the signature covers these)
            signature: Value of the signature header, if any
            source_id: Caller address used for rate limiting

        Returns:
            PipelineResponse; this method never raises
        """
        request_id = self._generate_request_id()
        start_time = time.time()
        metrics = PipelineMetrics(request_id=request_id)

        with LogContext(correlation_id=request_id) as log_ctx:
            try:
                response = await self._process(raw_body, signature, source_id, log_ctx, metrics)
            except Exception as e:
                logger.error("Pipeline error [%s]: %s", request_id, str(e), exc_info=True)
                self.audit.record(
                    AuditKind.INTERNAL_ERROR,
                    actor="pipeline",
                    outcome="error",
                    detail={"request_id": request_id, "error": type(e).__name__},
                )
                response = PipelineResponse(
                    status_code=500,
                    body=WebhookResponse(
                        success=False,
                        error={"code": "INTERNAL_ERROR", "message": "Internal error"},
                    ).to_body(),
                )

            metrics.status_code = response.status_code
            metrics.total_ms = (time.time() - start_time) * 1000
            logger.debug(
                "Webhook processed",
                extra={"event_type": "webhook_processed", "data": metrics.to_dict()},
            )
            return response

    async def _process(
        self,
        raw_body: bytes,
        signature: Optional[str],
        source_id: str,
        log_ctx: LogContext,
        metrics: PipelineMetrics,
    ) -> PipelineResponse:
        # --- 1. Authenticate ---
        try:
            self.verifier.verify(raw_body, signature)
        except InvalidSignatureError as e:
            logger.warning("Webhook rejected from %s: %s", source_id, e.message)
            self.audit.record(
                AuditKind.INVALID_SIGNATURE,
                actor=source_id,
                outcome="rejected",
                detail={"reason": e.message},
            )
            return self._error_response(e)

        # --- 2. Throttle ---
        decision = self.rate_limiter.check(source_id)
        headers = decision.headers()
        if not decision.allowed:
            logger.warning("Rate limit exceeded for %s (retry in %ds)", source_id, decision.retry_after)
            self.audit.record(
                AuditKind.RATE_LIMITED,
                actor=source_id,
                outcome="rejected",
                detail={"retry_after": decision.retry_after},
            )
            error = RateLimitedError("Too many requests", retry_after=decision.retry_after)
            return self._error_response(error, headers)

        # --- 3. Parse ---
        try:
            event = parse_event(raw_body)
        except MalformedPayloadError as e:
            logger.warning("Malformed webhook from %s: %s", source_id, e.message)
            self.audit.record(
                AuditKind.MALFORMED_PAYLOAD,
                actor=source_id,
                outcome="rejected",
                detail={"reason": e.message, **e.details},
            )
            return self._error_response(e, headers)

        log_ctx.bind_call(event.call_id)
        metrics.event_type = event.raw_type

        if event.event_type == EventType.UNKNOWN:
            logger.info("Unknown event type '%s' discarded", event.raw_type)
            self.audit.record(
                AuditKind.UNKNOWN_EVENT_TYPE,
                call_id=event.call_id,
                actor="platform",
                outcome="discarded",
                detail={"type": event.raw_type},
            )
            metrics.outcome = TrackOutcome.IGNORED.value
            return self._accepted(event, TrackOutcome.IGNORED.value, None, False, headers)

        # --- 4-6. Track, classify, route (serialised per call) ---
        plan: Optional[EscalationPlan] = None
        async with self.store.lock(event.call_id):
            result = await self.tracker.apply(event)
            session = result.session

            if result.outcome == TrackOutcome.DUPLICATE:
                self.audit.record(
                    AuditKind.DUPLICATE_EVENT,
                    call_id=event.call_id,
                    actor="platform",
                    outcome="skipped",
                    detail={"type": event.raw_type, "event_id": event.event_id},
                )

            if session is not None and result.should_classify:
                self._classify(session)
                plan = self.router.decide(session, session.priority, final=result.final)

            if session is not None and result.outcome in _STATE_CHANGING:
                await self._persist_session(session, final=result.final)

        self.audit.record(
            AuditKind.EVENT_ACCEPTED,
            call_id=event.call_id,
            actor="platform",
            outcome=result.outcome.value,
            detail={"type": event.raw_type, "event_id": event.event_id},
        )
        metrics.outcome = result.outcome.value

        # --- 7. Dispatch ---
        if plan is not None:
            self.audit.record(
                AuditKind.ESCALATION,
                call_id=plan.call_id,
                actor="router",
                outcome="planned",
                detail={
                    "escalation_id": plan.escalation_id,
                    "tier": plan.tier.value,
                    "template": plan.template_key,
                    "recipients": len(plan.recipients),
                },
            )
            metrics.escalated = True
            logger.info(
                "Escalation planned: %s to %d recipient(s)",
                plan.tier.value,
                len(plan.recipients),
                extra={
                    "event_type": "escalation_planned",
                    "data": {
                        "escalation_id": plan.escalation_id,
                        "tier": plan.tier.value,
                        "recipients": [r.phone_number for r in plan.recipients],
                    },
                },
            )
            await self._dispatch_in_background(plan, session)

        priority = session.priority.value if session is not None and session.priority else None
        answer = self._tool_results(event, session) if isinstance(event, FunctionCall) else {}
        return self._accepted(event, result.outcome.value, priority, plan is not None, headers, **answer)

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    def _classify(self, session: CallSession) -> None:
        """Re-run the rules; the stored tier only ever moves up."""
        classification = self.classifier.classify(
            session.caller_text,
            session.fields,
            session.phone_number,
        )
        previous = session.priority
        stored = self.classifier.escalate(previous, classification.tier)
        if stored != previous:
            session.priority = stored
            session.priority_reason = classification.reason
            logger.info(
                "Priority for call=%s: %s -> %s (%s)",
                mask_call_id(session.call_id),
                previous.value if previous else None,
                stored.value,
                classification.reason,
            )

        self.audit.record(
            AuditKind.CLASSIFICATION,
            call_id=session.call_id,
            actor="classifier",
            outcome=classification.tier.value,
            detail={
                "reason": classification.reason,
                "matched": classification.matched,
                "previous": previous.value if previous else None,
                "stored": stored.value if stored else None,
            },
        )

    async def _persist_session(self, session: CallSession, final: bool) -> None:
        if self.persistence is None:
            return
        await self._safe_write("upsert_call", session.call_id, self.persistence.upsert_call, session.to_record())

        if final and session.phone_number:
            lead = {
                "phone": session.phone_number,
                "name": session.fields.get("name"),
                "email": session.fields.get("email"),
                "address": session.fields.get("address"),
                "postal_code": session.fields.get("postal_code"),
                "problem_description": session.fields.get("problem"),
                "priority": session.priority.value if session.priority else None,
                "last_call_id": session.call_id,
                "updated_at": utcnow().isoformat(),
            }
            await self._safe_write("upsert_lead", session.call_id, self.persistence.upsert_lead, lead)

    async def _safe_write(
        self,
        operation: str,
        call_id: str,
        write: Callable[[dict], Awaitable[None]],
        record: dict,
    ) -> None:
        try:
            await write(record)
        except Exception as e:
            logger.error("Persistence %s failed for call=%s: %s", operation, mask_call_id(call_id), e)
            self.audit.record(
                AuditKind.PERSISTENCE_FAILURE,
                call_id=call_id,
                actor="pipeline",
                outcome="failed",
                detail={"operation": operation, "error": str(e)},
            )

    async def _dispatch_in_background(self, plan: EscalationPlan, session: CallSession) -> None:
        """
        Start delivery and wait briefly for it.

        Delivery keeps running after the timeout; the platform gets its
        response either way.
        """
        task = asyncio.create_task(self._run_dispatch(plan, session))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self._dispatch_timeout)
        except asyncio.TimeoutError:
            logger.info(
                "Escalation %s still dispatching after %.1fs; continuing in background",
                plan.escalation_id,
                self._dispatch_timeout,
            )

    async def _run_dispatch(self, plan: EscalationPlan, session: CallSession) -> None:
        try:
            attempts = await self.dispatcher.dispatch(plan, session)
        except Exception as e:
            logger.error("Escalation %s failed: %s", plan.escalation_id, e, exc_info=True)
            self.audit.record(
                AuditKind.ESCALATION,
                call_id=plan.call_id,
                actor="dispatcher",
                outcome="error",
                detail={"escalation_id": plan.escalation_id, "error": str(e)},
            )
            return

        delivered = sum(1 for a in attempts if a.status == AttemptStatus.DELIVERED)
        self.audit.record(
            AuditKind.ESCALATION,
            call_id=plan.call_id,
            actor="dispatcher",
            outcome="completed",
            detail={
                "escalation_id": plan.escalation_id,
                "tier": plan.tier.value,
                "delivered": delivered,
                "failed": len(attempts) - delivered,
            },
        )

    # -------------------------------------------------------------------------
    # Responses
    # -------------------------------------------------------------------------

    @staticmethod
    def _accepted(
        event: InboundEvent,
        outcome: str,
        priority: Optional[str],
        escalated: bool,
        headers: Dict[str, str],
        result: Optional[Dict[str, Any]] = None,
        results: Optional[List[Dict[str, Any]]] = None,
    ) -> PipelineResponse:
        body = WebhookResponse(
            success=True,
            type=event.event_type.value,
            call_id=event.call_id,
            outcome=outcome,
            priority=priority,
            escalated=escalated,
            result=result,
            results=results,
        ).to_body()
        return PipelineResponse(status_code=200, body=body, headers=headers)

    @staticmethod
    def _tool_results(event: FunctionCall, session: Optional[CallSession]) -> Dict[str, Any]:
        """
        Answer for the voice assistant: the call's current classification.

        Tool calls get one ``results`` entry per ``toolCallId``; a plain
        function call gets a single ``result``.
        """
        if session is not None and session.priority is not None:
            answer = {
                "priority": session.priority.value,
                "reason": session.priority_reason or "standard",
                "sla_seconds": session.priority.sla_seconds,
            }
        else:
            answer = {"status": "received"}

        if event.tool_call_ids:
            return {
                "results": [
                    {"toolCallId": tool_call_id, "result": dict(answer)}
                    for tool_call_id in event.tool_call_ids
                ]
            }
        return {"result": answer}

    @staticmethod
    def _error_response(
        error: RelayError,
        headers: Optional[Dict[str, str]] = None,
    ) -> PipelineResponse:
        return PipelineResponse(
            status_code=error.status_code,
            body=WebhookResponse(success=False, error=error.to_dict()).to_body(),
            headers=dict(headers or {}),
        )

    # -------------------------------------------------------------------------
    # Utilities
    # -------------------------------------------------------------------------

    def _generate_request_id(self) -> str:
        """Generate unique request ID for tracking."""
        return f"req_{uuid.uuid4().hex[:12]}"

    @property
    def pending_dispatches(self) -> int:
        return len(self._tasks)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def startup(self) -> None:
        """Start background maintenance (session cleanup)."""
        await self.store.start()
        logger.info("Pipeline startup complete")

    async def drain(self) -> None:
        """Wait for in-flight dispatches and audit writes."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.audit.flush()

    async def shutdown(self) -> None:
        """Drain background work and stop the session store."""
        logger.info("Pipeline shutdown: draining %d dispatch task(s)...", len(self._tasks))
        await self.drain()
        await self.store.stop()
        logger.info("Pipeline shutdown complete")


# =============================================================================
# Factory Function
# =============================================================================

def create_pipeline(
    settings: Settings,
    *,
    sms_gateway=None,
    persistence=None,
    session_store: Optional[CallSessionStore] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> EventPipeline:
    """
    Factory function to create a configured EventPipeline.

    Collaborators not passed in are built from settings:
    - persistence_backend: "memory" | "supabase"
    - SMS: Twilio when credentials are present

    Args:
        settings: Application settings
        sms_gateway: Override the SMS gateway (tests)
        persistence: Override the persistence gateway (tests)
        session_store: Override the session store
        sleep: Retry wait function for the dispatcher

    Returns:
        Configured EventPipeline instance
    """
    from callrelay.core.session_store import InMemoryCallSessionStore
    from callrelay.services.notifier import retry_policies_from_settings
    from callrelay.services.persistence import create_persistence_gateway
    from callrelay.services.sms_gateway import create_sms_gateway

    if persistence is None:
        persistence = create_persistence_gateway(settings)
    if sms_gateway is None:
        sms_gateway = create_sms_gateway(settings)
    if session_store is None:
        session_store = InMemoryCallSessionStore(
            max_sessions=settings.max_sessions,
            session_ttl_minutes=settings.session_ttl_minutes,
            ended_grace_minutes=settings.ended_session_grace_minutes,
            cleanup_interval_seconds=settings.session_cleanup_interval_seconds,
        )

    audit = AuditRecorder(gateway=persistence, max_entries=settings.audit_max_entries)

    dispatcher = NotificationDispatcher(
        gateway=sms_gateway,
        persistence=persistence,
        audit=audit,
        retry_policies=retry_policies_from_settings(settings),
        sleep=sleep,
    )

    pipeline = EventPipeline(
        verifier=SignatureVerifier(settings.webhook_secret),
        rate_limiter=RateLimiter(
            max_requests=settings.rate_limit_requests,
            window_seconds=settings.rate_limit_window_seconds,
        ),
        store=session_store,
        tracker=CallStateTracker(session_store, min_transcript_chars=settings.transcript_min_chars),
        classifier=PriorityClassifier.from_settings(settings),
        router=EscalationRouter.from_settings(settings),
        dispatcher=dispatcher,
        audit=audit,
        persistence=persistence,
        dispatch_response_timeout=settings.dispatch_response_timeout_seconds,
    )

    logger.info(
        "EventPipeline created: persistence=%s, sms=%s, urgent_tiers=%s",
        type(persistence).__name__,
        type(sms_gateway).__name__,
        ",".join(settings.urgent_tier_list),
    )
    return pipeline
