"""
Call Escalation Relay - Call State Tracker

Applies call-lifecycle events to per-call sessions.

The tracker is the single writer of CallSession state. Callers must hold
``store.lock(event.call_id)`` around ``apply`` so events for one call are
applied one at a time.

Outcomes:
    created        CallStarted opened a new session
    applied        Transcript / FunctionCall changed the session, or a report
                   after call end brought new analysis
    ended          CallEnded closed the session (creating it first when the
                   report is the first event seen for the call)
    duplicate      Event id already applied, or a repeated CallStarted/CallEnded
    ignored        Nothing to apply (partial transcript, speech update, error, unknown)
    orphan         No session for this call id yet
    session_ended  Event arrived after the call ended
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Optional, Type

from callrelay.core.logging import mask_call_id
from callrelay.core.privacy import is_e164, mask_phone_number
from callrelay.core.session_store import CallSessionStore
from callrelay.core.types import (
    CALLER_ROLES,
    CallEnded,
    CallSession,
    CallStarted,
    CallStatus,
    FunctionCall,
    InboundEvent,
    TrackOutcome,
    TrackResult,
    Transcript,
    TranscriptLine,
)
from callrelay.services.event_parser import normalize_fields

logger = logging.getLogger(__name__)


class CallStateTracker:
    """
    Maintains CallSession state across the events of each call.

    Usage:
        tracker = CallStateTracker(store, min_transcript_chars=20)
        async with store.lock(event.call_id):
            result = await tracker.apply(event)
    """

    def __init__(self, store: CallSessionStore, min_transcript_chars: int = 20):
        self._store = store
        self._min_transcript_chars = min_transcript_chars
        self._handlers: Dict[Type[InboundEvent], Callable[[CallSession, InboundEvent], TrackResult]] = {
            Transcript: self._on_transcript,
            FunctionCall: self._on_function_call,
            CallEnded: self._on_call_ended,
        }

    async def apply(self, event: InboundEvent) -> TrackResult:
        session = await self._store.get(event.call_id)

        if isinstance(event, CallStarted):
            return await self._on_call_started(event, session)

        if session is None:
            if isinstance(event, CallEnded):
                return await self._on_unseen_call_ended(event)
            logger.warning(
                "Event %s for unknown call=%s; no CallStarted seen",
                event.raw_type,
                mask_call_id(event.call_id),
            )
            return TrackResult(session=None, outcome=TrackOutcome.ORPHAN)

        if event.event_id in session.applied_event_ids:
            logger.info("Duplicate event %s skipped", event.event_id)
            return TrackResult(session=session, outcome=TrackOutcome.DUPLICATE)

        if not session.is_active:
            if isinstance(event, CallEnded):
                return await self._on_late_report(session, event)
            return TrackResult(session=session, outcome=TrackOutcome.SESSION_ENDED)

        handler = self._handlers.get(type(event))
        if handler is None:
            return TrackResult(session=session, outcome=TrackOutcome.IGNORED)

        result = handler(session, event)
        session.applied_event_ids.add(event.event_id)
        await self._store.save(session)
        return result

    async def _on_call_started(
        self,
        event: CallStarted,
        existing: Optional[CallSession],
    ) -> TrackResult:
        if existing is not None:
            logger.warning(
                "Duplicate CallStarted for call=%s ignored",
                mask_call_id(event.call_id),
            )
            return TrackResult(session=existing, outcome=TrackOutcome.DUPLICATE)

        if event.phone_number and not is_e164(event.phone_number):
            logger.warning(
                "Caller number %s for call=%s is not in E.164 form",
                mask_phone_number(event.phone_number),
                mask_call_id(event.call_id),
            )

        session = CallSession(
            call_id=event.call_id,
            phone_number=event.phone_number,
            assistant_id=event.assistant_id,
            started_at=event.started_at or event.timestamp,
        )
        session.applied_event_ids.add(event.event_id)
        session = await self._store.create(session)
        logger.info("Call session created: call=%s", mask_call_id(event.call_id))
        return TrackResult(session=session, outcome=TrackOutcome.CREATED)

    def _on_transcript(self, session: CallSession, event: Transcript) -> TrackResult:
        if not event.is_final or not event.text:
            return TrackResult(session=session, outcome=TrackOutcome.IGNORED)

        session.transcript.append(
            TranscriptLine(role=event.role, text=event.text, timestamp=event.timestamp)
        )

        from_caller = event.role.lower() in CALLER_ROLES
        long_enough = len(session.caller_text) >= self._min_transcript_chars
        return TrackResult(
            session=session,
            outcome=TrackOutcome.APPLIED,
            should_classify=from_caller and long_enough,
        )

    def _on_function_call(self, session: CallSession, event: FunctionCall) -> TrackResult:
        extracted = normalize_fields(event.parameters)
        session.fields.update(extracted)
        return TrackResult(
            session=session,
            outcome=TrackOutcome.APPLIED,
            should_classify=bool(extracted),
        )

    def _on_call_ended(self, session: CallSession, event: CallEnded) -> TrackResult:
        session.status = CallStatus.ENDED
        session.ended_at = event.ended_at or event.timestamp
        if event.duration_seconds is not None:
            session.duration_seconds = event.duration_seconds
        else:
            session.duration_seconds = (session.ended_at - session.started_at).total_seconds()
        if event.summary:
            session.summary = event.summary
        session.fields.update(normalize_fields(event.structured_data))

        logger.info(
            "Call ended: call=%s, duration=%.1fs",
            mask_call_id(session.call_id),
            session.duration_seconds or 0.0,
        )
        return TrackResult(
            session=session,
            outcome=TrackOutcome.ENDED,
            should_classify=True,
            final=True,
        )

    async def _on_unseen_call_ended(self, event: CallEnded) -> TrackResult:
        """An end-of-call report is self-contained; open and close the session from it."""
        ended_at = event.ended_at or event.timestamp
        session = CallSession(
            call_id=event.call_id,
            phone_number=event.phone_number,
            assistant_id=event.assistant_id,
            started_at=event.started_at or ended_at,
        )
        session = await self._store.create(session)
        logger.info(
            "End-of-call report without CallStarted: call=%s; session created from report",
            mask_call_id(event.call_id),
        )
        result = self._on_call_ended(session, event)
        session.applied_event_ids.add(event.event_id)
        await self._store.save(session)
        return result

    async def _on_late_report(self, session: CallSession, event: CallEnded) -> TrackResult:
        """
        A second CallEnded for an ended call.

        The status update that closes a call carries no analysis; the report
        that follows does. New structured data or a new summary is merged and
        triggers another final classification. Anything else is a repeat.
        """
        extracted = normalize_fields(event.structured_data)
        new_fields = {k: v for k, v in extracted.items() if session.fields.get(k) != v}
        new_summary = event.summary if event.summary and event.summary != session.summary else None

        if not new_fields and not new_summary:
            logger.warning("Repeated CallEnded for call=%s ignored", mask_call_id(event.call_id))
            return TrackResult(session=session, outcome=TrackOutcome.DUPLICATE)

        session.fields.update(new_fields)
        if new_summary:
            session.summary = new_summary
        if event.duration_seconds is not None:
            session.duration_seconds = event.duration_seconds
        if session.phone_number is None and event.phone_number:
            session.phone_number = event.phone_number
        session.applied_event_ids.add(event.event_id)
        await self._store.save(session)

        logger.info(
            "End-of-call data merged after call end: call=%s, fields=%d",
            mask_call_id(session.call_id),
            len(new_fields),
        )
        return TrackResult(
            session=session,
            outcome=TrackOutcome.APPLIED,
            should_classify=True,
            final=True,
        )
