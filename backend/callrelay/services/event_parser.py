"""
Call Escalation Relay - Event Parser

Decodes a raw webhook body into a typed InboundEvent.

Pure function of its input: no I/O, no session access. Anything structurally
unusable (not JSON, not an object, no ``type``, no ``call.id``) raises
MalformedPayloadError. A well-formed event with an unrecognised ``type``
decodes to UnknownEvent.
"""

import hashlib
import json
import logging
from typing import Any, Dict, Mapping, Optional

from pydantic import ValidationError

from callrelay.api.schemas import FunctionPayload, TranscriptPayload, WebhookEnvelope
from callrelay.core.exceptions import MalformedPayloadError
from callrelay.core.types import (
    CallEnded,
    CallStarted,
    FunctionCall,
    InboundEvent,
    PlatformError,
    SpeechUpdate,
    Transcript,
    UnknownEvent,
    utcnow,
)

logger = logging.getLogger(__name__)


# Platform field names -> canonical session field names
FIELD_ALIASES: Dict[str, str] = {
    "nom": "name",
    "name": "name",
    "clientname": "name",
    "client_name": "name",
    "customername": "name",
    "customer_name": "name",
    "adresse": "address",
    "address": "address",
    "clientaddress": "address",
    "description": "problem",
    "problem": "problem",
    "problemdescription": "problem",
    "problem_description": "problem",
    "probleme": "problem",
    "problème": "problem",
    "courriel": "email",
    "email": "email",
    "codepostal": "postal_code",
    "postalcode": "postal_code",
    "code_postal": "postal_code",
    "telephone": "phone",
    "téléphone": "phone",
    "phone": "phone",
    "phonenumber": "phone",
    "callbacknumber": "phone",
    "servicetype": "service_type",
    "service_type": "service_type",
    "estimatedvalue": "estimated_value",
    "urgency": "urgency",
}

_CALL_ENDED_TYPES = {"call-ended", "end-of-call-report"}

# status-update statuses that mean the call is live
_CALL_STARTED_STATUSES = {"in-progress"}


def normalize_fields(raw: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Map platform field names onto canonical names.

    Unknown keys are kept as-is; empty values are dropped so they never
    overwrite something already captured.
    """
    normalized: Dict[str, Any] = {}
    for key, value in raw.items():
        if value is None or (isinstance(value, str) and not value.strip()):
            continue
        canonical = FIELD_ALIASES.get(str(key).lower(), key)
        normalized[canonical] = value.strip() if isinstance(value, str) else value
    return normalized


def event_fingerprint(raw_body: bytes) -> str:
    """Stable id for an event the platform did not label."""
    return "sha256:" + hashlib.sha256(raw_body).hexdigest()


def _coerce_arguments(value: Any) -> Dict[str, Any]:
    """Function arguments arrive as an object or as a JSON-encoded string."""
    if value is None:
        return {}
    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, str):
        if not value.strip():
            return {}
        try:
            decoded = json.loads(value)
        except ValueError:
            logger.warning("Function arguments are not valid JSON; ignoring them")
            return {}
        if isinstance(decoded, dict):
            return decoded
    logger.warning("Function arguments of type %s ignored", type(value).__name__)
    return {}


def _function_arguments(function: Optional[FunctionPayload]) -> Dict[str, Any]:
    if function is None:
        return {}
    if function.parameters is not None:
        return _coerce_arguments(function.parameters)
    return _coerce_arguments(function.arguments)


def parse_event(raw_body: bytes) -> InboundEvent:
    """
    Decode one webhook body.

    Args:
        raw_body: Exact bytes received

    Returns:
        One of the InboundEvent variants

    Raises:
        MalformedPayloadError: Body not usable as a call-lifecycle event
    """
    try:
        data = json.loads(raw_body)
    except ValueError as e:
        raise MalformedPayloadError("Body is not valid JSON", details={"error": str(e)}) from e

    if not isinstance(data, dict):
        raise MalformedPayloadError("Body is not a JSON object")

    # Enveloped deliveries carry the event under "message"
    if "type" not in data and isinstance(data.get("message"), dict):
        data = data["message"]

    if not isinstance(data.get("type"), str) or not data["type"].strip():
        raise MalformedPayloadError("Missing event type")

    call = data.get("call")
    if not isinstance(call, dict) or not call.get("id"):
        raise MalformedPayloadError("Missing call.id", details={"type": data["type"]})

    try:
        envelope = WebhookEnvelope.model_validate(data)
    except ValidationError as e:
        fields = [".".join(str(part) for part in err["loc"]) for err in e.errors()]
        raise MalformedPayloadError(
            "Payload failed validation",
            details={"type": data["type"], "fields": fields},
        ) from e

    return _to_event(envelope, raw_body)


def _to_event(envelope: WebhookEnvelope, raw_body: bytes) -> InboundEvent:
    raw_type = envelope.type.strip()
    kind = raw_type.lower()
    call = envelope.call

    platform_id = envelope.event_id if envelope.event_id is not None else envelope.id
    common = dict(
        call_id=call.id,
        event_id=str(platform_id) if platform_id is not None else event_fingerprint(raw_body),
        timestamp=envelope.timestamp or utcnow(),
        raw_type=raw_type,
    )

    status = (envelope.status or call.status or "").lower()
    if kind == "call-started" or (kind == "status-update" and status in _CALL_STARTED_STATUSES):
        return CallStarted(
            **common,
            phone_number=call.caller_number,
            assistant_id=call.assistant_id,
            started_at=call.started_at or common["timestamp"],
        )

    if kind == "transcript":
        if isinstance(envelope.transcript, TranscriptPayload):
            role = envelope.transcript.role
            text = envelope.transcript.transcript
            transcript_type = envelope.transcript.transcript_type or envelope.transcript_type
        else:
            role = envelope.role or "user"
            text = envelope.transcript or ""
            transcript_type = envelope.transcript_type
        return Transcript(
            **common,
            role=role,
            text=text.strip(),
            is_final=(transcript_type or "final").lower() != "partial",
        )

    tool_call_ids = tuple(tc.tool_call_id for tc in envelope.tool_calls if tc.tool_call_id)

    if kind == "function-call" and envelope.function_call is not None:
        function = envelope.function_call
        return FunctionCall(
            **common,
            name=function.name,
            parameters=_function_arguments(function),
            tool_call_ids=tool_call_ids,
        )

    if kind in ("function-call", "tool-calls"):
        parameters: Dict[str, Any] = {}
        names = []
        for tool_call in envelope.tool_calls:
            names.append(tool_call.function.name)
            parameters.update(_function_arguments(tool_call.function))
        return FunctionCall(
            **common,
            name=",".join(n for n in names if n),
            parameters=parameters,
            tool_call_ids=tool_call_ids,
        )

    if kind in _CALL_ENDED_TYPES or (kind == "status-update" and status == "ended"):
        structured: Dict[str, Any] = {}
        summary = envelope.summary
        for analysis in (envelope.analysis, call.analysis):
            if analysis is None:
                continue
            structured.update(analysis.structured_data)
            summary = summary or analysis.summary
        duration = call.duration if call.duration is not None else envelope.duration_seconds
        return CallEnded(
            **common,
            ended_at=call.ended_at or envelope.ended_at or common["timestamp"],
            duration_seconds=duration,
            structured_data=structured,
            summary=summary,
            phone_number=call.caller_number,
            assistant_id=call.assistant_id,
            started_at=call.started_at,
        )

    if kind == "speech-update":
        return SpeechUpdate(**common, role=envelope.role or "", status=envelope.status or "")

    if kind == "error":
        error = envelope.error
        if isinstance(error, dict):
            message = str(error.get("message") or json.dumps(error, default=str))
        else:
            message = str(error) if error is not None else ""
        return PlatformError(**common, message=message)

    return UnknownEvent(**common)
