"""
Call Escalation Relay - API Schemas

Pydantic models for the call platform's webhook payloads and our responses.
Unknown JSON fields are ignored so platform additions never break intake.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


def _lenient_datetime(value: Any) -> Optional[datetime]:
    """
    Accept ISO strings and epoch seconds or milliseconds.

    An unparseable timestamp is treated as absent rather than rejecting
    the whole event.
    """
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > 1e11 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return None


class WireModel(BaseModel):
    """Base for inbound payload models."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# ===========================================
# Inbound Webhook Schemas
# ===========================================

class CallAnalysisPayload(WireModel):
    """End-of-call analysis produced by the platform."""
    summary: Optional[str] = None
    structured_data: Dict[str, Any] = Field(default_factory=dict, alias="structuredData")

    @field_validator("structured_data", mode="before")
    @classmethod
    def none_as_empty(cls, value: Any) -> Any:
        return value if value is not None else {}


class CustomerPayload(WireModel):
    number: Optional[str] = None
    name: Optional[str] = None


class CallPayload(WireModel):
    """The ``call`` object carried by every lifecycle event."""
    id: str = Field(min_length=1)
    assistant_id: Optional[str] = Field(default=None, alias="assistantId")
    phone_number: Optional[str] = Field(default=None, alias="phoneNumber")
    customer: Optional[CustomerPayload] = None
    status: Optional[str] = None
    started_at: Optional[datetime] = Field(default=None, alias="startedAt")
    ended_at: Optional[datetime] = Field(default=None, alias="endedAt")
    duration: Optional[float] = None
    analysis: Optional[CallAnalysisPayload] = None

    @field_validator("started_at", "ended_at", mode="before")
    @classmethod
    def parse_times(cls, value: Any) -> Optional[datetime]:
        return _lenient_datetime(value)

    @property
    def caller_number(self) -> Optional[str]:
        if self.phone_number:
            return self.phone_number
        if self.customer and self.customer.number:
            return self.customer.number
        return None


class TranscriptPayload(WireModel):
    role: str = "user"
    transcript: str = ""
    transcript_type: Optional[str] = Field(default=None, alias="transcriptType")
    timestamp: Optional[datetime] = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def parse_time(cls, value: Any) -> Optional[datetime]:
        return _lenient_datetime(value)


class FunctionPayload(WireModel):
    """Function invocation; arguments may be an object or a JSON string."""
    name: str = ""
    arguments: Any = None
    parameters: Any = None


class ToolCallPayload(WireModel):
    tool_call_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("toolCallId", "id", "tool_call_id"),
    )
    function: FunctionPayload


class WebhookEnvelope(WireModel):
    """
    One webhook delivery.

    Both the flat shape (``type`` at the top level) and the enveloped shape
    (everything under ``message``) are accepted; the parser unwraps the
    latter before validation.
    """
    type: str = Field(min_length=1)
    id: Optional[Union[str, int]] = None
    event_id: Optional[Union[str, int]] = Field(default=None, alias="eventId")
    timestamp: Optional[datetime] = None
    call: Optional[CallPayload] = None

    # transcript events: nested object, or flat role/transcript/transcriptType
    transcript: Optional[Union[TranscriptPayload, str]] = None
    role: Optional[str] = None
    transcript_type: Optional[str] = Field(default=None, alias="transcriptType")

    # function-call / tool-calls
    function_call: Optional[FunctionPayload] = Field(default=None, alias="functionCall")
    tool_calls: List[ToolCallPayload] = Field(default_factory=list, alias="toolCalls")

    # speech-update / status-update / error
    status: Optional[str] = None
    error: Optional[Any] = None

    # end-of-call-report
    analysis: Optional[CallAnalysisPayload] = None
    summary: Optional[str] = None
    ended_at: Optional[datetime] = Field(default=None, alias="endedAt")
    duration_seconds: Optional[float] = Field(default=None, alias="durationSeconds")

    @field_validator("timestamp", "ended_at", mode="before")
    @classmethod
    def parse_times(cls, value: Any) -> Optional[datetime]:
        return _lenient_datetime(value)

    @field_validator("tool_calls", mode="before")
    @classmethod
    def none_as_list(cls, value: Any) -> Any:
        return value if value is not None else []


# ===========================================
# Response Schemas
# ===========================================

class WebhookResponse(BaseModel):
    """Body returned to the call platform for every delivery."""
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    type: Optional[str] = None
    call_id: Optional[str] = Field(default=None, serialization_alias="callId")
    outcome: Optional[str] = None
    priority: Optional[str] = None
    escalated: Optional[bool] = None
    # function-call / tool-calls: answer read back by the voice assistant
    result: Optional[Dict[str, Any]] = None
    results: Optional[List[Dict[str, Any]]] = None
    error: Optional[Dict[str, Any]] = None

    def to_body(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)
