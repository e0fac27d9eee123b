"""
Call Escalation Relay - Event Parser Tests

Tests for parse_event and field normalisation.
These tests verify:
- Each known event type decodes to its variant
- Malformed bodies raise MalformedPayloadError
- Unknown types decode to UnknownEvent
- Event ids come from the platform or from a body fingerprint

Run with: pytest tests/test_event_parser.py -v
"""

import json

import pytest

from callrelay.core.exceptions import MalformedPayloadError
from callrelay.core.types import (
    CallEnded,
    CallStarted,
    EventType,
    FunctionCall,
    PlatformError,
    SpeechUpdate,
    Transcript,
    UnknownEvent,
)
from callrelay.services.event_parser import event_fingerprint, normalize_fields, parse_event


def body(payload) -> bytes:
    return json.dumps(payload).encode("utf-8")


class TestKnownEvents:
    """Known types decode to typed variants."""

    def test_call_started(self):
        event = parse_event(body({
            "type": "call-started",
            "id": "evt-1",
            "timestamp": "2024-05-01T14:00:00Z",
            "call": {"id": "c1", "assistantId": "asst-1", "phoneNumber": "+15145551234"},
        }))

        assert isinstance(event, CallStarted)
        assert event.event_type == EventType.CALL_STARTED
        assert event.call_id == "c1"
        assert event.event_id == "evt-1"
        assert event.phone_number == "+15145551234"
        assert event.assistant_id == "asst-1"
        assert event.started_at.year == 2024

    def test_call_started_uses_customer_number(self):
        event = parse_event(body({
            "type": "call-started",
            "call": {"id": "c1", "customer": {"number": "+15145559999"}},
        }))
        assert event.phone_number == "+15145559999"

    def test_nested_transcript(self):
        event = parse_event(body({
            "type": "transcript",
            "call": {"id": "c1"},
            "transcript": {"role": "user", "transcript": " J'ai un refoulement ", "transcriptType": "final"},
        }))

        assert isinstance(event, Transcript)
        assert event.role == "user"
        assert event.text == "J'ai un refoulement"
        assert event.is_final is True

    def test_flat_partial_transcript(self):
        event = parse_event(body({
            "type": "transcript",
            "call": {"id": "c1"},
            "role": "assistant",
            "transcript": "Bonjour",
            "transcriptType": "partial",
        }))

        assert isinstance(event, Transcript)
        assert event.role == "assistant"
        assert event.is_final is False

    def test_function_call_with_json_string_arguments(self):
        event = parse_event(body({
            "type": "function-call",
            "call": {"id": "c1"},
            "functionCall": {"name": "capture", "parameters": '{"nom": "Marie", "adresse": "12 rue Principale"}'},
        }))

        assert isinstance(event, FunctionCall)
        assert event.name == "capture"
        assert event.parameters == {"nom": "Marie", "adresse": "12 rue Principale"}

    def test_tool_calls_merge_arguments_in_order(self):
        event = parse_event(body({
            "type": "tool-calls",
            "call": {"id": "c1"},
            "toolCalls": [
                {"toolCallId": "t1", "function": {"name": "a", "arguments": {"nom": "Marie", "x": 1}}},
                {"toolCallId": "t2", "function": {"name": "b", "arguments": {"x": 2}}},
            ],
        }))

        assert isinstance(event, FunctionCall)
        assert event.name == "a,b"
        assert event.parameters == {"nom": "Marie", "x": 2}

    def test_call_ended_with_structured_data(self):
        event = parse_event(body({
            "type": "call-ended",
            "call": {
                "id": "c1",
                "endedAt": "2024-05-01T14:05:00Z",
                "duration": 300,
                "analysis": {
                    "summary": "Refoulement au sous-sol",
                    "structuredData": {"nom": "Marie", "description": "refoulement"},
                },
            },
        }))

        assert isinstance(event, CallEnded)
        assert event.duration_seconds == 300
        assert event.summary == "Refoulement au sous-sol"
        assert event.structured_data["nom"] == "Marie"

    @pytest.mark.parametrize("payload", [
        {"type": "end-of-call-report", "call": {"id": "c1"}, "durationSeconds": 42},
        {"type": "status-update", "status": "ended", "call": {"id": "c1"}},
    ])
    def test_platform_end_variants_map_to_call_ended(self, payload):
        assert isinstance(parse_event(body(payload)), CallEnded)

    def test_status_update_in_progress_is_call_started(self):
        event = parse_event(body({
            "type": "status-update",
            "status": "in-progress",
            "call": {"id": "c1", "customer": {"number": "+15145551234"}, "assistantId": "a1"},
        }))
        assert isinstance(event, CallStarted)
        assert event.phone_number == "+15145551234"
        assert event.assistant_id == "a1"

    def test_other_status_updates_are_unknown(self):
        event = parse_event(body({"type": "status-update", "status": "ringing", "call": {"id": "c1"}}))
        assert isinstance(event, UnknownEvent)

    def test_end_of_call_report_carries_call_metadata(self):
        event = parse_event(body({
            "type": "end-of-call-report",
            "call": {
                "id": "c9",
                "customer": {"number": "+15145551234"},
                "startedAt": "2024-05-01T14:00:00Z",
            },
        }))
        assert isinstance(event, CallEnded)
        assert event.phone_number == "+15145551234"
        assert event.started_at.minute == 0

    def test_tool_call_ids_kept_in_order(self):
        event = parse_event(body({
            "type": "tool-calls",
            "call": {"id": "c1"},
            "toolCalls": [
                {"id": "call_a", "function": {"name": "a", "arguments": {}}},
                {"function": {"name": "b", "arguments": {}}},
                {"toolCallId": "call_c", "function": {"name": "c", "arguments": {}}},
            ],
        }))
        assert event.tool_call_ids == ("call_a", "call_c")

    def test_function_call_with_tool_calls_list(self):
        event = parse_event(body({
            "type": "function-call",
            "call": {"id": "c1"},
            "toolCalls": [{"toolCallId": "t1", "function": {"name": "classifyPriority", "arguments": {"description": "x"}}}],
        }))
        assert isinstance(event, FunctionCall)
        assert event.name == "classifyPriority"
        assert event.parameters == {"description": "x"}
        assert event.tool_call_ids == ("t1",)

    def test_speech_update_and_error(self):
        speech = parse_event(body({"type": "speech-update", "role": "user", "status": "started", "call": {"id": "c1"}}))
        error = parse_event(body({"type": "error", "error": {"message": "boom"}, "call": {"id": "c1"}}))

        assert isinstance(speech, SpeechUpdate)
        assert speech.status == "started"
        assert isinstance(error, PlatformError)
        assert error.message == "boom"

    def test_enveloped_message_is_unwrapped(self):
        event = parse_event(body({"message": {"type": "call-started", "call": {"id": "c9"}}}))
        assert isinstance(event, CallStarted)
        assert event.call_id == "c9"

    def test_extra_fields_are_ignored(self):
        event = parse_event(body({"type": "call-started", "call": {"id": "c1", "foo": 1}, "bar": [1, 2]}))
        assert isinstance(event, CallStarted)


class TestUnknownAndMalformed:
    """Structural failures raise; unknown types do not."""

    def test_unknown_type(self):
        event = parse_event(body({"type": "hang-ringtone", "call": {"id": "c1"}}))
        assert isinstance(event, UnknownEvent)
        assert event.raw_type == "hang-ringtone"

    @pytest.mark.parametrize("raw", [
        b"{not json",
        b"",
        b"\xff\xfe",
        b"[1, 2, 3]",
        b'"just a string"',
    ])
    def test_not_a_json_object(self, raw):
        with pytest.raises(MalformedPayloadError):
            parse_event(raw)

    @pytest.mark.parametrize("payload", [
        {"call": {"id": "c1"}},
        {"type": "", "call": {"id": "c1"}},
        {"type": "transcript"},
        {"type": "transcript", "call": {}},
        {"type": "transcript", "call": "c1"},
    ])
    def test_missing_type_or_call_id(self, payload):
        with pytest.raises(MalformedPayloadError) as exc_info:
            parse_event(body(payload))
        assert exc_info.value.status_code == 400


class TestEventIds:
    """Event ids drive de-duplication."""

    def test_event_id_alias(self):
        event = parse_event(body({"type": "transcript", "eventId": 42, "call": {"id": "c1"}}))
        assert event.event_id == "42"

    def test_fingerprint_when_no_platform_id(self):
        raw = body({"type": "transcript", "call": {"id": "c1"}, "transcript": "hello"})
        event = parse_event(raw)
        assert event.event_id == event_fingerprint(raw)
        assert parse_event(raw).event_id == event.event_id


class TestNormalizeFields:
    """Platform aliases map onto canonical names."""

    def test_french_aliases(self):
        fields = normalize_fields({
            "nom": "Marie Tremblay",
            "adresse": "12 rue Principale",
            "description": "Refoulement",
            "courriel": "marie@example.com",
            "codePostal": "H2X 1Y4",
        })
        assert fields == {
            "name": "Marie Tremblay",
            "address": "12 rue Principale",
            "problem": "Refoulement",
            "email": "marie@example.com",
            "postal_code": "H2X 1Y4",
        }

    def test_unknown_keys_kept_and_blanks_dropped(self):
        fields = normalize_fields({"problemDescription": "clogged", "custom": "x", "nom": "  ", "address": None})
        assert fields == {"problem": "clogged", "custom": "x"}
