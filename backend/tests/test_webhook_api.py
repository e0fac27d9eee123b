"""
Call Escalation Relay - Webhook API Tests

Tests for the HTTP surface using FastAPI TestClient.
These tests verify:
- Both webhook routes accept signed events
- Status codes and rate-limit headers are relayed unchanged
- The signature header name comes from settings
- X-Forwarded-For identifies the source

Run with: pytest tests/test_webhook_api.py -v
"""

import pytest
from fastapi.testclient import TestClient

from callrelay.core.types import AuditKind

from conftest import LEAD, MANAGER, ON_CALL_1, ON_CALL_2, build_event

WEBHOOK_URL = "/api/webhooks/call-platform"
LEGACY_URL = "/api/vapi/webhook"


def post_event(client: TestClient, body: bytes, signature, url=WEBHOOK_URL, **headers):
    if signature is not None:
        headers["x-vapi-signature"] = signature
    headers.setdefault("content-type", "application/json")
    return client.post(url, content=body, headers=headers)


class TestWebhookRoutes:
    """Signed events are accepted on both paths."""

    @pytest.mark.parametrize("url", [WEBHOOK_URL, LEGACY_URL])
    def test_call_started_accepted(self, client: TestClient, signed, url):
        body = build_event("call-started", call={"phoneNumber": "+15145551234"})
        response = post_event(client, body, signed(body), url=url)

        assert response.status_code == 200
        data = response.json()
        assert data == {
            "success": True,
            "type": "call-started",
            "callId": "c1",
            "outcome": "created",
            "escalated": False,
        }
        assert response.headers["X-RateLimit-Limit"] == "100"
        assert response.headers["X-RateLimit-Remaining"] == "99"

    def test_emergency_call_sends_sms(self, client: TestClient, signed, fake_sms):
        start = build_event("call-started", call={"phoneNumber": "+15145551234"})
        post_event(client, start, signed(start))

        body = build_event(
            "transcript",
            event_id="t1",
            transcript={"role": "user", "transcript": "Il y a une inondation au sous-sol", "transcriptType": "final"},
        )
        response = post_event(client, body, signed(body))

        assert response.status_code == 200
        assert response.json()["priority"] == "P1"
        assert response.json()["escalated"] is True
        assert sorted(fake_sms.sent_to()) == sorted([LEAD, MANAGER, ON_CALL_1, ON_CALL_2])

    def test_unknown_type_acknowledged(self, client: TestClient, signed):
        body = build_event("model-output")
        response = post_event(client, body, signed(body))
        assert response.status_code == 200
        assert response.json()["outcome"] == "ignored"

    def test_tool_calls_answered(self, client: TestClient, signed):
        start = build_event("call-started", call={"phoneNumber": "+15145551234"})
        post_event(client, start, signed(start))

        body = build_event(
            "tool-calls",
            event_id="tc1",
            toolCalls=[{"id": "call_a", "function": {"name": "classifyPriority", "arguments": {"description": "Refoulement"}}}],
        )
        response = post_event(client, body, signed(body))

        assert response.status_code == 200
        assert response.json()["results"] == [
            {"toolCallId": "call_a", "result": {"priority": "P1", "reason": "emergency_keyword", "sla_seconds": 0}},
        ]


class TestWebhookRejections:
    """Rejections carry their status code and an error body."""

    def test_missing_signature(self, client: TestClient):
        response = post_event(client, build_event("call-started"), None)
        assert response.status_code == 401
        assert response.json()["success"] is False
        assert response.json()["error"]["code"] == "INVALID_SIGNATURE"

    def test_signature_header_from_settings(self, client: TestClient, signed):
        body = build_event("call-started")
        response = client.post(WEBHOOK_URL, content=body, headers={"x-signature": signed(body)})
        assert response.status_code == 401

    def test_malformed_body(self, client: TestClient, signed):
        body = b"not json at all"
        response = post_event(client, body, signed(body))
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "MALFORMED_PAYLOAD"

    def test_rate_limit_by_forwarded_source(self, client: TestClient, signed, app):
        pipeline = app.state.pipeline
        pipeline.rate_limiter.max_requests = 1

        body = build_event("call-started")
        headers = {"x-forwarded-for": "198.51.100.7, 10.0.0.1"}
        assert post_event(client, body, signed(body), **headers).status_code == 200

        limited = post_event(client, body, signed(body), **headers)
        assert limited.status_code == 429
        assert "Retry-After" in limited.headers
        assert limited.headers["X-RateLimit-Remaining"] == "0"

        entry = pipeline.audit.entries(AuditKind.RATE_LIMITED)[0]
        assert entry.actor == "198.51.100.7"

        other = post_event(client, body, signed(body), **{"x-forwarded-for": "203.0.113.9"})
        assert other.status_code == 200


class TestMethods:
    """Only POST is routed."""

    def test_get_not_allowed(self, client: TestClient):
        assert client.get(WEBHOOK_URL).status_code == 405

    def test_unknown_path(self, client: TestClient):
        assert client.post("/api/webhooks/other", content=b"{}").status_code == 404
