"""
Call Escalation Relay - SMS Gateway Tests

Tests for TwilioSmsGateway and the circuit breaker.
These tests verify:
- Form-encoded Messages.json request with basic auth
- Retryable vs permanent provider failures
- Circuit breaker opening and half-open probing

Run with: pytest tests/test_sms_gateway.py -v
"""

import base64
from urllib.parse import parse_qs

import httpx
import pytest
import respx

from callrelay.core.exceptions import CircuitOpenError, DispatchError
from callrelay.services.circuit_breaker import CircuitBreaker
from callrelay.services.sms_gateway import (
    SMS_MAX_LENGTH,
    LoggingSmsGateway,
    TwilioSmsGateway,
    create_sms_gateway,
)

MESSAGES_URL = "https://api.twilio.com/2010-04-01/Accounts/AC123/Messages.json"


@pytest.fixture
def gateway():
    return TwilioSmsGateway(
        account_sid="AC123",
        auth_token="secret-token",
        from_number="+15145550000",
        breaker=CircuitBreaker(failure_threshold=2, cooldown_seconds=30, label="test"),
    )


class TestSend:
    @respx.mock
    @pytest.mark.asyncio
    async def test_sends_form_with_basic_auth(self, gateway):
        route = respx.post(MESSAGES_URL).mock(
            return_value=httpx.Response(201, json={"sid": "SM123", "status": "queued"})
        )
        sid = await gateway.send("+15145551234", "🚨 P1 URGENCE")

        assert sid == "SM123"
        request = route.calls[0].request
        expected = base64.b64encode(b"AC123:secret-token").decode()
        assert request.headers["Authorization"] == f"Basic {expected}"
        form = parse_qs(request.content.decode("utf-8"))
        assert form["From"] == ["+15145550000"]
        assert form["To"] == ["+15145551234"]
        assert form["Body"] == ["🚨 P1 URGENCE"]

    @respx.mock
    @pytest.mark.asyncio
    async def test_body_capped_at_sms_limit(self, gateway):
        route = respx.post(MESSAGES_URL).mock(return_value=httpx.Response(201, json={"sid": "SM1"}))
        await gateway.send("+15145551234", "x" * 2000)

        form = parse_qs(route.calls[0].request.content.decode("utf-8"))
        assert len(form["Body"][0]) == SMS_MAX_LENGTH

    @respx.mock
    @pytest.mark.asyncio
    async def test_client_error_is_permanent(self, gateway):
        respx.post(MESSAGES_URL).mock(
            return_value=httpx.Response(400, json={"code": 21211, "message": "Invalid 'To' Phone Number"})
        )
        with pytest.raises(DispatchError) as exc_info:
            await gateway.send("+1", "hello")

        assert exc_info.value.retryable is False
        assert "Invalid 'To' Phone Number" in exc_info.value.message
        assert gateway.breaker.state == "closed"

    @respx.mock
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_throttle_and_server_errors_are_retryable(self, gateway, status):
        respx.post(MESSAGES_URL).mock(return_value=httpx.Response(status, text="unavailable"))
        with pytest.raises(DispatchError) as exc_info:
            await gateway.send("+15145551234", "hello")
        assert exc_info.value.retryable is True

    @respx.mock
    @pytest.mark.asyncio
    async def test_transport_error_is_retryable(self, gateway):
        respx.post(MESSAGES_URL).mock(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(DispatchError) as exc_info:
            await gateway.send("+15145551234", "hello")
        assert exc_info.value.retryable is True

    @respx.mock
    @pytest.mark.asyncio
    async def test_missing_sid_is_failure(self, gateway):
        respx.post(MESSAGES_URL).mock(return_value=httpx.Response(201, json={"status": "queued"}))
        with pytest.raises(DispatchError, match="SID"):
            await gateway.send("+15145551234", "hello")


class TestCircuitBreaker:
    @respx.mock
    @pytest.mark.asyncio
    async def test_opens_after_consecutive_failures(self, gateway):
        route = respx.post(MESSAGES_URL).mock(return_value=httpx.Response(503))
        for _ in range(2):
            with pytest.raises(DispatchError):
                await gateway.send("+15145551234", "hello")

        with pytest.raises(CircuitOpenError):
            await gateway.send("+15145551234", "hello")
        assert route.call_count == 2

    def test_half_open_after_cooldown(self):
        now = [0.0]
        breaker = CircuitBreaker(failure_threshold=1, cooldown_seconds=30, clock=lambda: now[0])
        breaker.record_failure()
        assert breaker.state == "open"
        assert not breaker.should_try()

        now[0] = 31.0
        assert breaker.state == "half_open"
        assert breaker.should_try()

        breaker.record_failure()
        assert breaker.state == "open"

        now[0] = 62.0
        breaker.record_success()
        assert breaker.state == "closed"


class TestFactory:
    def test_twilio_when_configured(self, test_settings):
        test_settings.twilio_account_sid = "AC123"
        test_settings.twilio_auth_token = "token"
        test_settings.twilio_from_number = "+15145550000"
        gateway = create_sms_gateway(test_settings)
        assert isinstance(gateway, TwilioSmsGateway)
        assert gateway.messages_url == MESSAGES_URL

    @pytest.mark.asyncio
    async def test_logging_gateway_when_unconfigured(self, test_settings):
        gateway = create_sms_gateway(test_settings)
        assert isinstance(gateway, LoggingSmsGateway)
        with pytest.raises(DispatchError) as exc_info:
            await gateway.send("+15145551234", "hello")
        assert exc_info.value.retryable is False
