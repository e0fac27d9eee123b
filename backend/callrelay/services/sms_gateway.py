"""
Call Escalation Relay - SMS Gateway

Outbound SMS through the Twilio REST API.

Sends are single attempts; retry scheduling belongs to the
NotificationDispatcher. Every failure surfaces as a DispatchError whose
``retryable`` flag tells the dispatcher whether another attempt could help.
"""

import logging
from abc import abstractmethod
from typing import Optional, Protocol, runtime_checkable

import httpx

from callrelay.config import Settings
from callrelay.core.exceptions import CircuitOpenError, DispatchError
from callrelay.core.privacy import mask_phone_number
from callrelay.services.circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)

SMS_MAX_LENGTH = 1600


@runtime_checkable
class SmsGateway(Protocol):
    """Anything that can deliver one text message."""

    @abstractmethod
    async def send(self, to: str, body: str) -> str:
        """
        Send ``body`` to ``to``.

        Returns:
            Provider message id

        Raises:
            DispatchError: Send rejected or failed
        """
        ...


class TwilioSmsGateway:
    """
    Twilio ``Messages.json`` client with a circuit breaker.

    4xx responses other than 429 are treated as permanent (bad number,
    unverified sender); 429, 5xx and transport errors are retryable.
    """

    def __init__(
        self,
        *,
        account_sid: str,
        auth_token: str,
        from_number: str,
        base_url: str = "https://api.twilio.com",
        timeout: float = 10.0,
        breaker: Optional[CircuitBreaker] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.breaker = breaker or CircuitBreaker(label="twilio")
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "TwilioSmsGateway":
        return cls(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_from_number,
            base_url=settings.twilio_api_base_url,
            timeout=settings.twilio_timeout_seconds,
            breaker=CircuitBreaker(
                failure_threshold=settings.sms_circuit_failure_threshold,
                cooldown_seconds=settings.sms_circuit_cooldown_seconds,
                label="twilio",
            ),
        )

    @property
    def messages_url(self) -> str:
        return f"{self.base_url}/2010-04-01/Accounts/{self.account_sid}/Messages.json"

    async def send(self, to: str, body: str) -> str:
        if not self.breaker.should_try():
            raise CircuitOpenError("SMS provider circuit open", recipient=to)

        form = {"From": self.from_number, "To": to, "Body": body[:SMS_MAX_LENGTH]}
        auth = (self.account_sid, self.auth_token)

        try:
            if self._client is not None:
                resp = await self._client.post(self.messages_url, data=form, auth=auth)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(self.messages_url, data=form, auth=auth)
        except httpx.HTTPError as e:
            self.breaker.record_failure()
            logger.warning("Twilio request to %s failed: %s", mask_phone_number(to), e)
            raise DispatchError(f"Twilio unreachable: {e}", recipient=to) from e

        if resp.status_code >= 400:
            retryable = resp.status_code == 429 or resp.status_code >= 500
            if retryable:
                self.breaker.record_failure()
            message = _error_message(resp)
            logger.warning(
                "Twilio rejected SMS to %s: HTTP %d %s",
                mask_phone_number(to),
                resp.status_code,
                message,
            )
            raise DispatchError(
                f"HTTP {resp.status_code}: {message}",
                recipient=to,
                retryable=retryable,
                details={"status": resp.status_code},
            )

        try:
            payload = resp.json()
        except ValueError:
            payload = None
        sid = payload.get("sid") if isinstance(payload, dict) else None
        if not sid:
            self.breaker.record_failure()
            raise DispatchError("No message SID returned", recipient=to)

        self.breaker.record_success()
        logger.info("SMS sent to %s: sid=%s", mask_phone_number(to), sid)
        return sid


def _error_message(resp: httpx.Response) -> str:
    try:
        payload = resp.json()
    except ValueError:
        return resp.text[:200] or "SMS send failed"
    if isinstance(payload, dict):
        return str(payload.get("message") or "SMS send failed")
    return "SMS send failed"


class LoggingSmsGateway:
    """
    Stand-in used when Twilio credentials are not configured.

    Logs the masked recipient and fails every send, so escalations are
    audited as failed instead of silently reported delivered.
    """

    async def send(self, to: str, body: str) -> str:
        logger.error(
            "SMS to %s not sent: Twilio is not configured (%d chars)",
            mask_phone_number(to),
            len(body),
        )
        raise DispatchError("SMS gateway not configured", recipient=to, retryable=False)


def create_sms_gateway(settings: Settings) -> SmsGateway:
    """Twilio when configured, otherwise the logging stand-in."""
    if settings.twilio_configured:
        logger.info("Creating TwilioSmsGateway")
        return TwilioSmsGateway.from_settings(settings)

    logger.warning("Twilio credentials missing; SMS escalations will be logged and fail")
    return LoggingSmsGateway()
