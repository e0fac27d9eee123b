"""
Call Escalation Relay - Exception Hierarchy

Structured exceptions for consistent error handling across the system.
All exceptions include error codes for API responses.
"""

from typing import Optional


class RelayError(Exception):
    """Base exception for all relay errors."""

    code: str = "UNKNOWN_ERROR"
    status_code: int = 500

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


# =============================================================================
# Intake Errors (reject the webhook)
# =============================================================================

class IntakeError(RelayError):
    """Inbound webhook rejected before any session mutation."""
    code = "INTAKE_ERROR"
    status_code = 400


class InvalidSignatureError(IntakeError):
    """Webhook signature missing, malformed, or not matching the body."""
    code = "INVALID_SIGNATURE"
    status_code = 401


class RateLimitedError(IntakeError):
    """Source exceeded its request budget for the current window."""
    code = "RATE_LIMITED"
    status_code = 429

    def __init__(self, message: str, retry_after: int, details: Optional[dict] = None):
        super().__init__(message, details)
        self.retry_after = retry_after


class MalformedPayloadError(IntakeError):
    """Body is not JSON, or lacks the event type or call id."""
    code = "MALFORMED_PAYLOAD"
    status_code = 400


# =============================================================================
# Dependency Errors (degrade one step, never the whole event)
# =============================================================================

class DispatchError(RelayError):
    """A single notification send was rejected or failed."""
    code = "DISPATCH_FAILURE"
    status_code = 502

    def __init__(
        self,
        message: str,
        recipient: Optional[str] = None,
        retryable: bool = True,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details)
        self.recipient = recipient
        self.retryable = retryable


class CircuitOpenError(DispatchError):
    """SMS provider skipped while its circuit breaker is open."""
    code = "CIRCUIT_OPEN"
    status_code = 503


class PersistenceError(RelayError):
    """Write to the persistence gateway failed."""
    code = "PERSISTENCE_FAILURE"
    status_code = 502

    def __init__(self, message: str, operation: str = "unknown", details: Optional[dict] = None):
        super().__init__(message, details)
        self.operation = operation


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigurationError(RelayError):
    """Required configuration is missing. Fatal at startup."""
    code = "CONFIGURATION_ERROR"
    status_code = 500
