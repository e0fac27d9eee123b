"""
Call Escalation Relay - Structured Logging

Provides structured JSON logging with context injection for correlation IDs
and call IDs. Sensitive values are masked before they reach a handler.
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional


# =============================================================================
# Context Variables
# =============================================================================

# Request-level context
correlation_id_var: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)
call_id_var: ContextVar[Optional[str]] = ContextVar('call_id', default=None)


# =============================================================================
# Masking Utilities
# =============================================================================

def mask_call_id(cid: Optional[str]) -> Optional[str]:
    """Mask call ID to last 4 characters."""
    if not cid:
        return None
    return f"***{cid[-4:]}" if len(cid) > 4 else "***"


def mask_sensitive_data(data: dict) -> dict:
    """
    Recursively mask sensitive fields in a dictionary.

    Sensitive fields: phone, number, recipient, caller, secret, token, etc.
    """
    sensitive_keys = {
        'phone', 'phone_number', 'recipient', 'caller', 'from_number', 'to_number',
        'password', 'token', 'secret', 'signature', 'auth', 'key'
    }

    masked = {}
    for key, value in data.items():
        key_lower = key.lower()

        if any(s in key_lower for s in sensitive_keys):
            if isinstance(value, str):
                masked[key] = f"***{value[-2:]}" if len(value) > 2 else "***"
            else:
                masked[key] = "[REDACTED]"
        elif isinstance(value, dict):
            masked[key] = mask_sensitive_data(value)
        else:
            masked[key] = value

    return masked


# =============================================================================
# Formatters
# =============================================================================

class StructuredFormatter(logging.Formatter):
    """
    JSON formatter that injects context variables and masks sensitive data.

    Output format:
    {
        "timestamp": "2024-11-30T00:00:00.000000+00:00",
        "level": "INFO",
        "logger": "module.submodule",
        "correlation_id": "req_abc123",
        "call_id": "***1234",
        "message": "Human-readable message",
        "data": { ... }
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = correlation_id_var.get()
        if correlation_id:
            log_entry["correlation_id"] = correlation_id

        call_id = call_id_var.get()
        if call_id:
            log_entry["call_id"] = mask_call_id(call_id)

        if hasattr(record, 'event_type'):
            log_entry["event_type"] = record.event_type

        if hasattr(record, 'data') and record.data:
            log_entry["data"] = mask_sensitive_data(record.data)

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Human-readable formatter for development.
    Includes timestamp, level, logger, and message with context.
    """

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

        context_parts = []

        correlation_id = correlation_id_var.get()
        if correlation_id:
            context_parts.append(f"req={correlation_id}")

        call_id = call_id_var.get()
        if call_id:
            context_parts.append(f"call={mask_call_id(call_id)}")

        context_str = f" [{', '.join(context_parts)}]" if context_parts else ""

        message = f"{timestamp} | {record.levelname:<8} | {record.name}{context_str} | {record.getMessage()}"

        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)

        return message


# =============================================================================
# Logger Setup
# =============================================================================

def setup_structured_logging(
    level: str = "INFO",
    json_format: bool = False,
) -> None:
    """
    Configure structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: Use JSON format (True for production, False for development)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level.upper()))

    if json_format:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(HumanReadableFormatter())

    root_logger.addHandler(handler)

    # Suppress noisy loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# =============================================================================
# Context Managers
# =============================================================================

class LogContext:
    """
    Context manager for setting log context variables.

    Usage:
        with LogContext(correlation_id="req_abc", call_id="xyz789"):
            logger.info("Processing request")
    """

    def __init__(
        self,
        correlation_id: Optional[str] = None,
        call_id: Optional[str] = None,
    ):
        self._correlation_id = correlation_id
        self._call_id = call_id
        self._tokens = []

    def __enter__(self):
        if self._correlation_id:
            self._tokens.append((correlation_id_var, correlation_id_var.set(self._correlation_id)))
        if self._call_id:
            self._tokens.append((call_id_var, call_id_var.set(self._call_id)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()
        return False

    def bind_call(self, call_id: str) -> None:
        """Attach a call id once it is known (after parsing)."""
        self._tokens.append((call_id_var, call_id_var.set(call_id)))
