"""
Call Escalation Relay - Webhook Signature Verification

HMAC-SHA256 over the exact raw request bytes, hex encoded. The platform may
prefix the value with ``hmac-sha256=``. Verification runs before any parsing
and fails closed.
"""

import hashlib
import hmac
import logging
import re
from typing import Optional

from callrelay.core.exceptions import InvalidSignatureError

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "hmac-sha256="
_HEX_SIGNATURE = re.compile(r"^[0-9a-f]{64}$")


def sign(raw_body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of ``raw_body``; what the platform sends."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


class SignatureVerifier:
    """
    Validates that a webhook originated from the call platform.

    Usage:
        verifier = SignatureVerifier(secret=settings.webhook_secret)
        verifier.verify(raw_body, request.headers.get("x-vapi-signature"))
    """

    def __init__(self, secret: str):
        self._secret = secret

    def verify(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """
        Check ``signature`` against the body.

        Returns:
            True when the signature is valid

        Raises:
            InvalidSignatureError: Missing secret, missing or malformed
                signature, or mismatch
        """
        if not self._secret:
            logger.critical("Signature check attempted without a configured secret")
            raise InvalidSignatureError("Webhook secret not configured")

        if not signature:
            raise InvalidSignatureError("Missing webhook signature")

        candidate = signature.strip().lower()
        if candidate.startswith(SIGNATURE_PREFIX):
            candidate = candidate[len(SIGNATURE_PREFIX):]

        if not _HEX_SIGNATURE.match(candidate):
            raise InvalidSignatureError(
                "Invalid signature format",
                details={"length": len(candidate)},
            )

        expected = sign(raw_body, self._secret)
        if not hmac.compare_digest(expected, candidate):
            raise InvalidSignatureError("Signature mismatch")

        return True
