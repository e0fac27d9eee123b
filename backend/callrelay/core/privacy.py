"""
Call Escalation Relay - Phone Number Utilities

Masking for logs and normalisation for prefix matching.

Raw phone numbers are needed to send SMS and are persisted as call data,
but they must never appear in log lines. Log through ``mask_phone_number``.
"""

import re
from typing import Optional

_E164_PATTERN = re.compile(r"^\+[1-9]\d{6,14}$")


def mask_phone_number(number: Optional[str], show_last_digits: int = 4) -> str:
    """
    Mask a phone number for logging.

    Examples:
        +15145551234 → ***1234
        5551234      → ***1234
        None         → unknown
    """
    if not number:
        return "unknown"

    digits = re.sub(r"\D", "", str(number))

    if len(digits) < show_last_digits:
        return "***"

    return f"***{digits[-show_last_digits:]}"


def is_e164(number: Optional[str]) -> bool:
    """True if the number is in E.164 form (+ and 7-15 digits)."""
    if not number:
        return False
    return bool(_E164_PATTERN.match(number.strip()))


def phone_digit_forms(number: Optional[str]) -> list[str]:
    """
    Digit strings a prefix may be matched against.

    Returns the full international digits and, for North American numbers,
    the 10-digit national number as well, so a configured exchange code like
    ``514555`` matches ``+15145551234``.
    """
    if not number:
        return []

    digits = re.sub(r"\D", "", str(number))
    if not digits:
        return []

    forms = [digits]
    if len(digits) == 11 and digits.startswith("1"):
        forms.append(digits[1:])
    return forms
