"""
Call Escalation Relay - Priority Classifier

Derives an urgency tier from call content and caller metadata using ordered
keyword rules. First matching rule wins:

    1. Emergency keyword in the problem description          -> P1
    2. Caller number on a municipal exchange, or municipal
       keyword in the problem description                    -> P2
    3. Commercial / high-value keyword in any field, or
       estimated value at or above the threshold              -> P3
    4. Anything else                                          -> P4

The problem description is the caller's transcript plus the extracted
``problem`` field; other fields (name, address, ...) only feed rule 3.
Matching is case-insensitive substring matching. The classifier is
stateless; keeping a stored tier from dropping is the caller's job via
``escalate``.
"""

import logging
from typing import Any, Iterable, List, Mapping, Optional

from callrelay.config import Settings
from callrelay.core.privacy import phone_digit_forms
from callrelay.core.types import Classification, PriorityTier

logger = logging.getLogger(__name__)


def _flatten_values(fields: Mapping[str, Any]) -> List[str]:
    """String values of a (possibly nested) field mapping."""
    values: List[str] = []
    for value in fields.values():
        if isinstance(value, str):
            values.append(value)
        elif isinstance(value, Mapping):
            values.extend(_flatten_values(value))
        elif isinstance(value, (list, tuple)):
            values.extend(str(item) for item in value if isinstance(item, str))
    return values


def _problem_description(transcript: str, fields: Mapping[str, Any]) -> str:
    """Caller transcript plus the extracted problem field, lowercased."""
    parts = [transcript or ""]
    problem = fields.get("problem")
    if isinstance(problem, str):
        parts.append(problem)
    return " ".join(parts).lower()


def _estimated_value(fields: Mapping[str, Any]) -> Optional[float]:
    raw = fields.get("estimated_value")
    if raw is None:
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


class PriorityClassifier:
    """
    Keyword and prefix rules mapping call content to a PriorityTier.

    Usage:
        classifier = PriorityClassifier.from_settings(settings)
        result = classifier.classify("Inondation au sous-sol", {}, "+15145551234")
        result.tier  # PriorityTier.P1
    """

    def __init__(
        self,
        emergency_keywords: Iterable[str],
        municipal_prefixes: Iterable[str] = (),
        municipal_keywords: Iterable[str] = (),
        commercial_keywords: Iterable[str] = (),
        high_value_threshold: Optional[float] = None,
    ):
        self.emergency_keywords = [k.lower() for k in emergency_keywords if k]
        self.municipal_prefixes = [p.lstrip("+") for p in municipal_prefixes if p]
        self.municipal_keywords = [k.lower() for k in municipal_keywords if k]
        self.commercial_keywords = [k.lower() for k in commercial_keywords if k]
        self.high_value_threshold = high_value_threshold

    @classmethod
    def from_settings(cls, settings: Settings) -> "PriorityClassifier":
        return cls(
            emergency_keywords=settings.p1_keyword_list,
            municipal_prefixes=settings.p2_prefix_list,
            municipal_keywords=settings.p2_keyword_list,
            commercial_keywords=settings.p3_keyword_list,
            high_value_threshold=settings.p3_value_threshold,
        )

    def classify(
        self,
        transcript: str,
        fields: Optional[Mapping[str, Any]] = None,
        phone_number: Optional[str] = None,
    ) -> Classification:
        """
        Evaluate the rules against the call's current content.

        Args:
            transcript: Accumulated caller transcript
            fields: Extracted structured fields (name, address, problem, ...)
            phone_number: Caller number, any format

        Returns:
            Classification with the tier, a short reason code and the match
        """
        fields = fields or {}
        description = _problem_description(transcript, fields)

        match = self._first_match(description, self.emergency_keywords)
        if match:
            return Classification(PriorityTier.P1, "emergency_keyword", match)

        prefix = self._matching_prefix(phone_number)
        if prefix:
            return Classification(PriorityTier.P2, "municipal_prefix", prefix)

        match = self._first_match(description, self.municipal_keywords)
        if match:
            return Classification(PriorityTier.P2, "municipal_keyword", match)

        everything = " ".join([transcript or ""] + _flatten_values(fields)).lower()
        match = self._first_match(everything, self.commercial_keywords)
        if match:
            return Classification(PriorityTier.P3, "commercial_keyword", match)

        value = _estimated_value(fields)
        if self.high_value_threshold is not None and value is not None:
            if value >= self.high_value_threshold:
                return Classification(PriorityTier.P3, "high_value", str(value))

        return Classification(PriorityTier.P4, "standard")

    @staticmethod
    def escalate(
        current: Optional[PriorityTier],
        new: Optional[PriorityTier],
    ) -> Optional[PriorityTier]:
        """The more severe of two tiers; a less severe result never wins."""
        return PriorityTier.most_severe(current, new)

    @staticmethod
    def _first_match(text: str, keywords: List[str]) -> Optional[str]:
        for keyword in keywords:
            if keyword in text:
                return keyword
        return None

    def _matching_prefix(self, phone_number: Optional[str]) -> Optional[str]:
        if not self.municipal_prefixes:
            return None
        for digits in phone_digit_forms(phone_number):
            for prefix in self.municipal_prefixes:
                if digits.startswith(prefix):
                    return prefix
        return None
