"""
Call Escalation Relay - Escalation Router

Maps a priority tier to who gets notified, and decides when a call's tier
warrants a new escalation.

Routing table:
    P1 -> lead, manager, every on-call number
    P2 -> lead, manager
    P3 -> lead
    P4 -> lead

Each tier escalates at most once per call, and only when it outranks every
tier already escalated. Urgent tiers fire as soon as they are reached; the
others wait for the final classification at call end and fire only if the
call produced no escalation at all.
"""

import logging
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from callrelay.config import Settings
from callrelay.core.logging import mask_call_id
from callrelay.core.types import (
    CallSession,
    EscalationPlan,
    PriorityTier,
    Recipient,
    RecipientRole,
)

logger = logging.getLogger(__name__)


ROUTING_TABLE: Dict[PriorityTier, Tuple[RecipientRole, ...]] = {
    PriorityTier.P1: (RecipientRole.LEAD, RecipientRole.MANAGER, RecipientRole.ON_CALL),
    PriorityTier.P2: (RecipientRole.LEAD, RecipientRole.MANAGER),
    PriorityTier.P3: (RecipientRole.LEAD,),
    PriorityTier.P4: (RecipientRole.LEAD,),
}

DEFAULT_URGENT_TIERS = (PriorityTier.P1, PriorityTier.P2)


def template_key_for(tier: PriorityTier) -> str:
    return f"escalation.{tier.value.lower()}"


class EscalationRouter:
    """
    Builds EscalationPlans from the routing table and configured numbers.

    Usage:
        router = EscalationRouter.from_settings(settings)
        plan = router.decide(session, PriorityTier.P1)
        if plan:
            await dispatcher.dispatch(plan, session)
    """

    def __init__(
        self,
        recipients: Mapping[RecipientRole, Sequence[str]],
        urgent_tiers: Iterable[PriorityTier] = DEFAULT_URGENT_TIERS,
    ):
        self._recipients = {role: list(numbers) for role, numbers in recipients.items()}
        self._urgent_tiers = frozenset(urgent_tiers)

    @classmethod
    def from_settings(cls, settings: Settings) -> "EscalationRouter":
        urgent = []
        for name in settings.urgent_tier_list:
            try:
                urgent.append(PriorityTier(name))
            except ValueError:
                logger.warning("Ignoring unknown urgent tier '%s'", name)
        return cls(
            recipients={
                RecipientRole.LEAD: settings.lead_recipients,
                RecipientRole.MANAGER: settings.manager_recipients,
                RecipientRole.ON_CALL: settings.on_call_recipients,
            },
            urgent_tiers=urgent,
        )

    def is_urgent(self, tier: PriorityTier) -> bool:
        return tier in self._urgent_tiers

    def plan(self, tier: PriorityTier, session: CallSession) -> EscalationPlan:
        """Ordered, de-duplicated recipients for ``tier``."""
        recipients: List[Recipient] = []
        seen = set()
        for role in ROUTING_TABLE[tier]:
            for number in self._recipients.get(role, []):
                if number in seen:
                    continue
                seen.add(number)
                recipients.append(Recipient(role=role, phone_number=number))

        if not recipients:
            logger.warning("No recipients configured for %s escalation", tier.value)

        return EscalationPlan(
            call_id=session.call_id,
            tier=tier,
            template_key=template_key_for(tier),
            recipients=tuple(recipients),
        )

    def decide(
        self,
        session: CallSession,
        tier: Optional[PriorityTier],
        final: bool = False,
    ) -> Optional[EscalationPlan]:
        """
        Return a plan if ``tier`` should escalate now, else None.

        Records the tier on the session so it never fires twice. Must be
        called under the call's session lock.
        """
        if tier is None:
            return None

        highest = session.highest_escalated_tier
        if highest is not None and not tier.outranks(highest):
            return None

        if not self.is_urgent(tier):
            if not final or session.escalated_tiers:
                return None

        plan = self.plan(tier, session)
        session.escalated_tiers.append(tier)
        logger.info(
            "Escalation decided: call=%s, tier=%s, recipients=%d",
            mask_call_id(session.call_id),
            tier.value,
            len(plan.recipients),
        )
        return plan
