"""
Call Escalation Relay - Services Package

Contains the pipeline's stage implementations and external gateways:
- Signature verification and event parsing
- Call state tracking, priority classification, escalation routing
- Notification dispatch over an SMS gateway
- Persistence gateways

Design Pattern:
    External collaborators (SMS, persistence) are defined as Protocols with
    one or more implementations. The pipeline is configured with concrete
    implementations at startup, so tests inject fakes without patching.
"""

from .signature import SignatureVerifier, sign
from .event_parser import parse_event, normalize_fields
from .classifier import PriorityClassifier
from .call_tracker import CallStateTracker
from .router import EscalationRouter
from .sms_gateway import SmsGateway, TwilioSmsGateway, create_sms_gateway
from .notifier import NotificationDispatcher, RetryPolicy, render_message
from .persistence import (
    PersistenceGateway,
    InMemoryPersistenceGateway,
    SupabasePersistenceGateway,
    create_persistence_gateway,
)

__all__ = [
    # Intake
    "SignatureVerifier",
    "sign",
    "parse_event",
    "normalize_fields",
    # Decisions
    "PriorityClassifier",
    "CallStateTracker",
    "EscalationRouter",
    # Delivery
    "SmsGateway",
    "TwilioSmsGateway",
    "create_sms_gateway",
    "NotificationDispatcher",
    "RetryPolicy",
    "render_message",
    # Persistence
    "PersistenceGateway",
    "InMemoryPersistenceGateway",
    "SupabasePersistenceGateway",
    "create_persistence_gateway",
]
