"""
Call Escalation Relay - Backend Application Package

This package contains the webhook ingestion backend:
- API routes for call-platform webhooks
- Event pipeline orchestration
- Priority classification, escalation routing, and SMS dispatch
- Audit trail and persistence gateways
"""

__version__ = "0.1.0"
