"""
Call Escalation Relay - API Package

- schemas: Wire models for webhook payloads and responses
- webhook: Inbound webhook router (import from callrelay.api.webhook)
"""
