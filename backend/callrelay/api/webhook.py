"""
Call Escalation Relay - Webhook Routes

Inbound endpoint for call-platform lifecycle events.

The route hands the exact request bytes to the EventPipeline (held in
app.state) and relays its status, body and headers unchanged. All decisions
live in the pipeline; this layer only extracts transport details.
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from callrelay.config import Settings
from callrelay.core.pipeline import EventPipeline

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


# =============================================================================
# Dependencies
# =============================================================================

def get_pipeline(request: Request) -> EventPipeline:
    """Dependency to get the event pipeline from app state."""
    return request.app.state.pipeline


def get_settings(request: Request) -> Settings:
    """Dependency to get settings from app state."""
    return request.app.state.settings


def source_id_for(request: Request) -> str:
    """First X-Forwarded-For hop, else the peer address."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


# =============================================================================
# Routes
# =============================================================================

@router.post("/webhooks/call-platform")
@router.post("/vapi/webhook", include_in_schema=False)
async def receive_call_event(
    request: Request,
    pipeline: EventPipeline = Depends(get_pipeline),
    settings: Settings = Depends(get_settings),
) -> JSONResponse:
    """
    Receive one call-lifecycle webhook.

    Responses:
        200: accepted (including unknown, duplicate and out-of-order events)
        400: body is not a usable event
        401: signature missing or invalid
        429: source over its rate limit (Retry-After set)
        500: unexpected failure
    """
    raw_body = await request.body()
    signature = request.headers.get(settings.webhook_signature_header)

    response = await pipeline.handle(raw_body, signature, source_id_for(request))

    return JSONResponse(
        status_code=response.status_code,
        content=response.body,
        headers=response.headers,
    )
