"""
Call Escalation Relay - Backend Entrypoint

FastAPI application factory and server configuration.
Run with: uvicorn main:app --app-dir backend --reload
"""

from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from callrelay import __version__
from callrelay.config import Settings, get_settings, validate_startup
from callrelay.api import webhook
from callrelay.core.exceptions import RelayError
from callrelay.core.logging import setup_structured_logging
from callrelay.core.pipeline import create_pipeline

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    sms_gateway=None,
    persistence=None,
    sleep=None,
) -> FastAPI:
    """
    Application factory.

    Collaborators default to what settings select; tests pass fakes.
    """
    settings = settings or get_settings()
    show_docs = settings.app_debug and not settings.is_production

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        Startup:
            - Validate configuration (missing webhook secret is fatal)
            - Configure logging
            - Create the event pipeline and start session cleanup

        Shutdown:
            - Drain in-flight escalations and audit writes
        """
        # === Startup ===
        setup_structured_logging(
            settings.app_log_level,
            json_format=settings.log_json or settings.is_production,
        )
        validate_startup(settings)
        logger.info("🚀 Call Escalation Relay starting in %s mode", settings.app_env)

        overrides = {}
        if sleep is not None:
            overrides["sleep"] = sleep
        pipeline = create_pipeline(
            settings,
            sms_gateway=sms_gateway,
            persistence=persistence,
            **overrides,
        )

        # Store pipeline in app state for dependency injection
        app.state.pipeline = pipeline
        app.state.settings = settings

        await pipeline.startup()

        logger.info("✅ Pipeline initialized and ready")
        logger.info(
            "   Recipients: lead=%d, manager=%d, on_call=%d",
            len(settings.lead_recipients),
            len(settings.manager_recipients),
            len(settings.on_call_recipients),
        )
        logger.info(
            "   Rate limit: %d requests / %ds per source",
            settings.rate_limit_requests,
            settings.rate_limit_window_seconds,
        )

        yield

        # === Shutdown ===
        logger.info("👋 Call Escalation Relay shutting down")
        await pipeline.shutdown()
        logger.info("✅ Shutdown complete")

    app = FastAPI(
        title="Call Escalation Relay",
        description="Webhook ingestion, priority classification and SMS escalation for call-platform events",
        version=__version__,
        docs_url="/docs" if show_docs else None,
        redoc_url="/redoc" if show_docs else None,
        lifespan=lifespan,
    )

    # --- Error handlers ---
    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.to_dict()},
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled error on %s: %s", request.url.path, exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": {"code": "INTERNAL_ERROR", "message": "Internal error"},
            },
        )

    # --- Routes ---
    app.include_router(webhook.router, prefix="/api")

    return app


# Create app instance
app = create_app()
