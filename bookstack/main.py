"""
Bookstack Intake
FastAPI application entry point

- Batch upload, status, queue and shelf capacity endpoints under /api/batch
- Structured error responses (bookstack.core.error_handler)
- One IntakePipeline per process, built in the lifespan and closed on shutdown
  (drains running batch jobs, closes provider HTTP clients and the database)
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request

from bookstack import __version__
from bookstack.api.routes import batch
from bookstack.core.config import Settings, settings as default_settings
from bookstack.core.error_handler import register_error_handlers
from bookstack.core.logging_config import configure_logging
from bookstack.services.pipeline import IntakePipeline, build_pipeline

logger = logging.getLogger(__name__)


def create_app(pipeline: Optional[IntakePipeline] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the application.

    A pipeline passed in is used as-is and left open on shutdown (the caller
    owns it); otherwise one is built from settings and closed with the app.
    """
    settings = settings or (pipeline.settings if pipeline else default_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = pipeline is None
        app.state.pipeline = pipeline or await build_pipeline(settings)
        logger.info(f"{settings.APP_NAME} {__version__} started ({settings.ENVIRONMENT})")

        yield

        if owned:
            await app.state.pipeline.close()
        logger.info(f"{settings.APP_NAME} stopped")

    app = FastAPI(
        lifespan=lifespan,
        title=settings.APP_NAME,
        description="Bulk book inventory intake: validation, enrichment and shelf placement.",
        version=__version__,
        debug=settings.DEBUG,
    )
    if pipeline is not None:
        # Available even when the lifespan is not run (plain ASGI transport in tests)
        app.state.pipeline = pipeline

    register_error_handlers(app, debug=settings.DEBUG)
    app.include_router(batch.router, prefix="/api")

    @app.get("/health", tags=["Health"])
    async def health_check(request: Request):
        current: IntakePipeline = request.app.state.pipeline
        return {
            "status": "healthy",
            "version": __version__,
            "providers": current.chain.get_metrics(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


def _configured_app() -> FastAPI:
    configure_logging(default_settings.LOG_LEVEL)
    return create_app()


app = _configured_app()
