"""FastAPI application for HookRelay."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from hookrelay import __version__
from hookrelay.config import Settings
from hookrelay.exceptions import HookRelayError, NotFoundError, ValidationError
from hookrelay.logging import configure_from_settings, get_logger
from hookrelay.service import WebhookService

from .router import router, set_service

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifespan.

    Initializes the WebhookService (storage and retry poller) on startup
    and drains it on shutdown.
    """
    settings = Settings()

    configure_from_settings(settings)
    logger.info(
        "Starting HookRelay API",
        storage_backend=settings.storage_backend,
        retry_strategy=settings.retry_strategy,
    )

    service = WebhookService.create(settings)
    await service.initialize()
    set_service(service)

    yield

    await service.close()
    set_service(None)
    logger.info("HookRelay API stopped")


def create_app(use_lifespan: bool = True) -> FastAPI:
    """Create a FastAPI application.

    Args:
        use_lifespan: Attach the service lifespan. Tests that inject a
            service with ``set_service`` pass False.

    Returns:
        Configured FastAPI application.

    Example:
        ```python
        from hookrelay.api import create_app

        app = create_app()
        # Run with: uvicorn hookrelay.api:app --reload
        ```
    """
    app = FastAPI(
        title="HookRelay",
        description="Outbound webhook delivery with signed requests and retries.",
        version=__version__,
        lifespan=lifespan if use_lifespan else None,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        """Handle validation errors with 400 status."""
        logger.warning(
            "Validation error", field=exc.field, error=exc.message, path=str(request.url)
        )
        return JSONResponse(status_code=400, content=exc.to_dict())

    @app.exception_handler(NotFoundError)
    async def not_found_error_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        """Handle not found errors with 404 status."""
        logger.info(
            "Resource not found",
            resource_type=exc.resource_type,
            resource_id=exc.resource_id,
            path=str(request.url),
        )
        return JSONResponse(status_code=404, content=exc.to_dict())

    @app.exception_handler(HookRelayError)
    async def hookrelay_error_handler(request: Request, exc: HookRelayError) -> JSONResponse:
        """Handle all other HookRelay errors with 500 status."""
        logger.error("HookRelay error", error=exc.message, code=exc.code, path=str(request.url))
        return JSONResponse(status_code=500, content=exc.to_dict())

    app.include_router(router, prefix="/api/v1")

    return app


# Default app instance for uvicorn
app = create_app()
