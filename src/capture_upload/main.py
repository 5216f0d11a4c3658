"""Main application entrypoint for the capture upload service."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI

from capture_upload.api.middleware import HTTPErrorLoggingMiddleware
from capture_upload.api.v1 import routes_health
from capture_upload.api.v1.routes_captures import router as captures_router
from capture_upload.core.config import settings
from capture_upload.core.logging import setup_logging
from capture_upload.pipeline.manager import UploadSessionManager

logger = logging.getLogger(__name__)


def create_app(manager: Optional[UploadSessionManager] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        manager: Session manager to serve. Built from settings at startup
            when omitted.

    Returns:
        FastAPI: Configured FastAPI application instance
    """
    setup_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        app.state.manager = manager or UploadSessionManager.from_settings(settings)
        logger.info(
            "Upload manager started",
            extra={"storage_backend": settings.STORAGE_BACKEND, "env": settings.ENV},
        )
        try:
            yield
        finally:
            await app.state.manager.close()
            app.state.manager = None

    app = FastAPI(
        title=settings.SERVICE_NAME,
        version=settings.SERVICE_VERSION,
        lifespan=lifespan,
    )
    app.add_middleware(HTTPErrorLoggingMiddleware)

    app.include_router(routes_health.router, tags=["health"])
    app.include_router(captures_router)

    return app


# Export app instance for ASGI servers
app = create_app()


if __name__ == "__main__":
    import os

    import uvicorn

    port = int(os.getenv("PORT", "8080"))
    uvicorn.run(app, host=os.getenv("HOST", "127.0.0.1"), port=port)
