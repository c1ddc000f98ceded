"""Main application entrypoint for the NoteVault file service."""

from fastapi import FastAPI

from notevault.api.middleware import HTTPErrorLoggingMiddleware
from notevault.api.v1 import routes_health
from notevault.api.v1.routes_files import router as files_router
from notevault.core.config import settings
from notevault.core.logging import setup_logging


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        FastAPI: Configured FastAPI application instance
    """
    # Initialize logging first
    setup_logging()

    app = FastAPI(
        title=settings.SERVICE_NAME,
        version=settings.SERVICE_VERSION,
    )

    app.add_middleware(HTTPErrorLoggingMiddleware)

    app.include_router(routes_health.router, tags=["health"])
    app.include_router(files_router)

    return app


# Export app instance for ASGI servers
app = create_app()
