"""tokenauth - FastAPI Application Factory."""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tokenauth.api import api_router
from tokenauth.core import engine, settings, setup_logging
from tokenauth.core.database import init_db
from tokenauth.core.logging import get_logger
from tokenauth.middleware import RequestIDMiddleware, SecurityHeadersMiddleware
from tokenauth.services.notifier import drain_notifications

logger = get_logger("main")

# Upper bound on waiting for in-flight notifications at shutdown
_SHUTDOWN_DRAIN_TIMEOUT = 5.0


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    setup_logging(
        level=settings.log_level,
        format_type="dev" if settings.debug or settings.env == "development" else "structured",
    )
    logger.info(f"Starting {settings.app_name} v{settings.app_version} ({settings.env})")

    for warning in settings.check_security_configuration():
        logger.warning(f"SECURITY: {warning}")

    # SQLite deployments have no migration step; create the table on startup
    if settings.is_sqlite:
        await init_db()

    yield

    logger.info("Shutting down...")
    try:
        await asyncio.wait_for(drain_notifications(), timeout=_SHUTDOWN_DRAIN_TIMEOUT)
    except TimeoutError:
        logger.warning("Gave up waiting for pending notifications")
    await engine.dispose()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        description="Access/refresh token issuance and rotation",
        version=settings.app_version,
        lifespan=lifespan,
        # OpenAPI docs only in debug mode
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
    )

    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestIDMiddleware)

    # CORS middleware - MUST be outermost (added last in Starlette LIFO order)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Content-Type",
            "Accept",
            "X-Request-ID",
        ],
        expose_headers=["X-Request-ID"],
    )

    app.include_router(api_router)

    return app


# Application instance
app = create_app()


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import os

    import uvicorn

    uvicorn.run(
        "tokenauth.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_config=None,
    )
