"""
FastAPI application factory for the identity mirror.

Webhook routes are verified by Svix signature; every other non-exempt route
goes through ClerkAuthMiddleware, which attaches request.state.identity.
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Callable, Iterable, Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from identity_mirror import __version__
from identity_mirror.api.routes import health, users, webhooks_clerk
from identity_mirror.auth.clerk_verifier import ClerkJWTVerifier
from identity_mirror.auth.middleware import ClerkAuthMiddleware
from identity_mirror.config.settings import MirrorSettings, get_settings
from identity_mirror.database.session import dispose_engine, get_engine
from identity_mirror.db_base import Base

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    settings: MirrorSettings = app.state.settings
    logger.info("Starting identity mirror API", extra=settings.describe())

    if not settings.webhook_configured:
        logger.warning("CLERK_WEBHOOK_SECRET not set; webhook endpoint will return 503")
    if not settings.auth_configured:
        logger.warning("CLERK_ISSUER_URL not set; authenticated endpoints will return 503")
    if not settings.database_url:
        logger.error("DATABASE_URL is not set; identity store unavailable")
    elif settings.auto_create_tables:
        import identity_mirror.models  # noqa: F401 - register model metadata
        Base.metadata.create_all(bind=get_engine())
        logger.info("Created identity mirror tables")

    yield

    logger.info("Shutting down identity mirror API")
    dispose_engine()


def create_app(
    settings: Optional[MirrorSettings] = None,
    verifier: Optional[ClerkJWTVerifier] = None,
    session_factory: Optional[Callable[[], Session]] = None,
    optional_auth_paths: Iterable[str] = (),
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Configuration (read from the environment if not provided)
        verifier: JWT verifier for the auth middleware (built lazily if not provided)
        session_factory: Session factory for the auth middleware
        optional_auth_paths: Paths where a credential is used when present
            but not required
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Identity Mirror API",
        description="Local mirror of Clerk identities, kept in sync by webhooks",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings

    cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")

    app.add_middleware(
        ClerkAuthMiddleware,
        verifier=verifier,
        session_factory=session_factory,
        optional_paths=optional_auth_paths,
    )
    # Added last so it runs first (preflight never reaches the auth middleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router)
    app.include_router(webhooks_clerk.router)
    app.include_router(users.router)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle unhandled exceptions with proper logging."""
        identity = getattr(request.state, "identity", None)
        logger.error(
            "Unhandled exception",
            extra={
                "external_id": getattr(identity, "external_id", None),
                "error_type": type(exc).__name__,
                "path": request.url.path,
            },
            exc_info=True,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "detail": "An unexpected error occurred",
            },
        )

    return app
