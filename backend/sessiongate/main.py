"""SessionGate Backend - FastAPI Application Factory."""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sessiongate.api import auth_router, health_router, pages_router
from sessiongate.core import async_session_maker, settings, setup_logging
from sessiongate.core.logging import get_logger
from sessiongate.middleware import RouteGateMiddleware

# Import all models to ensure they're registered with Base for Alembic
from sessiongate.models import SessionRecord  # noqa: F401
from sessiongate.services.identity import JWKSIdentityAuthority
from sessiongate.services.route_gate import (
    HttpSessionVerifier,
    LocalSessionVerifier,
    RouteGate,
    SessionVerifier,
)
from sessiongate.services.session_store import cleanup_expired_sessions

logger = get_logger("main")


def task_done_callback(task: asyncio.Task[None]) -> None:
    """Log unhandled exceptions from background tasks."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Background task {task.get_name()} failed: {exc}")


async def _session_cleanup_loop() -> None:
    """Periodically remove expired sessions."""
    while True:
        await asyncio.sleep(settings.session_cleanup_interval_seconds)
        try:
            async with async_session_maker() as db:
                removed = await cleanup_expired_sessions(db)
                await db.commit()
                if removed > 0:
                    logger.info(f"Cleaned up {removed} expired sessions")
        except Exception:
            logger.exception("Error cleaning up expired sessions")


def build_route_gate() -> RouteGate:
    """Route gate verifying in process, or over HTTP when a verify URL is set."""
    verifier: SessionVerifier
    if settings.route_gate_verify_url:
        verifier = HttpSessionVerifier(
            settings.route_gate_verify_url,
            cookie_name=settings.session_cookie_name,
            timeout=settings.http_timeout,
        )
    else:
        verifier = LocalSessionVerifier(async_session_maker)
    return RouteGate.from_settings(verifier)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    setup_logging(level=settings.log_level, format_type=settings.log_format)
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")

    for warning in settings.check_security_configuration():
        logger.warning(f"SECURITY: {warning}")

    cleanup_task = asyncio.create_task(_session_cleanup_loop())
    cleanup_task.add_done_callback(task_done_callback)

    yield

    logger.info("Shutting down...")
    cleanup_task.cancel()
    try:
        await cleanup_task
    except asyncio.CancelledError:
        pass

    verifier = app.state.route_gate.verifier
    if isinstance(verifier, HttpSessionVerifier):
        await verifier.close()
    await JWKSIdentityAuthority.get_instance().close()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        description="Session issuance, verification and route gating",
        version=settings.app_version,
        lifespan=lifespan,
        # The docs sit outside /api and would otherwise be gated; only expose them in debug
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
    )

    app.state.route_gate = build_route_gate()

    app.add_middleware(RouteGateMiddleware)

    # CORS middleware - MUST be outermost (added last in Starlette LIFO order)
    # so that CORS headers are present on gate redirects too.
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
    )

    app.include_router(health_router)  # Health at root level
    app.include_router(auth_router)  # Session API at /api
    app.include_router(pages_router)  # Gated navigation

    return app


# Application instance
app = create_app()
