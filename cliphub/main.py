"""
cliphub API — entry point.

Startup sequence:
  1. Configure OTel tracing (→ Jaeger via OTLP)
  2. Initialise DB connection pool (TiDB) and create tables if not present
  3. Initialise MinIO client & bucket
  4. Connect the Redis realtime relay (when enabled) and start the notifier
  5. Start Kafka producer
  6. Start the identity provider client
  7. Expose Prometheus /metrics endpoint
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from botocore.exceptions import BotoCoreError
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from sqlalchemy.exc import SQLAlchemyError

from cliphub.config import Settings, settings as default_settings
from cliphub.dependencies import Services, build_services, close_services
from cliphub.errors import CliphubError
from cliphub.routers import admin, collections, comments, feed, media, posts, realtime, users
from cliphub.telemetry import instrument_app, setup_tracing

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


def _error(status_code: int, kind: str, message: str, details: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"kind": kind, "message": message, "details": details or {}}},
    )


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(CliphubError)
    async def domain_error(request: Request, exc: CliphubError):
        if exc.status_code >= 500:
            logger.warning("%s %s → %s: %s", request.method, request.url.path, exc.kind, exc.message)
        return _error(exc.status_code, exc.kind, exc.message, exc.details)

    @app.exception_handler(RequestValidationError)
    async def request_invalid(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()
        ]
        return _error(422, "validation_error", "Request is invalid", {"errors": errors})

    @app.exception_handler(SQLAlchemyError)
    async def database_error(request: Request, exc: SQLAlchemyError):
        logger.exception("Unhandled database error on %s %s", request.method, request.url.path)
        return _error(503, "unavailable", "Storage temporarily unavailable")

    @app.exception_handler(BotoCoreError)
    async def storage_error(request: Request, exc: BotoCoreError):
        logger.exception("Unhandled object storage error on %s %s", request.method, request.url.path)
        return _error(503, "unavailable", "Media storage temporarily unavailable")


def create_app(settings: Settings = default_settings, services: Optional[Services] = None) -> FastAPI:
    """
    Build the application. Pass a ready `services` container to skip
    connecting to the real backing systems (tests).
    """
    setup_tracing(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage startup and shutdown of all external connections."""
        logger.info("Starting cliphub API (env=%s)", settings.environment)
        owned = services is None
        app.state.services = services if services is not None else await build_services(settings)
        logger.info("All services connected. API ready.")
        yield
        logger.info("Shutting down...")
        if owned:
            await close_services(app.state.services)

    app = FastAPI(
        title="cliphub API",
        description="Short-video posts, likes, comments, collections and realtime updates.",
        version="1.0.0",
        lifespan=lifespan,
    )
    _install_error_handlers(app)

    # ── Routers ────────────────────────────────────────────────────────────
    app.include_router(feed.router, prefix="/feed", tags=["Feed"])
    app.include_router(posts.router, prefix="/posts", tags=["Posts"])
    app.include_router(comments.router, prefix="/comments", tags=["Comments"])
    app.include_router(collections.router, prefix="/collections", tags=["Collections"])
    app.include_router(users.router, prefix="/users", tags=["Users"])
    app.include_router(media.router, prefix="/media", tags=["Media"])
    app.include_router(admin.router, prefix="/admin", tags=["Admin"])
    app.include_router(realtime.router, tags=["Realtime"])

    # ── Prometheus metrics endpoint ────────────────────────────────────────
    app.mount("/metrics", make_asgi_app())

    # ── OTel FastAPI instrumentation ──────────────────────────────────────
    instrument_app(app, settings)

    @app.get("/health", tags=["Health"])
    async def health():
        return {"status": "ok", "service": settings.service_name}

    return app


app = create_app()
