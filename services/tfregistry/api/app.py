"""
FastAPI application factory for the tfregistry ingestion API.

Uses lifespan handler for startup/shutdown with async resource management.
"""

import asyncio
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tfregistry.config import settings
from tfregistry.db.session import close_db, get_session_factory, init_db
from tfregistry.logging_config import configure_logging, get_logger
from tfregistry.scm.connectors import init_connectors
from tfregistry.services.background import TaskDispatcher
from tfregistry.services.encryption_service import build_token_cipher
from tfregistry.services.ingestion_context import IngestionContext
from tfregistry.services.mirror_sync_service import MirrorSyncService
from tfregistry.services.tag_immutability_monitor import run_immutability_monitor
from tfregistry.services.webhook_ingestion import WebhookIngestor
from tfregistry.storage import close_storage, init_storage

from .health import router as health_router

logger = get_logger(__name__)

SHUTDOWN_GRACE_SECONDS = 30.0


async def _stop_task(task: asyncio.Task, name: str) -> None:
    try:
        await asyncio.wait_for(task, timeout=SHUTDOWN_GRACE_SECONDS)
    except TimeoutError:
        logger.warning("Background loop did not stop in time", task=name)
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.error("Background loop crashed", task=name, error=str(e), exc_info=e)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Application lifespan handler for startup and shutdown."""
    configure_logging(json_logs=settings.json_logs, log_level=settings.log_level)
    logger.info("Starting tfregistry API server", version="0.1.0")

    await init_db()
    logger.info("Database initialized")

    cipher = build_token_cipher(settings.encryption)
    logger.info("Token cipher initialized")

    connectors = init_connectors()

    storage = await init_storage()

    dispatcher = TaskDispatcher(
        max_in_flight=settings.publishing.max_in_flight,
        max_pending=settings.publishing.max_pending,
    )
    ctx = IngestionContext(
        cipher=cipher,
        connectors=connectors,
        storage=storage,
        session_factory=get_session_factory(),
        dispatcher=dispatcher,
        settings=settings,
    )
    mirror_sync = MirrorSyncService(ctx)
    app.state.ingestion = ctx
    app.state.webhook_ingestor = WebhookIngestor(ctx)
    app.state.mirror_sync = mirror_sync

    shutdown = asyncio.Event()
    loops: dict[str, asyncio.Task] = {}
    if settings.mirror.enabled:
        loops["mirror-sync-ticker"] = asyncio.create_task(mirror_sync.run_sync_ticker(shutdown))
        logger.info("Mirror sync ticker started")
    if settings.publishing.immutability_check_enabled:
        loops["tag-immutability-monitor"] = asyncio.create_task(
            run_immutability_monitor(ctx, shutdown)
        )
        logger.info("Tag immutability monitor started")

    yield

    logger.info("Shutting down tfregistry API server")
    shutdown.set()
    for name, task in loops.items():
        await _stop_task(task, name)

    await dispatcher.shutdown(timeout=SHUTDOWN_GRACE_SECONDS)
    app.state.ingestion = None
    app.state.webhook_ingestor = None
    app.state.mirror_sync = None

    await close_storage()
    await close_db()


def create_application() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="tfregistry API",
        description="Terraform registry ingestion: SCM publishing and provider mirroring",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
    )

    # Request ID middleware
    @app.middleware("http")
    async def add_request_id(request: Request, call_next):  # type: ignore[no-untyped-def]
        """Ensure every request has a request ID for logging correlation."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        structlog.contextvars.bind_contextvars(request_id=request_id)

        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")
        response.headers["X-Request-ID"] = request_id
        return response

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled errors."""
        logger.error("Unhandled exception", exc_info=exc, path=str(request.url.path))
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    # Health endpoints (no prefix)
    app.include_router(health_router)

    # Filesystem storage routes (presigned URL handlers)
    from tfregistry.storage.filesystem_routes import router as fs_router

    app.include_router(fs_router, prefix=settings.api_prefix)

    # SCM webhook receiver
    from tfregistry.api.routers.scm_webhooks import router as scm_webhooks_router

    app.include_router(scm_webhooks_router)

    # Mirror administration
    from tfregistry.api.routers.mirrors import router as mirrors_router

    app.include_router(mirrors_router, prefix=settings.api_prefix)

    return app


# Application instance
app = create_application()
