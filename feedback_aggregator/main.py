import structlog
import logging
import contextlib

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.exceptions import HTTPException

from feedback_aggregator.config import settings
from feedback_aggregator.database import SessionLocal, init_db, close_db
from feedback_aggregator.cache import init_redis_pool, close_redis_pool
from feedback_aggregator.exceptions import AppError, app_error_handler, http_error_handler
from feedback_aggregator.middleware import RateLimitMiddleware, LoggingMiddleware
from feedback_aggregator.routers.admin import router as admin_router
from feedback_aggregator.routers.feedback import router as feedback_router
from feedback_aggregator.routers.integrations import router as integrations_router
from feedback_aggregator.routers.webhooks import router as webhooks_router
from feedback_aggregator.services.orchestrator import SyncOrchestrator
from feedback_aggregator.services.scheduler import SyncScheduler, start_timer, stop_timer


def configure_logging() -> None:
    """JSON lines everywhere except local development, which gets a console renderer."""
    renderer = (
        structlog.dev.ConsoleRenderer()
        if settings.ENVIRONMENT == "development"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )
    logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))


configure_logging()

log = structlog.get_logger(__name__)


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("app.starting", env=settings.ENVIRONMENT, version=settings.APP_VERSION)
    await init_db()
    await init_redis_pool()
    sync_scheduler = SyncScheduler(SessionLocal, SyncOrchestrator(SessionLocal))
    app.state.sync_scheduler = sync_scheduler
    start_timer(sync_scheduler)
    log.info("app.ready")
    yield
    log.info("app.shutting_down")
    stop_timer()
    await sync_scheduler.drain()
    await close_redis_pool()
    await close_db()
    log.info("app.stopped")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    docs_url="/docs" if settings.ENVIRONMENT == "development" else None,
    redoc_url="/redoc" if settings.ENVIRONMENT == "development" else None,
    lifespan=lifespan,
)

# ── Middleware (last added runs outermost) ─────────────────────────────────────
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(LoggingMiddleware)
app.add_middleware(RateLimitMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["X-API-Key", "X-User-Id", "Content-Type"],
)

# ── Exception handlers ────────────────────────────────────────────────────────
app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)

# ── Routers ───────────────────────────────────────────────────────────────────
app.include_router(integrations_router)
app.include_router(feedback_router)
app.include_router(webhooks_router)
app.include_router(admin_router)
