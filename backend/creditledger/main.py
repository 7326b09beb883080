"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .api.credits import router as credits_router
from .core.cleanup import ReservationCleanupService
from .core.compensation import CompensationProcessor
from .core.config import Settings, get_settings
from .core.credits import CostEstimator
from .core.errors import ConsistencyViolationError
from .core.ledger import LedgerEngine
from .core.pricing import build_default_resolver
from .core.refresh import CreditRefreshService
from .core.security import RequestLoggingMiddleware, limiter
from .core.tracker import StreamingUsageTracker
from .db.database import Database

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)


def build_components(app: FastAPI, settings: Settings) -> None:
    """Wire the ledger components onto app.state."""
    db = Database(settings)
    estimator = CostEstimator(build_default_resolver(db), settings)
    ledger = LedgerEngine(db, estimator, settings)
    tracker = StreamingUsageTracker(ledger, estimator)

    app.state.db = db
    app.state.estimator = estimator
    app.state.ledger = ledger
    app.state.tracker = tracker
    app.state.compensations = CompensationProcessor(ledger)
    app.state.cleanup = ReservationCleanupService(ledger, tracker)
    app.state.refresh = CreditRefreshService(ledger)


async def consistency_violation_handler(request: Request, exc: ConsistencyViolationError) -> JSONResponse:
    logger.critical(f"Consistency violation on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=500, content=exc.to_error().to_dict())


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create the FastAPI application."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        logging.getLogger().setLevel(settings.log_level.upper())
        logger.info(f"Starting credit ledger in {settings.environment} mode")

        # Creates tables if they don't exist. In production with PostgreSQL,
        # use Alembic migrations instead.
        if settings.auto_migrate:
            logger.info("Initializing database...")
            await app.state.db.init()

        if settings.cleanup_enabled:
            await app.state.cleanup.start(settings.cleanup_interval_minutes)
        if settings.refresh_enabled:
            await app.state.refresh.start(settings.refresh_check_interval_hours)

        yield

        logger.info("Shutting down credit ledger")
        if app.state.cleanup.is_running:
            await app.state.cleanup.stop()
        if app.state.refresh.is_running:
            await app.state.refresh.stop()
        await app.state.db.close()

    app = FastAPI(
        title="Credit Ledger",
        description="Prepaid credit accounting for AI chat usage: reservations, settlement and audit trail.",
        version="0.1.0",
        lifespan=lifespan,
    )
    build_components(app, settings)

    # Add rate limiter state and exception handler
    limiter.enabled = settings.rate_limit_enabled
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(ConsistencyViolationError, consistency_violation_handler)

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(credits_router, prefix="/api/v1")

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": "Credit Ledger",
            "version": "0.1.0",
            "docs": "/docs",
        }

    @app.get("/health")
    async def health(request: Request):
        """Health check endpoint, including the cleanup service."""
        cleanup = request.app.state.cleanup.get_health_status()
        return {
            "status": "healthy" if cleanup["status"] == "healthy" or not settings.cleanup_enabled else "degraded",
            "cleanup": cleanup,
        }

    return app


app = create_app()
