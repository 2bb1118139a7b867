"""
Spark ingestion API - FastAPI Application

Provides:
- Webhook ingress for push providers
- OAuth connect flow for pull providers
- Operator actions (retry, backfill)
- CRUD over the canonical event log
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from prometheus_client import make_asgi_app

from spark.api.middleware import RequestIDMiddleware
from spark.api.routes import events, health, integrations, oauth, webhooks
from spark.config import get_settings
from spark.db.client import close_db, init_db
from spark.db.redis import close_redis
from spark.jobs.runtime import close_runtime
from spark.kernel.http.errors import register_exception_handlers
from spark.logging_config import configure_logging
from spark.scheduling.scheduler import init_scheduler, shutdown_scheduler

configure_logging(get_settings())

logger = structlog.get_logger()


def _scheduler_wanted() -> bool:
    settings = get_settings()
    return settings.scheduler_enabled and settings.environment != "test"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan - startup and shutdown."""
    settings = get_settings()

    # Startup
    logger.info("Starting Spark ingestion API", version="0.1.0", environment=settings.environment)

    await init_db()
    logger.info("PostgreSQL connection initialized")

    if _scheduler_wanted():
        await init_scheduler()
        logger.info("Integration scheduler initialized")
    else:
        logger.info("Integration scheduler disabled in API process")

    yield

    # Shutdown
    logger.info("Shutting down Spark ingestion API")
    if _scheduler_wanted():
        await shutdown_scheduler()
    await close_runtime()
    await close_db()
    await close_redis()


def create_app(*, with_lifespan: bool = True) -> FastAPI:
    app = FastAPI(
        title="Spark Ingestion API",
        description="Pulls, receives and normalizes personal data into one event log",
        version="0.1.0",
        lifespan=lifespan if with_lifespan else None,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.add_middleware(RequestIDMiddleware)
    register_exception_handlers(app)

    # Prometheus metrics endpoint
    app.mount("/metrics", make_asgi_app())

    app.include_router(health.router, tags=["Health"])
    app.include_router(webhooks.router)
    app.include_router(oauth.router)
    app.include_router(integrations.router)
    app.include_router(events.router)
    return app


app = create_app()


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": "Spark Ingestion API",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/health",
        "metrics": "/metrics",
    }
