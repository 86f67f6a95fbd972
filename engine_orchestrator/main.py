"""
FastAPI application factory.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from engine_orchestrator.api.router import api_router
from engine_orchestrator.config import settings
from engine_orchestrator.dependencies import close_engine_client
from engine_orchestrator.models.database import close_db, init_db
from engine_orchestrator.observability.logging import setup_logging

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    # Startup
    setup_logging()

    # Sentry init if configured
    if settings.SENTRY_DSN:
        import sentry_sdk
        from sentry_sdk.integrations.fastapi import FastApiIntegration
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            integrations=[FastApiIntegration()],
            traces_sample_rate=0.1,
        )

    logger.info(
        "startup",
        version=settings.APP_VERSION,
        engine_client=settings.ENGINE_CLIENT,
        database="set" if settings.DATABASE_URL else "not set",
    )
    if settings.API_KEY is None:
        logger.warning("api_key_not_configured", detail="all /api/v1 routes are open")
    if settings.DB_CREATE_TABLES:
        await init_db()

    yield

    # Shutdown
    await close_engine_client()
    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Multi-Engine Orchestrator",
        description="Reliability-weighted orchestration of AI answer-engine queries: "
        "batched work, authority tracking, consensus scoring and SLA escalation.",
        version=settings.APP_VERSION,
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS.split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Prometheus metrics endpoint
    if settings.PROMETHEUS_ENABLED:
        from prometheus_client import make_asgi_app
        metrics_app = make_asgi_app()
        app.mount("/metrics", metrics_app)

    # Include all API routes
    app.include_router(api_router)

    return app


# Application instance
app = create_app()
