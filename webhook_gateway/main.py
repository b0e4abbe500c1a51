"""
Webhook Gateway - Main FastAPI Application
"""
import asyncio

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncEngine

from webhook_gateway.api.dependencies.services import GatewayServices, build_services
from webhook_gateway.api.routes import router as api_router
from webhook_gateway.api.routes.health import router as health_router
from webhook_gateway.api.webhooks.providers import router as webhooks_router
from webhook_gateway.core.config import Settings, settings as default_settings
from webhook_gateway.core.logging import get_logger, setup_logging
from webhook_gateway.core.middleware import setup_exception_handlers, setup_middleware
from webhook_gateway.db import models  # noqa: F401  (table registration)
from webhook_gateway.db.database import Base, build_session_factory, engine as default_engine
from webhook_gateway.domain.services.periodic import start_periodic

logger = get_logger(__name__)


def _parse_allowed_origins(raw: str) -> list[str]:
    """Parse comma-separated CORS origins string into a clean list."""
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


_OPENAPI_TAGS = [
    {"name": "webhooks", "description": "Signed deliveries from GitHub, Linear and Slack."},
    {"name": "Health", "description": "Liveness, readiness and ingestion counters."},
]


def _start_background_jobs(services: GatewayServices) -> list[asyncio.Task]:
    settings = services.settings
    tasks = []
    if services.deduplicator.enabled:
        tasks.append(start_periodic(
            "dedup-window-sweep",
            settings.DEDUP_SWEEP_INTERVAL_SECONDS,
            services.deduplicator.sweep,
        ))
    if settings.ENABLE_RETRY and settings.ENABLE_INPROCESS_RETRY:
        tasks.append(start_periodic(
            "retry-failed-events",
            settings.RETRY_INTERVAL_SECONDS,
            services.retry_scheduler.tick,
        ))
    return tasks


def create_app(
    settings: Settings | None = None,
    *,
    engine: AsyncEngine | None = None,
    services: GatewayServices | None = None,
) -> FastAPI:
    """Build the application.

    ``services`` may be supplied pre-built (tests do this); otherwise they are
    created on startup from ``settings`` and ``engine``.
    """
    settings = settings or default_settings
    engine = engine or default_engine

    app = FastAPI(
        title=settings.APP_NAME,
        version="1.0.0",
        description="Ingests provider webhooks, verifies them and stores one normalized event per delivery.",
        openapi_tags=_OPENAPI_TAGS,
    )
    app.state.services = services
    app.state.background_tasks = []

    setup_middleware(app, settings)
    setup_exception_handlers(app)

    allowed_origins = _parse_allowed_origins(settings.ALLOWED_ORIGINS)
    if allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allowed_origins,
            allow_credentials=False,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Content-Type", "X-Correlation-ID"],
        )

    app.include_router(api_router, prefix="/api")
    # Unprefixed webhook path, which is what providers are usually pointed at
    app.include_router(webhooks_router, prefix="/webhook", tags=["webhooks"], include_in_schema=False)
    app.include_router(health_router, tags=["Health"])

    @app.on_event("startup")
    async def startup() -> None:
        """Create tables, build services and start background jobs"""
        logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables initialized")

        if app.state.services is None:
            app.state.services = build_services(settings, build_session_factory(engine))

        logger.info(
            "Ingestion configured",
            extra_data={
                "sources": app.state.services.verifier.configured_sources(),
                "batching": settings.ENABLE_BATCHING,
                "batch_size": settings.BATCH_SIZE,
                "dedup_cache": settings.ENABLE_DEDUP_CACHE,
                "retry": settings.ENABLE_RETRY,
                "inprocess_retry": settings.ENABLE_INPROCESS_RETRY,
            },
        )
        app.state.background_tasks = _start_background_jobs(app.state.services)

    @app.on_event("shutdown")
    async def shutdown() -> None:
        """Drain the queue, stop background jobs and close the pool"""
        logger.info("Shutting down application")
        services = app.state.services
        if services is not None:
            await services.queue.drain(settings.SHUTDOWN_DRAIN_TIMEOUT_SECONDS)

        for task in app.state.background_tasks:
            task.cancel()
        if app.state.background_tasks:
            await asyncio.gather(*app.state.background_tasks, return_exceptions=True)
        app.state.background_tasks = []

        await engine.dispose()
        logger.info("Database connections disposed")

    return app


# Setup logging before anything else
setup_logging(
    level="DEBUG" if default_settings.DEBUG else "INFO",
    json_format=not default_settings.DEBUG,
    app_name=default_settings.APP_NAME
)

app = create_app()
