"""
Health and metrics endpoints
"""
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from webhook_gateway.api.dependencies.services import GatewayServices, get_services
from webhook_gateway.domain.services.health_service import check_readiness
from webhook_gateway.domain.services.storage_service import STORAGE_ERRORS

router = APIRouter()


@router.get(
    "/health",
    summary="Liveness probe",
    description="Process is up and answering. Does not touch the database or broker.",
)
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


@router.get(
    "/health/ready",
    summary="Readiness probe",
    description=(
        "Database ping, Celery broker ping and batch queue state. "
        "Answers 503 with status=degraded when a dependency is down."
    ),
    responses={
        200: {
            "description": "All dependencies answer",
            "content": {
                "application/json": {
                    "example": {
                        "status": "healthy",
                        "db": "ok",
                        "broker": "ok",
                        "queue": {"batching": True, "size": 3, "timer_armed": True},
                    }
                }
            },
        },
        503: {"description": "At least one dependency is unavailable"},
    },
)
async def readiness_check(services: GatewayServices = Depends(get_services)) -> JSONResponse:
    settings = services.settings
    result = await check_readiness(
        services.storage,
        services.queue,
        broker_url=settings.CELERY_BROKER_URL if settings.HEALTH_CHECK_BROKER else None,
    )
    status_code = 200 if result["status"] == "healthy" else 503
    return JSONResponse(content=result, status_code=status_code)


@router.get(
    "/metrics",
    summary="Ingestion counters",
    description="In-process counters since startup plus per-source totals from the last 24h of hourly buckets.",
)
async def metrics(services: GatewayServices = Depends(get_services)) -> dict:
    snapshot = services.metrics.snapshot()
    try:
        storage = await services.storage.get_metrics_summary()
    except STORAGE_ERRORS as e:
        storage = {"error": f"unavailable: {type(e).__name__}"}

    return {
        "process": snapshot,
        "queue": {"size": services.queue.size, "timer_armed": services.queue.pending_timer},
        "dedup_window": {"enabled": services.deduplicator.enabled, "entries": len(services.deduplicator.window)},
        "storage": storage,
    }
