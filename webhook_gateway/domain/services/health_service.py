"""
Health checks: database, Celery broker and the batch queue.

Liveness never touches dependencies. Readiness reports each dependency as
"ok" or a sanitized "error: ..." string, without infrastructure details.
"""
from typing import Any

import redis.asyncio as aioredis

from webhook_gateway.core.logging import get_logger
from webhook_gateway.domain.services.batch_queue import BatchQueue
from webhook_gateway.domain.services.storage_service import STORAGE_ERRORS, EventStorageService

logger = get_logger(__name__)

_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"

_ERROR_DB = "error: db_unavailable"
_ERROR_BROKER = "error: broker_unavailable"


async def _check_db(store: EventStorageService) -> str:
    try:
        await store.check_health()
        return _CHECK_OK
    except STORAGE_ERRORS as e:
        logger.warning("Database health check failed", extra_data={"error": str(e)})
        return _ERROR_DB


async def _check_broker(broker_url: str) -> str:
    """PING the Celery broker (Redis)"""
    try:
        client = aioredis.from_url(broker_url, socket_connect_timeout=2.0)
        try:
            await client.ping()
            return _CHECK_OK
        finally:
            await client.aclose()
    except (aioredis.RedisError, OSError) as e:
        logger.warning("Broker health check failed", extra_data={"error": str(e)})
        return _ERROR_BROKER


async def check_readiness(
    store: EventStorageService,
    queue: BatchQueue,
    *,
    broker_url: str | None = None,
) -> dict[str, Any]:
    """
    status is "healthy" when every checked dependency answers, "degraded"
    otherwise. The broker is only checked when ``broker_url`` is given.
    """
    checks = {"db": await _check_db(store)}
    if broker_url:
        checks["broker"] = await _check_broker(broker_url)

    all_ok = all(v == _CHECK_OK for v in checks.values())
    if not all_ok:
        logger.warning("Readiness check degraded", extra_data=checks)

    return {
        "status": _STATUS_HEALTHY if all_ok else _STATUS_DEGRADED,
        **checks,
        "queue": {
            "batching": queue.enabled,
            "size": queue.size,
            "timer_armed": queue.pending_timer,
        },
    }
