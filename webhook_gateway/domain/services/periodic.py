"""
In-process periodic jobs (dedup window sweep, optional retry ticks).
"""
import asyncio
from typing import Awaitable, Callable

from webhook_gateway.core.logging import get_logger

logger = get_logger(__name__)


async def run_periodically(
    name: str,
    interval: float,
    job: Callable[[], Awaitable[object] | object],
) -> None:
    """Call ``job`` every ``interval`` seconds until cancelled.

    A failing run is logged and the loop keeps going; cancellation ends it.
    """
    logger.info("Periodic job started", extra_data={"job": name, "interval_seconds": interval})
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                result = job()
                if asyncio.iscoroutine(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "Periodic job failed",
                    extra_data={"job": name, "error": str(e)},
                    exc_info=True,
                )
    finally:
        logger.info("Periodic job stopped", extra_data={"job": name})


def start_periodic(name: str, interval: float, job: Callable[[], Awaitable[object] | object]) -> asyncio.Task:
    return asyncio.create_task(run_periodically(name, interval, job), name=name)
