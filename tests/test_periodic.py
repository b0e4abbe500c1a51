import asyncio

import pytest

from webhook_gateway.domain.services.periodic import start_periodic


@pytest.mark.asyncio
async def test_runs_sync_and_async_jobs_until_cancelled() -> None:
    calls = []

    async def _async_job():
        calls.append("async")

    sync_task = start_periodic("sync", 0.01, lambda: calls.append("sync"))
    async_task = start_periodic("async", 0.01, _async_job)
    await asyncio.sleep(0.1)

    sync_task.cancel()
    async_task.cancel()
    await asyncio.gather(sync_task, async_task, return_exceptions=True)

    assert "sync" in calls
    assert "async" in calls
    assert sync_task.cancelled()


@pytest.mark.asyncio
async def test_failing_run_does_not_stop_the_loop() -> None:
    attempts = []

    def _flaky():
        attempts.append(1)
        if len(attempts) == 1:
            raise RuntimeError("database is locked")

    task = start_periodic("flaky", 0.01, _flaky)
    await asyncio.sleep(0.1)
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)

    assert len(attempts) >= 2
