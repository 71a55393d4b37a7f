from __future__ import annotations

import asyncio

import pytest
from arq.connections import RedisSettings

from pgfleet.services.failover_queue import FAILOVER_JOB_FUNCTION
from pgfleet.workers import control_worker


def test_worker_settings_load_without_redis_url() -> None:
    settings = control_worker.WorkerSettings
    assert isinstance(settings.redis_settings, RedisSettings)
    assert settings.queue_name == "pgfleet-control"


def test_failover_job_allows_pickup_after_worker_crash() -> None:
    (function,) = control_worker.WorkerSettings.functions
    assert function.name == FAILOVER_JOB_FUNCTION
    assert function.coroutine is control_worker.run_failover
    # A crashed run is picked up again as try 2.
    assert function.max_tries >= 2


@pytest.mark.asyncio
async def test_shutdown_waits_for_background_loops() -> None:
    ctx = {
        "promotion_task": asyncio.create_task(asyncio.sleep(3600)),
        "rotation_task": asyncio.create_task(asyncio.sleep(3600)),
    }
    await control_worker._shutdown(ctx)
    assert ctx["promotion_task"].cancelled()
    assert ctx["rotation_task"].cancelled()
