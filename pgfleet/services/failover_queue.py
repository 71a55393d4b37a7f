from __future__ import annotations

import asyncio
import logging

from arq import ArqRedis, create_pool
from arq.connections import RedisSettings
from arq.constants import job_key_prefix, result_key_prefix, retry_key_prefix

from pgfleet.core.config import get_settings


logger = logging.getLogger(__name__)

FAILOVER_JOB_FUNCTION = "run_failover"
EXECUTION_INLINE = "inline"

# arq pools are bound to the loop that created them; keep one per running loop.
_pools: dict[int, ArqRedis] = {}
_pool_guard = asyncio.Lock()


def failover_job_id(operation_id: str) -> str:
    # One arq job id per operation so duplicate dispatches collapse into one run.
    return f"failover:{operation_id}"


def runs_inline() -> bool:
    return get_settings().failover_execution_mode.lower() == EXECUTION_INLINE


async def control_queue() -> ArqRedis:
    loop_key = id(asyncio.get_running_loop())
    pool = _pools.get(loop_key)
    if pool is not None:
        return pool
    async with _pool_guard:
        pool = _pools.get(loop_key)
        if pool is None:
            settings = get_settings()
            pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.control_queue_name,
            )
            _pools.clear()
            _pools[loop_key] = pool
    return pool


async def enqueue_failover_job(operation_id: str, *, fresh: bool = False) -> str:
    """Dispatch the durable job for an executing operation and return its job id.

    ``fresh`` first drops what arq still holds for the id (a crashed run's job
    record, retry counter or stored result), so the dispatch is not refused as a
    duplicate and the job starts again at its first try.
    """
    job_id = failover_job_id(operation_id)
    if runs_inline():
        from pgfleet.services.failover import run_failover_job

        outcome = await run_failover_job(operation_id)
        logger.info("failover_job_ran_inline operation_id=%s outcome=%s", operation_id, outcome)
        return job_id

    queue = await control_queue()
    if fresh:
        await queue.delete(job_key_prefix + job_id, retry_key_prefix + job_id, result_key_prefix + job_id)
        logger.info("failover_job_state_cleared operation_id=%s job_id=%s", operation_id, job_id)
    job = await queue.enqueue_job(FAILOVER_JOB_FUNCTION, operation_id, _job_id=job_id)
    if job is None:
        # arq refuses duplicate ids while the job is queued, running or retaining its result.
        logger.info("failover_job_already_queued operation_id=%s", operation_id)
    else:
        logger.info("failover_job_enqueued operation_id=%s job_id=%s", operation_id, job_id)
    return job_id


async def get_queue_depth() -> int | None:
    """Number of jobs waiting on the control queue.

    Inline mode has no queue and reports 0; ``None`` means Redis could not be
    reached, which ops endpoints surface as degraded.
    """
    if runs_inline():
        return 0
    try:
        queue = await control_queue()
        return int(await queue.zcard(f"arq:queue:{get_settings().control_queue_name}"))
    except Exception as exc:  # noqa: BLE001 - ops endpoints report a degraded queue
        logger.warning("control_queue_depth_unavailable", exc_info=exc)
        return None
