from __future__ import annotations

import asyncio
import contextlib
import logging

from arq import func
from arq.connections import RedisSettings

from pgfleet.core.config import get_settings
from pgfleet.core.logging import configure_logging
from pgfleet.persistence.db import SessionLocal
from pgfleet.services.credentials import auto_rotate, propagate_all
from pgfleet.services.failover import resume_incomplete_failovers, run_failover_job
from pgfleet.services.failover_queue import FAILOVER_JOB_FUNCTION
from pgfleet.services.federation import resolve_expired_promotions


logger = logging.getLogger(__name__)


async def run_failover(ctx, operation_id: str) -> str:
    # Job ids are stable per operation, so a retried job resumes after its last completed step.
    logger.info("failover_job_started operation_id=%s try=%s", operation_id, ctx.get("job_try", 1))
    return await run_failover_job(operation_id)


async def run_rotation_check() -> dict:
    settings = get_settings()
    async with SessionLocal() as session:
        result = await auto_rotate(session, actor_id="scheduler")
        if result.get("rotated") and settings.worker_propagate_after_rotation:
            result["propagation"] = await propagate_all(session, actor_id="scheduler")
    return result


async def _promotion_loop() -> None:
    # Promotion timeouts are polled; the API also resolves them on status reads.
    settings = get_settings()
    interval_s = max(1, int(settings.federation_poll_interval_s))
    while True:
        try:
            async with SessionLocal() as session:
                resolved = await resolve_expired_promotions(session)
            if resolved:
                logger.info("federation_promotions_resolved count=%s", len(resolved))
        except Exception:  # noqa: BLE001 - keep the poller alive while surfacing failures in worker logs.
            logger.exception("federation promotion poller failed")
        await asyncio.sleep(interval_s)


async def _rotation_loop() -> None:
    settings = get_settings()
    interval_s = max(60, int(settings.worker_rotation_check_interval_s))
    while True:
        try:
            result = await run_rotation_check()
            logger.info("credential_rotation_check rotated=%s reason=%s", result.get("rotated"), result.get("reason"))
        except Exception:  # noqa: BLE001 - keep the scheduler alive while surfacing failures in worker logs.
            logger.exception("credential rotation scheduler failed")
        await asyncio.sleep(interval_s)


async def _startup(ctx) -> None:
    configure_logging()
    # Re-dispatch operations a crashed worker left mid-flight before taking new jobs.
    try:
        resumed = await resume_incomplete_failovers()
        if resumed:
            logger.info("failover_operations_resumed count=%s", len(resumed))
    except Exception:  # noqa: BLE001 - a resume failure must not keep the worker from starting.
        logger.exception("failover resume on startup failed")
    ctx["promotion_task"] = asyncio.create_task(_promotion_loop())
    ctx["rotation_task"] = asyncio.create_task(_rotation_loop())


async def _shutdown(ctx) -> None:
    # Cancel background loops to avoid dangling coroutines on exit.
    for name in ("promotion_task", "rotation_task"):
        task = ctx.get(name)
        if task:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url) if settings.redis_url else RedisSettings()
    queue_name = settings.control_queue_name
    max_tries = max(1, int(settings.worker_max_tries))
    # A job picked up again after a worker crash counts as a new try; steps are safe to redo.
    functions = [func(run_failover, name=FAILOVER_JOB_FUNCTION, max_tries=max_tries)]
    on_startup = _startup
    on_shutdown = _shutdown
