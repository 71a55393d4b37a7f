from __future__ import annotations

from typing import Any

import pytest

from pgfleet.core.config import get_settings
from pgfleet.domain.models import FailoverOperation
from pgfleet.persistence.db import SessionLocal
from pgfleet.services import failover as failover_service
from pgfleet.services import failover_queue, pg_client
from pgfleet.tests.utils.fake_node_client import FakeNodeClient
from pgfleet.tests.utils.fleet import seed_cluster
from pgfleet.workers import control_worker


class FakeArqQueue:
    """Keeps arq's key layout and its refusal of ids that still have a job or result."""

    def __init__(self) -> None:
        self.keys: dict[str, Any] = {}
        self.enqueued: list[tuple[str, tuple[Any, ...], str | None]] = []

    async def delete(self, *names: str) -> int:
        return sum(1 for name in names if self.keys.pop(name, None) is not None)

    async def enqueue_job(self, function: str, *args: Any, _job_id: str | None = None, **kwargs: Any) -> object | None:
        if f"arq:job:{_job_id}" in self.keys or f"arq:result:{_job_id}" in self.keys:
            return None
        self.keys[f"arq:job:{_job_id}"] = (function, args)
        self.enqueued.append((function, args, _job_id))
        return object()

    async def zcard(self, name: str) -> int:
        return len(self.enqueued)


@pytest.fixture
def fake_client(monkeypatch) -> FakeNodeClient:
    client = FakeNodeClient()
    monkeypatch.setattr(pg_client, "get_node_client", lambda: client)
    return client


@pytest.fixture
def queue(monkeypatch) -> FakeArqQueue:
    fake = FakeArqQueue()

    async def _control_queue() -> FakeArqQueue:
        return fake

    monkeypatch.setenv("FAILOVER_EXECUTION_MODE", "queue")
    get_settings.cache_clear()
    monkeypatch.setattr(failover_queue, "control_queue", _control_queue)
    return fake


async def _create(fake_client: FakeNodeClient) -> FailoverOperation:
    async with SessionLocal() as session:
        cluster, primary, (replica,) = await seed_cluster(session)
        return await failover_service.create_failover(
            session,
            cluster_id=cluster.id,
            source_node_id=primary.id,
            target_node_id=replica.id,
        )


@pytest.mark.asyncio
async def test_execute_dispatches_one_job_per_operation(queue: FakeArqQueue, fake_client: FakeNodeClient) -> None:
    operation = await _create(fake_client)
    async with SessionLocal() as session:
        executed = await failover_service.execute_failover(session, operation.id)

    job_id = f"failover:{operation.id}"
    assert executed.status == "PRE_CHECK"
    assert executed.job_id == job_id
    assert queue.enqueued == [("run_failover", (operation.id,), job_id)]

    # A plain second dispatch collapses into the queued job.
    assert await failover_queue.enqueue_failover_job(operation.id) == job_id
    assert len(queue.enqueued) == 1
    assert await failover_queue.get_queue_depth() == 1


@pytest.mark.asyncio
async def test_resume_replaces_job_left_by_crashed_worker(queue: FakeArqQueue, fake_client: FakeNodeClient) -> None:
    operation = await _create(fake_client)
    async with SessionLocal() as session:
        stored = await session.get(FailoverOperation, operation.id)
        stored.status = "IN_PROGRESS"
        stored.last_completed_step = failover_service.STEP_DRAIN
        await session.commit()
    job_id = f"failover:{operation.id}"
    # What arq keeps after the worker running the job died.
    queue.keys[f"arq:job:{job_id}"] = ("run_failover", (operation.id,))
    queue.keys[f"arq:retry:{job_id}"] = 1

    resumed = await failover_service.resume_incomplete_failovers()

    assert resumed == [operation.id]
    assert queue.enqueued == [("run_failover", (operation.id,), job_id)]
    assert f"arq:retry:{job_id}" not in queue.keys

    outcome = await control_worker.run_failover({"job_try": 1}, operation.id)
    assert outcome == "COMPLETED"
    async with SessionLocal() as session:
        stored = await session.get(FailoverOperation, operation.id)
    assert stored.last_completed_step == failover_service.STEP_FINALIZE
    assert stored.steps_json[0]["message"] == "Resuming failover after step drain_connections"


@pytest.mark.asyncio
async def test_resume_skips_operations_that_are_not_executing(queue: FakeArqQueue, fake_client: FakeNodeClient) -> None:
    await _create(fake_client)
    assert await failover_service.resume_incomplete_failovers() == []
    assert queue.enqueued == []
