from __future__ import annotations

import pytest
from fastapi import HTTPException

from pgfleet.services.locks import acquire_lock, advisory_lock, cluster_scope, release_lock
from pgfleet.services.telemetry import counters_snapshot


@pytest.mark.asyncio
async def test_local_lock_is_exclusive_per_scope() -> None:
    first = await acquire_lock(cluster_scope("c1"))
    assert first is not None and first.local is True
    assert await acquire_lock(cluster_scope("c1")) is None
    other = await acquire_lock(cluster_scope("c2"))
    assert other is not None

    await release_lock(first)
    await release_lock(other)
    again = await acquire_lock(cluster_scope("c1"))
    assert again is not None
    await release_lock(again)


@pytest.mark.asyncio
async def test_contended_lock_raises_conflict_and_counts() -> None:
    async with advisory_lock("credential"):
        with pytest.raises(HTTPException) as exc_info:
            async with advisory_lock("credential"):
                pass
    assert exc_info.value.status_code == 409
    assert counters_snapshot()["advisory_lock_contended_total"] == 1

    # Released on exit, even after the contended attempt.
    async with advisory_lock("credential"):
        pass
