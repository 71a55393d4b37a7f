from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
import logging
from typing import Any, AsyncIterator
from uuid import uuid4

from fastapi import HTTPException

from pgfleet.core.config import get_settings
from pgfleet.services.resilience import get_resilience_redis
from pgfleet.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_local_locks: dict[str, asyncio.Lock] = {}
_local_owners: dict[str, str] = {}


@dataclass(slots=True)
class AdvisoryLock:
    scope: str
    token: str
    redis: Any | None
    local: bool


def _lock_key(scope: str) -> str:
    settings = get_settings()
    return f"{settings.lock_redis_prefix}:{scope}"


def _contended(scope: str) -> HTTPException:
    return HTTPException(
        status_code=409,
        detail={"code": "LOCK_CONTENDED", "message": f"Another operation holds the {scope} lock"},
    )


def cluster_scope(cluster_id: str) -> str:
    return f"cluster:{cluster_id}"


FEDERATION_IDENTITY_SCOPE = "federation:identity"
CREDENTIAL_SCOPE = "credential"


async def acquire_lock(scope: str) -> AdvisoryLock | None:
    # Single-writer guard per scope; returns None when another holder owns it.
    settings = get_settings()
    token = uuid4().hex
    redis = await get_resilience_redis()
    if redis is not None:
        try:
            acquired = await redis.set(_lock_key(scope), token, nx=True, ex=max(5, settings.lock_ttl_s))
        except Exception as exc:  # noqa: BLE001 - fall back to the in-process lock
            logger.warning("advisory_lock_redis_failed scope=%s", scope, exc_info=exc)
        else:
            if not acquired:
                return None
            return AdvisoryLock(scope=scope, token=token, redis=redis, local=False)

    # Fall back to an in-process lock for deterministic local and test environments.
    lock = _local_locks.setdefault(scope, asyncio.Lock())
    if lock.locked():
        return None
    await lock.acquire()
    _local_owners[scope] = token
    return AdvisoryLock(scope=scope, token=token, redis=None, local=True)


async def release_lock(lock: AdvisoryLock) -> None:
    # Release only if this holder still owns the token to avoid clobbering a newer holder.
    if lock.local:
        local = _local_locks.get(lock.scope)
        if local is not None and local.locked() and _local_owners.get(lock.scope) == lock.token:
            _local_owners.pop(lock.scope, None)
            local.release()
        return
    if lock.redis is None:
        return
    try:
        current = await lock.redis.get(_lock_key(lock.scope))
        value = current.decode("utf-8") if isinstance(current, (bytes, bytearray)) else str(current or "")
        if value == lock.token:
            await lock.redis.delete(_lock_key(lock.scope))
    except Exception as exc:  # noqa: BLE001 - TTL expiry reclaims the key
        logger.warning("advisory_lock_release_failed scope=%s", lock.scope, exc_info=exc)


@asynccontextmanager
async def advisory_lock(scope: str) -> AsyncIterator[AdvisoryLock]:
    lock = await acquire_lock(scope)
    if lock is None:
        increment_counter("advisory_lock_contended_total")
        raise _contended(scope)
    try:
        yield lock
    finally:
        await release_lock(lock)
