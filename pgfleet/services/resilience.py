from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, TypeVar

from redis.asyncio import Redis

from pgfleet.core.config import get_settings
from pgfleet.services.telemetry import set_gauge


logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


# redis.asyncio clients bind to the loop that first uses them; keep one per running loop.
_clients: dict[int, Redis] = {}


async def get_resilience_redis() -> Redis | None:
    """Shared Redis client for lock coordination, or None in local-only mode."""
    redis_url = get_settings().redis_url
    if not redis_url:
        return None
    loop_key = id(asyncio.get_running_loop())
    client = _clients.get(loop_key)
    if client is None:
        try:
            client = Redis.from_url(redis_url, encoding="utf-8", decode_responses=True)
        except ValueError as exc:
            logger.warning("resilience_redis_url_invalid", exc_info=exc)
            return None
        _clients.clear()
        _clients[loop_key] = client
    return client


class Bulkhead:
    def __init__(self, name: str, limit: int) -> None:
        # Use asyncio semaphores to cap concurrent node I/O per fan-out.
        self._name = name
        self._limit = max(1, limit)
        self._sem = asyncio.Semaphore(self._limit)
        self._in_flight = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def limit(self) -> int:
        return self._limit

    async def run(self, func: Callable[[], Awaitable[R]], *, timeout_s: float | None = None) -> R:
        # Wait for a slot, then bound the call with an optional per-call timeout.
        async with self._sem:
            self._in_flight += 1
            set_gauge(f"bulkhead_{self._name}_in_flight", self._in_flight)
            try:
                if timeout_s is None:
                    return await func()
                return await asyncio.wait_for(func(), timeout=timeout_s)
            finally:
                self._in_flight -= 1
                set_gauge(f"bulkhead_{self._name}_in_flight", self._in_flight)


async def fan_out(
    name: str,
    items: Iterable[T],
    func: Callable[[T], Awaitable[R]],
    *,
    limit: int,
    timeout_s: float | None,
    key: Callable[[T], str],
    on_error: Callable[[T, BaseException], R],
) -> list[R]:
    """Run ``func`` over ``items`` with bounded concurrency and per-item timeouts.

    Results come back sorted by ``key`` regardless of completion order. Any
    exception (including timeouts) for an item is converted by ``on_error`` so
    one slow or broken node never aborts the whole batch.
    """
    bulkhead = Bulkhead(name, limit)
    ordered = sorted(items, key=key)

    async def _one(item: T) -> R:
        try:
            return await bulkhead.run(lambda: func(item), timeout_s=timeout_s)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - per-item failures are reported, not raised
            return on_error(item, exc)

    return list(await asyncio.gather(*(_one(item) for item in ordered)))
