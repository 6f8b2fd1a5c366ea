from __future__ import annotations

import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, TypeVar, cast

from asset_pipeline.core.errors import StoreUnavailableError
from asset_pipeline.core.redis_client import get_redis, json_dumps, json_loads


logger = logging.getLogger(__name__)
T = TypeVar("T")


class JobStore(Protocol):
    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None: ...


async def _await_if_needed(result: Awaitable[T] | T) -> T:
    if inspect.isawaitable(result):
        return await cast(Awaitable[T], result)
    return cast(T, result)


class RedisJobStore:
    """JSON values in Redis with a per-key expiry."""

    def __init__(self, redis) -> None:
        self._redis = redis

    async def get(self, key: str) -> Any | None:
        try:
            raw = await _await_if_needed(self._redis.get(key))
        except Exception as exc:
            logger.warning("job_store_get_failed", extra={"key": key, "error": str(exc)})
            raise StoreUnavailableError(f"Job store read failed for {key}: {exc}") from exc
        if raw is None:
            return None
        return json_loads(raw)

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        try:
            await _await_if_needed(self._redis.set(key, json_dumps(value), ex=max(1, int(ttl_seconds))))
        except Exception as exc:
            logger.warning("job_store_set_failed", extra={"key": key, "error": str(exc)})
            raise StoreUnavailableError(f"Job store write failed for {key}: {exc}") from exc


class InMemoryJobStore:
    """Process-local store; entries vanish once their TTL has elapsed."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}

    async def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        self._entries[key] = (self._clock() + max(1, int(ttl_seconds)), value)

    def __len__(self) -> int:
        now = self._clock()
        return sum(1 for expires_at, _ in self._entries.values() if expires_at > now)


def build_job_store() -> JobStore:
    redis = get_redis()
    if redis is None:
        logger.info("job_store_in_memory")
        return InMemoryJobStore()
    return RedisJobStore(redis)
