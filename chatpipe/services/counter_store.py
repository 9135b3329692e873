from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

from chatpipe.core.config import get_settings
from chatpipe.core.errors import CounterStoreError


logger = logging.getLogger(__name__)

CLAIM_NEW = "new"
CLAIM_SAME = "same"
CLAIM_OTHER = "other"


@dataclass(frozen=True)
class WindowCount:
    count: int
    ttl_s: int
    # True when this increment went over the limit and the notice slot was already taken.
    already_notified: bool


class CounterStore(Protocol):
    async def set_if_absent_or_same(self, key: str, value: str, ttl_s: int) -> str:
        ...

    async def incr_window(self, key: str, notified_key: str, window_s: int, limit: int) -> WindowCount:
        ...

    async def release(self, key: str, value: str) -> bool:
        ...

    async def delete(self, *keys: str) -> int:
        ...


# Claim a key for a value; report whether we created it, already own it, or someone else does.
_CLAIM_LUA = r"""
local ok = redis.call("SET", KEYS[1], ARGV[1], "NX", "EX", tonumber(ARGV[2]))
if ok then
  return "new"
end
local current = redis.call("GET", KEYS[1])
if current == ARGV[1] then
  return "same"
end
return "other"
"""

# Fixed window: TTL is set only on the first increment so the window never slides.
# Over the limit, the first caller claims the notice slot for the rest of the window.
_WINDOW_LUA = r"""
local count = redis.call("INCR", KEYS[1])
if count == 1 then
  redis.call("EXPIRE", KEYS[1], tonumber(ARGV[1]))
end
local ttl = redis.call("TTL", KEYS[1])
if ttl < 0 then
  redis.call("EXPIRE", KEYS[1], tonumber(ARGV[1]))
  ttl = tonumber(ARGV[1])
end
-- TTL rounds down to 0 in the last second of a window; EX 0 is rejected.
if ttl < 1 then
  ttl = 1
end
local already = 0
if count > tonumber(ARGV[2]) then
  local claimed = redis.call("SET", KEYS[2], "1", "NX", "EX", ttl)
  if not claimed then
    already = 1
  end
end
return {count, ttl, already}
"""

# Delete only if the caller still owns the key.
_RELEASE_LUA = r"""
if redis.call("GET", KEYS[1]) == ARGV[1] then
  return redis.call("DEL", KEYS[1])
end
return 0
"""


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def _get_redis() -> Redis:
    # Cache Redis connections per event loop to avoid reconnecting per event.
    global _redis_pool, _redis_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            _redis_pool = Redis.from_url(
                get_settings().redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            _redis_loop = current_loop
    return _redis_pool


class RedisCounterStore:
    def __init__(self, redis: Redis | None = None) -> None:
        # Explicit client for tests/worker context; otherwise the shared pool.
        self._redis = redis

    async def _client(self) -> Redis:
        if self._redis is not None:
            return self._redis
        return await _get_redis()

    async def set_if_absent_or_same(self, key: str, value: str, ttl_s: int) -> str:
        try:
            redis = await self._client()
            result = await redis.eval(_CLAIM_LUA, 1, key, value, max(1, int(ttl_s)))
        except (RedisError, OSError) as exc:
            raise CounterStoreError(f"claim failed for {key}") from exc
        if isinstance(result, bytes):
            result = result.decode("utf-8")
        if result not in (CLAIM_NEW, CLAIM_SAME, CLAIM_OTHER):
            raise CounterStoreError(f"unexpected claim result {result!r}")
        return result

    async def incr_window(self, key: str, notified_key: str, window_s: int, limit: int) -> WindowCount:
        try:
            redis = await self._client()
            result = await redis.eval(
                _WINDOW_LUA, 2, key, notified_key, max(1, int(window_s)), int(limit)
            )
            return WindowCount(
                count=int(result[0]),
                ttl_s=int(result[1]),
                already_notified=int(result[2]) == 1,
            )
        except (RedisError, OSError) as exc:
            raise CounterStoreError(f"window increment failed for {key}") from exc
        except (TypeError, ValueError, IndexError) as exc:
            raise CounterStoreError(f"unexpected window result for {key}") from exc

    async def release(self, key: str, value: str) -> bool:
        try:
            redis = await self._client()
            result = await redis.eval(_RELEASE_LUA, 1, key, value)
        except (RedisError, OSError) as exc:
            raise CounterStoreError(f"release failed for {key}") from exc
        return int(result or 0) == 1

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            redis = await self._client()
            return int(await redis.delete(*keys))
        except (RedisError, OSError) as exc:
            raise CounterStoreError(f"delete failed for {keys[0]}") from exc
