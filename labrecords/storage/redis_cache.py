from __future__ import annotations

import hashlib
import time
from typing import Any, Optional, Sequence, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

RateLimitResult = Union[bool, Tuple[bool, int, int]]

# KEYS[1] bucket hash; ARGV now, tokens per second, capacity, cost.
# Returns {allowed, tokens left, seconds until enough tokens}.
TOKEN_BUCKET_LUA = """
local bucket = redis.call('HMGET', KEYS[1], 'tokens', 'ts')
local now = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local tokens = tonumber(bucket[1]) or capacity
local last = tonumber(bucket[2]) or now
tokens = math.min(capacity, tokens + math.max(0, now - last) * rate)

local allowed = 0
local wait = math.ceil((cost - tokens) / rate)
if tokens >= cost then
  allowed = 1
  tokens = tokens - cost
  wait = 0
end

redis.call('HSET', KEYS[1], 'tokens', tokens, 'ts', now)
redis.call('EXPIRE', KEYS[1], math.max(1, math.ceil(capacity / rate)))
return {allowed, tokens, wait}
"""


def rate_key(key: str) -> str:
    """Redis key for a limiter scope; hashed so usernames cannot inject ``:``."""
    return "rate:" + hashlib.sha256(key.encode()).hexdigest()


class _TokenBucket:
    """Argument packing and reply parsing shared by both clients."""

    @staticmethod
    def _script_args(limit: int, window_seconds: int, cost: int) -> list:
        return [time.time(), limit / window_seconds, limit, max(1, cost)]

    @staticmethod
    def _result(reply: Sequence[Any], return_remaining: bool) -> RateLimitResult:
        allowed, tokens, wait = reply
        if not return_remaining:
            return bool(int(allowed))
        return bool(int(allowed)), max(0, int(tokens)), int(wait or 0)


class RedisCache(_TokenBucket):
    """Async Redis client backing the login and password-change limits."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._bucket = self.client.register_script(TOKEN_BUCKET_LUA)

    def verify_connection(self) -> None:
        # ping through a throwaway sync client; the async pool stays unbound
        pinger = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            pinger.ping()
        finally:
            pinger.close()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> RateLimitResult:
        reply = await self._bucket(
            keys=[rate_key(key)], args=self._script_args(limit, window_seconds, cost)
        )
        return self._result(reply, return_remaining)

    async def close(self) -> None:
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache(_TokenBucket):
    """Blocking client with the same awaitable surface, used under TEST_MODE."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._bucket = self.client.register_script(TOKEN_BUCKET_LUA)

    def verify_connection(self) -> None:
        self.client.ping()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> RateLimitResult:
        reply = self._bucket(
            keys=[rate_key(key)], args=self._script_args(limit, window_seconds, cost)
        )
        return self._result(reply, return_remaining)

    async def close(self) -> None:
        self.client.close()


CacheBackend = Optional[Union[RedisCache, SyncRedisCache]]
