from __future__ import annotations

import hashlib
import math
from datetime import datetime, timedelta, timezone
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis

from warden.storage.models import AttemptRecord


class RedisAttemptStore:
    """Attempt records in Redis hashes (``count``, ``until``, ``last``) keyed per identifier/origin.

    Every mutation runs as a Lua script so concurrent failures cannot lose
    increments or race a suspension.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Increment, lazily dropping an expired suspension, and suspend once the limit is hit.
    # Unsuspended counters slide their TTL to the decay window on every failure.
    _INCREMENT_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local limit = tonumber(ARGV[2])
local suspend_seconds = tonumber(ARGV[3])
local ttl = math.max(math.ceil(suspend_seconds), 1)

local until_raw = redis.call('HGET', key, 'until')
if until_raw and tonumber(until_raw) <= now then
  redis.call('DEL', key)
  until_raw = false
end
if not until_raw then
  local last_raw = redis.call('HGET', key, 'last')
  if last_raw and tonumber(last_raw) + suspend_seconds <= now then
    redis.call('DEL', key)
  end
end

local count = redis.call('HINCRBY', key, 'count', 1)
redis.call('HSET', key, 'last', ARGV[1])
if until_raw then
  return {count, until_raw}
end
if limit > 0 and count >= limit then
  local until_ts = now + suspend_seconds
  redis.call('HSET', key, 'until', tostring(until_ts))
  redis.call('EXPIRE', key, ttl)
  return {count, tostring(until_ts)}
end
redis.call('EXPIRE', key, ttl)
return {count, ''}
"""

    # Reject when a live suspension exists; otherwise suspend and floor the count
    _SUSPEND_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local until_raw = redis.call('HGET', key, 'until')
if until_raw and tonumber(until_raw) > now then
  return 0
end
if until_raw then
  redis.call('DEL', key)
end
local count = tonumber(redis.call('HGET', key, 'count') or '0')
local min_count = tonumber(ARGV[3])
if count < min_count then
  count = min_count
end
redis.call('HSET', key, 'count', count, 'until', ARGV[2], 'last', ARGV[1])
redis.call('EXPIRE', key, math.max(tonumber(ARGV[4]), 1))
return 1
"""

    _CLEAR_EXPIRED_SCRIPT = """
local until_raw = redis.call('HGET', KEYS[1], 'until')
if until_raw and tonumber(until_raw) <= tonumber(ARGV[1]) then
  redis.call('DEL', KEYS[1])
  return 1
end
return 0
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[aioredis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        if client is None:
            client = aioredis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        self.client = client
        self._increment = self.client.register_script(self._INCREMENT_SCRIPT)
        self._suspend = self.client.register_script(self._SUSPEND_SCRIPT)
        self._clear_expired = self.client.register_script(self._CLEAR_EXPIRED_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a throwaway loop
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _attempt_key(identifier: str, origin: str) -> str:
        """Hash both halves so delimiters inside either cannot collide."""
        digest = hashlib.sha256(f"{identifier}\x00{origin}".encode()).hexdigest()
        return f"auth:attempts:{digest}"

    @staticmethod
    def _to_epoch(value: datetime) -> float:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()

    @staticmethod
    def _from_epoch(raw: Optional[str]) -> Optional[datetime]:
        if not raw:
            return None
        return datetime.fromtimestamp(float(raw), tz=timezone.utc)

    async def get_attempt(self, identifier: str, origin: str) -> Optional[AttemptRecord]:
        count, until, last = await self.client.hmget(
            self._attempt_key(identifier, origin), ["count", "until", "last"]
        )
        if count is None and until is None:
            return None
        return AttemptRecord(
            identifier=identifier,
            origin=origin,
            count=int(count or 0),
            suspended_until=self._from_epoch(until),
            last_attempt_at=self._from_epoch(last),
        )

    async def increment_attempt(
        self,
        identifier: str,
        origin: str,
        *,
        now: datetime,
        limit: Optional[int],
        suspend_for: timedelta,
    ) -> AttemptRecord:
        count, until = await self._increment(
            keys=[self._attempt_key(identifier, origin)],
            args=[self._to_epoch(now), limit or 0, suspend_for.total_seconds()],
        )
        return AttemptRecord(
            identifier=identifier,
            origin=origin,
            count=int(count),
            suspended_until=self._from_epoch(until),
            last_attempt_at=now,
        )

    async def suspend_attempt(
        self,
        identifier: str,
        origin: str,
        *,
        now: datetime,
        until: datetime,
        min_count: int,
    ) -> bool:
        ttl = math.ceil((until - now).total_seconds())
        applied = await self._suspend(
            keys=[self._attempt_key(identifier, origin)],
            args=[self._to_epoch(now), repr(self._to_epoch(until)), min_count, ttl],
        )
        return bool(int(applied))

    async def clear_attempt(self, identifier: str, origin: str) -> None:
        await self.client.delete(self._attempt_key(identifier, origin))

    async def clear_expired_attempt(
        self, identifier: str, origin: str, *, now: datetime
    ) -> bool:
        cleared = await self._clear_expired(
            keys=[self._attempt_key(identifier, origin)],
            args=[self._to_epoch(now)],
        )
        return bool(int(cleared))

    async def close(self) -> None:
        await self.client.aclose()
