from __future__ import annotations

import hashlib
import json
import time
from datetime import datetime, timezone
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


def _ttl_seconds(expires_at: datetime) -> int:
    """TTL for an absolute expiry, clamped to at least one second."""

    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))


def _encode_oauth_state(provider: str, binding_hash: str, expires_at: datetime) -> str:
    return json.dumps(
        {
            "provider": provider,
            "binding_hash": binding_hash,
            "expires_at": expires_at.isoformat(),
        }
    )


def _decode_oauth_state(cached: Optional[str]) -> Optional[dict]:
    if not cached:
        return None
    try:
        payload = json.loads(cached)
        payload["expires_at"] = datetime.fromisoformat(payload["expires_at"])
    except (ValueError, KeyError, TypeError):
        return None
    return payload


def _window_result(count, ttl, limit: int) -> Tuple[bool, int, int]:
    count = int(count)
    allowed = count <= limit
    return allowed, max(0, limit - count), 0 if allowed else max(1, int(ttl))


class RedisCache:
    """Redis wrapper for the hot ephemeral auth state.

    Holds rate-limit buckets, pending OAuth states and the deny-list of
    logged-out session token ids.
    """

    # Atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    # Count within a window that opens on the first hit and expires with the key
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local window = tonumber(ARGV[1])

local count = redis.call('INCR', key)
if count == 1 then
  redis.call('EXPIRE', key, window)
end
local ttl = redis.call('TTL', key)
if ttl < 0 then
  redis.call('EXPIRE', key, window)
  ttl = window
end
return {count, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # Short-lived sync client so the async one is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str, prefix: str = "rate") -> str:
        """Hash the logical key so caller-supplied parts cannot collide."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"{prefix}:{digest}"

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        """Consume from a token bucket.

        Returns:
            (allowed, remaining, retry_after_seconds)
        """

        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[self._normalize_rate_key(key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return bool(int(allowed)), max(0, int(float(tokens))), int(reset_after or 0)

    async def check_fixed_window(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        """Count one hit in a window that starts on the first request.

        Returns:
            (allowed, remaining, retry_after_seconds)
        """

        count, ttl = await self._fixed_window(
            keys=[self._normalize_rate_key(key, "rate:window")],
            args=[window_seconds],
        )
        return _window_result(count, ttl, limit)

    async def set_oauth_state(
        self, state: str, provider: str, binding_hash: str, expires_at: datetime
    ) -> None:
        await self.client.set(
            f"auth:oauth:{state}",
            _encode_oauth_state(provider, binding_hash, expires_at),
            ex=_ttl_seconds(expires_at),
        )

    async def pop_oauth_state(self, state: str) -> Optional[dict]:
        """Atomically read and delete a pending OAuth state."""

        cached = await self.client.getdel(f"auth:oauth:{state}")
        return _decode_oauth_state(cached)

    async def denylist_token(self, jti: str, expires_at: datetime) -> None:
        await self.client.set(
            f"auth:denylist:{jti}", "1", ex=_ttl_seconds(expires_at)
        )

    async def is_token_denylisted(self, jti: str) -> bool:
        return bool(await self.client.exists(f"auth:denylist:{jti}"))

    async def close(self) -> None:
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Exposes the same awaitable surface as RedisCache while running every
    command on a blocking client, which avoids event loop binding issues when
    each test drives its own loop.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self._sync_client.register_script(
            RedisCache._TOKEN_BUCKET_SCRIPT
        )
        self._fixed_window = self._sync_client.register_script(
            RedisCache._FIXED_WINDOW_SCRIPT
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = self._token_bucket(
            keys=[RedisCache._normalize_rate_key(key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return bool(int(allowed)), max(0, int(float(tokens))), int(reset_after or 0)

    async def check_fixed_window(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        count, ttl = self._fixed_window(
            keys=[RedisCache._normalize_rate_key(key, "rate:window")],
            args=[window_seconds],
        )
        return _window_result(count, ttl, limit)

    async def set_oauth_state(
        self, state: str, provider: str, binding_hash: str, expires_at: datetime
    ) -> None:
        self._sync_client.set(
            f"auth:oauth:{state}",
            _encode_oauth_state(provider, binding_hash, expires_at),
            ex=_ttl_seconds(expires_at),
        )

    async def pop_oauth_state(self, state: str) -> Optional[dict]:
        return _decode_oauth_state(self._sync_client.getdel(f"auth:oauth:{state}"))

    async def denylist_token(self, jti: str, expires_at: datetime) -> None:
        self._sync_client.set(f"auth:denylist:{jti}", "1", ex=_ttl_seconds(expires_at))

    async def is_token_denylisted(self, jti: str) -> bool:
        return bool(self._sync_client.exists(f"auth:denylist:{jti}"))

    async def close(self) -> None:
        self._sync_client.close()
