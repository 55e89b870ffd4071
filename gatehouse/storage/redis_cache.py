from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Iterator, Optional

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from gatehouse.logging import get_logger
from gatehouse.service.errors import TransientStoreError
from gatehouse.storage.models import (
    RateLimitResult,
    effective_window,
    rate_limit_key,
    reset_code_key,
    reset_cooldown_key,
    reset_token_key,
    utcnow,
)

logger = get_logger(__name__)


@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except (RedisConnectionError, RedisTimeoutError) as exc:
        logger.error("redis_unavailable", operation=operation, error=str(exc))
        raise TransientStoreError() from exc


class RedisCache:
    """Redis-backed rate limits and single-use reset state.

    Every operation is a single round trip: counters and reset codes go
    through Lua scripts, the reset cooldown is one ``SET NX EX``.
    """

    # INCR, anchor the window on the first hit only, report count and PTTL
    _FIXED_WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('PTTL', KEYS[1])
return {count, ttl}
"""

    # Delete the code only when it matches, so it is spent at most once
    _CONSUME_CODE_SCRIPT = """
local stored = redis.call('GET', KEYS[1])
if stored == ARGV[1] then
  redis.call('DEL', KEYS[1])
  return 1
end
return 0
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
        client: Optional[aioredis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._clock = clock
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)
        self._consume_code = self.client.register_script(self._CONSUME_CODE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        with _store_errors("ping"):
            return bool(await self.client.ping())

    async def consume(
        self, endpoint: str, user_id: str | int, limit: int, window_seconds: int
    ) -> RateLimitResult:
        """Count one hit against a fixed window and report the outcome.

        The counter is incremented before it is compared, so the hit that
        crosses ``limit`` is the first one reported as not allowed. A
        non-positive ``limit`` disables the check.
        """
        window = effective_window(window_seconds)
        now = self._clock()
        if limit <= 0:
            return RateLimitResult(
                allowed=True,
                remaining=0,
                reset_at=now + timedelta(seconds=window),
                limit=limit,
            )
        key = rate_limit_key(endpoint, user_id)
        with _store_errors("rate_limit_consume"):
            count, ttl_ms = await self._fixed_window(
                keys=[key], args=[window * 1000]
            )
        count = int(count)
        ttl_ms = int(ttl_ms)
        if ttl_ms > 0:
            reset_at = now + timedelta(milliseconds=ttl_ms)
        else:
            reset_at = now + timedelta(seconds=window)
        return RateLimitResult(
            allowed=count <= limit,
            remaining=max(limit - count, 0),
            reset_at=reset_at,
            limit=limit,
        )

    async def peek(
        self, endpoint: str, user_id: str | int, limit: int, window_seconds: int
    ) -> RateLimitResult:
        """Report the current window without consuming from it."""
        window = effective_window(window_seconds)
        now = self._clock()
        key = rate_limit_key(endpoint, user_id)
        with _store_errors("rate_limit_peek"):
            pipe = self.client.pipeline()
            pipe.get(key)
            pipe.pttl(key)
            raw_count, ttl_ms = await pipe.execute()
        if raw_count is None:
            return RateLimitResult(
                allowed=True,
                remaining=max(limit, 0),
                reset_at=now + timedelta(seconds=window),
                limit=limit,
            )
        count = int(raw_count)
        ttl_ms = int(ttl_ms)
        if ttl_ms > 0:
            reset_at = now + timedelta(milliseconds=ttl_ms)
        else:
            reset_at = now + timedelta(seconds=window)
        return RateLimitResult(
            allowed=limit <= 0 or count <= limit,
            remaining=max(limit - count, 0),
            reset_at=reset_at,
            limit=limit,
        )

    async def can_send_reset_request(self, email: str, cooldown_seconds: int) -> bool:
        """Claim the reset cooldown for ``email``; False while one is running."""
        key = reset_cooldown_key(email)
        with _store_errors("reset_cooldown"):
            created = await self.client.set(
                key,
                int(self._clock().timestamp()),
                nx=True,
                ex=max(1, cooldown_seconds),
            )
        return bool(created)

    async def save_reset_code(self, user_id: int, code: str, ttl_seconds: int) -> None:
        with _store_errors("reset_code_save"):
            await self.client.set(reset_code_key(user_id), code, ex=max(1, ttl_seconds))

    async def consume_reset_code(self, user_id: int, code: str) -> bool:
        """Spend the stored code if it equals ``code``; False otherwise."""
        with _store_errors("reset_code_consume"):
            matched = await self._consume_code(keys=[reset_code_key(user_id)], args=[code])
        return int(matched) == 1

    async def save_reset_token(self, token: str, user_id: int, ttl_seconds: int) -> None:
        with _store_errors("reset_token_save"):
            await self.client.set(
                reset_token_key(token), str(user_id), ex=max(1, ttl_seconds)
            )

    async def get_reset_token_user(self, token: str) -> Optional[int]:
        with _store_errors("reset_token_get"):
            raw = await self.client.get(reset_token_key(token))
        if raw is None:
            return None
        try:
            return int(raw)
        except (TypeError, ValueError):
            logger.warning("reset_token_value_corrupt", token=token)
            return None

    async def delete_reset_token(self, token: str) -> None:
        with _store_errors("reset_token_delete"):
            await self.client.delete(reset_token_key(token))

    async def close(self) -> None:
        """Close the Redis connection pool on shutdown."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
