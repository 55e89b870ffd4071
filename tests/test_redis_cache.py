"""Unit tests for the Redis cache with a mocked client."""
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from gatehouse.service.errors import TransientStoreError
from gatehouse.storage.redis_cache import RedisCache


@pytest.fixture
def client():
    client = MagicMock()
    client.register_script.return_value = AsyncMock()
    client.set = AsyncMock(return_value=True)
    client.get = AsyncMock(return_value=None)
    client.delete = AsyncMock(return_value=1)
    client.ping = AsyncMock(return_value=True)
    client.aclose = AsyncMock()
    client.connection_pool.disconnect = AsyncMock()
    return client


@pytest.fixture
def redis_cache(client, clock):
    return RedisCache("redis://localhost:6379/0", client=client, clock=clock)


def _pipeline(client, values):
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=values)
    client.pipeline.return_value = pipe
    return pipe


class TestConsume:
    async def test_script_called_with_window_in_ms(self, redis_cache, client):
        script = client.register_script.return_value
        script.return_value = [1, 60000]

        result = await redis_cache.consume("generate-desc", 7, 5, 60)

        script.assert_awaited_once_with(
            keys=["rate_limit:generate-desc:7"], args=[60000]
        )
        assert result.allowed is True
        assert result.remaining == 4
        assert result.limit == 5

    async def test_reset_at_from_remaining_ttl(self, redis_cache, client, clock):
        client.register_script.return_value.return_value = [3, 12500]
        result = await redis_cache.consume("generate-desc", 7, 5, 60)
        assert result.reset_at == clock() + timedelta(milliseconds=12500)

    async def test_crossing_hit_denied(self, redis_cache, client):
        client.register_script.return_value.return_value = [6, 1000]
        result = await redis_cache.consume("generate-desc", 7, 5, 60)
        assert result.allowed is False
        assert result.remaining == 0

    async def test_missing_ttl_falls_back_to_window(self, redis_cache, client, clock):
        client.register_script.return_value.return_value = [1, -1]
        result = await redis_cache.consume("generate-desc", 7, 5, 60)
        assert result.reset_at == clock() + timedelta(seconds=60)

    async def test_zero_limit_skips_redis(self, redis_cache, client):
        result = await redis_cache.consume("generate-desc", 7, 0, 60)
        assert result.allowed is True
        client.register_script.return_value.assert_not_awaited()

    async def test_invalid_window_uses_default(self, redis_cache, client):
        script = client.register_script.return_value
        script.return_value = [1, 60000]
        with patch("gatehouse.storage.models.logger") as mock_logger:
            await redis_cache.consume("generate-desc", 7, 5, 0)
        assert script.call_args.kwargs["args"] == [60000]
        assert mock_logger.warning.call_args[0][0] == "rate_limit_invalid_window"

    @pytest.mark.parametrize("error", [RedisConnectionError("down"), RedisTimeoutError("slow")])
    async def test_outage_is_transient(self, redis_cache, client, error):
        client.register_script.return_value.side_effect = error
        with pytest.raises(TransientStoreError):
            await redis_cache.consume("generate-desc", 7, 5, 60)


class TestPeek:
    async def test_untouched_key(self, redis_cache, client, clock):
        _pipeline(client, [None, -2])
        result = await redis_cache.peek("generate-desc", 7, 5, 60)
        assert result.remaining == 5
        assert result.reset_at == clock() + timedelta(seconds=60)

    async def test_existing_window(self, redis_cache, client, clock):
        pipe = _pipeline(client, ["2", 30000])
        result = await redis_cache.peek("generate-desc", 7, 5, 60)
        pipe.get.assert_called_once_with("rate_limit:generate-desc:7")
        pipe.pttl.assert_called_once_with("rate_limit:generate-desc:7")
        assert result.allowed is True
        assert result.remaining == 3
        assert result.reset_at == clock() + timedelta(seconds=30)


class TestResetState:
    async def test_cooldown_is_atomic_set_nx(self, redis_cache, client, clock):
        assert await redis_cache.can_send_reset_request(" Ada@Example.com", 60) is True
        client.set.assert_awaited_once_with(
            "reset:cooldown:ada@example.com",
            int(clock().timestamp()),
            nx=True,
            ex=60,
        )

    async def test_cooldown_refused_when_key_exists(self, redis_cache, client):
        client.set.return_value = None
        assert await redis_cache.can_send_reset_request("ada@example.com", 60) is False

    async def test_save_reset_code_sets_ttl(self, redis_cache, client):
        await redis_cache.save_reset_code(1, "012345", 600)
        client.set.assert_awaited_once_with("reset:code:1", "012345", ex=600)

    async def test_reset_token_round_trip(self, redis_cache, client):
        await redis_cache.save_reset_token("tok", 1, 900)
        client.set.assert_awaited_once_with("reset:token:tok", "1", ex=900)
        client.get.return_value = "1"
        assert await redis_cache.get_reset_token_user("tok") == 1
        await redis_cache.delete_reset_token("tok")
        client.delete.assert_awaited_once_with("reset:token:tok")

    async def test_corrupt_token_value_is_ignored(self, redis_cache, client):
        client.get.return_value = "not-a-number"
        assert await redis_cache.get_reset_token_user("tok") is None

    async def test_get_outage_is_transient(self, redis_cache, client):
        client.get.side_effect = RedisConnectionError("down")
        with pytest.raises(TransientStoreError):
            await redis_cache.get_reset_token_user("tok")

    async def test_reset_code_consumed_by_compare_and_delete_script(self, redis_cache, client):
        scripts = [call.args[0] for call in client.register_script.call_args_list]
        assert any("DEL" in source and "GET" in source for source in scripts)
        script = client.register_script.return_value
        script.return_value = 1

        assert await redis_cache.consume_reset_code(1, "012345") is True
        script.assert_awaited_once_with(keys=["reset:code:1"], args=["012345"])
        client.get.assert_not_awaited()
        client.delete.assert_not_awaited()

    async def test_reset_code_mismatch_reported(self, redis_cache, client):
        client.register_script.return_value.return_value = 0
        assert await redis_cache.consume_reset_code(1, "999999") is False

    async def test_reset_code_consume_outage_is_transient(self, redis_cache, client):
        client.register_script.return_value.side_effect = RedisTimeoutError("slow")
        with pytest.raises(TransientStoreError):
            await redis_cache.consume_reset_code(1, "012345")


async def test_close_disconnects_pool(redis_cache, client):
    await redis_cache.close()
    client.aclose.assert_awaited_once()
    client.connection_pool.disconnect.assert_awaited_once()
