"""Tests for the Redis-backed rate limit store.

The Lua scripts are exercised through FakeRedis (see conftest.py), which
applies the same steps in Python with TIME taken from the test clock.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
import redis

from admission.app.exceptions import BackendConnectionError, BackendError, BackendTimeoutError
from admission.app.services.rate_limit.redis_lua import (
    SLIDING_WINDOW_SCRIPT,
    TOKEN_BUCKET_SCRIPT,
)
from admission.app.services.rate_limit.redis_store import RedisRateLimitStore
from admission.app.services.rate_limit.specs import parse_spec


@pytest.fixture
def store(fake_redis):
    return RedisRateLimitStore(fake_redis, key_prefix="rate:", timeout_seconds=0.1)


class TestScripts:
    """Sanity checks on the Lua sources."""

    def test_scripts_read_server_time(self):
        assert "redis.call('TIME')" in SLIDING_WINDOW_SCRIPT
        assert "redis.call('TIME')" in TOKEN_BUCKET_SCRIPT

    def test_sliding_window_prunes_before_counting(self):
        prune = SLIDING_WINDOW_SCRIPT.index("ZREMRANGEBYSCORE")
        count = SLIDING_WINDOW_SCRIPT.index("ZCARD")
        assert prune < count

    def test_token_bucket_persists_state_on_rejection(self):
        # HSET happens once, after the allow/deny branch
        assert TOKEN_BUCKET_SCRIPT.count("redis.call('HSET'") == 1
        assert TOKEN_BUCKET_SCRIPT.index("redis.call('HSET'") > TOKEN_BUCKET_SCRIPT.index("retry_after = math.max")


class TestRedisStoreAlgorithms:
    """End-to-end checks through the fake Redis."""

    @pytest.mark.asyncio
    async def test_sliding_window_five_per_minute(self, store):
        spec = parse_spec("sliding:5:60")
        remaining = []
        for _ in range(5):
            result = await store.check_and_update("user:1", spec)
            assert result.allowed is True
            remaining.append(result.remaining)
        assert remaining == [4, 3, 2, 1, 0]

        result = await store.check_and_update("user:1", spec)
        assert result.allowed is False
        assert result.remaining == 0
        assert 0 < result.retry_after_seconds <= 60
        assert result.backend == "redis"

    @pytest.mark.asyncio
    async def test_token_bucket_drain_and_refill(self, store, clock):
        spec = parse_spec("token:20:1")
        for _ in range(20):
            assert (await store.check_and_update("user:1", spec)).allowed is True

        result = await store.check_and_update("user:1", spec)
        assert result.allowed is False
        assert result.remaining == 0

        clock.advance(1)
        assert (await store.check_and_update("user:1", spec)).allowed is True
        assert (await store.check_and_update("user:1", spec)).allowed is False

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, store):
        spec = parse_spec("sliding:3:60")
        for _ in range(3):
            await store.check_and_update("user:1", spec)
        assert (await store.check_and_update("user:1", spec)).allowed is False

        for _ in range(3):
            assert (await store.check_and_update("user:2", spec)).allowed is True

    @pytest.mark.asyncio
    async def test_state_keys_carry_prefix_and_spec(self, store, fake_redis):
        await store.check_and_update("user:1", parse_spec("sliding:5:60"))
        await store.check_and_update("user:1", parse_spec("token:20:0.5"))
        assert fake_redis.keys() == ["rate:user:1:sw60", "rate:user:1:tb0.5"]

    @pytest.mark.asyncio
    async def test_window_set_ttl_has_jitter_bound(self, store, fake_redis, clock):
        spec = parse_spec("sliding:5:60")
        await store.check_and_update("k", spec)
        ttl = fake_redis.expiry["rate:k:sw60"] - round(clock.now, 6)
        assert spec.state_ttl <= ttl <= spec.state_ttl + 6

    @pytest.mark.asyncio
    async def test_reset_at_uses_server_time(self, store, clock):
        spec = parse_spec("sliding:5:60")
        result = await store.check_and_update("k", spec)
        assert result.reset_after_seconds == 60
        assert result.reset_at == int(clock.now) + 60

    @pytest.mark.asyncio
    async def test_refund_sliding_entries(self, store):
        spec = parse_spec("sliding:3:60:2")
        result = await store.check_and_update("k", spec)
        assert result.remaining == 1
        await store.refund("k", spec, result)
        assert (await store.check_and_update("k", spec)).remaining == 1

    @pytest.mark.asyncio
    async def test_refund_tokens(self, store):
        spec = parse_spec("token:2:1")
        result = await store.check_and_update("k", spec)
        await store.refund("k", spec, result)
        status = await store.peek("k", spec)
        assert status.remaining == 2

    @pytest.mark.asyncio
    async def test_peek_and_reset(self, store):
        spec = parse_spec("sliding:5:60")
        await store.check_and_update("k", spec)
        await store.check_and_update("k", spec)

        status = await store.peek("k", spec)
        assert status.used == 2
        assert status.remaining == 3

        await store.reset("k", [spec])
        status = await store.peek("k", spec)
        assert status.used == 0


class TestRedisStoreFailures:
    """Backend failures surface as BackendError subclasses."""

    @pytest.mark.asyncio
    async def test_slow_round_trip_times_out(self, store, fake_redis):
        fake_redis.delay = 0.5
        with pytest.raises(BackendTimeoutError):
            await store.check_and_update("k", parse_spec("sliding:5:60"))

    @pytest.mark.asyncio
    async def test_redis_timeout_error(self, store, fake_redis):
        fake_redis.error = redis.exceptions.TimeoutError("Timeout reading from socket")
        with pytest.raises(BackendTimeoutError):
            await store.check_and_update("k", parse_spec("token:5:1"))

    @pytest.mark.asyncio
    async def test_connection_refused(self, store, fake_redis):
        fake_redis.error = redis.exceptions.ConnectionError("Connection refused")
        with pytest.raises(BackendConnectionError) as exc_info:
            await store.check_and_update("k", parse_spec("token:5:1"))
        assert exc_info.value.backend == "redis"

    @pytest.mark.asyncio
    async def test_os_error_is_connection_error(self, store, fake_redis):
        fake_redis.error = OSError("Network is unreachable")
        with pytest.raises(BackendConnectionError):
            await store.check_and_update("k", parse_spec("token:5:1"))

    @pytest.mark.asyncio
    async def test_script_error(self, store, fake_redis):
        fake_redis.error = redis.exceptions.ResponseError("ERR Error running script")
        with pytest.raises(BackendError):
            await store.check_and_update("k", parse_spec("sliding:5:60"))

    @pytest.mark.asyncio
    async def test_malformed_reply(self):
        client = MagicMock()
        client.eval = AsyncMock(return_value=[1, 2])
        store = RedisRateLimitStore(client)
        with pytest.raises(BackendError):
            await store.check_and_update("k", parse_spec("sliding:5:60"))

    @pytest.mark.asyncio
    async def test_failure_is_never_a_decision(self, store, fake_redis):
        fake_redis.error = redis.exceptions.ConnectionError("down")
        spec = parse_spec("sliding:5:60")
        for _ in range(3):
            with pytest.raises(BackendError):
                await store.check_and_update("k", spec)

    @pytest.mark.asyncio
    async def test_ping(self, store, fake_redis):
        assert await store.ping() is True
        fake_redis.error = redis.exceptions.ConnectionError("down")
        assert await store.ping() is False

    @pytest.mark.asyncio
    async def test_close(self, store, fake_redis):
        await store.close()
        assert fake_redis.closed is True


@pytest.mark.asyncio
async def test_concurrent_checks_admit_exactly_the_limit(store):
    spec = parse_spec("sliding:10:60")
    results = await asyncio.gather(*(store.check_and_update("burst", spec) for _ in range(30)))
    assert sum(1 for r in results if r.allowed) == 10
