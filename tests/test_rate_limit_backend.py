"""Tests for the Redis backend adapter."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import redis.exceptions

from pingbuoy.app.exceptions import (
    BackendAuthError,
    BackendProtocolError,
    BackendUnreachableError,
    RateLimitBackendError,
)
from pingbuoy.app.services.rate_limit import (
    SLIDING_WINDOW_SCRIPT,
    FailurePolicy,
    RateLimitConfig,
    RedisBackend,
    SlidingWindowRateLimiter,
)


@pytest.fixture
def mock_redis():
    """Create a mock redis.asyncio client."""
    client = MagicMock()
    client.eval = AsyncMock(return_value=[1, 10, 9, 1060000, 0, 1, 940000])
    client.zremrangebyscore = AsyncMock(return_value=0)
    client.zcard = AsyncMock(return_value=0)
    client.zrange = AsyncMock(return_value=[])
    client.delete = AsyncMock(return_value=1)
    client.setex = AsyncMock(return_value=True)
    client.get = AsyncMock(return_value=None)
    client.ping = AsyncMock(return_value=True)
    client.info = AsyncMock(return_value={"redis_version": "7.2.4"})
    client.aclose = AsyncMock()
    return client


class TestRedisBackend:
    """Tests for RedisBackend command wrappers and error translation."""

    @pytest.mark.asyncio
    async def test_eval_passes_keys_then_args(self, mock_redis):
        backend = RedisBackend(redis_client=mock_redis, timeout=1.0)
        reply = await backend.eval(SLIDING_WINDOW_SCRIPT, ["ratelimit:k"], [1000000, 60000, 10, "abc"])
        assert reply[0] == 1
        mock_redis.eval.assert_awaited_once_with(
            SLIDING_WINDOW_SCRIPT, 1, "ratelimit:k", 1000000, 60000, 10, "abc"
        )

    @pytest.mark.asyncio
    async def test_zrange_withscores(self, mock_redis):
        mock_redis.zrange.return_value = [("1000:abc", 1000.0)]
        backend = RedisBackend(redis_client=mock_redis, timeout=1.0)
        assert await backend.zrange_withscores("k", 0, 0) == [("1000:abc", 1000.0)]
        mock_redis.zrange.assert_awaited_once_with("k", 0, 0, withscores=True)

    @pytest.mark.asyncio
    async def test_get_decodes_bytes(self, mock_redis):
        mock_redis.get.return_value = b"1"
        backend = RedisBackend(redis_client=mock_redis, timeout=1.0)
        assert await backend.get("k") == "1"

    @pytest.mark.asyncio
    async def test_scan_keys(self, mock_redis):
        async def scan_iter(match=None, count=None):
            for key in (b"ratelimit:api:ip:1", "ratelimit:api:user:2"):
                yield key

        mock_redis.scan_iter = scan_iter
        backend = RedisBackend(redis_client=mock_redis, timeout=1.0)
        assert await backend.scan_keys("ratelimit:*") == ["ratelimit:api:ip:1", "ratelimit:api:user:2"]

    @pytest.mark.asyncio
    async def test_timeout_becomes_unreachable(self, mock_redis):
        async def slow_eval(*args):
            await asyncio.sleep(1)

        mock_redis.eval = slow_eval
        backend = RedisBackend(redis_client=mock_redis, timeout=0.01)
        with pytest.raises(BackendUnreachableError) as exc_info:
            await backend.eval(SLIDING_WINDOW_SCRIPT, ["k"], [1, 2, 3, "x"])
        assert exc_info.value.kind == "timeout"

    @pytest.mark.asyncio
    async def test_connection_refused_becomes_unreachable(self, mock_redis):
        mock_redis.get.side_effect = redis.exceptions.ConnectionError(
            "Error 111 connecting to localhost:6379. Connection refused."
        )
        backend = RedisBackend(redis_client=mock_redis, timeout=1.0)
        with pytest.raises(BackendUnreachableError) as exc_info:
            await backend.get("k")
        assert exc_info.value.kind == "connection_refused"
        assert isinstance(exc_info.value.__cause__, redis.exceptions.ConnectionError)

    @pytest.mark.asyncio
    async def test_auth_error_translated(self, mock_redis):
        mock_redis.setex.side_effect = redis.exceptions.AuthenticationError("invalid password")
        backend = RedisBackend(redis_client=mock_redis, timeout=1.0)
        with pytest.raises(BackendAuthError):
            await backend.setex("k", 10, "v")

    @pytest.mark.asyncio
    async def test_script_error_is_protocol_error(self, mock_redis):
        mock_redis.eval.side_effect = redis.exceptions.ResponseError("ERR Error running script")
        backend = RedisBackend(redis_client=mock_redis, timeout=1.0)
        with pytest.raises(BackendProtocolError):
            await backend.eval(SLIDING_WINDOW_SCRIPT, ["k"], [1, 2, 3, "x"])

    @pytest.mark.asyncio
    async def test_calls_are_not_retried(self, mock_redis):
        mock_redis.eval.side_effect = redis.exceptions.TimeoutError("Timeout reading from socket")
        backend = RedisBackend(redis_client=mock_redis, timeout=1.0)
        with pytest.raises(RateLimitBackendError):
            await backend.eval(SLIDING_WINDOW_SCRIPT, ["k"], [1, 2, 3, "x"])
        assert mock_redis.eval.await_count == 1

    @pytest.mark.asyncio
    async def test_close_uses_aclose(self, mock_redis):
        backend = RedisBackend(redis_client=mock_redis, timeout=1.0)
        await backend.close()
        mock_redis.aclose.assert_awaited_once()

    def test_requires_url(self):
        with patch("pingbuoy.app.services.rate_limit.backend.settings") as mock_settings:
            mock_settings.redis_url = ""
            mock_settings.rate_limit_backend_timeout_seconds = 2.0
            with pytest.raises(ValueError):
                RedisBackend()

    def test_from_url_disables_retries(self):
        with patch("pingbuoy.app.services.rate_limit.backend.aioredis.from_url") as from_url:
            RedisBackend(redis_url="rediss://default@eu1-example.upstash.io:6379", token="A" * 30, timeout=1.5)
        url = from_url.call_args.args[0]
        kwargs = from_url.call_args.kwargs
        assert url == "rediss://default@eu1-example.upstash.io:6379"
        assert kwargs["retry_on_timeout"] is False
        assert kwargs["socket_timeout"] == 1.5
        assert kwargs["password"] == "A" * 30
        assert kwargs["decode_responses"] is True


class TestLimiterOverRedisBackend:
    """The limiter's use of the adapter, with the driver mocked."""

    @pytest.mark.asyncio
    async def test_check_limit_parses_script_reply(self, mock_redis):
        mock_redis.eval.return_value = [0, 10, 0, 1060000, 42, 10, 940000]
        limiter = SlidingWindowRateLimiter(
            RedisBackend(redis_client=mock_redis, timeout=1.0),
            key_prefix="ratelimit",
            policy=FailurePolicy("production"),
            clock=lambda: 1000000,
        )
        result = await limiter.check_limit("ip:1.2.3.4", RateLimitConfig(window_ms=60000, max_requests=10), "api")
        assert result.success is False
        assert result.retry_after == 42
        assert result.total_hits == 10

        args = mock_redis.eval.await_args.args
        assert args[:7] == (SLIDING_WINDOW_SCRIPT, 1, "ratelimit:api:ip:1.2.3.4", 1000000, 60000, 10, args[6])
        assert isinstance(args[6], str) and args[6]

    @pytest.mark.asyncio
    async def test_unique_member_suffix_per_call(self, mock_redis):
        limiter = SlidingWindowRateLimiter(
            RedisBackend(redis_client=mock_redis, timeout=1.0),
            policy=FailurePolicy("development"),
            clock=lambda: 1000000,
        )
        config = RateLimitConfig(window_ms=60000, max_requests=10)
        await limiter.check_limit("k", config)
        await limiter.check_limit("k", config)
        suffixes = [c.args[6] for c in mock_redis.eval.await_args_list]
        assert suffixes[0] != suffixes[1]

    @pytest.mark.asyncio
    async def test_production_timeout_fails_closed(self, mock_redis):
        mock_redis.eval.side_effect = asyncio.TimeoutError()
        limiter = SlidingWindowRateLimiter(
            RedisBackend(redis_client=mock_redis, timeout=1.0),
            policy=FailurePolicy("production"),
        )
        with pytest.raises(BackendUnreachableError):
            await limiter.check_limit("k", RateLimitConfig(window_ms=60000, max_requests=10))
