"""Tests for rate limiting in runtime.py and the Redis key scheme.

Rate limits use the Redis token bucket when a cache is configured and an
in-process bucket with the same refill semantics otherwise.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from labrecords.config import get_settings
from labrecords.service import runtime as runtime_module
from labrecords.service.runtime import Runtime, check_rate_limit
from labrecords.storage.redis_cache import RedisCache, rate_key


class TestCheckRateLimit:
    """Tests for the check_rate_limit function."""

    @pytest.fixture
    def mock_runtime(self):
        """Create a mock runtime with no Redis cache."""
        runtime = MagicMock(spec=Runtime)
        runtime.cache = None
        runtime._local_rate_limits = {}
        runtime._local_rate_limit_lock = asyncio.Lock()
        return runtime

    @pytest.fixture
    def mock_runtime_with_cache(self):
        """Create a mock runtime with Redis cache."""
        runtime = MagicMock(spec=Runtime)
        runtime.cache = AsyncMock()
        runtime.cache.check_rate_limit = AsyncMock(return_value=(True, 4, 0))
        return runtime

    async def test_zero_limit_always_passes(self, mock_runtime):
        assert await check_rate_limit(mock_runtime, "login:alice", 0, 60) is True
        assert await check_rate_limit(mock_runtime, "login:alice", -1, 60) is True

    async def test_invalid_window_logs_warning(self, mock_runtime):
        with patch("labrecords.service.runtime.logger") as mock_logger:
            result = await check_rate_limit(mock_runtime, "login:alice", 10, 0)

        assert result is True
        mock_logger.warning.assert_called_once()
        call_args = mock_logger.warning.call_args
        assert call_args[0][0] == "rate_limit_invalid_window"
        assert call_args[1]["window_seconds"] == 0

    async def test_valid_window_no_warning(self, mock_runtime):
        with patch("labrecords.service.runtime.logger") as mock_logger:
            await check_rate_limit(mock_runtime, "login:alice", 10, 60)
        mock_logger.warning.assert_not_called()

    async def test_local_bucket_exhausts_at_limit(self, mock_runtime):
        results = [
            await check_rate_limit(mock_runtime, "login:alice", 3, 60) for _ in range(4)
        ]
        assert results == [True, True, True, False]

    async def test_local_bucket_reports_remaining_and_reset(self, mock_runtime):
        allowed, remaining, reset = await check_rate_limit(
            mock_runtime, "login:alice", 2, 60, return_remaining=True
        )
        assert (allowed, remaining, reset) == (True, 1, 0)

        await check_rate_limit(mock_runtime, "login:alice", 2, 60)
        allowed, remaining, reset = await check_rate_limit(
            mock_runtime, "login:alice", 2, 60, return_remaining=True
        )
        assert allowed is False
        assert remaining == 0
        assert 0 < reset <= 30

    async def test_keys_are_independent(self, mock_runtime):
        await check_rate_limit(mock_runtime, "login:alice", 1, 60)
        assert await check_rate_limit(mock_runtime, "login:alice", 1, 60) is False
        assert await check_rate_limit(mock_runtime, "login:bob", 1, 60) is True

    async def test_delegates_to_cache(self, mock_runtime_with_cache):
        result = await check_rate_limit(
            mock_runtime_with_cache, "login:alice", 5, 60, return_remaining=True
        )
        assert result == (True, 4, 0)
        mock_runtime_with_cache.cache.check_rate_limit.assert_awaited_once_with(
            "login:alice", 5, 60, return_remaining=True, cost=1
        )


def test_redis_keys_are_hashed():
    key = rate_key("login:ali:ce")
    assert key.startswith("rate:")
    assert "ali" not in key
    assert key == rate_key("login:ali:ce")


def test_script_reply_parsing():
    assert RedisCache._result([1, 4.0, 0], return_remaining=True) == (True, 4, 0)
    assert RedisCache._result(["0", "-1", "12"], return_remaining=True) == (False, 0, 12)
    assert RedisCache._result([0, 0, 3], return_remaining=False) is False


class TestRedisRequirement:
    def _settings(self, **updates):
        return get_settings().model_copy(update=updates)

    def test_missing_redis_is_fatal_outside_test_mode(self, monkeypatch):
        settings = self._settings(test_mode=False, allow_redis_fallback_dev=False, redis_url=None)
        with monkeypatch.context() as m:
            m.setattr(runtime_module, "get_settings", lambda: settings)
            with pytest.raises(RuntimeError):
                Runtime()

    def test_dev_fallback_allows_missing_redis(self, monkeypatch):
        settings = self._settings(test_mode=False, allow_redis_fallback_dev=True, redis_url=None)
        with monkeypatch.context() as m:
            m.setattr(runtime_module, "get_settings", lambda: settings)
            assert Runtime().cache is None
