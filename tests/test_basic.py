import pytest

from metered import (
    DEFAULT_LIMITS,
    AsyncRetryingExecutor,
    AsyncWindowTracker,
    RateLimitConfig,
    RetryingExecutor,
    WindowTracker,
)


def test_construct_sync():
    RetryingExecutor()
    WindowTracker({"a": RateLimitConfig(10)}, default="a")


@pytest.mark.asyncio
async def test_construct_async():
    AsyncRetryingExecutor()
    AsyncWindowTracker()


def test_builtin_limits():
    assert DEFAULT_LIMITS["openai"] == RateLimitConfig(30, 3, 2, 60)
    assert DEFAULT_LIMITS["gsc"] == RateLimitConfig(50, 3, 1, 30)


def test_unknown_api_falls_back_to_default():
    tracker = WindowTracker()
    assert tracker.config("something-else") is DEFAULT_LIMITS["openai"]
    tracker2 = WindowTracker(DEFAULT_LIMITS, default="gsc")
    assert tracker2.config("something-else").requests_per_minute == 50  # noqa: PLR2004


def test_default_must_exist():
    with pytest.raises(ValueError):
        WindowTracker({"a": RateLimitConfig()}, default="b")


def test_invalid_config_rejected():
    with pytest.raises(ValueError):
        RateLimitConfig(requests_per_minute=0)
    with pytest.raises(ValueError):
        RateLimitConfig(max_retries=-1)
