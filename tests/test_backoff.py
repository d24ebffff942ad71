import pytest

from pricerun.core.errors import ChannelError, FatalChannelError, RetryableChannelError
from pricerun.core.throttle import ChannelThrottle
from pricerun.services.backoff import (
    BackoffPolicy,
    calculate_backoff,
    is_retryable,
    retry_delay_seconds,
)

DEFAULT = BackoffPolicy()
RATE_LIMIT = BackoffPolicy(base_seconds=16.0)


def _no_jitter():
    return 0.5


@pytest.mark.parametrize(
    ("attempt", "expected"),
    [(0, 2.0), (1, 4.0), (2, 8.0), (3, 16.0), (4, 32.0), (5, 64.0), (6, 64.0), (10, 64.0)],
)
def test_exponential_schedule_is_capped(attempt, expected):
    assert calculate_backoff(attempt, DEFAULT, rng=_no_jitter) == expected


def test_jitter_stays_within_twenty_percent():
    assert calculate_backoff(1, DEFAULT, rng=lambda: 0.0) == pytest.approx(3.2)
    assert calculate_backoff(1, DEFAULT, rng=lambda: 1.0) == pytest.approx(4.8)


def test_rate_limit_uses_retry_after_when_present():
    error = RetryableChannelError("Too many requests", status_code=429, retry_after_seconds=7)
    delay = retry_delay_seconds(error, 0, policy=DEFAULT, rate_limit_policy=RATE_LIMIT, rng=_no_jitter)
    assert delay == 7.0


def test_rate_limit_without_retry_after_uses_longer_schedule():
    error = RetryableChannelError("Too many requests", status_code=429)
    assert retry_delay_seconds(error, 0, policy=DEFAULT, rate_limit_policy=RATE_LIMIT, rng=_no_jitter) == 16.0
    assert retry_delay_seconds(error, 1, policy=DEFAULT, rate_limit_policy=RATE_LIMIT, rng=_no_jitter) == 32.0
    assert retry_delay_seconds(error, 3, policy=DEFAULT, rate_limit_policy=RATE_LIMIT, rng=_no_jitter) == 64.0


def test_server_error_uses_default_schedule():
    error = ChannelError("Bad gateway", status_code=502)
    assert retry_delay_seconds(error, 2, policy=DEFAULT, rate_limit_policy=RATE_LIMIT, rng=_no_jitter) == 8.0


def test_retryable_classification():
    assert is_retryable(ChannelError("throttled", status_code=429))
    assert is_retryable(ChannelError("upstream", status_code=503))
    assert is_retryable(ChannelError("reset", code="ECONNRESET"))
    assert not is_retryable(ChannelError("bad price", status_code=422))
    assert not is_retryable(ChannelError("missing", status_code=404))
    assert not is_retryable(FatalChannelError("forced", status_code=503))
    assert is_retryable(RetryableChannelError("forced", status_code=400))


def test_throttle_spaces_calls_per_channel():
    sleeps = []
    ticks = iter([0.0, 0.03, 0.1, 0.1])
    throttle = ChannelThrottle(min_interval_ms=100, sleep=sleeps.append, clock=lambda: next(ticks))

    assert throttle.wait("shopify") == 0.0
    waited = throttle.wait("shopify")
    assert waited == pytest.approx(0.07)
    assert sleeps == [pytest.approx(0.07)]
    assert throttle.wait("amazon") == 0.0


def test_throttle_keeps_one_state_per_channel():
    throttle = ChannelThrottle(min_interval_ms=0, sleep=lambda _: None)

    throttle.wait("shopify")
    throttle.wait("amazon")
    throttle.wait("shopify")

    assert set(throttle._states) == {"shopify", "amazon"}
    assert throttle._states["shopify"].lock is not throttle._states["amazon"].lock
    throttle.clear()
    assert throttle._states == {}
