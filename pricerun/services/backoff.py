import random
from dataclasses import dataclass
from typing import Callable

from pricerun.core.config import Settings
from pricerun.core.errors import ChannelError, FatalChannelError, RetryableChannelError

_RETRYABLE_CODES = {
    "ECONNRESET",
    "ETIMEDOUT",
    "ENOTFOUND",
    "ECONNREFUSED",
    "THROTTLED",
    "TIMEOUT",
    "NETWORK",
}


@dataclass(frozen=True)
class BackoffPolicy:
    base_seconds: float = 2.0
    max_seconds: float = 64.0
    multiplier: float = 2.0
    jitter: float = 0.2

    @classmethod
    def from_settings(cls, settings: Settings) -> "BackoffPolicy":
        return cls(
            base_seconds=settings.apply_backoff_base_seconds,
            max_seconds=settings.apply_backoff_max_seconds,
            multiplier=settings.apply_backoff_multiplier,
            jitter=settings.apply_backoff_jitter,
        )

    @classmethod
    def rate_limit_from_settings(cls, settings: Settings) -> "BackoffPolicy":
        return cls(
            base_seconds=settings.rate_limit_backoff_base_seconds,
            max_seconds=max(settings.apply_backoff_max_seconds, settings.rate_limit_backoff_base_seconds),
            multiplier=settings.apply_backoff_multiplier,
            jitter=settings.apply_backoff_jitter,
        )


def calculate_backoff(
    attempt: int,
    policy: BackoffPolicy,
    *,
    rng: Callable[[], float] = random.random,
) -> float:
    """Delay in seconds for a zero-indexed attempt: ``min(base * multiplier**attempt, max)`` +/- jitter."""
    capped = min(policy.base_seconds * (policy.multiplier ** max(attempt, 0)), policy.max_seconds)
    spread = capped * policy.jitter
    return max(0.0, capped + (rng() * spread * 2 - spread))


def is_retryable(error: ChannelError) -> bool:
    if isinstance(error, (RetryableChannelError, FatalChannelError)):
        return error.retryable
    if error.status_code is not None and (error.status_code == 429 or error.status_code >= 500):
        return True
    return (error.code or "").upper() in _RETRYABLE_CODES


def is_rate_limited(error: ChannelError) -> bool:
    return error.status_code == 429 or (error.code or "").upper() == "THROTTLED"


def retry_delay_seconds(
    error: ChannelError,
    attempt: int,
    *,
    policy: BackoffPolicy,
    rate_limit_policy: BackoffPolicy,
    rng: Callable[[], float] = random.random,
) -> float:
    if is_rate_limited(error):
        if error.retry_after_seconds is not None and error.retry_after_seconds >= 0:
            return float(error.retry_after_seconds)
        return calculate_backoff(attempt, rate_limit_policy, rng=rng)
    return calculate_backoff(attempt, policy, rng=rng)
