"""
Retry Scheduler — when a failed record may be attempted again.

Pure functions of (attempt_count, policy); no clocks, no timers. With the
defaults a record that keeps failing is retried after 1s, then 2s, and is
terminally failed on its third failure.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from job_queue.errors import ConfigurationError


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_s: float = 1.0
    max_delay_s: float = 60.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ConfigurationError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay_s < 0:
            raise ConfigurationError(f"base_delay_s must be >= 0, got {self.base_delay_s}")
        if self.max_delay_s < self.base_delay_s:
            raise ConfigurationError(
                f"max_delay_s ({self.max_delay_s}) must be >= base_delay_s ({self.base_delay_s})"
            )

    @classmethod
    def from_config(cls, config) -> RetryPolicy:
        """Build from a DispatchConfig (or anything with the same attributes)."""
        return cls(
            max_attempts=config.max_attempts,
            base_delay_s=config.base_delay_s,
            max_delay_s=config.max_delay_s,
        )


def backoff_delay(attempt_count: int, base_delay_s: float, max_delay_s: float | None = None) -> timedelta:
    """
    Delay before the next attempt, given how many attempts have been made.

    attempt_count=1 → base, 2 → 2·base, 3 → 4·base, ... capped at max_delay_s.
    """
    if attempt_count < 1:
        raise ValueError(f"attempt_count must be >= 1, got {attempt_count}")
    seconds = base_delay_s * (2 ** (attempt_count - 1))
    if max_delay_s is not None:
        seconds = min(seconds, max_delay_s)
    return timedelta(seconds=seconds)


def next_attempt_at(now: datetime, attempt_count: int, policy: RetryPolicy) -> datetime:
    return now + backoff_delay(attempt_count, policy.base_delay_s, policy.max_delay_s)


def is_exhausted(attempt_count: int, max_attempts: int) -> bool:
    return attempt_count >= max_attempts
