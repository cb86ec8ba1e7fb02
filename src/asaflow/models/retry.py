"""
Backoff policy and failure records for remote operations.

Design Pattern: Strategy Pattern
BackoffPolicy encapsulates the retry timing, so the ledger applies it
without knowing the concrete numbers.

Defaults:
- 3 tracked consecutive failures before the quiet-window rule applies
- 1s base delay doubling up to a 300s cap
- ±20% jitter, re-drawn on every computation
- 24h quiet window after which a failure record no longer counts
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, cast


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Configuration for per-operation backoff.

    Examples:
        # Named policy: the production defaults
        policy = BackoffPolicy.DEFAULT

        # Custom policy: full control
        policy = BackoffPolicy(
            max_retries=5,
            base_delay=0.5,
            multiplier=3.0,
            max_delay=60.0,
        )
    """

    max_retries: int = 3
    """Consecutive failures after which only the quiet window re-enables the operation."""

    base_delay: float = 1.0
    """Delay in seconds after the first failure."""

    multiplier: float = 2.0
    """Growth factor per additional consecutive failure."""

    max_delay: float = 300.0
    """Cap in seconds applied before jitter."""

    jitter: tuple[float, float] = (0.8, 1.2)
    """Uniform band the jitter factor is drawn from."""

    reset_after: float = 86400.0
    """Quiet window in seconds after which a failure record is treated as empty."""

    if TYPE_CHECKING:
        DEFAULT: BackoffPolicy
    else:
        DEFAULT = cast("BackoffPolicy", None)

    def base_delay_for(self, failures: int) -> float:
        """
        Un-jittered delay after the given number of consecutive failures.

        Uses exponential backoff: base_delay * multiplier^(failures-1)
        capped at max_delay.

        Example:
            policy = BackoffPolicy.DEFAULT
            policy.base_delay_for(1)  # 1.0
            policy.base_delay_for(3)  # 4.0
            policy.base_delay_for(20)  # 300.0
        """
        if failures <= 0:
            return 0.0
        return min(self.base_delay * self.multiplier ** (failures - 1), self.max_delay)

    def delay_for(self, failures: int, jitter_factor: float) -> float:
        """Jittered delay in seconds after the given number of consecutive failures."""
        return self.base_delay_for(failures) * jitter_factor

    @property
    def quiet_window(self) -> timedelta:
        return timedelta(seconds=self.reset_after)

    def __repr__(self) -> str:
        return (
            f"BackoffPolicy(max_retries={self.max_retries}, "
            f"base_delay={self.base_delay}, "
            f"multiplier={self.multiplier}, "
            f"max_delay={self.max_delay}, "
            f"jitter={self.jitter}, "
            f"reset_after={self.reset_after})"
        )


BackoffPolicy.DEFAULT = BackoffPolicy()


@dataclass(frozen=True)
class RetryRecord:
    """
    Failure history of one operation kind.

    Created on the first failure, cleared on success. The next eligible
    time is derived by the ledger, never stored.
    """

    consecutive_failures: int = 0
    last_failure_time: datetime | None = None

    @property
    def is_empty(self) -> bool:
        return self.consecutive_failures <= 0 or self.last_failure_time is None

    def age(self, now: datetime) -> timedelta:
        """Time elapsed since the last failure (zero for empty records)."""
        if self.last_failure_time is None:
            return timedelta(0)
        return now - self.last_failure_time

    def is_expired(self, now: datetime, window: timedelta) -> bool:
        """Check if the record has been quiet for longer than the window."""
        return not self.is_empty and self.age(now) > window
