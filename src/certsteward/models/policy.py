"""Renewal policy value objects."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import timedelta


@dataclass(frozen=True)
class BackoffSchedule:
    """Exponential backoff between automatic retries.

    ``delay_for(n)`` is ``initial * multiplier ** (n - 1)`` capped at
    ``max_delay``; zero failures means no delay.
    """

    initial: timedelta = timedelta(hours=1)
    multiplier: float = 2.0
    max_delay: timedelta = timedelta(hours=24)

    def delay_for(self, failure_count: int) -> timedelta:
        if failure_count <= 0:
            return timedelta(0)
        seconds = self.initial.total_seconds() * (self.multiplier ** (failure_count - 1))
        return min(timedelta(seconds=seconds), self.max_delay)


@dataclass(frozen=True)
class RenewalPolicy:
    renew_before_expiry: timedelta = timedelta(days=30)
    max_retries: int = 5
    retry_backoff: BackoffSchedule = field(default_factory=BackoffSchedule)

    def with_overrides(
        self,
        *,
        renew_before_days: int | None = None,
        max_retries: int | None = None,
    ) -> RenewalPolicy:
        """Copy of this policy with the given fields replaced."""
        policy = self
        if renew_before_days is not None:
            policy = replace(policy, renew_before_expiry=timedelta(days=renew_before_days))
        if max_retries is not None:
            policy = replace(policy, max_retries=max_retries)
        return policy
