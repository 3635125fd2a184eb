from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Tuple, Union


@dataclass(frozen=True)
class Locked:
    """The account is inside an active lock window."""

    remaining: timedelta


@dataclass(frozen=True)
class ShouldLock:
    """This failure reaches the threshold; lock for ``duration``."""

    duration: timedelta


@dataclass(frozen=True)
class IncrementOnly:
    """Count the failure, no lock yet."""


LockoutDecision = Union[Locked, ShouldLock, IncrementOnly]


class LockoutPolicy:
    """Pure brute-force lockout rules.

    The policy never touches storage. Stores call :meth:`evaluate` and
    :meth:`next_state` inside their own atomic update so concurrent failures
    are counted exactly once each.

    The counter only resets on a successful login, so the first failure after
    a lapsed lock re-locks immediately.
    """

    def __init__(self, max_attempts: int = 5, lock_duration: timedelta = timedelta(minutes=15)):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.lock_duration = lock_duration

    @classmethod
    def from_settings(cls, settings) -> "LockoutPolicy":
        return cls(
            max_attempts=settings.max_login_attempts,
            lock_duration=timedelta(minutes=settings.lock_time_minutes),
        )

    def check(self, lock_until: Optional[datetime], now: datetime) -> Optional[Locked]:
        if lock_until is not None and lock_until > now:
            return Locked(remaining=lock_until - now)
        return None

    def evaluate(
        self, failed_attempts: int, lock_until: Optional[datetime], now: datetime
    ) -> LockoutDecision:
        locked = self.check(lock_until, now)
        if locked is not None:
            return locked
        if max(failed_attempts, 0) + 1 >= self.max_attempts:
            return ShouldLock(duration=self.lock_duration)
        return IncrementOnly()

    def next_state(
        self,
        decision: LockoutDecision,
        failed_attempts: int,
        lock_until: Optional[datetime],
        now: datetime,
    ) -> Tuple[int, Optional[datetime]]:
        """Return the ``(failed_attempts, lock_until)`` pair to persist."""
        if isinstance(decision, Locked):
            return failed_attempts, lock_until
        attempts = max(failed_attempts, 0) + 1
        if isinstance(decision, ShouldLock):
            return attempts, now + decision.duration
        return attempts, None
