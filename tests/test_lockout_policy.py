"""Tests for the pure brute-force lockout rules."""

from datetime import datetime, timedelta, timezone

import pytest

from siteauth.service.lockout import IncrementOnly, Locked, LockoutPolicy, ShouldLock

NOW = datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def policy():
    return LockoutPolicy(max_attempts=5, lock_duration=timedelta(minutes=15))


def test_failures_below_threshold_only_increment(policy):
    for attempts in range(4):
        decision = policy.evaluate(attempts, None, NOW)
        assert isinstance(decision, IncrementOnly)
        assert policy.next_state(decision, attempts, None, NOW) == (attempts + 1, None)


def test_failure_reaching_threshold_locks(policy):
    decision = policy.evaluate(4, None, NOW)
    assert decision == ShouldLock(duration=timedelta(minutes=15))
    assert policy.next_state(decision, 4, None, NOW) == (5, NOW + timedelta(minutes=15))


def test_active_lock_reports_remaining_time(policy):
    lock_until = NOW + timedelta(minutes=10)
    decision = policy.evaluate(5, lock_until, NOW)
    assert decision == Locked(remaining=timedelta(minutes=10))
    # Locked leaves the stored state untouched
    assert policy.next_state(decision, 5, lock_until, NOW) == (5, lock_until)


def test_lapsed_lock_relocks_on_next_failure(policy):
    lock_until = NOW - timedelta(minutes=1)
    assert policy.check(lock_until, NOW) is None
    decision = policy.evaluate(5, lock_until, NOW)
    assert decision == ShouldLock(duration=timedelta(minutes=15))
    assert policy.next_state(decision, 5, lock_until, NOW) == (6, NOW + timedelta(minutes=15))


def test_lapsed_lock_below_threshold_only_increments():
    policy = LockoutPolicy(max_attempts=5, lock_duration=timedelta(minutes=15))
    lock_until = NOW - timedelta(minutes=1)
    decision = policy.evaluate(2, lock_until, NOW)
    assert isinstance(decision, IncrementOnly)
    assert policy.next_state(decision, 2, lock_until, NOW) == (3, None)


def test_single_attempt_policy_locks_on_first_failure():
    policy = LockoutPolicy(max_attempts=1, lock_duration=timedelta(minutes=1))
    assert isinstance(policy.evaluate(0, None, NOW), ShouldLock)


def test_invalid_threshold_rejected():
    with pytest.raises(ValueError):
        LockoutPolicy(max_attempts=0)


def test_from_settings_reads_minutes():
    class _Settings:
        max_login_attempts = 3
        lock_time_minutes = 7

    policy = LockoutPolicy.from_settings(_Settings())
    assert policy.max_attempts == 3
    assert policy.lock_duration == timedelta(minutes=7)
