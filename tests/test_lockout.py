"""
tests/test_lockout.py -- LockoutTracker state machine and its concurrency guarantee.

Coverage:
  - Threshold: five failures lock, the sixth reports locked with minutes left
  - An existing lock is never extended by further failures
  - Lazy expiry: the lock lifts at locked_until with no further call
  - Counter survives expiry, so the next failure re-locks
  - record_success / unlock reset; disabled tracker never locks
  - 50 concurrent failures are all counted
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from auth.lockout import LockoutTracker, remaining_minutes
from auth.models import Credential
from auth.store import CredentialStore

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def tracker(credential_store: CredentialStore) -> LockoutTracker:
    return LockoutTracker(credential_store, threshold=5, duration_minutes=15)


def _fail(tracker: LockoutTracker, credential_id: int, times: int, now: datetime = T0):
    result = None
    for _ in range(times):
        result = tracker.record_failure(credential_id, now)
    return result


class TestRemainingMinutes:
    @pytest.mark.parametrize(
        ("delta", "expected"),
        [
            (timedelta(minutes=15), 15),
            (timedelta(minutes=14, seconds=1), 15),
            (timedelta(seconds=1), 1),
            (timedelta(0), 0),
            (timedelta(seconds=-30), 0),
        ],
    )
    def test_rounds_up(self, delta: timedelta, expected: int) -> None:
        assert remaining_minutes(T0 + delta, T0) == expected

    def test_none(self) -> None:
        assert remaining_minutes(None, T0) == 0


class TestThreshold:
    def test_four_failures_do_not_lock(self, tracker: LockoutTracker, credential_id: int) -> None:
        result = _fail(tracker, credential_id, 4)
        assert result.account_locked is False
        assert result.failed_attempts == 4
        assert result.attempts_remaining == 1
        assert tracker.status(credential_id, T0).is_locked is False

    def test_fifth_failure_locks(self, tracker: LockoutTracker, credential_id: int) -> None:
        result = _fail(tracker, credential_id, 5)
        assert result.account_locked is True
        assert result.attempts_remaining == 0
        assert result.locked_until == T0 + timedelta(minutes=15)

        status = tracker.status(credential_id, T0)
        assert status.is_locked is True
        assert status.remaining_minutes == 15

    def test_sixth_call_reports_locked(self, tracker: LockoutTracker, credential_id: int) -> None:
        _fail(tracker, credential_id, 5)
        result = tracker.record_failure(credential_id, T0 + timedelta(minutes=1))
        assert result.account_locked is True
        assert result.failed_attempts == 6
        status = tracker.status(credential_id, T0 + timedelta(minutes=1))
        assert status.is_locked is True
        assert status.remaining_minutes > 0

    def test_lock_is_not_extended(self, tracker: LockoutTracker, credential_id: int) -> None:
        _fail(tracker, credential_id, 5)
        result = tracker.record_failure(credential_id, T0 + timedelta(minutes=10))
        assert result.locked_until == T0 + timedelta(minutes=15)

    def test_last_failed_login_recorded(
        self, tracker: LockoutTracker, credential_store: CredentialStore, credential_id: int
    ) -> None:
        tracker.record_failure(credential_id, T0)
        assert credential_store.get_by_id(credential_id).last_failed_login_at == T0

    def test_unknown_credential(self, tracker: LockoutTracker) -> None:
        with pytest.raises(LookupError):
            tracker.record_failure(9999, T0)
        assert tracker.status(9999, T0) is None


class TestExpiryAndReset:
    def test_lock_lifts_lazily(
        self, tracker: LockoutTracker, credential_store: CredentialStore, credential_id: int
    ) -> None:
        _fail(tracker, credential_id, 5)
        assert tracker.status(credential_id, T0 + timedelta(minutes=14, seconds=59)).is_locked is True
        assert tracker.status(credential_id, T0 + timedelta(minutes=15)).is_locked is False
        # Nothing was written by the reads.
        assert credential_store.get_by_id(credential_id).failed_login_attempts == 5

    def test_failure_after_expiry_relocks(self, tracker: LockoutTracker, credential_id: int) -> None:
        _fail(tracker, credential_id, 5)
        later = T0 + timedelta(minutes=20)
        result = tracker.record_failure(credential_id, later)
        assert result.account_locked is True
        assert result.failed_attempts == 6
        assert result.locked_until == later + timedelta(minutes=15)

    def test_record_success_resets(
        self, tracker: LockoutTracker, credential_store: CredentialStore, credential_id: int
    ) -> None:
        _fail(tracker, credential_id, 3)
        tracker.record_success(credential_store.get_by_id(credential_id))
        credential = credential_store.get_by_id(credential_id)
        assert credential.failed_login_attempts == 0
        assert credential.locked_until is None
        assert credential.last_failed_login_at is None
        assert tracker.record_failure(credential_id, T0).attempts_remaining == 4

    def test_unlock(self, tracker: LockoutTracker, credential_store: CredentialStore, credential_id: int) -> None:
        _fail(tracker, credential_id, 5)
        assert tracker.unlock(credential_id) is True
        assert tracker.status(credential_id, T0).is_locked is False
        assert credential_store.get_by_id(credential_id).failed_login_attempts == 0

    def test_unlock_unknown(self, tracker: LockoutTracker) -> None:
        assert tracker.unlock(9999) is False

    def test_check_is_pure(self, tracker: LockoutTracker) -> None:
        locked = Credential(username="x", password_hash="h", id=1, locked_until=T0 + timedelta(minutes=2))
        status = tracker.check(locked, T0)
        assert status.is_locked is True
        assert status.remaining_minutes == 2
        assert tracker.check(None, T0).is_locked is False


class TestDisabled:
    def test_disabled_tracker_never_locks(
        self, credential_store: CredentialStore, credential_id: int
    ) -> None:
        tracker = LockoutTracker(credential_store, threshold=5, duration_minutes=15, enabled=False)
        result = _fail(tracker, credential_id, 10)
        assert result.account_locked is False
        assert credential_store.get_by_id(credential_id).failed_login_attempts == 0
        assert tracker.status(credential_id, T0).is_locked is False


class TestConcurrency:
    def test_fifty_concurrent_failures_are_all_counted(
        self, tracker: LockoutTracker, credential_store: CredentialStore, credential_id: int
    ) -> None:
        with ThreadPoolExecutor(max_workers=50) as pool:
            results = list(pool.map(lambda _: tracker.record_failure(credential_id, T0), range(50)))

        credential = credential_store.get_by_id(credential_id)
        assert credential.failed_login_attempts == 50
        assert credential.locked_until == T0 + timedelta(minutes=15)
        assert sorted(r.failed_attempts for r in results) == list(range(1, 51))
        assert sum(1 for r in results if r.account_locked) == 46
