"""Tests for gate/lockout.py - failed-attempt tracking."""

import threading

import pytest

from gate.lockout import (
    LOCKOUT_DURATION,
    MAX_FAILED_ATTEMPTS,
    LockoutTracker,
)

ORIGIN = "203.0.113.7"


@pytest.fixture
def tracker(clock):
    return LockoutTracker(clock=clock)


class TestPolicyConstants:
    """The lockout policy is fixed."""

    def test_threshold(self):
        assert MAX_FAILED_ATTEMPTS == 5

    def test_duration_is_24_hours(self):
        assert LOCKOUT_DURATION == 24 * 60 * 60


class TestStateMachine:
    """Tests for Clean -> Warned(n) -> Locked transitions."""

    def test_clean_origin(self, tracker):
        """An unseen origin is not locked and has all attempts left."""
        status = tracker.status(ORIGIN)
        assert status.locked is False
        assert status.failure_count == 0
        assert status.remaining_attempts == MAX_FAILED_ATTEMPTS

    def test_failures_count_up(self, tracker):
        """Each failure moves Warned(n) to Warned(n+1)."""
        for n in range(1, MAX_FAILED_ATTEMPTS):
            status = tracker.record_failure(ORIGIN)
            assert status.locked is False
            assert status.failure_count == n
            assert status.remaining_attempts == MAX_FAILED_ATTEMPTS - n

    def test_one_attempt_left_before_lock(self, tracker):
        """After threshold-1 failures, one attempt remains and no lock."""
        for _ in range(MAX_FAILED_ATTEMPTS - 1):
            status = tracker.record_failure(ORIGIN)
        assert status.locked is False
        assert status.remaining_attempts == 1
        assert tracker.status(ORIGIN).locked is False

    def test_threshold_failure_locks_full_duration(self, tracker):
        """The threshold-th failure locks for the full duration."""
        for _ in range(MAX_FAILED_ATTEMPTS):
            status = tracker.record_failure(ORIGIN)
        assert status.locked is True
        assert status.remaining_seconds == LOCKOUT_DURATION
        assert tracker.status(ORIGIN).locked is True

    def test_success_resets(self, tracker):
        """Success clears the record; the next failure is attempt 1."""
        for _ in range(MAX_FAILED_ATTEMPTS - 1):
            tracker.record_failure(ORIGIN)
        tracker.record_success(ORIGIN)

        assert len(tracker) == 0
        status = tracker.record_failure(ORIGIN)
        assert status.failure_count == 1
        assert status.remaining_attempts == MAX_FAILED_ATTEMPTS - 1

    def test_success_reports_clean(self, tracker):
        tracker.record_failure(ORIGIN)
        status = tracker.record_success(ORIGIN)
        assert status.locked is False
        assert status.failure_count == 0

    def test_success_leaves_active_lock(self, tracker):
        """A correct credential never clears a lock that is still running."""
        for _ in range(MAX_FAILED_ATTEMPTS):
            tracker.record_failure(ORIGIN)

        status = tracker.record_success(ORIGIN)

        assert status.locked is True
        assert status.remaining_seconds == LOCKOUT_DURATION
        assert tracker.status(ORIGIN).locked is True

    def test_success_after_expiry_clears(self, tracker, clock):
        for _ in range(MAX_FAILED_ATTEMPTS):
            tracker.record_failure(ORIGIN)
        clock.advance(LOCKOUT_DURATION)

        assert tracker.record_success(ORIGIN).locked is False
        assert len(tracker) == 0

    def test_origins_are_independent(self, tracker):
        """Failures for one origin do not affect another."""
        for _ in range(MAX_FAILED_ATTEMPTS):
            tracker.record_failure(ORIGIN)
        assert tracker.status("198.51.100.1").locked is False


class TestLockExpiry:
    """Tests for lazy lock expiry."""

    def _lock(self, tracker):
        for _ in range(MAX_FAILED_ATTEMPTS):
            tracker.record_failure(ORIGIN)

    def test_still_locked_before_expiry(self, tracker, clock):
        self._lock(tracker)
        clock.advance(LOCKOUT_DURATION - 1)
        status = tracker.status(ORIGIN)
        assert status.locked is True
        assert status.remaining_seconds == pytest.approx(1)

    def test_unlocks_at_expiry(self, tracker, clock):
        """Once now >= lock_until the origin is Clean again."""
        self._lock(tracker)
        clock.advance(LOCKOUT_DURATION)
        status = tracker.status(ORIGIN)
        assert status.locked is False
        assert status.failure_count == 0
        assert len(tracker) == 0

    def test_failure_after_expiry_starts_fresh(self, tracker, clock):
        self._lock(tracker)
        clock.advance(LOCKOUT_DURATION + 60)
        status = tracker.record_failure(ORIGIN)
        assert status.locked is False
        assert status.failure_count == 1

    def test_failure_while_locked_keeps_lock(self, tracker, clock):
        """A failure during the lock neither extends nor resets it."""
        self._lock(tracker)
        clock.advance(3600)
        status = tracker.record_failure(ORIGIN)
        assert status.locked is True
        assert status.failure_count == MAX_FAILED_ATTEMPTS
        assert status.remaining_seconds == LOCKOUT_DURATION - 3600

    def test_purge_expired(self, tracker, clock):
        self._lock(tracker)
        tracker.record_failure("198.51.100.1")
        clock.advance(LOCKOUT_DURATION)
        assert tracker.purge_expired() == 1
        assert len(tracker) == 1


class TestBoundedTable:
    """Tests for max_entries eviction."""

    def test_evicts_oldest_unlocked(self, clock):
        tracker = LockoutTracker(max_entries=3, clock=clock)
        for _ in range(MAX_FAILED_ATTEMPTS):
            tracker.record_failure("a")
        tracker.record_failure("b")
        tracker.record_failure("c")

        tracker.record_failure("d")

        assert len(tracker) == 3
        assert tracker.status("a").locked is True
        assert tracker.status("b").failure_count == 0
        assert tracker.status("c").failure_count == 1
        assert tracker.status("d").failure_count == 1

    def test_purges_expired_before_evicting(self, clock):
        tracker = LockoutTracker(max_entries=2, clock=clock)
        for _ in range(MAX_FAILED_ATTEMPTS):
            tracker.record_failure("a")
        tracker.record_failure("b")
        clock.advance(LOCKOUT_DURATION)

        tracker.record_failure("c")

        assert tracker.status("b").failure_count == 1
        assert tracker.status("c").failure_count == 1

    def test_evicts_oldest_lock_when_all_locked(self, clock):
        tracker = LockoutTracker(max_entries=2, clock=clock)
        for origin in ("a", "b"):
            for _ in range(MAX_FAILED_ATTEMPTS):
                tracker.record_failure(origin)

        tracker.record_failure("c")

        assert len(tracker) == 2
        assert tracker.status("a").locked is False
        assert tracker.status("b").locked is True


class TestConcurrency:
    """Concurrent failures must not be undercounted."""

    def test_parallel_failures_lock_exactly_at_threshold(self, clock):
        tracker = LockoutTracker(threshold=50, clock=clock)
        barrier = threading.Barrier(10)
        results = []
        results_lock = threading.Lock()

        def worker():
            barrier.wait()
            for _ in range(10):
                status = tracker.record_failure(ORIGIN)
                with results_lock:
                    results.append(status)

        threads = [threading.Thread(target=worker) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        # 100 failures; only the first 50 are counted, the rest hit the lock
        unlocked = [s for s in results if not s.locked]
        assert len(unlocked) == 49
        assert tracker.status(ORIGIN).failure_count == 50
