"""Per-origin failed-credential tracking with timed lockout.

Each origin moves through Clean -> Warned(n) -> Locked(until). A correct
credential returns it to Clean from any state. Lock expiry is lazy: an
expired lock is dropped the next time the origin is looked at, so no
background timer is needed.

The table is guarded by one lock so that concurrent failures from the
same origin are never undercounted.
"""

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)

# Fixed policy, not runtime configuration
MAX_FAILED_ATTEMPTS = 5
LOCKOUT_DURATION = 24 * 60 * 60  # seconds

DEFAULT_MAX_ENTRIES = 10000


@dataclass
class AccessAttemptRecord:
    """Failure history for one origin."""
    origin_key: str
    failure_count: int = 0
    lock_until: Optional[float] = None

    def is_locked(self, now: float) -> bool:
        return self.lock_until is not None and now < self.lock_until

    def is_expired(self, now: float) -> bool:
        return self.lock_until is not None and now >= self.lock_until


@dataclass(frozen=True)
class LockStatus:
    """Snapshot of an origin's lockout state."""
    locked: bool
    failure_count: int = 0
    remaining_seconds: float = 0.0
    threshold: int = MAX_FAILED_ATTEMPTS

    @property
    def remaining_attempts(self) -> int:
        return max(0, self.threshold - self.failure_count)


class LockoutTracker:
    """Thread-safe store of AccessAttemptRecords keyed by origin."""

    def __init__(
        self,
        threshold: int = MAX_FAILED_ATTEMPTS,
        duration: float = LOCKOUT_DURATION,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
    ):
        self.threshold = max(1, threshold)
        self.duration = duration
        self.max_entries = max(1, max_entries)
        self._clock = clock
        self._records: "OrderedDict[str, AccessAttemptRecord]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def _status(self, record: Optional[AccessAttemptRecord], now: float) -> LockStatus:
        if record is None:
            return LockStatus(locked=False, threshold=self.threshold)
        if record.is_locked(now):
            return LockStatus(
                locked=True,
                failure_count=record.failure_count,
                remaining_seconds=record.lock_until - now,
                threshold=self.threshold,
            )
        return LockStatus(
            locked=False,
            failure_count=record.failure_count,
            threshold=self.threshold,
        )

    def _current(self, origin: str, now: float) -> Optional[AccessAttemptRecord]:
        """Return the live record for origin, dropping an expired lock. Caller holds the lock."""
        record = self._records.get(origin)
        if record is not None and record.is_expired(now):
            logger.info("Lockout expired for %s", origin)
            del self._records[origin]
            return None
        return record

    def status(self, origin: str) -> LockStatus:
        """Return the current state for origin."""
        with self._lock:
            now = self._clock()
            return self._status(self._current(origin, now), now)

    def record_failure(self, origin: str) -> LockStatus:
        """Count a wrong credential for origin.

        Returns the resulting state. The failure that reaches the threshold
        locks the origin for the full duration. A failure against an origin
        that is already locked leaves the lock untouched.
        """
        with self._lock:
            now = self._clock()
            record = self._current(origin, now)

            if record is None:
                self._make_room(now)
                record = AccessAttemptRecord(origin_key=origin)
                self._records[origin] = record
            elif record.is_locked(now):
                return self._status(record, now)

            record.failure_count += 1
            self._records.move_to_end(origin)

            if record.failure_count >= self.threshold:
                record.lock_until = now + self.duration
                logger.warning(
                    "Origin %s locked for %.0f hours after %d failed attempts",
                    origin, self.duration / 3600, record.failure_count,
                )
            else:
                logger.info(
                    "Failed credential from %s (%d/%d)",
                    origin, record.failure_count, self.threshold,
                )

            return self._status(record, now)

    def record_success(self, origin: str) -> LockStatus:
        """Forget origin's failure history after a correct credential.

        An active lock is left in place and reported, so a correct
        credential racing the failure that locked the origin cannot
        clear the lock.
        """
        with self._lock:
            now = self._clock()
            record = self._current(origin, now)
            if record is not None and record.is_locked(now):
                return self._status(record, now)
            self._records.pop(origin, None)
            return self._status(None, now)

    def purge_expired(self) -> int:
        """Remove entries whose lockout has expired. Returns count purged."""
        with self._lock:
            return self._purge_expired(self._clock())

    def reset(self) -> None:
        with self._lock:
            self._records.clear()

    def _purge_expired(self, now: float) -> int:
        expired = [key for key, rec in self._records.items() if rec.is_expired(now)]
        for key in expired:
            del self._records[key]
        return len(expired)

    def _make_room(self, now: float) -> None:
        """Keep the table below max_entries before inserting a new origin.

        Eviction order: expired locks, then the oldest unlocked entry, then
        (only if every entry is an active lock) the oldest lock.
        """
        if len(self._records) < self.max_entries:
            return
        if self._purge_expired(now) and len(self._records) < self.max_entries:
            return

        for key, rec in self._records.items():
            if not rec.is_locked(now):
                del self._records[key]
                logger.debug("Evicted failure record for %s (table full)", key)
                return

        key, _ = self._records.popitem(last=False)
        logger.warning("Lockout table full, evicted active lock for %s", key)
