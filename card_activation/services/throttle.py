"""Consecutive PIN failure tracking with temporary lockout.

Counters are keyed by card token. After ``max_failures`` consecutive failures
the key is locked for ``lockout``; the counter restarts at zero and failures
reported while locked are ignored, so a lockout is never extended.

``InMemoryAttemptThrottle`` keeps state in this process only, so several
replicas behind a load balancer each count separately. ``DatabaseAttemptThrottle``
shares counters through the ``card_attempts`` table, but ``hold`` still only
serialises callers inside one process.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import ContextManager, Iterator, Optional, Protocol

from sqlalchemy import delete

from card_activation.config import settings
from card_activation.database import session_scope
from card_activation.models.attempt import AttemptEntry
from card_activation.services.clock import Clock, as_utc, utcnow

LOGGER = logging.getLogger(__name__)


class AttemptThrottle(Protocol):
    def check_allowed(self, key: str) -> bool: ...

    def record_failure(self, key: str) -> None: ...

    def record_success(self, key: str) -> None: ...

    def hold(self, key: str) -> ContextManager[None]: ...


class _KeyLocks:
    """Per-key locks that live only while someone holds or waits on them."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        # key -> [lock, number of holders and waiters]
        self._locks: dict[str, list] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            slot = self._locks.setdefault(key, [threading.Lock(), 0])
            slot[1] += 1
        try:
            with slot[0]:
                yield
        finally:
            with self._guard:
                slot[1] -= 1
                if slot[1] == 0:
                    del self._locks[key]


@dataclass
class _ThrottleEntry:
    failures: int = 0
    locked_until: Optional[datetime] = None


class InMemoryAttemptThrottle:
    def __init__(
        self,
        max_failures: int,
        lockout: timedelta,
        clock: Clock = utcnow,
    ) -> None:
        self._max_failures = max_failures
        self._lockout = lockout
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, _ThrottleEntry] = {}
        self._key_locks = _KeyLocks()

    def hold(self, key: str):
        """Serialise check, verification and recording for one key."""
        return self._key_locks.hold(key)

    def check_allowed(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return not self._is_locked(entry, self._clock())

    def record_failure(self, key: str) -> None:
        now = self._clock()
        with self._lock:
            entry = self._entries.setdefault(key, _ThrottleEntry())
            if self._is_locked(entry, now):
                return
            entry.failures += 1
            if entry.failures >= self._max_failures:
                entry.failures = 0
                entry.locked_until = now + self._lockout
                LOGGER.warning("Locking card token after %d failed attempts", self._max_failures)

    def record_success(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    @staticmethod
    def _is_locked(entry: Optional[_ThrottleEntry], now: datetime) -> bool:
        return bool(entry and entry.locked_until and now < entry.locked_until)


class DatabaseAttemptThrottle:
    def __init__(
        self,
        max_failures: int,
        lockout: timedelta,
        clock: Clock = utcnow,
    ) -> None:
        self._max_failures = max_failures
        self._lockout = lockout
        self._clock = clock
        self._key_locks = _KeyLocks()

    def hold(self, key: str):
        return self._key_locks.hold(key)

    def check_allowed(self, key: str) -> bool:
        now = self._clock()
        with session_scope() as session:
            entry = session.get(AttemptEntry, key)
            if entry is None:
                return True
            locked_until = as_utc(entry.locked_until)
            return not (locked_until and now < locked_until)

    def record_failure(self, key: str) -> None:
        now = self._clock()
        with session_scope() as session:
            entry = session.get(AttemptEntry, key, with_for_update=True)
            if entry is None:
                entry = AttemptEntry(key=key, failures=0, locked_until=None, updated_at=now)
                session.add(entry)
            locked_until = as_utc(entry.locked_until)
            if locked_until and now < locked_until:
                return
            entry.failures = (entry.failures or 0) + 1
            if entry.failures >= self._max_failures:
                entry.failures = 0
                entry.locked_until = now + self._lockout
                LOGGER.warning("Locking card token after %d failed attempts", self._max_failures)
            entry.updated_at = now

    def record_success(self, key: str) -> None:
        with session_scope() as session:
            session.execute(delete(AttemptEntry).where(AttemptEntry.key == key))


def build_throttle(backend: str, clock: Clock = utcnow) -> AttemptThrottle:
    lockout = timedelta(minutes=settings.throttle_lockout_minutes)
    if backend == "database":
        return DatabaseAttemptThrottle(settings.throttle_max_failures, lockout, clock)
    if backend != "memory":
        raise ValueError(f"Unknown throttle backend: {backend}")
    return InMemoryAttemptThrottle(settings.throttle_max_failures, lockout, clock)
