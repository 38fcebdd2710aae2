"""Fixed-window counters keyed by arbitrary hashable tuples.

Backs both the rate limiter (ruleId, subjectKey) and the abuse detector
(patternId, rule, address, user).  Expiry is lazy: a counter whose window
has passed is replaced the next time its key is hit.  ``sweep()`` reclaims
keys that are never hit again.

Locking is striped by key hash so that unrelated keys never contend while
the read-increment-write on one key is atomic.
"""

import threading
from typing import NamedTuple

from guard.errors import ConfigurationError


class FixedWindowCounter:
    __slots__ = ("count", "window_start", "duration")

    def __init__(self, now: float, duration: float):
        self.count = 1
        self.window_start = now
        self.duration = duration

    @property
    def reset_at(self) -> float:
        return self.window_start + self.duration

    def expired(self, now: float) -> bool:
        return now - self.window_start > self.duration


class WindowState(NamedTuple):
    count: int
    reset_at: float
    counted: bool  # False when a cap refused the increment


class StripedLock:
    """A fixed pool of locks; a key always maps to the same stripe."""

    def __init__(self, stripes: int = 64):
        if stripes < 1:
            raise ConfigurationError(f"stripes must be >= 1, got {stripes}")
        self._locks = [threading.Lock() for _ in range(stripes)]

    def for_key(self, key) -> threading.Lock:
        return self._locks[hash(key) % len(self._locks)]

    def __len__(self) -> int:
        return len(self._locks)


class CounterTable:

    def __init__(self, stripes: int = 64):
        self._counters: dict = {}
        self._locks = StripedLock(stripes)

    def increment(self, key, now: float, duration: float,
                  cap: int | None = None) -> WindowState:
        """Count one hit for *key*.

        A missing or expired counter starts a fresh window at ``now`` with
        count 1.  With a *cap*, a counter already at the cap is left alone
        and the returned state has ``counted=False``.
        """
        with self._locks.for_key(key):
            counter = self._counters.get(key)
            if counter is None or counter.expired(now):
                counter = FixedWindowCounter(now, duration)
                self._counters[key] = counter
                return WindowState(counter.count, counter.reset_at, True)
            if cap is not None and counter.count >= cap:
                return WindowState(counter.count, counter.reset_at, False)
            counter.count += 1
            return WindowState(counter.count, counter.reset_at, True)

    def peek(self, key, now: float) -> WindowState | None:
        """Current window for *key* without counting, or None if idle."""
        with self._locks.for_key(key):
            counter = self._counters.get(key)
            if counter is None or counter.expired(now):
                return None
            return WindowState(counter.count, counter.reset_at, False)

    def discard(self, key) -> None:
        with self._locks.for_key(key):
            self._counters.pop(key, None)

    def discard_where(self, predicate) -> int:
        """Drop every key for which ``predicate(key)`` is true."""
        removed = 0
        for key in list(self._counters):
            if predicate(key):
                with self._locks.for_key(key):
                    if self._counters.pop(key, None) is not None:
                        removed += 1
        return removed

    def sweep(self, now: float) -> int:
        """Remove counters whose window has passed. Returns how many."""
        removed = 0
        for key in list(self._counters):
            with self._locks.for_key(key):
                counter = self._counters.get(key)
                if counter is not None and counter.expired(now):
                    del self._counters[key]
                    removed += 1
        return removed

    def __len__(self) -> int:
        return len(self._counters)

    def __contains__(self, key) -> bool:
        return key in self._counters
