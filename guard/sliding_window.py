"""Sliding window for per-key event accumulation.

Used by the event store to track recent events per (rule, group_key) pair
for correlation, per source address for suspicious-address checks, and per
address for failed-login tallies.  Deque-based: O(1) append, amortized O(1)
eviction.  The caller supplies ``now`` so replays and tests are
deterministic.
"""

from collections import deque


class SlidingWindow:
    __slots__ = ("max_age", "_buf")

    def __init__(self, max_age_seconds: float):
        self.max_age = max_age_seconds
        self._buf: deque = deque()

    def add(self, timestamp: float, item, now: float) -> bool:
        """Append item. Returns False (and drops) if already outside the window."""
        if timestamp < now - self.max_age:
            return False
        self._evict(now)
        self._buf.append((timestamp, item))
        return True

    def items(self, now: float) -> list:
        """Return all items currently inside the window, oldest first."""
        self._evict(now)
        return [item for _, item in self._buf]

    def count(self, now: float) -> int:
        self._evict(now)
        return len(self._buf)

    def clear(self) -> None:
        self._buf.clear()

    def _evict(self, now: float) -> None:
        cutoff = now - self.max_age
        while self._buf and self._buf[0][0] < cutoff:
            self._buf.popleft()

    def __len__(self) -> int:
        return len(self._buf)
