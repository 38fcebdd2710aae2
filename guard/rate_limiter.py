"""Fixed-window rate limiting keyed by (rule id, subject key).

The first hit on a key opens a window of ``window_seconds``.  Hits inside
the window count up to ``max_requests``; the next one is denied without
incrementing and reports the window's reset time so the caller can send a
retry-after hint.  Once ``now`` passes the reset time the key starts over.

Rules may count only successful or only failed requests.  The limiter does
not see outcomes: the caller asks ``rule.counts(succeeded)`` and decides
whether to call ``check`` at all.
"""

import dataclasses
import logging
import math
import threading
import time
from dataclasses import dataclass

from guard.counters import CounterTable
from guard.errors import ConfigurationError

logger = logging.getLogger(__name__)

_KEY_BY = ("address", "user")


@dataclass(frozen=True)
class RateLimitRule:
    id: str
    name: str
    path: str = "*"
    method: str = "*"
    window_seconds: float = 60
    max_requests: int = 60
    count_successful: bool = True
    count_failed: bool = True
    key_by: str = "address"
    enabled: bool = True

    def matches(self, method: str, path: str) -> bool:
        path_ok = self.path == "*" or self.path in (path or "")
        method_ok = self.method == "*" or (method or "").upper() == self.method.upper()
        return path_ok and method_ok

    @property
    def filters_outcome(self) -> bool:
        """True when only one of success/failure is counted."""
        return not (self.count_successful and self.count_failed)

    def counts(self, succeeded: bool) -> bool:
        return self.count_successful if succeeded else self.count_failed

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int | None = None
    reset_at: float | None = None
    rule_id: str | None = None

    def retry_after(self, now: float | None = None) -> int | None:
        """Whole seconds until the window resets, for denied decisions."""
        if self.allowed or self.reset_at is None:
            return None
        now = time.time() if now is None else now
        return max(0, math.ceil(self.reset_at - now))


def validate_rule(rule: RateLimitRule) -> RateLimitRule:
    if not rule.id:
        raise ConfigurationError("rate limit rule needs an id")
    if rule.window_seconds is None or rule.window_seconds < 1:
        raise ConfigurationError(f"{rule.id}: window_seconds must be >= 1")
    if not isinstance(rule.max_requests, int) or rule.max_requests < 1:
        raise ConfigurationError(f"{rule.id}: max_requests must be an integer >= 1")
    if rule.key_by not in _KEY_BY:
        raise ConfigurationError(f"{rule.id}: key_by must be one of {_KEY_BY}")
    if not (rule.count_successful or rule.count_failed):
        raise ConfigurationError(f"{rule.id}: rule counts neither outcome")
    return rule


class RateLimiter:

    def __init__(self, rules: list[RateLimitRule] | None = None, stripes: int = 64):
        self._rules: dict[str, RateLimitRule] = {}
        for rule in rules or []:
            if rule.id in self._rules:
                raise ConfigurationError(f"Duplicate rate limit rule id: {rule.id}")
            self._rules[rule.id] = validate_rule(rule)
        self._counters = CounterTable(stripes)
        self._config_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Hot path
    # ------------------------------------------------------------------

    def check(self, rule_key: str, subject_key: str,
              now: float | None = None) -> RateLimitDecision:
        rule = self._rules.get(rule_key)
        if rule is None or not rule.enabled:
            return RateLimitDecision(allowed=True)
        now = time.time() if now is None else now

        state = self._counters.increment(
            (rule.id, subject_key), now, rule.window_seconds, cap=rule.max_requests,
        )
        if not state.counted:
            return RateLimitDecision(False, 0, state.reset_at, rule.id)
        return RateLimitDecision(True, rule.max_requests - state.count, state.reset_at, rule.id)

    def peek(self, rule_key: str, subject_key: str,
             now: float | None = None) -> RateLimitDecision:
        """Would the next counted hit be allowed?  Counts nothing."""
        rule = self._rules.get(rule_key)
        if rule is None or not rule.enabled:
            return RateLimitDecision(allowed=True)
        now = time.time() if now is None else now

        state = self._counters.peek((rule.id, subject_key), now)
        if state is None:
            return RateLimitDecision(True, rule.max_requests, None, rule.id)
        remaining = max(0, rule.max_requests - state.count)
        return RateLimitDecision(remaining > 0, remaining, state.reset_at, rule.id)

    def match(self, method: str, path: str) -> RateLimitRule | None:
        """First enabled rule matching the request, in configuration order."""
        for rule in list(self._rules.values()):
            if rule.enabled and rule.matches(method, path):
                return rule
        return None

    @staticmethod
    def subject_for(rule: RateLimitRule, source_address: str,
                    user_id: str | None = None) -> str:
        if rule.key_by == "user" and user_id:
            return f"user:{user_id}"
        return f"addr:{source_address}"

    # ------------------------------------------------------------------
    # Admin surface
    # ------------------------------------------------------------------

    def rules(self) -> list[RateLimitRule]:
        return list(self._rules.values())

    def get_rule(self, rule_id: str) -> RateLimitRule:
        try:
            return self._rules[rule_id]
        except KeyError:
            raise ConfigurationError(f"Unknown rate limit rule: {rule_id}") from None

    def update_rule(self, rule_id: str, **changes) -> RateLimitRule:
        unknown = set(changes) - {f.name for f in dataclasses.fields(RateLimitRule)}
        if unknown or "id" in changes:
            raise ConfigurationError(
                f"Cannot update rate limit fields: {sorted(unknown | ({'id'} & set(changes)))}"
            )
        with self._config_lock:
            updated = validate_rule(dataclasses.replace(self.get_rule(rule_id), **changes))
            self._rules[rule_id] = updated
        logger.info("Rate limit rule %s updated: %s", rule_id, changes)
        return updated

    def reset(self, rule_key: str, subject_key: str) -> None:
        """Forget the window for one subject."""
        self._counters.discard((rule_key, subject_key))

    def sweep(self, now: float | None = None) -> int:
        now = time.time() if now is None else now
        return self._counters.sweep(now)

    def __len__(self) -> int:
        return len(self._counters)
