"""Abuse detector: frequency-pattern matching with escalation actions.

Detection only: the detector reports which patterns fired and the action
each one recommends (log, warn, challenge, block).  Enforcing that action
is the caller's job, so the same detector can back a middleware that
blocks and an offline replay that merely records.

State: CounterTable keyed by (pattern_id, rule_index, address, user).
"""

import logging
import threading
import time
from dataclasses import dataclass

from guard.counters import CounterTable
from guard.errors import ConfigurationError
from guard.events import Action, EventType
from guard.patterns import AbusePattern, apply_changes, validate_pattern

logger = logging.getLogger(__name__)

ANONYMOUS = "anonymous"


@dataclass(frozen=True)
class TriggeredPattern:
    pattern: AbusePattern
    count: int

    @property
    def action(self) -> Action:
        return self.pattern.action

    def to_dict(self) -> dict:
        return {
            "pattern_id": self.pattern.id,
            "pattern_name": self.pattern.name,
            "severity": self.pattern.severity.value,
            "action": self.action.value,
            "count": self.count,
        }


class AbuseDetector:

    def __init__(self, store, patterns: list[AbusePattern] | None = None,
                 stripes: int = 64):
        self.store = store
        self._patterns: dict[str, AbusePattern] = {}
        for pattern in patterns or []:
            if pattern.id in self._patterns:
                raise ConfigurationError(f"Duplicate abuse pattern id: {pattern.id}")
            self._patterns[pattern.id] = validate_pattern(pattern)
            _warn_unevaluated(pattern)
        self._counters = CounterTable(stripes)
        self._config_lock = threading.Lock()

    def detect(self, source_address: str, subject_user_id: str | None = None,
               context: dict | None = None, now: float | None = None) -> list[TriggeredPattern]:
        """Count this request against every matching pattern; return those that fired.

        For each enabled pattern:
          1. Filter:   does the request context match the pattern's selection?
          2. Count:    bump the fixed-window counter for each evaluated rule
          3. Fire:     any rule whose count exceeds its threshold fires the pattern
          4. Record:   one suspicious_request event per fired pattern
        """
        now = time.time() if now is None else now
        context = context or {}
        subject = subject_user_id or ANONYMOUS
        triggered = []

        for pattern in list(self._patterns.values()):
            if not pattern.enabled or not pattern.match(context):
                continue
            count = self._evaluate(pattern, source_address, subject, now)
            if count is None:
                continue

            hit = TriggeredPattern(pattern, count)
            triggered.append(hit)
            self.store.log(
                EventType.SUSPICIOUS_REQUEST,
                pattern.severity,
                source_address,
                subject_user_id=subject_user_id,
                details={
                    "pattern_id": pattern.id,
                    "pattern_name": pattern.name,
                    "action": pattern.action.value,
                    "count": count,
                },
                now=now,
                user_agent=context.get("user_agent", "unknown"),
            )
        return triggered

    def _evaluate(self, pattern: AbusePattern, source_address: str,
                  subject: str, now: float) -> int | None:
        """Count against every evaluated rule; return the first firing count."""
        fired = None
        for index, rule in enumerate(pattern.detection_rules):
            if not rule.kind.evaluated:
                continue
            state = self._counters.increment(
                (pattern.id, index, source_address, subject), now, rule.window_seconds,
            )
            if fired is None and state.count > rule.threshold:
                fired = state.count
        return fired

    # ------------------------------------------------------------------
    # Admin surface
    # ------------------------------------------------------------------

    def patterns(self) -> list[AbusePattern]:
        return list(self._patterns.values())

    def get_pattern(self, pattern_id: str) -> AbusePattern:
        try:
            return self._patterns[pattern_id]
        except KeyError:
            raise ConfigurationError(f"Unknown abuse pattern: {pattern_id}") from None

    def update_pattern(self, pattern_id: str, **changes) -> AbusePattern:
        with self._config_lock:
            updated = apply_changes(self.get_pattern(pattern_id), changes)
            self._patterns[pattern_id] = updated
        if "detection_rules" in changes:
            # Rule indexes may now point at different thresholds/windows.
            self._counters.discard_where(lambda key: key[0] == pattern_id)
            _warn_unevaluated(updated)
        logger.info("Abuse pattern %s updated: %s", pattern_id, sorted(changes))
        return updated

    def sweep(self, now: float | None = None) -> int:
        now = time.time() if now is None else now
        return self._counters.sweep(now)

    def __len__(self) -> int:
        return len(self._counters)


def _warn_unevaluated(pattern: AbusePattern) -> None:
    for rule in pattern.detection_rules:
        if not rule.kind.evaluated:
            logger.warning(
                "Pattern %s: '%s' detection rules have no evaluator and are skipped",
                pattern.id, rule.kind.value,
            )
