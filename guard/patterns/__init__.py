# Abuse patterns are configuration, not code: operators retune thresholds
# and actions through the admin surface at runtime, so a pattern is a
# frozen dataclass that gets replaced wholesale on update.
#
# A pattern counts requests whose context matches its Sigma-style
# ``selection`` (every field must match; a list value is OR), and fires
# when one of its detection rules sees more than ``threshold`` hits inside
# ``window_seconds``.

import dataclasses
from dataclasses import dataclass, field
from enum import Enum

from guard.errors import ConfigurationError
from guard.events import Action, Severity


class DetectionKind(Enum):
    FREQUENCY = "frequency"
    # Declared by configuration, no evaluator yet.  The detector skips
    # rules of these kinds instead of guessing at their semantics.
    PATTERN = "pattern"
    ANOMALY = "anomaly"
    REPUTATION = "reputation"

    @property
    def evaluated(self) -> bool:
        return self is DetectionKind.FREQUENCY

    @classmethod
    def parse(cls, value) -> "DetectionKind":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ConfigurationError(f"Unknown detection rule type: {value!r}") from None


@dataclass(frozen=True)
class DetectionRule:
    kind: DetectionKind
    threshold: int
    window_seconds: float
    condition: str = ""

    def to_dict(self) -> dict:
        return {
            "type": self.kind.value,
            "condition": self.condition,
            "threshold": self.threshold,
            "window_seconds": self.window_seconds,
        }


@dataclass(frozen=True)
class AbusePattern:
    id: str
    name: str
    detection_rules: tuple[DetectionRule, ...]
    severity: Severity = Severity.MEDIUM
    action: Action = Action.LOG
    description: str = ""
    selection: dict = field(default_factory=dict)
    enabled: bool = True

    def match(self, context: dict) -> bool:
        """Sigma selection semantics: all fields must match, a list is OR."""
        for key, expected in self.selection.items():
            actual = context.get(key)
            if isinstance(expected, list):
                if actual not in expected:
                    return False
            elif actual != expected:
                return False
        return True

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "severity": self.severity.value,
            "action": self.action.value,
            "selection": dict(self.selection),
            "enabled": self.enabled,
            "detection_rules": [r.to_dict() for r in self.detection_rules],
        }


_UPDATABLE = {"name", "description", "severity", "action", "selection",
              "enabled", "detection_rules"}


def apply_changes(pattern: AbusePattern, changes: dict) -> AbusePattern:
    """Return a validated copy of *pattern* with admin *changes* applied."""
    unknown = set(changes) - _UPDATABLE
    if unknown:
        raise ConfigurationError(f"Cannot update abuse pattern fields: {sorted(unknown)}")
    changes = dict(changes)
    if "severity" in changes:
        changes["severity"] = Severity.parse(changes["severity"])
    if "action" in changes:
        changes["action"] = Action.parse(changes["action"])
    if "detection_rules" in changes:
        changes["detection_rules"] = tuple(
            r if isinstance(r, DetectionRule) else parse_detection_rule(r, pattern.id)
            for r in changes["detection_rules"]
        )
    if "selection" in changes and not isinstance(changes["selection"], dict):
        raise ConfigurationError(f"{pattern.id}: selection must be a mapping")
    return validate_pattern(dataclasses.replace(pattern, **changes))


def parse_detection_rule(raw: dict, pattern_id: str) -> DetectionRule:
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{pattern_id}: detection rule must be a mapping")
    for key in ("type", "threshold", "window_seconds"):
        if key not in raw:
            raise ConfigurationError(f"{pattern_id}: detection rule missing '{key}'")
    return DetectionRule(
        kind=DetectionKind.parse(raw["type"]),
        threshold=raw["threshold"],
        window_seconds=raw["window_seconds"],
        condition=raw.get("condition", ""),
    )


def validate_pattern(pattern: AbusePattern) -> AbusePattern:
    if not pattern.id:
        raise ConfigurationError("abuse pattern needs an id")
    if not pattern.detection_rules:
        raise ConfigurationError(f"{pattern.id}: needs at least one detection rule")
    for rule in pattern.detection_rules:
        if not isinstance(rule.threshold, int) or rule.threshold < 0:
            raise ConfigurationError(f"{pattern.id}: threshold must be an integer >= 0")
        if rule.window_seconds is None or rule.window_seconds <= 0:
            raise ConfigurationError(f"{pattern.id}: window_seconds must be > 0")
    return pattern
