"""Load abuse patterns from a directory of YAML files, one pattern per file."""

from pathlib import Path

import yaml

from guard.errors import ConfigurationError
from guard.events import Action, Severity
from guard.patterns import AbusePattern, parse_detection_rule, validate_pattern

BUILTIN_DIR = Path(__file__).resolve().parent / "builtin"

_REQUIRED_FIELDS = ("id", "name", "level", "action", "detection")


def load_patterns(directory: str | Path = BUILTIN_DIR) -> list[AbusePattern]:
    """Glob *.yml in *directory*, parse each, return AbusePattern instances."""
    directory = Path(directory)
    if not directory.is_dir():
        raise FileNotFoundError(f"Pattern directory not found: {directory}")

    patterns = []
    seen = set()
    for path in sorted(directory.glob("*.yml")):
        pattern = load_pattern(path)
        if pattern.id in seen:
            raise ConfigurationError(f"{path.name}: duplicate pattern id '{pattern.id}'")
        seen.add(pattern.id)
        patterns.append(pattern)
    return patterns


def load_pattern(path: str | Path) -> AbusePattern:
    """Load a single pattern file, useful for tests."""
    path = Path(path)
    return build_pattern(_parse(path), source=path.name)


def build_pattern(definition: dict, source: str = "<inline>") -> AbusePattern:
    if not isinstance(definition, dict):
        raise ConfigurationError(f"{source}: pattern must be a mapping")
    for name in _REQUIRED_FIELDS:
        if name not in definition:
            raise ConfigurationError(f"{source}: missing required field '{name}'")

    detection = definition["detection"]
    if not isinstance(detection, list) or not detection:
        raise ConfigurationError(f"{source}: detection must be a non-empty list")

    selection = definition.get("selection") or {}
    if not isinstance(selection, dict):
        raise ConfigurationError(f"{source}: selection must be a mapping")

    return validate_pattern(AbusePattern(
        id=definition["id"],
        name=definition["name"],
        description=definition.get("description", ""),
        severity=Severity.parse(definition["level"]),
        action=Action.parse(definition["action"]),
        selection=selection,
        enabled=bool(definition.get("enabled", True)),
        detection_rules=tuple(parse_detection_rule(r, definition["id"]) for r in detection),
    ))


def _parse(path: Path) -> dict:
    try:
        with open(path) as f:
            return yaml.safe_load(f)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"{path.name}: invalid YAML: {exc}") from exc
