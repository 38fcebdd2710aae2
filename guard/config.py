"""Engine configuration: tunables plus the YAML-defined rate limit rules.

Abuse patterns live in their own directory (see ``guard.patterns.loader``);
rate limit rules are a single ordered list because first-match order
matters.
"""

import dataclasses
from dataclasses import dataclass
from pathlib import Path

import yaml

from guard.errors import ConfigurationError
from guard.rate_limiter import RateLimitRule, validate_rule

CONFIG_DIR = Path(__file__).resolve().parent / "config"
DEFAULT_RATE_LIMITS = CONFIG_DIR / "rate_limits.yml"


@dataclass
class GuardConfig:
    # Challenges
    challenge_ttl_seconds: float = 600
    challenge_max_attempts: int = 3

    # Lockouts
    unlock_max_attempts: int = 3
    unlock_extension_seconds: float = 24 * 60 * 60
    brute_force_lockout_seconds: float = 30 * 60
    # Brute-force detections on one account before it is locked.
    brute_force_lockout_after: int = 3

    # Event store
    suspicious_event_threshold: int = 10
    suspicious_window_seconds: float = 60 * 60
    failed_login_window_seconds: float = 15 * 60
    brute_force_threshold: int = 5
    event_retention: int = 100_000

    # Request path
    block_suspicious_addresses: bool = False
    risk_score_threshold: int = 50
    spam_log_threshold: int = 25

    # Resources
    sweep_interval_seconds: float = 60.0
    lock_stripes: int = 64

    # Rule sources; None means the packaged defaults.
    rate_limits_path: str | None = None
    patterns_dir: str | None = None

    def __post_init__(self):
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            if isinstance(value, (int, float)) and not isinstance(value, bool) and value < 0:
                raise ConfigurationError(f"{f.name} must be >= 0, got {value}")
        if self.lock_stripes < 1:
            raise ConfigurationError("lock_stripes must be >= 1")
        if self.sweep_interval_seconds <= 0:
            raise ConfigurationError("sweep_interval_seconds must be > 0")


def load_config(path: str | Path) -> GuardConfig:
    """Read a YAML mapping of GuardConfig fields.  Unknown keys are an error."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    raw = _read_yaml(path) or {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{path.name}: top level must be a mapping")

    known = {f.name for f in dataclasses.fields(GuardConfig)}
    unknown = set(raw) - known
    if unknown:
        raise ConfigurationError(f"{path.name}: unknown settings {sorted(unknown)}")
    return GuardConfig(**raw)


def load_rate_limits(path: str | Path | None = None) -> list[RateLimitRule]:
    path = Path(path) if path else DEFAULT_RATE_LIMITS
    if not path.exists():
        raise FileNotFoundError(f"Rate limit file not found: {path}")
    raw = _read_yaml(path) or {}
    entries = raw.get("rules") if isinstance(raw, dict) else None
    if not isinstance(entries, list):
        raise ConfigurationError(f"{path.name}: expected a 'rules' list")

    known = {f.name for f in dataclasses.fields(RateLimitRule)}
    rules = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise ConfigurationError(f"{path.name}: each rule must be a mapping")
        for name in ("id", "name"):
            if name not in entry:
                raise ConfigurationError(f"{path.name}: rule missing required field '{name}'")
        unknown = set(entry) - known
        if unknown:
            raise ConfigurationError(f"{path.name}: {entry['id']}: unknown fields {sorted(unknown)}")
        rules.append(validate_rule(RateLimitRule(**entry)))
    return rules


def _read_yaml(path: Path):
    try:
        with open(path) as f:
            return yaml.safe_load(f)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"{path.name}: invalid YAML: {exc}") from exc
