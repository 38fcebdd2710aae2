"""Security event vocabulary: severities, event types, actions, records.

Severities and event types are closed enums rather than bare strings so
that filtering and escalation compare members, not spellings.  Records are
plain dataclasses; ``to_dict()`` produces the JSON shape forwarded to sinks.
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from functools import total_ordering

from guard.errors import ConfigurationError

_SEVERITY_ORDER = ("low", "medium", "high", "critical")

# Sigma 'level' spellings -> our severity vocabulary.
_SEVERITY_ALIASES = {"informational": "low"}


@total_ordering
class Severity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self.value)

    def __lt__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank < other.rank

    @classmethod
    def parse(cls, value) -> "Severity":
        if isinstance(value, cls):
            return value
        name = _SEVERITY_ALIASES.get(str(value).lower(), str(value).lower())
        try:
            return cls(name)
        except ValueError:
            raise ConfigurationError(f"Unknown severity: {value!r}") from None


class EventType(Enum):
    # Authentication
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILURE = "login_failure"
    LOGIN_BRUTE_FORCE = "login_brute_force"
    PASSWORD_CHANGE = "password_change"
    ACCOUNT_LOCKOUT = "account_lockout"
    ACCOUNT_UNLOCKED = "account_unlocked"

    # Authorization
    UNAUTHORIZED_ACCESS = "unauthorized_access"
    PRIVILEGE_ESCALATION = "privilege_escalation"

    # Data access
    SENSITIVE_DATA_ACCESS = "sensitive_data_access"
    DATA_EXPORT = "data_export"
    DATA_DELETION = "data_deletion"

    # Encryption
    KEY_GENERATION = "key_generation"
    ENCRYPTION_FAILURE = "encryption_failure"
    DECRYPTION_FAILURE = "decryption_failure"

    # Network
    SUSPICIOUS_REQUEST = "suspicious_request"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    DDOS_ATTEMPT = "ddos_attempt"

    # System
    SYSTEM_ERROR = "system_error"
    CONFIGURATION_CHANGE = "configuration_change"

    # Privacy
    GDPR_REQUEST = "gdpr_request"
    CONSENT_CHANGE = "consent_change"

    @classmethod
    def parse(cls, value) -> "EventType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ConfigurationError(f"Unknown event type: {value!r}") from None


class Action(Enum):
    """Escalation ladder returned by the detector; the caller enforces it."""

    LOG = "log"
    WARN = "warn"
    CHALLENGE = "challenge"
    BLOCK = "block"

    @classmethod
    def parse(cls, value) -> "Action":
        if isinstance(value, cls):
            return value
        name = str(value).lower()
        if name == "captcha":
            name = "challenge"
        try:
            return cls(name)
        except ValueError:
            raise ConfigurationError(f"Unknown action: {value!r}") from None


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class SecurityEvent:
    """Append-only audit record.

    Frozen: the store swaps in a ``dataclasses.replace()`` copy when an
    event is resolved, so only the resolution fields ever differ between
    the original and its successor.
    """

    id: str
    timestamp: float
    type: EventType
    severity: Severity
    source_address: str
    user_agent: str = "unknown"
    subject_user_id: str | None = None
    details: dict = field(default_factory=dict)
    resolved: bool = False
    resolved_by: str | None = None
    resolved_at: float | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "type": self.type.value,
            "severity": self.severity.value,
            "source_address": self.source_address,
            "user_agent": self.user_agent,
            "user_id": self.subject_user_id,
            "details": dict(self.details),
            "resolved": self.resolved,
            "resolved_by": self.resolved_by,
            "resolved_at": self.resolved_at,
        }


@dataclass
class SecurityAlert:
    id: str
    timestamp: float
    correlation_type: str
    severity: Severity
    message: str
    linked_event_ids: tuple[str, ...]
    source_address: str | None = None
    acknowledged: bool = False
    acknowledged_by: str | None = None
    acknowledged_at: float | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "correlation_type": self.correlation_type,
            "severity": self.severity.value,
            "message": self.message,
            "linked_event_ids": list(self.linked_event_ids),
            "source_address": self.source_address,
            "acknowledged": self.acknowledged,
            "acknowledged_by": self.acknowledged_by,
            "acknowledged_at": self.acknowledged_at,
        }
