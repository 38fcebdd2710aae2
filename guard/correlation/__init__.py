# Correlation rules as Python classes, one per file: match() filters
# events, trigger() looks at the window of matching events, and the store
# turns a trigger into a SecurityAlert linking the evidence.  Adding a rule
# is a new file plus an entry in ALL_RULES.


class CorrelationRule:
    """Base correlation rule. Subclass and implement match() + trigger()."""

    id: str
    name: str
    severity: "Severity"  # guard.events.Severity
    # None: evaluate the single incoming event, keep no window.
    window_seconds: float | None = None

    def match(self, event) -> bool:
        """Return True if this event should be counted in the rule's window."""
        raise NotImplementedError

    def trigger(self, events: list) -> bool:
        """Given all matching events in the current window, should we alert?"""
        raise NotImplementedError

    def message(self, event) -> str:
        return f"{self.name} detected from {event.source_address}"

    def group_key(self, event) -> str:
        """Windowing key. Default: per source address."""
        return event.source_address


from guard.correlation.brute_force import BruteForceAttack  # noqa: E402
from guard.correlation.failed_logins import MultipleFailedLogins  # noqa: E402
from guard.correlation.crypto_failure import CryptoFailure  # noqa: E402

ALL_RULES = [BruteForceAttack(), MultipleFailedLogins(), CryptoFailure()]
