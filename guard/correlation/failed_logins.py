"""Multiple failed logins: credential guessing below the brute-force bar.

Three failures from one source inside 15 minutes is more than typos.
The alert links every failure still inside the window.
"""

from guard.correlation import CorrelationRule
from guard.events import EventType, Severity


class MultipleFailedLogins(CorrelationRule):
    id = "multiple_failed_logins"
    name = "Multiple Failed Logins"
    severity = Severity.MEDIUM
    window_seconds = 15 * 60

    def match(self, event):
        return event.type is EventType.LOGIN_FAILURE

    def trigger(self, events):
        return len(events) >= 3

    def message(self, event):
        return f"Multiple failed login attempts from IP {event.source_address}"
