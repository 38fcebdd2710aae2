"""Brute force attack: the auth tracker already escalated a source.

Authentication bookkeeping emits login_brute_force once a source crosses
the failed-login threshold, so every such event is alert-worthy on its own.
"""

from guard.correlation import CorrelationRule
from guard.events import EventType, Severity


class BruteForceAttack(CorrelationRule):
    id = "brute_force_attack"
    name = "Brute Force Attack"
    severity = Severity.HIGH

    def match(self, event):
        return event.type is EventType.LOGIN_BRUTE_FORCE

    def trigger(self, events):
        return len(events) > 0

    def message(self, event):
        return f"Brute force attack detected from IP {event.source_address}"
