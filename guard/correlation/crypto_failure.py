"""Cryptographic failure: any encrypt/decrypt failure.

A failed decrypt can mean tampered ciphertext or a key mix-up; either way
an operator should look.
"""

from guard.correlation import CorrelationRule
from guard.events import EventType, Severity

_CRYPTO_FAILURES = (EventType.ENCRYPTION_FAILURE, EventType.DECRYPTION_FAILURE)


class CryptoFailure(CorrelationRule):
    id = "crypto_failure"
    name = "Cryptographic Failure"
    severity = Severity.HIGH

    def match(self, event):
        return event.type in _CRYPTO_FAILURES

    def trigger(self, events):
        return len(events) > 0

    def message(self, event):
        return "Cryptographic operation failure detected"
