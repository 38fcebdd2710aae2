"""Engine error taxonomy.

Expected negative outcomes (rate limited, challenge failed, account locked)
are returned as results.  These exceptions are reserved for configuration
mistakes and admin-API misuse.
"""


class GuardError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(GuardError, ValueError):
    """Unknown rule/pattern id, invalid configuration value or file."""


class NotFoundError(GuardError, KeyError):
    """Admin look-up of an id the engine does not know."""

    def __str__(self):
        # KeyError repr()s its argument; keep the plain message.
        return str(self.args[0]) if self.args else ""


class ValidationError(GuardError, ValueError):
    """Malformed challenge solution or unlock code."""
