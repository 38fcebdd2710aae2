"""Per-account lockout state machine.

    lock() ──> ACTIVE ──unlock(code ok)──> INACTIVE
                 │  └──expires_at passed (observed lazily)──> INACTIVE
                 └──unlock(bad code) x3──> ACTIVE, expiry pushed out 24h

At most one lockout exists per user; locking again replaces it.  The
unlock code is handed to ``deliver_code`` (an out-of-band channel such as
e-mail to the verified address) and never appears in ``public()``, in
event details, or anywhere on the path that reported the lockout.
"""

import hmac
import logging
import math
import secrets
import string
import time
from dataclasses import dataclass, field
from typing import NamedTuple

from guard.counters import StripedLock
from guard.errors import NotFoundError, ValidationError
from guard.events import EventType, Severity, new_id

logger = logging.getLogger(__name__)

DEFAULT_MAX_UNLOCK_ATTEMPTS = 3
DEFAULT_EXTENSION_SECONDS = 24 * 60 * 60
_CODE_ALPHABET = string.ascii_uppercase + string.digits
_CODE_LENGTH = 8
_MAX_CODE_LENGTH = 32


@dataclass
class AccountLockout:
    id: str
    user_id: str
    reason: str
    locked_at: float
    expires_at: float
    unlock_code: str = field(repr=False)
    source_address: str = "unknown"
    attempts: int = 0
    active: bool = True

    def remaining_seconds(self, now: float) -> int:
        return max(0, math.ceil(self.expires_at - now))

    def public(self, now: float | None = None) -> dict:
        now = time.time() if now is None else now
        return {
            "id": self.id,
            "user_id": self.user_id,
            "reason": self.reason,
            "locked_at": self.locked_at,
            "expires_at": self.expires_at,
            "remaining_seconds": self.remaining_seconds(now),
            "attempts": self.attempts,
            "active": self.active,
        }


class LockStatus(NamedTuple):
    locked: bool
    lockout: AccountLockout | None = None


class LockoutManager:

    def __init__(self, store, max_unlock_attempts: int = DEFAULT_MAX_UNLOCK_ATTEMPTS,
                 extension_seconds: float = DEFAULT_EXTENSION_SECONDS,
                 deliver_code=None, stripes: int = 64, rng=None):
        self.store = store
        self.max_unlock_attempts = max_unlock_attempts
        self.extension_seconds = extension_seconds
        self.deliver_code = deliver_code
        self._rng = rng or secrets.SystemRandom()
        self._lockouts: dict[str, AccountLockout] = {}
        self._locks = StripedLock(stripes)

    def lock(self, user_id: str, reason: str, duration: float,
             now: float | None = None, source_address: str = "unknown") -> AccountLockout:
        now = time.time() if now is None else now
        lockout = AccountLockout(
            id=new_id("lockout"),
            user_id=user_id,
            reason=reason,
            locked_at=now,
            expires_at=now + duration,
            unlock_code=self._generate_code(),
            source_address=source_address,
        )
        with self._locks.for_key(user_id):
            self._lockouts[user_id] = lockout

        self.store.log(
            EventType.ACCOUNT_LOCKOUT,
            Severity.HIGH,
            source_address,
            subject_user_id=user_id,
            details={"reason": reason, "duration_seconds": duration,
                     "expires_at": lockout.expires_at},
            now=now,
        )
        if self.deliver_code is not None:
            try:
                self.deliver_code(lockout)
            except Exception:
                logger.exception("Unlock code delivery failed for user %s", user_id)
        return lockout

    def is_locked(self, user_id: str, now: float | None = None) -> LockStatus:
        now = time.time() if now is None else now
        with self._locks.for_key(user_id):
            lockout = self._lockouts.get(user_id)
            if lockout is None or not lockout.active:
                return LockStatus(False)
            if lockout.expires_at < now:
                lockout.active = False
                return LockStatus(False)
            return LockStatus(True, lockout)

    def unlock(self, user_id: str, code: str, now: float | None = None,
               source_address: str | None = None) -> bool:
        """Try an unlock code.

        Every call against an active lockout counts as an attempt.  From
        the ``max_unlock_attempts``-th failure on, each further failure
        pushes the expiry out to ``now + extension_seconds``.
        """
        if not isinstance(code, str):
            raise ValidationError("unlock code must be a string")
        if len(code) > _MAX_CODE_LENGTH:
            raise ValidationError("unlock code is too long")
        now = time.time() if now is None else now

        with self._locks.for_key(user_id):
            lockout = self._lockouts.get(user_id)
            if lockout is None or not lockout.active:
                return False
            if lockout.expires_at < now:
                lockout.active = False
                return False

            lockout.attempts += 1
            matched = hmac.compare_digest(
                code.strip().upper().encode(), lockout.unlock_code.encode()
            )
            if matched:
                lockout.active = False
            elif lockout.attempts >= self.max_unlock_attempts:
                lockout.expires_at = now + self.extension_seconds
            else:
                return False
            address = source_address or lockout.source_address
            attempts = lockout.attempts
            expires_at = lockout.expires_at

        if matched:
            self.store.log(
                EventType.ACCOUNT_UNLOCKED,
                Severity.LOW,
                address,
                subject_user_id=user_id,
                details={"unlock_method": "code", "attempts": attempts},
                now=now,
            )
            return True

        self.store.log(
            EventType.SUSPICIOUS_REQUEST,
            Severity.HIGH,
            address,
            subject_user_id=user_id,
            details={"reason": "Too many unlock attempts", "lockout_extended": True,
                     "attempts": attempts, "expires_at": expires_at},
            now=now,
        )
        return False

    # ------------------------------------------------------------------
    # Admin surface
    # ------------------------------------------------------------------

    def active(self, now: float | None = None) -> list[AccountLockout]:
        now = time.time() if now is None else now
        return [
            lo for lo in list(self._lockouts.values())
            if lo.active and lo.expires_at > now
        ]

    def release(self, user_id: str, by: str, now: float | None = None) -> AccountLockout:
        """Administrative unlock without a code."""
        now = time.time() if now is None else now
        with self._locks.for_key(user_id):
            lockout = self._lockouts.get(user_id)
            if lockout is None or not lockout.active:
                raise NotFoundError(f"No active lockout for user: {user_id}")
            lockout.active = False
        self.store.log(
            EventType.ACCOUNT_UNLOCKED,
            Severity.LOW,
            lockout.source_address,
            subject_user_id=user_id,
            details={"unlock_method": "admin", "released_by": by},
            now=now,
        )
        return lockout

    def sweep(self, now: float | None = None) -> int:
        """Drop lockouts that are inactive or past their expiry."""
        now = time.time() if now is None else now
        removed = 0
        for user_id in list(self._lockouts):
            with self._locks.for_key(user_id):
                lockout = self._lockouts.get(user_id)
                if lockout is not None and (not lockout.active or lockout.expires_at < now):
                    del self._lockouts[user_id]
                    removed += 1
        return removed

    def _generate_code(self) -> str:
        return "".join(self._rng.choice(_CODE_ALPHABET) for _ in range(_CODE_LENGTH))

    def __len__(self) -> int:
        return len(self._lockouts)
