"""Human-verification puzzles (arithmetic CAPTCHA).

Lifecycle: CREATED -> SOLVED | EXPIRED | ATTEMPTS_EXCEEDED.  Every terminal
state removes the challenge from the store, so a verified id can never be
replayed.
"""

import hmac
import logging
import secrets
import time
from dataclasses import dataclass, field

from guard.counters import StripedLock
from guard.errors import NotFoundError, ValidationError
from guard.events import EventType, Severity, new_id

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 600
DEFAULT_MAX_ATTEMPTS = 3
_OPERATORS = ("+", "-", "*")
_MAX_SOLUTION_LENGTH = 32


@dataclass
class CaptchaChallenge:
    id: str
    source_address: str
    prompt: str
    solution: str = field(repr=False)
    created_at: float
    expires_at: float
    subject_user_id: str | None = None
    attempts: int = 0
    solved: bool = False

    def public(self) -> dict:
        """What the client is allowed to see."""
        return {"id": self.id, "prompt": self.prompt}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.subject_user_id,
            "source_address": self.source_address,
            "prompt": self.prompt,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "attempts": self.attempts,
            "solved": self.solved,
        }


def make_puzzle(rng) -> tuple[str, str]:
    """Return (prompt, solution). Subtraction is ordered to stay non-negative."""
    a = rng.randint(1, 20)
    b = rng.randint(1, 20)
    op = rng.choice(_OPERATORS)
    if op == "+":
        answer = a + b
    elif op == "-":
        a, b = max(a, b), min(a, b)
        answer = a - b
    else:
        answer = a * b
    return f"{a} {op} {b} = ?", str(answer)


class ChallengeManager:

    def __init__(self, store, ttl_seconds: float = DEFAULT_TTL_SECONDS,
                 max_attempts: int = DEFAULT_MAX_ATTEMPTS, stripes: int = 64,
                 rng=None):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.max_attempts = max_attempts
        self._rng = rng or secrets.SystemRandom()
        self._challenges: dict[str, CaptchaChallenge] = {}
        self._locks = StripedLock(stripes)

    def issue(self, subject_user_id: str | None, source_address: str,
              now: float | None = None) -> CaptchaChallenge:
        now = time.time() if now is None else now
        prompt, solution = make_puzzle(self._rng)
        challenge = CaptchaChallenge(
            id=new_id("captcha"),
            subject_user_id=subject_user_id,
            source_address=source_address,
            prompt=prompt,
            solution=solution,
            created_at=now,
            expires_at=now + self.ttl_seconds,
        )
        with self._locks.for_key(challenge.id):
            self._challenges[challenge.id] = challenge
        logger.debug("Issued challenge %s to %s", challenge.id, source_address)
        return challenge

    def verify(self, challenge_id: str, solution: str,
               now: float | None = None) -> bool:
        """Check a solution.  Unknown, expired and exhausted ids all return False.

        Each call on a live challenge consumes one attempt.  The attempt
        that pushes the count past ``max_attempts`` without solving it
        removes the challenge and logs a medium-severity event.
        """
        if not isinstance(solution, str):
            raise ValidationError("solution must be a string")
        if len(solution) > _MAX_SOLUTION_LENGTH:
            raise ValidationError("solution is too long")
        now = time.time() if now is None else now

        exhausted = None
        with self._locks.for_key(challenge_id):
            challenge = self._challenges.get(challenge_id)
            if challenge is None:
                return False
            if now > challenge.expires_at:
                del self._challenges[challenge_id]
                return False

            challenge.attempts += 1
            if hmac.compare_digest(solution.strip().encode(), challenge.solution.encode()):
                challenge.solved = True
                del self._challenges[challenge_id]
                return True

            if challenge.attempts > self.max_attempts:
                del self._challenges[challenge_id]
                exhausted = challenge

        if exhausted is not None:
            self.store.log(
                EventType.SUSPICIOUS_REQUEST,
                Severity.MEDIUM,
                exhausted.source_address,
                subject_user_id=exhausted.subject_user_id,
                details={
                    "reason": "Too many CAPTCHA attempts",
                    "challenge_id": exhausted.id,
                    "attempts": exhausted.attempts,
                },
                now=now,
            )
        return False

    # ------------------------------------------------------------------
    # Admin surface
    # ------------------------------------------------------------------

    def active(self, now: float | None = None) -> list[CaptchaChallenge]:
        now = time.time() if now is None else now
        return [
            c for c in list(self._challenges.values())
            if not c.solved and c.expires_at >= now
        ]

    def get(self, challenge_id: str) -> CaptchaChallenge:
        try:
            return self._challenges[challenge_id]
        except KeyError:
            raise NotFoundError(f"Unknown challenge: {challenge_id}") from None

    def revoke(self, challenge_id: str) -> None:
        with self._locks.for_key(challenge_id):
            if self._challenges.pop(challenge_id, None) is None:
                raise NotFoundError(f"Unknown challenge: {challenge_id}")

    def sweep(self, now: float | None = None) -> int:
        now = time.time() if now is None else now
        removed = 0
        for challenge_id in list(self._challenges):
            with self._locks.for_key(challenge_id):
                challenge = self._challenges.get(challenge_id)
                if challenge is not None and now > challenge.expires_at:
                    del self._challenges[challenge_id]
                    removed += 1
        return removed

    def __len__(self) -> int:
        return len(self._challenges)
