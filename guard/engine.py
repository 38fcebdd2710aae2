"""AbuseGuard: the per-process engine object.

Construct one at startup and hand it to request handlers.  It owns one
EventStore that every component records through, so correlation sees the
whole picture.  Pure decision logic: nothing here terminates a connection
or renders a response; ``Decision`` tells the caller what to do.

Per request (``inspect``), in order, first denial wins:
  1. suspicious-address block (optional)
  2. rate limit
  3. injection probes on body/query
  4. abuse patterns (block / challenge; warn and log pass through)
  5. account lockout
  6. spam content
  7. risk score (recorded, never blocks)

After the handler ran, ``record_outcome`` feeds the result back:
outcome-filtered rate limits, login bookkeeping and escalation to a
lockout after repeated brute-force detections.
"""

import logging
import time
from dataclasses import dataclass

from guard.challenge import ChallengeManager
from guard.config import GuardConfig, load_rate_limits
from guard.counters import CounterTable
from guard.detector import AbuseDetector, TriggeredPattern
from guard.events import Action, EventType, Severity
from guard.inspection import (
    contains_sql_injection,
    contains_xss,
    risk_score,
    sanitize_headers,
    sanitize_payload,
)
from guard.lockout import LockoutManager
from guard.patterns.loader import BUILTIN_DIR, load_patterns
from guard.rate_limiter import RateLimiter
from guard.request import InboundRequest
from guard.spam import SpamScorer
from guard.store import EventStore
from guard.sweeper import Sweeper

logger = logging.getLogger(__name__)

_ACTION_ORDER = (Action.LOG, Action.WARN, Action.CHALLENGE, Action.BLOCK)
_LOGIN_PATH = "/auth/login"


@dataclass(frozen=True)
class Decision:
    allowed: bool
    status: int = 200
    reason: str = ""
    action: Action | None = None
    retry_after: int | None = None
    challenge: dict | None = None
    lock_remaining: int | None = None
    risk_score: int = 0
    patterns: tuple[TriggeredPattern, ...] = ()

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "status": self.status,
            "reason": self.reason,
            "action": self.action.value if self.action else None,
            "retry_after": self.retry_after,
            "challenge": self.challenge,
            "lock_remaining": self.lock_remaining,
            "risk_score": self.risk_score,
            "patterns": [p.pattern.id for p in self.patterns],
        }


def _strongest(triggered: list[TriggeredPattern]) -> Action | None:
    if not triggered:
        return None
    return max((t.action for t in triggered), key=_ACTION_ORDER.index)


class AbuseGuard:

    def __init__(self, config: GuardConfig | None = None, rate_limits=None,
                 patterns=None, deliver_code=None, on_shutdown=None, rng=None):
        self.config = config or GuardConfig()
        c = self.config
        if rate_limits is None:
            rate_limits = load_rate_limits(c.rate_limits_path)
        if patterns is None:
            patterns = load_patterns(c.patterns_dir or BUILTIN_DIR)

        self.store = EventStore(
            suspicious_threshold=c.suspicious_event_threshold,
            suspicious_window_seconds=c.suspicious_window_seconds,
            failed_login_window_seconds=c.failed_login_window_seconds,
            brute_force_threshold=c.brute_force_threshold,
            retention=c.event_retention,
        )
        self.rate_limiter = RateLimiter(rate_limits, stripes=c.lock_stripes)
        self.detector = AbuseDetector(self.store, patterns, stripes=c.lock_stripes)
        self.challenges = ChallengeManager(
            self.store, c.challenge_ttl_seconds, c.challenge_max_attempts,
            stripes=c.lock_stripes, rng=rng,
        )
        self.lockouts = LockoutManager(
            self.store, c.unlock_max_attempts, c.unlock_extension_seconds,
            deliver_code=deliver_code, stripes=c.lock_stripes, rng=rng,
        )
        self.spam = SpamScorer()
        # Brute-force detections per account, windowed like failed logins.
        self._brute_force_hits = CounterTable(c.lock_stripes)
        self._sweeper = Sweeper(self.sweep, c.sweep_interval_seconds)
        self._on_shutdown = on_shutdown

    # ------------------------------------------------------------------
    # Request path
    # ------------------------------------------------------------------

    def inspect(self, request: InboundRequest, now: float | None = None) -> Decision:
        now = time.time() if now is None else now
        addr = request.source_address

        if self.config.block_suspicious_addresses and self.store.is_suspicious_address(addr, now):
            self._record(request, EventType.UNAUTHORIZED_ACCESS, Severity.HIGH,
                         {"reason": "Request from blocked address"}, now)
            return Decision(False, 403, "Access denied")

        denied = self._check_rate_limit(request, now)
        if denied is not None:
            return denied

        if request.body and contains_xss(request.body):
            self._record(request, EventType.SUSPICIOUS_REQUEST, Severity.HIGH,
                         {"reason": "Potential XSS attempt detected",
                          "body": sanitize_payload(request.body)}, now)
            return Decision(False, 400, "Invalid input detected")
        if request.query and contains_sql_injection(request.query):
            self._record(request, EventType.SUSPICIOUS_REQUEST, Severity.HIGH,
                         {"reason": "Potential SQL injection attempt detected",
                          "query": sanitize_payload(request.query)}, now)
            return Decision(False, 400, "Invalid query parameters")

        triggered = self.detector.detect(addr, request.user_id, request.context(), now)
        enforced = self.enforce(request, triggered, now)
        if not enforced.allowed:
            return enforced

        if request.user_id:
            status = self.lockouts.is_locked(request.user_id, now)
            if status.locked:
                return Decision(
                    False, 423,
                    f"Account is temporarily locked due to {status.lockout.reason}",
                    lock_remaining=status.lockout.remaining_seconds(now),
                )

        denied = self._check_spam(request, now)
        if denied is not None:
            return denied

        score = risk_score(request, self.store.failed_login_attempts(addr, now))
        if score > self.config.risk_score_threshold:
            self._record(request, EventType.SUSPICIOUS_REQUEST, Severity.MEDIUM, {
                "risk_score": score,
                "path": request.path,
                "method": request.method,
                "query": sanitize_payload(request.query or {}),
                "headers": sanitize_headers(request.headers),
            }, now)

        return Decision(True, 200, action=enforced.action, risk_score=score,
                        patterns=enforced.patterns)

    def enforce(self, request: InboundRequest, triggered: list[TriggeredPattern],
                now: float | None = None) -> Decision:
        """Turn fired patterns into a Decision. A challenge action issues one."""
        now = time.time() if now is None else now
        action = _strongest(triggered)
        if action is Action.BLOCK:
            return Decision(False, 403, "Request blocked", action, patterns=tuple(triggered))
        if action is Action.CHALLENGE:
            challenge = self.challenges.issue(request.user_id, request.source_address, now)
            return Decision(False, 429, "Challenge required", action,
                            challenge=challenge.public(), patterns=tuple(triggered))
        return Decision(True, 200, action=action, patterns=tuple(triggered))

    def record_outcome(self, request: InboundRequest, succeeded: bool,
                       now: float | None = None) -> list[TriggeredPattern]:
        """Feed back the handler's result. Returns patterns fired by a failed login."""
        now = time.time() if now is None else now
        addr = request.source_address

        rule = self.rate_limiter.match(request.method, request.path)
        if rule is not None and rule.filters_outcome and rule.counts(succeeded):
            subject = self.rate_limiter.subject_for(rule, addr, request.user_id)
            self.rate_limiter.check(rule.id, subject, now)

        if _LOGIN_PATH not in request.path:
            return []

        event = self.store.record_authentication(
            succeeded, addr, request.user_id,
            {"endpoint": request.path}, now, request.user_agent,
        )
        if succeeded:
            return []

        if event.type is EventType.LOGIN_BRUTE_FORCE and request.user_id:
            self._escalate_brute_force(request.user_id, addr, now)
        context = {"event": "login_failure", "path": request.path,
                   "user_agent": request.user_agent or "unknown"}
        return self.detector.detect(addr, request.user_id, context, now)

    def _check_rate_limit(self, request: InboundRequest, now: float) -> Decision | None:
        rule = self.rate_limiter.match(request.method, request.path)
        if rule is None:
            return None
        subject = self.rate_limiter.subject_for(rule, request.source_address, request.user_id)
        if rule.filters_outcome:
            decision = self.rate_limiter.peek(rule.id, subject, now)
        else:
            decision = self.rate_limiter.check(rule.id, subject, now)
        if decision.allowed:
            return None

        retry_after = decision.retry_after(now)
        self._record(request, EventType.RATE_LIMIT_EXCEEDED, Severity.MEDIUM, {
            "rule_id": rule.id,
            "limit": rule.max_requests,
            "window_seconds": rule.window_seconds,
            "path": request.path,
        }, now)
        return Decision(False, 429, f"Too many requests. Try again after {retry_after} seconds",
                        retry_after=retry_after)

    def _check_spam(self, request: InboundRequest, now: float) -> Decision | None:
        body = request.body if isinstance(request.body, dict) else {}
        content = body.get("content")
        if not isinstance(content, str) or not content:
            return None
        subject = body.get("subject") if isinstance(body.get("subject"), str) else None
        result = self.spam.score(content, subject)

        if result.is_spam:
            self._record(request, EventType.SUSPICIOUS_REQUEST, Severity.HIGH, {
                "reason": "Spam content detected",
                "spam_score": result.score,
                "confidence": result.confidence,
                "reasons": result.reasons,
            }, now)
            return Decision(False, 400, "Content blocked")
        if result.score > self.config.spam_log_threshold:
            self._record(request, EventType.SUSPICIOUS_REQUEST, Severity.MEDIUM, {
                "reason": "Potential spam content",
                "spam_score": result.score,
                "confidence": result.confidence,
            }, now)
        return None

    def _escalate_brute_force(self, user_id: str, addr: str, now: float) -> None:
        state = self._brute_force_hits.increment(
            ("brute_force", user_id), now, self.config.failed_login_window_seconds,
        )
        if state.count < self.config.brute_force_lockout_after:
            return
        if self.lockouts.is_locked(user_id, now).locked:
            return
        self.lockouts.lock(user_id, "repeated failed login attempts",
                           self.config.brute_force_lockout_seconds, now, addr)
        self._brute_force_hits.discard(("brute_force", user_id))

    def _record(self, request: InboundRequest, event_type: EventType,
                severity: Severity, details: dict, now: float):
        return self.store.log(event_type, severity, request.source_address,
                              request.user_id, details, now, request.user_agent)

    # ------------------------------------------------------------------
    # Admin surface
    # ------------------------------------------------------------------

    def update_rate_limit_rule(self, rule_id: str, by: str = "admin",
                               now: float | None = None, **changes):
        rule = self.rate_limiter.update_rule(rule_id, **changes)
        self._record_change("rate_limit_rule", rule_id, by, changes, now)
        return rule

    def update_abuse_pattern(self, pattern_id: str, by: str = "admin",
                             now: float | None = None, **changes):
        pattern = self.detector.update_pattern(pattern_id, **changes)
        self._record_change("abuse_pattern", pattern_id, by, changes, now)
        return pattern

    def lock_account(self, user_id: str, reason: str, duration: float,
                     by: str = "admin", now: float | None = None):
        return self.lockouts.lock(user_id, f"{reason} (by {by})", duration, now)

    def active_lockouts(self, now: float | None = None) -> list[dict]:
        now = time.time() if now is None else now
        return [lo.public(now) for lo in self.lockouts.active(now)]

    def active_challenges(self, now: float | None = None) -> list[dict]:
        return [c.to_dict() for c in self.challenges.active(now)]

    def _record_change(self, kind: str, target: str, by: str, changes: dict,
                       now: float | None) -> None:
        self.store.log(
            EventType.CONFIGURATION_CHANGE, Severity.LOW, "internal",
            subject_user_id=by,
            details={"kind": kind, "target": target, "fields": sorted(changes)},
            now=now,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def sweep(self, now: float | None = None) -> dict:
        now = time.time() if now is None else now
        removed = {
            "rate_limits": self.rate_limiter.sweep(now),
            "patterns": self.detector.sweep(now),
            "challenges": self.challenges.sweep(now),
            "lockouts": self.lockouts.sweep(now),
            "windows": self.store.sweep(now),
            "brute_force": self._brute_force_hits.sweep(now),
        }
        if any(removed.values()):
            logger.debug("Sweep removed %s", removed)
        return removed

    def start(self) -> "AbuseGuard":
        self._sweeper.start()
        return self

    def shutdown(self) -> None:
        self._sweeper.stop()
        if self._on_shutdown is not None:
            self._on_shutdown(self)

    def __enter__(self):
        return self.start()

    def __exit__(self, *exc):
        self.shutdown()
        return False

