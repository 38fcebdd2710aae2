"""Tests for AbuseGuard: the per-request flow end to end, outcomes, admin."""

import json
import random
from unittest.mock import MagicMock

import pytest

from guard.config import GuardConfig
from guard.engine import AbuseGuard, Decision
from guard.errors import ConfigurationError
from guard.events import Action, EventType, Severity
from guard.patterns import AbusePattern, DetectionKind, DetectionRule
from guard.rate_limiter import RateLimitRule
from guard.request import InboundRequest

T0 = 1_700_000_000.0
BROWSER = "Mozilla/5.0 (X11; Linux x86_64; rv:125.0) Gecko/20100101 Firefox/125.0"

RATE_LIMITS = [
    RateLimitRule(id="login", name="Login", path="/api/auth/login", method="POST",
                  window_seconds=900, max_requests=5),
    RateLimitRule(id="mail", name="Mail", path="/api/email/send", method="POST",
                  window_seconds=3600, max_requests=2, count_failed=False, key_by="user"),
]


def _pattern(pattern_id, path, threshold, action):
    return AbusePattern(
        id=pattern_id,
        name=pattern_id.replace("_", " ").title(),
        detection_rules=(DetectionRule(DetectionKind.FREQUENCY, threshold, 60),),
        severity=Severity.HIGH,
        action=action,
        selection={"event": "request", "path": path},
    )


PATTERNS = [
    _pattern("admin_scan", "/api/admin", 1, Action.BLOCK),
    _pattern("search_flood", "/api/search", 2, Action.CHALLENGE),
    _pattern("profile_watch", "/api/profile", 0, Action.WARN),
]


def _request(method="GET", path="/api/files", addr="1.1.1.1", **extra):
    extra.setdefault("user_agent", BROWSER)
    return InboundRequest(method=method, path=path, source_address=addr, **extra)


def _guard(**config):
    return AbuseGuard(
        GuardConfig(**config),
        rate_limits=RATE_LIMITS,
        patterns=PATTERNS,
        deliver_code=MagicMock(),
        rng=random.Random(11),
    )


# ---------------------------------------------------------------------------
# inspect(): each stage
# ---------------------------------------------------------------------------

class TestInspect:
    def setup_method(self):
        self.guard = _guard()
        self.store = self.guard.store

    def test_plain_request_allowed(self):
        decision = self.guard.inspect(_request(), T0)
        assert decision.allowed
        assert decision.status == 200
        assert len(self.store) == 0

    def test_rate_limit_denial(self):
        login = _request("POST", "/api/auth/login")
        decisions = [self.guard.inspect(login, T0 + i) for i in range(6)]
        assert all(d.allowed for d in decisions[:5])
        denied = decisions[5]
        assert denied.status == 429
        assert denied.retry_after == 900 - 5
        event = self.store.events(type=EventType.RATE_LIMIT_EXCEEDED).events[0]
        assert event.severity is Severity.MEDIUM
        assert event.details["rule_id"] == "login"

    def test_outcome_filtered_rule_counts_in_record_outcome(self):
        mail = _request("POST", "/api/email/send", user_id="bob")
        for i in range(3):
            assert self.guard.inspect(mail, T0 + i).allowed
            self.guard.record_outcome(mail, False, T0 + i)
        for i in range(2):
            assert self.guard.inspect(mail, T0 + 10 + i).allowed
            self.guard.record_outcome(mail, True, T0 + 10 + i)
        denied = self.guard.inspect(mail, T0 + 20)
        assert denied.status == 429

    def test_xss_body(self):
        request = _request("POST", "/api/files", body={"name": "<script>x()</script>"})
        decision = self.guard.inspect(request, T0)
        assert decision.status == 400
        event = self.store.events(type=EventType.SUSPICIOUS_REQUEST).events[0]
        assert event.severity is Severity.HIGH

    def test_sql_injection_query(self):
        decision = self.guard.inspect(_request(query={"id": "1 OR 1=1"}), T0)
        assert decision.status == 400
        assert decision.reason == "Invalid query parameters"

    def test_block_pattern_is_generic(self):
        scan = _request(path="/api/admin")
        assert self.guard.inspect(scan, T0).allowed
        decision = self.guard.inspect(scan, T0 + 1)
        assert decision.status == 403
        assert decision.action is Action.BLOCK
        assert "admin_scan" not in decision.reason

    def test_challenge_pattern_issues_solvable_challenge(self):
        search = _request(path="/api/search", user_id="carol")
        self.guard.inspect(search, T0)
        self.guard.inspect(search, T0)
        decision = self.guard.inspect(search, T0)
        assert decision.status == 429
        assert decision.action is Action.CHALLENGE
        assert set(decision.challenge) == {"id", "prompt"}
        solution = self.guard.challenges.get(decision.challenge["id"]).solution
        assert self.guard.challenges.verify(decision.challenge["id"], solution, T0 + 5)

    def test_warn_pattern_passes(self):
        decision = self.guard.inspect(_request(path="/api/profile"), T0)
        assert decision.allowed
        assert decision.action is Action.WARN
        assert [t.pattern.id for t in decision.patterns] == ["profile_watch"]

    def test_locked_account(self):
        lockout = self.guard.lock_account("alice", "suspicious activity", 600, now=T0)
        decision = self.guard.inspect(_request(user_id="alice"), T0 + 100)
        assert decision.status == 423
        assert decision.lock_remaining == 500
        assert lockout.unlock_code not in json.dumps(decision.to_dict())

    def test_spam_content_blocked(self):
        body = {"subject": "Hi", "content": "URGENT! You have won $1,000,000! Click here now! FREE MONEY!"}
        decision = self.guard.inspect(_request("POST", "/api/email/send", user_id="bob", body=body), T0)
        assert decision.status == 400
        event = self.store.events(type=EventType.SUSPICIOUS_REQUEST).events[0]
        assert event.details["reason"] == "Spam content detected"
        assert event.severity is Severity.HIGH

    def test_borderline_spam_logged_and_allowed(self):
        body = {"content": "Congratulations winner, act now"}
        decision = self.guard.inspect(_request("POST", "/api/email/send", user_id="bob", body=body), T0)
        assert decision.allowed
        event = self.store.events(type=EventType.SUSPICIOUS_REQUEST).events[0]
        assert event.severity is Severity.MEDIUM
        assert event.details["spam_score"] == 30

    def test_risky_request_logged_with_sanitized_headers(self):
        headers = {"x-forwarded-for": "a", "x-real-ip": "b", "content-length": "9999999",
                   "authorization": "Bearer secret"}
        decision = self.guard.inspect(_request(user_agent="bot", headers=headers), T0)
        assert decision.allowed
        assert decision.risk_score == 60
        event = self.store.events(type=EventType.SUSPICIOUS_REQUEST).events[0]
        assert "authorization" not in event.details["headers"]
        assert event.details["risk_score"] == 60


class TestSuspiciousAddressBlocking:
    def test_disabled_by_default(self):
        guard = _guard()
        for i in range(11):
            guard.store.log(EventType.SYSTEM_ERROR, Severity.LOW, "6.6.6.6", now=T0 + i)
        assert guard.inspect(_request(addr="6.6.6.6"), T0 + 20).allowed

    def test_enabled(self):
        guard = _guard(block_suspicious_addresses=True)
        for i in range(11):
            guard.store.log(EventType.SYSTEM_ERROR, Severity.LOW, "6.6.6.6", now=T0 + i)
        decision = guard.inspect(_request(addr="6.6.6.6"), T0 + 20)
        assert decision.status == 403
        assert guard.store.events(type=EventType.UNAUTHORIZED_ACCESS).total == 1


# ---------------------------------------------------------------------------
# record_outcome(): login bookkeeping and escalation
# ---------------------------------------------------------------------------

class TestRecordOutcome:
    def setup_method(self):
        self.guard = _guard()
        self.login = _request("POST", "/api/auth/login", addr="6.6.6.6", user_id="alice")

    def test_success_logs_login(self):
        assert self.guard.record_outcome(self.login, True, T0) == []
        assert self.guard.store.events(type=EventType.LOGIN_SUCCESS).total == 1

    def test_non_login_path_records_nothing(self):
        self.guard.record_outcome(_request(), False, T0)
        assert len(self.guard.store) == 0

    def test_repeated_brute_force_locks_account(self):
        # Failures 5, 6 and 7 are brute-force detections; the third one locks.
        for i in range(6):
            self.guard.record_outcome(self.login, False, T0 + i)
        assert not self.guard.lockouts.is_locked("alice", T0 + 6).locked
        self.guard.record_outcome(self.login, False, T0 + 6)
        status = self.guard.lockouts.is_locked("alice", T0 + 7)
        assert status.locked
        assert status.lockout.expires_at == T0 + 6 + 1800
        self.guard.lockouts.deliver_code.assert_called_once_with(status.lockout)

    def test_failures_raise_alerts(self):
        for i in range(5):
            self.guard.record_outcome(self.login, False, T0 + i)
        types = {a.correlation_type for a in self.guard.store.alerts()}
        assert types == {"multiple_failed_logins", "brute_force_attack"}

    def test_login_failure_patterns_are_returned(self):
        pattern = AbusePattern(
            id="guessing", name="Guessing",
            detection_rules=(DetectionRule(DetectionKind.FREQUENCY, 1, 900),),
            action=Action.CHALLENGE, selection={"event": "login_failure"},
        )
        guard = AbuseGuard(GuardConfig(), rate_limits=[], patterns=[pattern])
        assert guard.record_outcome(self.login, False, T0) == []
        fired = guard.record_outcome(self.login, False, T0 + 1)
        assert [t.pattern.id for t in fired] == ["guessing"]


# ---------------------------------------------------------------------------
# Admin surface
# ---------------------------------------------------------------------------

class TestAdmin:
    def setup_method(self):
        self.guard = _guard()

    def test_update_rate_limit_rule_is_audited(self):
        rule = self.guard.update_rate_limit_rule("login", by="ops", now=T0, max_requests=1)
        assert rule.max_requests == 1
        event = self.guard.store.events(type=EventType.CONFIGURATION_CHANGE).events[0]
        assert event.subject_user_id == "ops"
        assert event.details == {"kind": "rate_limit_rule", "target": "login",
                                 "fields": ["max_requests"]}

    def test_update_unknown_rule(self):
        with pytest.raises(ConfigurationError):
            self.guard.update_rate_limit_rule("missing", max_requests=1)
        assert self.guard.store.events(type=EventType.CONFIGURATION_CHANGE).total == 0

    def test_update_abuse_pattern(self):
        pattern = self.guard.update_abuse_pattern("admin_scan", action="warn", now=T0)
        assert pattern.action is Action.WARN
        assert self.guard.store.events(type=EventType.CONFIGURATION_CHANGE).total == 1

    def test_active_lockouts_hide_codes(self):
        self.guard.lock_account("alice", "review", 600, now=T0)
        listed = self.guard.active_lockouts(T0 + 1)
        assert [lo["user_id"] for lo in listed] == ["alice"]
        assert "unlock_code" not in listed[0]

    def test_active_challenges_hide_solutions(self):
        self.guard.challenges.issue(None, "1.1.1.1", T0)
        listed = self.guard.active_challenges(T0 + 1)
        assert len(listed) == 1
        assert "solution" not in listed[0]


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class TestLifecycle:
    def test_sweep_reports_each_component(self):
        guard = _guard()
        guard.inspect(_request("POST", "/api/auth/login"), T0)
        guard.challenges.issue(None, "1.1.1.1", T0)
        removed = guard.sweep(T0 + 4000)
        assert removed["rate_limits"] == 1
        assert removed["challenges"] == 1
        assert set(removed) == {"rate_limits", "patterns", "challenges", "lockouts",
                                "windows", "brute_force"}

    def test_context_manager_runs_shutdown_hook(self):
        hook = MagicMock()
        guard = AbuseGuard(GuardConfig(), rate_limits=[], patterns=[], on_shutdown=hook)
        with guard as running:
            assert running._sweeper.running
        assert not guard._sweeper.running
        hook.assert_called_once_with(guard)

    def test_packaged_defaults_load(self):
        guard = AbuseGuard()
        assert len(guard.rate_limiter.rules()) == 5
        assert {p.id for p in guard.detector.patterns()} >= {"rapid_requests", "brute_force_login"}

    def test_decision_to_dict(self):
        data = Decision(False, 429, "slow down", retry_after=3).to_dict()
        assert data["retry_after"] == 3
        assert data["action"] is None
        assert data["patterns"] == []
