"""Tests for EventStore: append, correlation alerts, queries, metrics."""

from unittest.mock import MagicMock

import pytest

from guard.errors import ConfigurationError, NotFoundError, ValidationError
from guard.events import EventType, Severity
from guard.store import EventStore

T0 = 1_700_000_000.0


# ---------------------------------------------------------------------------
# Correlation rules
# ---------------------------------------------------------------------------

class TestCorrelation:
    def setup_method(self):
        self.store = EventStore()

    def test_brute_force_event_raises_high_alert(self):
        event = self.store.log(EventType.LOGIN_BRUTE_FORCE, Severity.HIGH, "6.6.6.6", now=T0)
        alerts = self.store.alerts()
        assert len(alerts) == 1
        assert alerts[0].severity is Severity.HIGH
        assert alerts[0].linked_event_ids == (event.id,)
        assert "6.6.6.6" in alerts[0].message

    def test_three_failed_logins_raise_medium_alert(self):
        ids = [
            self.store.log(EventType.LOGIN_FAILURE, Severity.MEDIUM, "6.6.6.6", now=T0 + i * 60).id
            for i in range(3)
        ]
        alerts = self.store.alerts()
        assert len(alerts) == 1
        assert alerts[0].correlation_type == "multiple_failed_logins"
        assert alerts[0].severity is Severity.MEDIUM
        assert alerts[0].linked_event_ids == tuple(ids)

    def test_two_failed_logins_do_not_alert(self):
        for i in range(2):
            self.store.log(EventType.LOGIN_FAILURE, Severity.MEDIUM, "6.6.6.6", now=T0 + i)
        assert self.store.alerts() == []

    def test_failed_logins_outside_window_do_not_alert(self):
        self.store.log(EventType.LOGIN_FAILURE, Severity.MEDIUM, "6.6.6.6", now=T0)
        self.store.log(EventType.LOGIN_FAILURE, Severity.MEDIUM, "6.6.6.6", now=T0 + 500)
        self.store.log(EventType.LOGIN_FAILURE, Severity.MEDIUM, "6.6.6.6", now=T0 + 1000)
        assert self.store.alerts() == []

    def test_failed_logins_grouped_by_source(self):
        for addr in ("1.1.1.1", "2.2.2.2", "3.3.3.3"):
            self.store.log(EventType.LOGIN_FAILURE, Severity.MEDIUM, addr, now=T0)
        assert self.store.alerts() == []

    @pytest.mark.parametrize("event_type", [EventType.ENCRYPTION_FAILURE, EventType.DECRYPTION_FAILURE])
    def test_crypto_failure_alert(self, event_type):
        self.store.log(event_type, Severity.HIGH, "internal", now=T0)
        alerts = self.store.alerts()
        assert len(alerts) == 1
        assert alerts[0].severity is Severity.HIGH

    def test_unrelated_event_no_alert(self):
        self.store.log(EventType.DATA_EXPORT, Severity.HIGH, "1.1.1.1", now=T0)
        assert self.store.alerts() == []


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------

class TestAcknowledge:
    def setup_method(self):
        self.store = EventStore()
        self.store.log(EventType.LOGIN_BRUTE_FORCE, Severity.HIGH, "6.6.6.6", now=T0)
        self.alert = self.store.alerts()[0]

    def test_second_acknowledgement_is_noop(self):
        assert self.store.acknowledge(self.alert.id, "alice", T0 + 1)
        assert not self.store.acknowledge(self.alert.id, "bob", T0 + 2)
        assert self.alert.acknowledged_by == "alice"
        assert self.alert.acknowledged_at == T0 + 1

    def test_active_only(self):
        self.store.acknowledge(self.alert.id, "alice")
        assert self.store.alerts(active_only=True) == []
        assert len(self.store.alerts()) == 1

    def test_unknown_alert(self):
        with pytest.raises(NotFoundError):
            self.store.acknowledge("alt_missing", "alice")

    def test_get_alert(self):
        assert self.store.get_alert(self.alert.id) is self.alert
        with pytest.raises(NotFoundError):
            self.store.get_alert("alt_missing")


# ---------------------------------------------------------------------------
# Subscribers
# ---------------------------------------------------------------------------

class TestSubscribers:
    def test_event_and_alert_callbacks(self):
        store = EventStore()
        on_event, on_alert = MagicMock(), MagicMock()
        store.subscribe(on_event)
        store.subscribe_alerts(on_alert)
        event = store.log(EventType.LOGIN_BRUTE_FORCE, Severity.HIGH, "6.6.6.6", now=T0)
        on_event.assert_called_once_with(event)
        assert on_alert.call_count == 1

    def test_failing_subscriber_does_not_break_log(self):
        store = EventStore()
        store.subscribe(MagicMock(side_effect=RuntimeError("sink down")))
        healthy = store.subscribe(MagicMock())
        store.log(EventType.SYSTEM_ERROR, Severity.LOW, "internal", now=T0)
        assert healthy.call_count == 1
        assert len(store) == 1

    def test_unsubscribe(self):
        store = EventStore()
        callback = store.subscribe(MagicMock())
        store.unsubscribe(callback)
        store.log(EventType.SYSTEM_ERROR, Severity.LOW, "internal", now=T0)
        callback.assert_not_called()


# ---------------------------------------------------------------------------
# Append and queries
# ---------------------------------------------------------------------------

class TestLog:
    def test_string_vocabulary_is_parsed(self):
        event = EventStore().log("data_export", "high", "1.1.1.1", now=T0)
        assert event.type is EventType.DATA_EXPORT
        assert event.severity is Severity.HIGH

    def test_unknown_type_rejected(self):
        with pytest.raises(ConfigurationError):
            EventStore().log("bogus", "high", "1.1.1.1")

    def test_retention_drops_oldest(self):
        store = EventStore(retention=3)
        ids = [store.log(EventType.SYSTEM_ERROR, Severity.LOW, "x", now=T0 + i).id for i in range(5)]
        assert len(store) == 3
        with pytest.raises(NotFoundError):
            store.get_event(ids[0])
        assert store.get_event(ids[4]).id == ids[4]


class TestEvents:
    def setup_method(self):
        self.store = EventStore()
        self.store.log(EventType.LOGIN_SUCCESS, Severity.LOW, "1.1.1.1", "alice", now=T0)
        self.store.log(EventType.DATA_EXPORT, Severity.HIGH, "1.1.1.1", "alice", now=T0 + 10)
        self.store.log(EventType.RATE_LIMIT_EXCEEDED, Severity.MEDIUM, "2.2.2.2", now=T0 + 20)

    def test_newest_first(self):
        page = self.store.events()
        assert [e.timestamp for e in page.events] == [T0 + 20, T0 + 10, T0]

    def test_filters(self):
        assert self.store.events(user_id="alice").total == 2
        assert self.store.events(source_address="2.2.2.2").total == 1
        assert self.store.events(severity="high").total == 1
        assert self.store.events(min_severity=Severity.MEDIUM).total == 2
        assert self.store.events(start=T0 + 5, end=T0 + 15).total == 1

    def test_pagination_keeps_total(self):
        page = self.store.events(limit=1, offset=1)
        assert page.total == 3
        assert [e.type for e in page.events] == [EventType.DATA_EXPORT]

    def test_resolve(self):
        event = self.store.events(type=EventType.DATA_EXPORT).events[0]
        assert self.store.resolve(event.id, "bob", T0 + 30)
        assert not self.store.resolve(event.id, "bob", T0 + 31)
        resolved = self.store.get_event(event.id)
        assert resolved.resolved_by == "bob"
        assert self.store.events(resolved=False).total == 2

    def test_resolve_unknown(self):
        with pytest.raises(NotFoundError):
            self.store.resolve("evt_missing", "bob")


class TestMetrics:
    def test_counts_and_rankings(self):
        store = EventStore()
        for i in range(3):
            store.log(EventType.RATE_LIMIT_EXCEEDED, Severity.MEDIUM, "9.9.9.9", now=T0 + i)
        store.log(EventType.LOGIN_BRUTE_FORCE, Severity.HIGH, "8.8.8.8", now=T0 + 5)

        metrics = store.metrics()
        assert metrics.total_events == 4
        assert metrics.events_by_type["rate_limit_exceeded"] == 3
        assert metrics.events_by_type["gdpr_request"] == 0
        assert metrics.events_by_severity == {"low": 0, "medium": 3, "high": 1, "critical": 0}
        assert metrics.top_threats[0] == {
            "type": "rate_limit_exceeded", "count": 3, "last_occurrence": T0 + 2,
        }
        assert metrics.suspicious_sources[0]["address"] == "9.9.9.9"
        assert metrics.active_alerts == 1

    def test_time_range(self):
        store = EventStore()
        store.log(EventType.SYSTEM_ERROR, Severity.LOW, "x", now=T0)
        store.log(EventType.SYSTEM_ERROR, Severity.LOW, "x", now=T0 + 100)
        assert store.metrics(start=T0 + 50).total_events == 1

    def test_top_threats_limited_to_five(self):
        store = EventStore()
        for t in list(EventType)[:8]:
            store.log(t, Severity.LOW, "x", now=T0)
        assert len(store.metrics().top_threats) == 5


# ---------------------------------------------------------------------------
# Addresses and authentication
# ---------------------------------------------------------------------------

class TestSuspiciousAddress:
    def test_more_than_ten_events_in_hour(self):
        store = EventStore()
        for i in range(10):
            store.log(EventType.SYSTEM_ERROR, Severity.LOW, "5.5.5.5", now=T0 + i)
        assert not store.is_suspicious_address("5.5.5.5", T0 + 20)
        store.log(EventType.SYSTEM_ERROR, Severity.LOW, "5.5.5.5", now=T0 + 21)
        assert store.is_suspicious_address("5.5.5.5", T0 + 22)
        assert not store.is_suspicious_address("5.5.5.5", T0 + 3700)

    def test_address_report(self):
        store = EventStore()
        store.log(EventType.SYSTEM_ERROR, Severity.LOW, "5.5.5.5", now=T0)
        report = store.address_report("5.5.5.5", T0 + 1)
        assert report["total_events"] == 1
        assert report["last_activity"] == T0
        assert not report["is_suspicious"]


class TestRecordAuthentication:
    def setup_method(self):
        self.store = EventStore()

    def test_failures_escalate_to_brute_force(self):
        events = [self.store.record_authentication(False, "6.6.6.6", "alice", now=T0 + i)
                  for i in range(5)]
        assert [e.type for e in events[:4]] == [EventType.LOGIN_FAILURE] * 4
        assert events[4].type is EventType.LOGIN_BRUTE_FORCE
        assert events[4].details["failed_attempts"] == 5

    def test_success_clears_tally(self):
        for i in range(3):
            self.store.record_authentication(False, "6.6.6.6", "alice", now=T0 + i)
        success = self.store.record_authentication(True, "6.6.6.6", "alice", now=T0 + 5)
        assert success.type is EventType.LOGIN_SUCCESS
        assert self.store.failed_login_attempts("6.6.6.6", T0 + 6) == 0

    def test_tally_expires(self):
        self.store.record_authentication(False, "6.6.6.6", "alice", now=T0)
        assert self.store.failed_login_attempts("6.6.6.6", T0 + 901) == 0

    def test_clear_failed_logins(self):
        self.store.record_authentication(False, "6.6.6.6", "alice", now=T0)
        self.store.clear_failed_logins("6.6.6.6")
        assert self.store.failed_login_attempts("6.6.6.6", T0 + 1) == 0


class TestDataAndCrypto:
    def setup_method(self):
        self.store = EventStore()

    def test_data_access_mapping(self):
        assert self.store.log_data_access("files", "export", "1.1.1.1", "u").type is EventType.DATA_EXPORT
        assert self.store.log_data_access("files", "delete", "1.1.1.1", "u").type is EventType.DATA_DELETION
        read = self.store.log_data_access("files", "read", "1.1.1.1", "u")
        assert read.type is EventType.SENSITIVE_DATA_ACCESS
        assert read.severity is Severity.LOW

    def test_data_access_invalid_action(self):
        with pytest.raises(ValidationError):
            self.store.log_data_access("files", "shred", "1.1.1.1", "u")

    def test_crypto_failure_raises_alert(self):
        event = self.store.log_crypto_event("decrypt", False, "internal")
        assert event.type is EventType.DECRYPTION_FAILURE
        assert len(self.store.alerts()) == 1

    def test_key_generation(self):
        event = self.store.log_crypto_event("key_generation", True, "internal")
        assert event.type is EventType.KEY_GENERATION
        assert event.severity is Severity.MEDIUM


class TestSweep:
    def test_sweep_drops_empty_windows(self):
        store = EventStore()
        store.log(EventType.LOGIN_FAILURE, Severity.MEDIUM, "6.6.6.6", now=T0)
        store.record_authentication(False, "7.7.7.7", now=T0)
        assert store.sweep(T0 + 4000) >= 3
        assert store.sweep(T0 + 4000) == 0

    def test_snapshot_is_plain_data(self):
        store = EventStore()
        event = store.log(EventType.LOGIN_BRUTE_FORCE, Severity.HIGH, "6.6.6.6", now=T0)
        snap = store.snapshot()
        assert [e["id"] for e in snap["events"]] == [event.id]
        assert snap["alerts"][0]["linked_event_ids"] == [event.id]
        assert snap["alerts"][0]["severity"] == "high"
