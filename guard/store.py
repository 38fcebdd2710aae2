"""Event store: append-only security audit log with synchronous correlation.

Every component records through ``log()``.  After the append, the
correlation rules run against the new event (same filter/route/accumulate/
evaluate loop the detector uses), and any resulting alerts are stored and
pushed to alert subscribers.  Subscribers (log sink, metrics exporter, SIEM
forwarder) are plain callables invoked synchronously, outside the store
lock, after the event is durable in memory.

State:
  _events                 ordered list, oldest first, capped at ``retention``
  _state[rule][key]       SlidingWindow of matching events per correlation rule
  _address_windows[addr]  SlidingWindow of all events for suspicious-address checks
  _failed_logins[addr]    SlidingWindow of failed authentication timestamps
"""

import dataclasses
import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass

from guard.correlation import ALL_RULES, CorrelationRule
from guard.errors import NotFoundError, ValidationError
from guard.events import EventType, SecurityAlert, SecurityEvent, Severity, new_id
from guard.sliding_window import SlidingWindow

logger = logging.getLogger(__name__)

_TOP_THREATS = 5
_TOP_SOURCES = 10
_DATA_ACTIONS = ("read", "write", "delete", "export")
_CRYPTO_OPERATIONS = ("encrypt", "decrypt", "key_generation")


@dataclass(frozen=True)
class EventPage:
    events: list
    total: int


@dataclass
class SecurityMetrics:
    total_events: int
    events_by_type: dict
    events_by_severity: dict
    active_alerts: int
    acknowledged_alerts: int
    top_threats: list
    suspicious_sources: list

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)


class EventStore:

    def __init__(self, rules: list[CorrelationRule] | None = None,
                 suspicious_threshold: int = 10,
                 suspicious_window_seconds: float = 3600,
                 failed_login_window_seconds: float = 900,
                 brute_force_threshold: int = 5,
                 retention: int = 100_000):
        self.rules = ALL_RULES if rules is None else rules
        self.suspicious_threshold = suspicious_threshold
        self.suspicious_window_seconds = suspicious_window_seconds
        self.failed_login_window_seconds = failed_login_window_seconds
        self.brute_force_threshold = brute_force_threshold
        self.retention = retention

        self._events: list[SecurityEvent] = []
        self._by_id: dict[str, SecurityEvent] = {}
        self._alerts: list[SecurityAlert] = []
        self._alerts_by_id: dict[str, SecurityAlert] = {}

        self._state: dict[str, dict[str, SlidingWindow]] = {r.id: {} for r in self.rules}
        self._address_windows: dict[str, SlidingWindow] = {}
        self._failed_logins: dict[str, SlidingWindow] = {}

        self._lock = threading.RLock()
        self._subscribers = []
        self._alert_subscribers = []

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, callback):
        """Call ``callback(event)`` for every logged event. Returns callback."""
        self._subscribers.append(callback)
        return callback

    def subscribe_alerts(self, callback):
        """Call ``callback(alert)`` for every raised alert. Returns callback."""
        self._alert_subscribers.append(callback)
        return callback

    def unsubscribe(self, callback) -> None:
        for registry in (self._subscribers, self._alert_subscribers):
            if callback in registry:
                registry.remove(callback)

    # ------------------------------------------------------------------
    # Append
    # ------------------------------------------------------------------

    def log(self, type, severity, source_address: str,
            subject_user_id: str | None = None, details: dict | None = None,
            now: float | None = None, user_agent: str = "unknown") -> SecurityEvent:
        now = time.time() if now is None else now
        event = SecurityEvent(
            id=new_id("evt"),
            timestamp=now,
            type=EventType.parse(type),
            severity=Severity.parse(severity),
            source_address=source_address or "unknown",
            user_agent=user_agent or "unknown",
            subject_user_id=subject_user_id,
            details=dict(details or {}),
        )
        with self._lock:
            self._append(event)
            self._track_address(event, now)
            alerts = self._correlate(event, now)

        self._publish(self._subscribers, event)
        for alert in alerts:
            self._publish(self._alert_subscribers, alert)
        return event

    def _append(self, event: SecurityEvent) -> None:
        self._events.append(event)
        self._by_id[event.id] = event
        overflow = len(self._events) - self.retention
        if overflow > 0:
            for old in self._events[:overflow]:
                self._by_id.pop(old.id, None)
            del self._events[:overflow]

    def _track_address(self, event: SecurityEvent, now: float) -> None:
        window = self._address_windows.get(event.source_address)
        if window is None:
            window = SlidingWindow(self.suspicious_window_seconds)
            self._address_windows[event.source_address] = window
        window.add(event.timestamp, event.id, now)

    def _correlate(self, event: SecurityEvent, now: float) -> list[SecurityAlert]:
        """Run every correlation rule against the new event.

        For each rule:
          1. Filter:     does this event type matter to the rule?
          2. Route:      windowed rules keep one window per group key
          3. Accumulate: add the event to that window
          4. Evaluate:   ask the rule whether the window warrants an alert
        """
        alerts = []
        for rule in self.rules:
            if not rule.match(event):
                continue

            if rule.window_seconds is None:
                evidence = [event]
            else:
                key = rule.group_key(event)
                windows = self._state.setdefault(rule.id, {})
                if key not in windows:
                    windows[key] = SlidingWindow(rule.window_seconds)
                windows[key].add(event.timestamp, event, now)
                evidence = windows[key].items(now)

            if rule.trigger(evidence):
                alert = SecurityAlert(
                    id=new_id("alt"),
                    timestamp=now,
                    correlation_type=rule.id,
                    severity=rule.severity,
                    message=rule.message(event),
                    linked_event_ids=tuple(e.id for e in evidence),
                    source_address=event.source_address,
                )
                self._alerts.append(alert)
                self._alerts_by_id[alert.id] = alert
                alerts.append(alert)
        return alerts

    def _publish(self, subscribers, record) -> None:
        for callback in list(subscribers):
            try:
                callback(record)
            except Exception:
                logger.exception("Subscriber %r failed on %s", callback, record.id)

    # ------------------------------------------------------------------
    # Authentication bookkeeping
    # ------------------------------------------------------------------

    def record_authentication(self, success: bool, source_address: str,
                              user_id: str | None = None, details: dict | None = None,
                              now: float | None = None,
                              user_agent: str = "unknown") -> SecurityEvent:
        """Log a login outcome.

        Success clears the source's failure tally.  Failures inside the
        failed-login window are tallied per source; from the
        ``brute_force_threshold``-th failure on, the event is escalated to
        login_brute_force.
        """
        now = time.time() if now is None else now
        details = dict(details or {})

        if success:
            with self._lock:
                self._failed_logins.pop(source_address, None)
            details.setdefault("method", "password")
            return self.log(EventType.LOGIN_SUCCESS, Severity.LOW, source_address,
                            user_id, details, now, user_agent)

        with self._lock:
            window = self._failed_logins.get(source_address)
            if window is None:
                window = SlidingWindow(self.failed_login_window_seconds)
                self._failed_logins[source_address] = window
            window.add(now, user_id, now)
            failures = window.count(now)

        details["failed_attempts"] = failures
        if failures >= self.brute_force_threshold:
            return self.log(EventType.LOGIN_BRUTE_FORCE, Severity.HIGH, source_address,
                            user_id, details, now, user_agent)
        return self.log(EventType.LOGIN_FAILURE, Severity.MEDIUM, source_address,
                        user_id, details, now, user_agent)

    def failed_login_attempts(self, source_address: str, now: float | None = None) -> int:
        now = time.time() if now is None else now
        with self._lock:
            window = self._failed_logins.get(source_address)
            return window.count(now) if window is not None else 0

    def clear_failed_logins(self, source_address: str) -> None:
        with self._lock:
            self._failed_logins.pop(source_address, None)

    def log_data_access(self, data_type: str, action: str, source_address: str,
                        user_id: str, details: dict | None = None,
                        now: float | None = None) -> SecurityEvent:
        if action not in _DATA_ACTIONS:
            raise ValidationError(f"Unknown data access action: {action!r}")
        if action == "export":
            event_type, severity = EventType.DATA_EXPORT, Severity.HIGH
        elif action == "delete":
            event_type, severity = EventType.DATA_DELETION, Severity.HIGH
        else:
            event_type, severity = EventType.SENSITIVE_DATA_ACCESS, Severity.LOW
        return self.log(event_type, severity, source_address, user_id,
                        {"data_type": data_type, "action": action, **(details or {})}, now)

    def log_crypto_event(self, operation: str, success: bool, source_address: str,
                         user_id: str | None = None, details: dict | None = None,
                         now: float | None = None) -> SecurityEvent:
        if operation not in _CRYPTO_OPERATIONS:
            raise ValidationError(f"Unknown crypto operation: {operation!r}")
        if operation == "key_generation":
            event_type, severity = EventType.KEY_GENERATION, Severity.MEDIUM
        elif success:
            event_type, severity = EventType.SENSITIVE_DATA_ACCESS, Severity.LOW
        elif operation == "encrypt":
            event_type, severity = EventType.ENCRYPTION_FAILURE, Severity.HIGH
        else:
            event_type, severity = EventType.DECRYPTION_FAILURE, Severity.HIGH
        return self.log(event_type, severity, source_address, user_id,
                        {"operation": operation, "success": success, **(details or {})}, now)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_suspicious_address(self, source_address: str, now: float | None = None) -> bool:
        """More than ``suspicious_threshold`` events from the address in the window."""
        now = time.time() if now is None else now
        with self._lock:
            window = self._address_windows.get(source_address)
            if window is None:
                return False
            return window.count(now) > self.suspicious_threshold

    def events(self, type=None, severity=None, min_severity=None,
               user_id: str | None = None, source_address: str | None = None,
               start: float | None = None, end: float | None = None,
               resolved: bool | None = None, limit: int | None = None,
               offset: int = 0) -> EventPage:
        """Filtered events, newest first, with the pre-pagination total."""
        event_type = EventType.parse(type) if type is not None else None
        exact = Severity.parse(severity) if severity is not None else None
        floor = Severity.parse(min_severity) if min_severity is not None else None

        with self._lock:
            selected = [
                e for e in self._events
                if (event_type is None or e.type is event_type)
                and (exact is None or e.severity is exact)
                and (floor is None or e.severity >= floor)
                and (user_id is None or e.subject_user_id == user_id)
                and (source_address is None or e.source_address == source_address)
                and (start is None or e.timestamp >= start)
                and (end is None or e.timestamp <= end)
                and (resolved is None or e.resolved == resolved)
            ]
        selected.sort(key=lambda e: e.timestamp, reverse=True)
        total = len(selected)
        if offset:
            selected = selected[offset:]
        if limit is not None:
            selected = selected[:limit]
        return EventPage(selected, total)

    def get_event(self, event_id: str) -> SecurityEvent:
        try:
            return self._by_id[event_id]
        except KeyError:
            raise NotFoundError(f"Unknown security event: {event_id}") from None

    def resolve(self, event_id: str, by: str, now: float | None = None) -> bool:
        """Mark an event resolved. False if it already was."""
        now = time.time() if now is None else now
        with self._lock:
            event = self.get_event(event_id)
            if event.resolved:
                return False
            updated = dataclasses.replace(event, resolved=True, resolved_by=by, resolved_at=now)
            self._by_id[event_id] = updated
            for index in range(len(self._events) - 1, -1, -1):
                if self._events[index].id == event_id:
                    self._events[index] = updated
                    break
        return True

    def metrics(self, start: float | None = None, end: float | None = None) -> SecurityMetrics:
        with self._lock:
            events = [
                e for e in self._events
                if (start is None or e.timestamp >= start)
                and (end is None or e.timestamp <= end)
            ]
            active = sum(1 for a in self._alerts if not a.acknowledged)
            acknowledged = len(self._alerts) - active

        by_type = {t.value: 0 for t in EventType}
        by_severity = {s.value: 0 for s in Severity}
        last_by_type = {}
        by_source = Counter()
        last_by_source = {}
        for e in events:
            by_type[e.type.value] += 1
            by_severity[e.severity.value] += 1
            last_by_type[e.type.value] = max(last_by_type.get(e.type.value, e.timestamp), e.timestamp)
            by_source[e.source_address] += 1
            last_by_source[e.source_address] = max(
                last_by_source.get(e.source_address, e.timestamp), e.timestamp
            )

        type_counts = Counter({t: n for t, n in by_type.items() if n})
        top_threats = [
            {"type": t, "count": n, "last_occurrence": last_by_type[t]}
            for t, n in type_counts.most_common(_TOP_THREATS)
        ]
        suspicious_sources = [
            {"address": addr, "event_count": n, "last_activity": last_by_source[addr]}
            for addr, n in by_source.most_common(_TOP_SOURCES)
        ]
        return SecurityMetrics(
            total_events=len(events),
            events_by_type=by_type,
            events_by_severity=by_severity,
            active_alerts=active,
            acknowledged_alerts=acknowledged,
            top_threats=top_threats,
            suspicious_sources=suspicious_sources,
        )

    def address_report(self, source_address: str, now: float | None = None) -> dict:
        now = time.time() if now is None else now
        page = self.events(source_address=source_address, limit=10)
        return {
            "address": source_address,
            "is_suspicious": self.is_suspicious_address(source_address, now),
            "failed_login_attempts": self.failed_login_attempts(source_address, now),
            "total_events": page.total,
            "last_activity": page.events[0].timestamp if page.events else None,
            "events": [e.to_dict() for e in page.events],
        }

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def alerts(self, active_only: bool = False) -> list[SecurityAlert]:
        with self._lock:
            selected = [a for a in self._alerts if not (active_only and a.acknowledged)]
        selected.sort(key=lambda a: a.timestamp, reverse=True)
        return selected

    def get_alert(self, alert_id: str) -> SecurityAlert:
        try:
            return self._alerts_by_id[alert_id]
        except KeyError:
            raise NotFoundError(f"Unknown security alert: {alert_id}") from None

    def acknowledge(self, alert_id: str, who: str, now: float | None = None) -> bool:
        """Acknowledge an alert once. A repeat acknowledgement returns False."""
        now = time.time() if now is None else now
        with self._lock:
            alert = self.get_alert(alert_id)
            if alert.acknowledged:
                return False
            alert.acknowledged = True
            alert.acknowledged_by = who
            alert.acknowledged_at = now
        logger.info("Alert %s acknowledged by %s", alert_id, who)
        return True

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def sweep(self, now: float | None = None) -> int:
        """Drop windows that have emptied out. Returns how many."""
        now = time.time() if now is None else now
        removed = 0
        with self._lock:
            tables = [*self._state.values(), self._address_windows, self._failed_logins]
            for table in tables:
                for key in list(table):
                    if table[key].count(now) == 0:
                        del table[key]
                        removed += 1
        return removed

    def snapshot(self) -> dict:
        """Plain-data copy of events and alerts for a durability collaborator."""
        with self._lock:
            return {
                "events": [e.to_dict() for e in self._events],
                "alerts": [a.to_dict() for a in self._alerts],
            }

    def __len__(self) -> int:
        return len(self._events)
