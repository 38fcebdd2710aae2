"""Prometheus metrics for security events and alerts.

``PrometheusSink`` works from either direction: subscribe it to an
in-process EventStore (records are SecurityEvent / SecurityAlert objects),
or feed it the JSON dicts the guard service forwards over Kafka.
"""

from prometheus_client import REGISTRY, Counter, Gauge


def _value(record, name, default="unknown"):
    if isinstance(record, dict):
        value = record.get(name, default)
    else:
        value = getattr(record, name, default)
    value = getattr(value, "value", value)
    return default if value is None else value


class PrometheusSink:

    def __init__(self, registry=REGISTRY):
        # ---------------------------------------------------------------
        # Event metrics
        # ---------------------------------------------------------------
        self.events_total = Counter(
            "guard_security_events_total",
            "Security events recorded",
            ["event_type", "severity"],
            registry=registry,
        )
        self.rate_limited_total = Counter(
            "guard_rate_limited_total",
            "Requests denied by a rate limit rule",
            ["rule_id"],
            registry=registry,
        )
        self.patterns_fired_total = Counter(
            "guard_patterns_fired_total",
            "Abuse pattern detections",
            ["pattern_id", "action"],
            registry=registry,
        )
        self.lockouts_total = Counter(
            "guard_account_lockouts_total",
            "Accounts locked",
            registry=registry,
        )
        # ---------------------------------------------------------------
        # Alert metrics
        # ---------------------------------------------------------------
        self.alerts_total = Counter(
            "guard_security_alerts_total",
            "Correlation alerts raised",
            ["correlation_type", "severity"],
            registry=registry,
        )
        self.last_alert = Gauge(
            "guard_last_alert_timestamp_seconds",
            "Unix time of the most recent alert",
            registry=registry,
        )

    def on_event(self, event) -> None:
        event_type = _value(event, "type")
        self.events_total.labels(event_type=event_type, severity=_value(event, "severity")).inc()

        details = _value(event, "details", {}) or {}
        if event_type == "rate_limit_exceeded":
            self.rate_limited_total.labels(rule_id=details.get("rule_id", "unknown")).inc()
        elif event_type == "account_lockout":
            self.lockouts_total.inc()
        elif "pattern_id" in details:
            self.patterns_fired_total.labels(
                pattern_id=details["pattern_id"], action=details.get("action", "unknown"),
            ).inc()

    def on_alert(self, alert) -> None:
        self.alerts_total.labels(
            correlation_type=_value(alert, "correlation_type"),
            severity=_value(alert, "severity"),
        ).inc()
        self.last_alert.set(_value(alert, "timestamp", 0))

    def attach(self, store) -> "PrometheusSink":
        store.subscribe(self.on_event)
        store.subscribe_alerts(self.on_alert)
        return self
