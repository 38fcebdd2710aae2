"""Event-store subscribers: structured log output and Kafka forwarding.

Both are plain callables.  Wire them up with::

    store.subscribe(sink.on_event)
    store.subscribe_alerts(sink.on_alert)
"""

import json
import logging

from confluent_kafka import Producer

from guard.events import SecurityAlert, SecurityEvent, Severity

logger = logging.getLogger("guard.security")

EVENTS_TOPIC = "security-events"
ALERTS_TOPIC = "security-alerts"

_LEVELS = {
    Severity.LOW: logging.INFO,
    Severity.MEDIUM: logging.WARNING,
    Severity.HIGH: logging.ERROR,
    Severity.CRITICAL: logging.ERROR,
}


class LogSink:

    def __init__(self, log: logging.Logger | None = None):
        self.log = log or logger

    def on_event(self, event: SecurityEvent) -> None:
        self.log.log(
            _LEVELS[event.severity],
            "Security event %s severity=%s source=%s user=%s details=%s",
            event.type.value, event.severity.value, event.source_address,
            event.subject_user_id or "-", json.dumps(event.details, default=str),
        )

    def on_alert(self, alert: SecurityAlert) -> None:
        self.log.error(
            "Security alert %s severity=%s: %s (events=%d)",
            alert.correlation_type, alert.severity.value, alert.message,
            len(alert.linked_event_ids),
        )

    def attach(self, store) -> "LogSink":
        store.subscribe(self.on_event)
        store.subscribe_alerts(self.on_alert)
        return self


class KafkaForwarder:
    """Publish events and alerts as JSON, keyed by source address."""

    def __init__(self, bootstrap_servers: str = "localhost:9092",
                 events_topic: str = EVENTS_TOPIC, alerts_topic: str = ALERTS_TOPIC,
                 producer=None):
        self.events_topic = events_topic
        self.alerts_topic = alerts_topic
        self.producer = producer or Producer({
            "bootstrap.servers": bootstrap_servers,
            "client.id": "abuse-guard",
        })
        self.forwarded = 0

    def on_event(self, event: SecurityEvent) -> None:
        self._produce(self.events_topic, event.source_address, event.to_dict())

    def on_alert(self, alert: SecurityAlert) -> None:
        self._produce(self.alerts_topic, alert.source_address or "unknown", alert.to_dict())

    def _produce(self, topic: str, key: str, record: dict) -> None:
        self.producer.produce(
            topic,
            key=key.encode("utf-8"),
            value=json.dumps(record, default=str).encode("utf-8"),
        )
        self.producer.poll(0)
        self.forwarded += 1

    def attach(self, store) -> "KafkaForwarder":
        store.subscribe(self.on_event)
        store.subscribe_alerts(self.on_alert)
        return self

    def flush(self, timeout: float = 10.0) -> int:
        """Block until buffered records are delivered. Returns how many remain."""
        return self.producer.flush(timeout)
