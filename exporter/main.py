"""Prometheus metrics exporter: consumes security events and exposes metrics.

Subscribes to both security-events and security-alerts topics, updating
Prometheus counters and gauges as records arrive.  Grafana reads from
Prometheus to render the abuse dashboard.

Usage:
    python -m exporter.main
    python -m exporter.main --bootstrap-servers kafka-1:29092 --port 9090
"""

import argparse
import json
import signal
import sys
import time

from confluent_kafka import Consumer, KafkaError
from prometheus_client import Counter, Gauge, start_http_server

from exporter.metrics import PrometheusSink
from guard.sinks import ALERTS_TOPIC, EVENTS_TOPIC

# ---------------------------------------------------------------------------
# Exporter health
# ---------------------------------------------------------------------------
records_per_second = Gauge(
    "guard_exporter_records_per_second",
    "Current record processing rate",
)
export_errors_total = Counter(
    "guard_export_errors_total",
    "JSON parse or Kafka consumer errors in the exporter",
)

running = True


def _shutdown(sig, frame):
    global running
    print("\nShutting down exporter...")
    running = False


def main():
    parser = argparse.ArgumentParser(description="Prometheus metrics exporter")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument(
        "--port", type=int, default=9090, help="Prometheus metrics HTTP port",
    )
    args = parser.parse_args()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    sink = PrometheusSink()
    start_http_server(args.port)
    print(f"Prometheus metrics server started on :{args.port}")

    consumer = Consumer({
        "bootstrap.servers": args.bootstrap_servers,
        "group.id": "metrics-exporter",
        "auto.offset.reset": "latest",
        "enable.auto.commit": True,
    })
    consumer.subscribe([EVENTS_TOPIC, ALERTS_TOPIC])

    count = 0
    window_start = time.time()
    window_count = 0

    print(f"Exporter consuming from {EVENTS_TOPIC} + {ALERTS_TOPIC} ...")

    try:
        while running:
            msg = consumer.poll(1.0)
            if msg is None:
                continue
            if msg.error():
                if msg.error().code() == KafkaError._PARTITION_EOF:
                    continue
                export_errors_total.inc()
                print(f"Consumer error: {msg.error()}", file=sys.stderr)
                continue

            try:
                data = json.loads(msg.value().decode("utf-8"))
            except (json.JSONDecodeError, UnicodeDecodeError):
                export_errors_total.inc()
                continue

            if msg.topic() == EVENTS_TOPIC:
                sink.on_event(data)
            elif msg.topic() == ALERTS_TOPIC:
                sink.on_alert(data)

            count += 1
            window_count += 1

            now = time.time()
            elapsed = now - window_start
            if elapsed >= 1.0:
                records_per_second.set(window_count / elapsed)
                window_start = now
                window_count = 0

            if count % 5000 == 0:
                print(f"  ... {count} records exported to metrics")
    finally:
        consumer.close()
        print(f"Exporter done. {count} records processed.")


if __name__ == "__main__":
    main()
