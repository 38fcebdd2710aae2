"""Guard service: reads inbound request records, runs the guard, produces decisions.

Consumes JSON request records from inbound-requests, runs each one through
AbuseGuard.inspect, and publishes the decision to guard-decisions.  Security
events and alerts are forwarded to security-events / security-alerts for
the metrics exporter and any downstream SIEM.

A record may carry an ``outcome`` ("success" / "failure") once the upstream
handler has run; those records are fed to record_outcome instead of being
inspected again.

Usage:
    python -m guard.main
    python -m guard.main --bootstrap-servers kafka-1:29092 --config guard.yml
"""

import argparse
import json
import logging
import signal
import sys

from confluent_kafka import Consumer, Producer, KafkaError
from confluent_kafka.admin import AdminClient, NewTopic

from guard.config import GuardConfig, load_config
from guard.engine import AbuseGuard
from guard.request import InboundRequest
from guard.sinks import ALERTS_TOPIC, EVENTS_TOPIC, KafkaForwarder, LogSink

logger = logging.getLogger(__name__)

running = True


def _shutdown(sig, frame):
    global running
    print("\nShutting down guard...")
    running = False


def _ensure_topics(bootstrap_servers, topics):
    """Create output topics if they don't already exist."""
    admin = AdminClient({"bootstrap.servers": bootstrap_servers})
    fs = admin.create_topics([NewTopic(t, num_partitions=3, replication_factor=3) for t in topics])
    for t, f in fs.items():
        try:
            f.result()
            print(f"Created topic '{t}'")
        except Exception as e:
            if "TOPIC_ALREADY_EXISTS" in str(e):
                print(f"Topic '{t}' already exists")
            else:
                raise


def handle_record(guard: AbuseGuard, record: dict) -> dict | None:
    """Process one request record.  Returns the decision to publish, if any.

    Outcome records only produce a decision when the failed login fired an
    abuse pattern, so a challenge or block reaches the caller.
    """
    request = InboundRequest.from_dict(record)
    now = record.get("timestamp")
    outcome = record.get("outcome")
    if outcome is not None:
        triggered = guard.record_outcome(request, outcome == "success", now)
        if not triggered:
            return None
        decision = guard.enforce(request, triggered, now).to_dict()
        decision["outcome"] = outcome
    else:
        decision = guard.inspect(request, now).to_dict()
    decision["request_id"] = record.get("request_id")
    decision["source_address"] = request.source_address
    decision["path"] = request.path
    return decision


def main():
    parser = argparse.ArgumentParser(description="Abuse guard service")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--input-topic", default="inbound-requests")
    parser.add_argument("--output-topic", default="guard-decisions")
    parser.add_argument("--group-id", default="abuse-guard")
    parser.add_argument("--config", help="YAML file of GuardConfig settings")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    config = load_config(args.config) if args.config else GuardConfig()
    _ensure_topics(args.bootstrap_servers, [args.output_topic, EVENTS_TOPIC, ALERTS_TOPIC])

    consumer = Consumer({
        "bootstrap.servers": args.bootstrap_servers,
        "group.id": args.group_id,
        "auto.offset.reset": "earliest",
        "enable.auto.commit": True,
    })
    consumer.subscribe([args.input_topic])

    producer = Producer({"bootstrap.servers": args.bootstrap_servers})
    forwarder = KafkaForwarder(producer=producer)

    guard = AbuseGuard(config, on_shutdown=lambda g: forwarder.flush())
    LogSink().attach(guard.store)
    forwarder.attach(guard.store)
    guard.start()

    consumed = 0
    denied = 0
    errors = 0

    print(f"Guard started  input={args.input_topic}  output={args.output_topic}  "
          f"rate_limits={len(guard.rate_limiter.rules())}  "
          f"patterns={len(guard.detector.patterns())}")

    try:
        while running:
            msg = consumer.poll(1.0)
            if msg is None:
                continue
            if msg.error():
                if msg.error().code() == KafkaError._PARTITION_EOF:
                    continue
                print(f"Consumer error: {msg.error()}", file=sys.stderr)
                continue

            try:
                record = json.loads(msg.value().decode("utf-8"))
            except (json.JSONDecodeError, UnicodeDecodeError):
                print("Skipping malformed request record", file=sys.stderr)
                continue
            consumed += 1

            try:
                decision = handle_record(guard, record)
            except Exception:
                errors += 1
                logger.exception("Failed to process request record")
                continue

            if decision is not None:
                producer.produce(
                    args.output_topic,
                    key=decision["source_address"].encode("utf-8"),
                    value=json.dumps(decision).encode("utf-8"),
                )
                if not decision["allowed"]:
                    denied += 1
                    print(f"DENY   status={decision['status']}  "
                          f"source={decision['source_address']:<15s} "
                          f"path={decision['path']}  reason={decision['reason']}")

            if consumed % 1000 == 0:
                producer.flush()

            if consumed % 500 == 0:
                print(f"  ... {consumed} requests inspected, {denied} denied, "
                      f"{len(guard.store)} security events, {errors} errors")
    finally:
        guard.shutdown()
        producer.flush()
        consumer.close()
        print(f"Done. {consumed} requests inspected, {denied} denied, {errors} errors.")


if __name__ == "__main__":
    main()
