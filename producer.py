"""Synthetic inbound-request generator.

Simulates web traffic from configurable normal and abusive client profiles
and writes request records (the shape ``InboundRequest.from_dict`` reads)
to Kafka.  Login attempts are followed by an outcome record so the guard
can track failed logins.

Usage:
    python producer.py
    python producer.py --normal 20 --stuffers 2 --scrapers 2 --spammers 1
    python producer.py --rps 100 --topic inbound-requests
"""

import argparse
import json
import random
import signal
import time
import uuid
from dataclasses import dataclass

from confluent_kafka import Producer
from confluent_kafka.admin import AdminClient, NewTopic

BROWSER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/124.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_4) AppleWebKit/605.1.15 Version/17.4 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64; rv:125.0) Gecko/20100101 Firefox/125.0",
]
SCRIPT_AGENTS = ["curl/8.5.0", "python-requests/2.31", "Wget/1.21", "bot"]
BROWSE_PATHS = ["/", "/api/profile", "/api/files", "/api/messages", "/api/search"]
NORMAL_MESSAGES = [
    "Hi team, notes from today's meeting are attached.",
    "Can we move our call to Thursday afternoon?",
    "Thanks for the quick turnaround on the report.",
]
SPAM_MESSAGES = [
    "URGENT! You have won $1,000,000! Click here now! FREE MONEY!",
    "Congratulations!! Limited time offer, act now and claim your prize!!!",
    "Make money fast with this risk free investment, buy now!",
]

running = True


def _shutdown(sig, frame):
    global running
    print("\nShutting down generator...")
    running = False


signal.signal(signal.SIGINT, _shutdown)
signal.signal(signal.SIGTERM, _shutdown)


# ---------------------------------------------------------------------------
# Client profiles
# ---------------------------------------------------------------------------

@dataclass
class Client:
    address: str
    user_id: str | None
    role: str  # normal | stuffer | scraper | spammer
    requests_per_min: float
    user_agent: str
    login_failure_rate: float


def _create_clients(n_normal, n_stuffers, n_scrapers, n_spammers):
    """Build the client pool. Each client keeps one address for its lifetime."""
    clients = []
    host = 0

    def next_address(subnet):
        nonlocal host
        host += 1
        return f"{subnet}.{host // 250}.{host % 250 + 1}"

    for i in range(n_normal):
        clients.append(Client(
            address=next_address("10.0"), user_id=f"user_{i + 1:04d}", role="normal",
            requests_per_min=random.uniform(5, 40),
            user_agent=random.choice(BROWSER_AGENTS), login_failure_rate=0.05,
        ))

    # Credential stuffers: one target account each, guessed passwords
    for _ in range(n_stuffers):
        clients.append(Client(
            address=next_address("203.0"), user_id=f"user_{random.randint(1, max(n_normal, 1)):04d}",
            role="stuffer", requests_per_min=random.uniform(60, 200),
            user_agent=random.choice(SCRIPT_AGENTS), login_failure_rate=0.98,
        ))

    # Scrapers: high volume reads from scripted agents
    for _ in range(n_scrapers):
        clients.append(Client(
            address=next_address("198.51"), user_id=None, role="scraper",
            requests_per_min=random.uniform(120, 300),
            user_agent=random.choice(SCRIPT_AGENTS), login_failure_rate=0.0,
        ))

    # Spammers: authenticated accounts pushing promotional mail
    for i in range(n_spammers):
        clients.append(Client(
            address=next_address("192.0"), user_id=f"spam_{i + 1:03d}", role="spammer",
            requests_per_min=random.uniform(30, 90),
            user_agent=random.choice(BROWSER_AGENTS), login_failure_rate=0.0,
        ))

    return clients


# ---------------------------------------------------------------------------
# Record generation
# ---------------------------------------------------------------------------

def _base(client: Client, method: str, path: str) -> dict:
    return {
        "request_id": f"req_{uuid.uuid4().hex[:12]}",
        "timestamp": time.time(),
        "method": method,
        "path": path,
        "remote_address": client.address,
        "headers": {"user-agent": client.user_agent},
        "user_id": client.user_id,
    }


def _make_records(client: Client) -> list[dict]:
    """One request for a client, plus its outcome record for logins."""
    roll = random.random()

    if client.role == "stuffer" or (client.role == "normal" and roll < 0.05):
        record = _base(client, "POST", "/api/auth/login")
        record["body"] = {"username": client.user_id}
        outcome = dict(record, outcome=(
            "failure" if random.random() < client.login_failure_rate else "success"
        ))
        return [record, outcome]

    if client.role == "spammer" or (client.role == "normal" and roll < 0.15):
        record = _base(client, "POST", "/api/email/send")
        pool = SPAM_MESSAGES if client.role == "spammer" else NORMAL_MESSAGES
        record["body"] = {"subject": "Hello", "content": random.choice(pool)}
        return [record]

    record = _base(client, "GET", random.choice(BROWSE_PATHS))
    if client.role == "scraper":
        record["query"] = {"page": str(random.randint(1, 5000))}
    return [record]


# ---------------------------------------------------------------------------
# Initialization
# ---------------------------------------------------------------------------

def _ensure_topics(bootstrap_servers, topics):
    """Create Kafka topics if they don't already exist."""
    admin = AdminClient({"bootstrap.servers": bootstrap_servers})
    new_topics = [NewTopic(t, num_partitions=3, replication_factor=3) for t in topics]
    fs = admin.create_topics(new_topics)
    for topic, f in fs.items():
        try:
            f.result()
            print(f"Created topic '{topic}'")
        except Exception as e:
            if "TOPIC_ALREADY_EXISTS" in str(e):
                print(f"Topic '{topic}' already exists")
            else:
                raise


# ---------------------------------------------------------------------------
# Main loop
# ---------------------------------------------------------------------------

def main():
    parser = argparse.ArgumentParser(description="Synthetic request traffic generator")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--topic", default="inbound-requests")
    parser.add_argument("--normal", type=int, default=8)
    parser.add_argument("--stuffers", type=int, default=1)
    parser.add_argument("--scrapers", type=int, default=1)
    parser.add_argument("--spammers", type=int, default=1)
    parser.add_argument("--rps", type=float, default=50, help="Target requests/sec")
    args = parser.parse_args()

    clients = _create_clients(args.normal, args.stuffers, args.scrapers, args.spammers)
    weights = [c.requests_per_min for c in clients]

    print(f"Generating to topic '{args.topic}' at ~{args.rps} requests/sec")
    print(f"Clients: {len(clients)} total")
    for c in clients:
        print(f"  {c.address:<15s} {c.role:<8s} ~{c.requests_per_min:>6.0f} rpm  "
              f"user={c.user_id or '-'}")

    _ensure_topics(args.bootstrap_servers, [args.topic])

    producer = Producer({
        "bootstrap.servers": args.bootstrap_servers,
        "acks": "all",
        "client.id": "request-generator",
    })

    count = 0
    delay = 1.0 / args.rps

    while running:
        client = random.choices(clients, weights=weights, k=1)[0]
        for record in _make_records(client):
            producer.produce(
                topic=args.topic,
                key=client.address.encode(),
                value=json.dumps(record),
            )
            count += 1
        producer.poll(0)

        if count % 500 == 0:
            print(f"  ... {count} records produced")

        time.sleep(delay)

    producer.flush()
    print(f"Done. {count} records produced.")


if __name__ == "__main__":
    main()
