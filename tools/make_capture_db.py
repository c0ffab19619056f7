"""Generate a small capture database for trying out the layer builder.

The table mirrors what the capture pipeline writes: one row per reassembled
protocol message with an msgpack payload.  Payload shapes vary between
messages on purpose (optional fields, nested lists, integer and binary keys)
so wildcard bindings have something to generalize over.

Example
-------
python tools/make_capture_db.py --output demo.sqlite --sessions 2 --messages 40
semantic-layer demo.sqlite demo-layer.toml
"""

from __future__ import annotations

import argparse
import hashlib
import random
import sqlite3
from pathlib import Path

import msgpack

SCHEMA = """
CREATE TABLE IF NOT EXISTS tcp_proto_messages (
    client_addr TEXT NOT NULL,
    server_addr TEXT NOT NULL,
    proto TEXT NOT NULL,
    size INTEGER NOT NULL,
    packets INTEGER NOT NULL,
    data BLOB NOT NULL,
    version INTEGER NOT NULL,
    hash TEXT NOT NULL,
    session TEXT NOT NULL,
    timestamp TEXT NOT NULL
)
"""

PROTOCOLS = ("login", "heartbeat", "inventory", "chat")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--output", type=Path, required=True, help="SQLite file to create")
    parser.add_argument("--sessions", type=int, default=2, help="Number of sessions (default: 2)")
    parser.add_argument("--messages", type=int, default=40, help="Messages per session (default: 40)")
    parser.add_argument("--seed", type=int, default=7, help="Random seed (default: 7)")
    parser.add_argument(
        "--garbage-every",
        type=int,
        default=17,
        help="Write an undecodable payload every N messages (0 disables)",
    )
    return parser


def make_payload(rng: random.Random, proto: str, sequence: int) -> dict:
    if proto == "login":
        payload = {1: sequence, 2: f"user{rng.randint(1, 99)}", 3: rng.randbytes(8)}
        if rng.random() < 0.5:
            payload[4] = {"locale": "en", "build": rng.randint(1000, 2000)}
        return payload
    if proto == "heartbeat":
        return {1: sequence, 5: rng.randint(0, 2**32), b"\x00\x07": rng.random()}
    if proto == "inventory":
        items = [{"id": rng.randint(1, 500), "qty": rng.randint(1, 9)} for _ in range(rng.randint(0, 4))]
        return {1: sequence, "items": items, "owner": {"id": rng.randint(1, 99), "flags": [True, False]}}
    return {1: sequence, "to": rng.randint(1, 99), "text": rng.choice(["hi", "gg", "brb", "o/"])}


def populate(conn: sqlite3.Connection, *, sessions: int, messages: int, seed: int, garbage_every: int) -> int:
    rng = random.Random(seed)
    rows = []
    for session_index in range(sessions):
        session = f"s{session_index + 1}"
        for sequence in range(messages):
            proto = rng.choice(PROTOCOLS)
            if garbage_every and sequence and sequence % garbage_every == 0:
                data = b"\xc1" + rng.randbytes(6)
            else:
                data = msgpack.packb(make_payload(rng, proto, sequence), use_bin_type=True)
            rows.append(
                (
                    f"10.0.0.{session_index + 2}:{40000 + sequence}",
                    "10.0.0.1:7777",
                    proto,
                    len(data),
                    1 + len(data) // 1400,
                    data,
                    1,
                    hashlib.sha256(data).hexdigest(),
                    session,
                    f"2026-10-18T09:{session_index:02d}:{sequence % 60:02d}Z",
                )
            )
    conn.executemany("INSERT INTO tcp_proto_messages VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)", rows)
    return len(rows)


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    output = args.output.expanduser().resolve()
    output.parent.mkdir(parents=True, exist_ok=True)
    with sqlite3.connect(output) as conn:
        conn.execute(SCHEMA)
        count = populate(
            conn,
            sessions=args.sessions,
            messages=args.messages,
            seed=args.seed,
            garbage_every=args.garbage_every,
        )
    print("database:", output)
    print("rows written:", count)


if __name__ == "__main__":
    main()
