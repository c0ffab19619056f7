from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Callable, Iterable, Tuple

import msgpack
import pytest

# (session, proto, timestamp, payload)
Row = Tuple[str, str, str, bytes]

GARBAGE = b"\xc1\x00\x01"


def pack(value: object) -> bytes:
    return msgpack.packb(value, use_bin_type=True)


SAMPLE_ROWS: Tuple[Row, ...] = (
    ("s1", "login", "2026-10-18T09:00:00Z", pack({"a": {"x": 1, "y": 2}, "seq": 0})),
    ("s1", "heartbeat", "2026-10-18T09:00:01Z", pack({"a": {"x": 3}, "seq": 1})),
    ("s1", "login", "2026-10-18T09:00:02Z", GARBAGE),
    ("s1", "chat", "2026-10-18T09:00:03Z", pack({"a": {"z": [1, 2]}, "seq": 3})),
    ("s1", "chat", "2026-10-18T09:00:04Z", pack({"seq": 4})),
    ("s2", "login", "2026-10-18T10:00:00Z", pack({"b": 1})),
    ("s2", "chat", "2026-10-18T10:00:01Z", b'{"b": 2, "note": "json payload"}'),
)


def write_capture_db(path: Path, rows: Iterable[Row]) -> Path:
    conn = sqlite3.connect(path)
    try:
        conn.execute(
            "CREATE TABLE tcp_proto_messages ("
            "client_addr TEXT, server_addr TEXT, proto TEXT, session TEXT, timestamp TEXT, data BLOB)"
        )
        conn.executemany(
            "INSERT INTO tcp_proto_messages (client_addr, server_addr, proto, session, timestamp, data) "
            "VALUES ('10.0.0.2:40000', '10.0.0.1:7777', ?, ?, ?, ?)",
            [(proto, session, timestamp, payload) for session, proto, timestamp, payload in rows],
        )
        conn.commit()
    finally:
        conn.close()
    return path


@pytest.fixture()
def capture_db_factory(tmp_path: Path) -> Callable[..., Path]:
    def factory(rows: Iterable[Row] = SAMPLE_ROWS, name: str = "capture.sqlite") -> Path:
        return write_capture_db(tmp_path / name, rows)

    return factory


@pytest.fixture()
def capture_db(capture_db_factory: Callable[..., Path]) -> Path:
    return capture_db_factory()
