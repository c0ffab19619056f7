"""Read-only access to captured protocol messages stored in SQLite."""

from __future__ import annotations

import logging
import re
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path as FilePath
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from ..core.common import DEFAULT_TABLE, DecodeError, StoreAccessError, ensure_bytes
from ..core.paths import Path, iter_nodes
from ..core.values import Value
from .codec import Decoder, decoder_for

logger = logging.getLogger(__name__)

_IDENTIFIER_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_RECORD_ID = "_record_id"


def _quote(identifier: str) -> str:
    return f'"{identifier}"'


@dataclass(frozen=True)
class RecordSchema:
    """Table and column names of the capture store."""

    table: str = DEFAULT_TABLE
    id_column: str = "rowid"
    session_column: str = "session"
    timestamp_column: str = "timestamp"
    payload_column: str = "data"
    proto_column: Optional[str] = "proto"

    def __post_init__(self) -> None:
        for label, name in self._named_columns():
            if name is not None and not _IDENTIFIER_RE.fullmatch(name):
                raise ValueError(f"Invalid {label} name {name!r}")

    def _named_columns(self) -> Tuple[Tuple[str, Optional[str]], ...]:
        return (
            ("table", self.table),
            ("id column", self.id_column),
            ("session column", self.session_column),
            ("timestamp column", self.timestamp_column),
            ("payload column", self.payload_column),
            ("proto column", self.proto_column),
        )

    @property
    def required_columns(self) -> Tuple[str, ...]:
        columns = [self.session_column, self.timestamp_column, self.payload_column]
        if self.id_column.lower() != "rowid":
            columns.insert(0, self.id_column)
        if self.proto_column is not None:
            columns.append(self.proto_column)
        return tuple(columns)

    @property
    def consumed_columns(self) -> frozenset:
        return frozenset(name for _label, name in self._named_columns()[1:] if name is not None)


@dataclass(frozen=True)
class RecordHeader:
    record_id: int
    session_id: object
    proto: Optional[str]
    timestamp: object


@dataclass(frozen=True)
class SessionSummary:
    session_id: object
    count: int
    first_timestamp: object
    last_timestamp: object


@dataclass
class SessionHandle:
    """Cursor over one session's records in capture order."""

    session_id: object
    total: int
    cursor: int = 0

    @property
    def exhausted(self) -> bool:
        return self.cursor >= self.total

    @property
    def remaining(self) -> int:
        return max(0, self.total - self.cursor)


class MessageRecord:
    """One captured message; the payload is decoded on first use and cached."""

    def __init__(
        self,
        record_id: int,
        session_id: object,
        timestamp: object,
        payload: bytes,
        *,
        proto: Optional[str] = None,
        metadata: Optional[Dict[str, object]] = None,
        decoder: Decoder,
        error: Optional[DecodeError] = None,
    ) -> None:
        self.record_id = record_id
        self.session_id = session_id
        self.timestamp = timestamp
        self.payload = payload
        self.proto = proto
        self.metadata = dict(metadata or {})
        self._decoder = decoder
        self._lock = threading.Lock()
        self._decoded = error is not None
        self._value: Optional[Value] = None
        self._error: Optional[DecodeError] = error

    def decode(self) -> Optional[Value]:
        """Decode (once) and return the value, or ``None`` when undecodable."""

        with self._lock:
            if not self._decoded:
                try:
                    self._value = self._decoder(self.payload)
                except DecodeError as exc:
                    self._error = exc
                    logger.warning("Record %s is undecodable: %s", self.record_id, exc)
                except Exception as exc:
                    self._error = DecodeError(f"Decoder failed: {exc!r}")
                    self._error.__cause__ = exc
                    logger.warning("Decoder failed on record %s", self.record_id, exc_info=exc)
                self._decoded = True
            return self._value

    @property
    def value(self) -> Value:
        value = self.decode()
        if value is None:
            raise self._error  # type: ignore[misc]
        return value

    @property
    def decode_error(self) -> Optional[DecodeError]:
        self.decode()
        return self._error

    @property
    def is_decodable(self) -> bool:
        return self.decode() is not None

    @property
    def status(self) -> str:
        if not self._decoded:
            return "pending"
        return "ok" if self._error is None else "undecodable"

    def paths(self) -> Iterator[Path]:
        """Addressable paths of the decoded value; none for undecodable records."""

        value = self.decode()
        if value is None:
            return
        for path, _node, _kinds in iter_nodes(value):
            if not path.is_root:
                yield path

    @property
    def header(self) -> RecordHeader:
        return RecordHeader(self.record_id, self.session_id, self.proto, self.timestamp)

    def __repr__(self) -> str:
        return f"MessageRecord(id={self.record_id}, session={self.session_id!r}, status={self.status})"


class CorpusAccessor:
    """Read-only view over the capture table.

    The SQLite connection is shared between threads and serialized by the
    accessor's own lock.
    """

    def __init__(
        self,
        db_path: FilePath,
        *,
        schema: Optional[RecordSchema] = None,
        decoder: Optional[Decoder] = None,
        codec: str = "auto",
    ) -> None:
        self.db_path = FilePath(db_path).expanduser()
        self.schema = schema or RecordSchema()
        self.decoder = decoder or decoder_for(codec)
        self._lock = threading.RLock()
        self._conn = self._connect()
        try:
            self._validate_schema()
        except StoreAccessError:
            self._conn.close()
            raise

    def _connect(self) -> sqlite3.Connection:
        if not self.db_path.is_file():
            raise StoreAccessError(f"Record store {self.db_path} does not exist")
        uri = f"file:{self.db_path.resolve().as_posix()}?mode=ro"
        try:
            conn = sqlite3.connect(uri, uri=True, check_same_thread=False)
        except sqlite3.Error as exc:
            raise StoreAccessError(f"Unable to open record store {self.db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _cursor(self) -> Iterator[sqlite3.Cursor]:
        with self._lock:
            if self._conn is None:
                raise StoreAccessError("Record store is closed")
            try:
                yield self._conn.cursor()
            except sqlite3.Error as exc:
                raise StoreAccessError(f"Query against {self.db_path} failed: {exc}") from exc

    def _validate_schema(self) -> None:
        schema = self.schema
        with self._cursor() as cur:
            columns = {row["name"] for row in cur.execute(f"PRAGMA table_info({_quote(schema.table)})")}
        if not columns:
            raise StoreAccessError(f"Record store {self.db_path} has no table {schema.table!r}")
        missing = [name for name in schema.required_columns if name not in columns]
        if missing:
            raise StoreAccessError(
                f"Table {schema.table!r} is missing required columns: {', '.join(missing)}"
            )
        logger.info("Opened record store %s (table %s)", self.db_path, schema.table)

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None  # type: ignore[assignment]

    def __enter__(self) -> "CorpusAccessor":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------ Queries
    @property
    def _id_expr(self) -> str:
        column = self.schema.id_column
        return column if column.lower() == "rowid" else _quote(column)

    @property
    def _session_match(self) -> str:
        # Session ids arrive as text from the command line; compare as text.
        return f"CAST({_quote(self.schema.session_column)} AS TEXT) = CAST(? AS TEXT)"

    def list_headers(self, name_filter: str = "") -> List[RecordHeader]:
        """Every record's header in capture order, filtered by protocol tag substring."""

        schema = self.schema
        proto = _quote(schema.proto_column) if schema.proto_column is not None else "NULL"
        sql = (
            f"SELECT {self._id_expr} AS {_RECORD_ID}, {_quote(schema.session_column)} AS session_id, "
            f"{proto} AS proto, {_quote(schema.timestamp_column)} AS ts "
            f"FROM {_quote(schema.table)} ORDER BY {self._id_expr}"
        )
        with self._cursor() as cur:
            rows = cur.execute(sql).fetchall()
        headers = [RecordHeader(row[_RECORD_ID], row["session_id"], row["proto"], row["ts"]) for row in rows]
        if name_filter:
            headers = [header for header in headers if name_filter in str(header.proto or "")]
        return headers

    def list_sessions(self) -> List[SessionSummary]:
        schema = self.schema
        ts = _quote(schema.timestamp_column)
        sql = (
            f"SELECT {_quote(schema.session_column)} AS session_id, COUNT(*) AS n, "
            f"MIN({ts}) AS first_ts, MAX({ts}) AS last_ts, MIN({self._id_expr}) AS first_id "
            f"FROM {_quote(schema.table)} GROUP BY {_quote(schema.session_column)} ORDER BY first_id"
        )
        with self._cursor() as cur:
            rows = cur.execute(sql).fetchall()
        return [SessionSummary(row["session_id"], row["n"], row["first_ts"], row["last_ts"]) for row in rows]

    def open_session(self, session_id: object) -> SessionHandle:
        """Open a cursor on *session_id*; unknown sessions yield an empty handle."""

        sql = f"SELECT COUNT(*) AS n FROM {_quote(self.schema.table)} WHERE {self._session_match}"
        with self._cursor() as cur:
            total = cur.execute(sql, (session_id,)).fetchone()["n"]
        if not total:
            logger.warning("Session %r has no records", session_id)
        else:
            logger.info("Opened session %r (%d records)", session_id, total)
        return SessionHandle(session_id, int(total))

    def next_page(self, handle: SessionHandle, window_size: int) -> List[MessageRecord]:
        """Next *window_size* records of *handle*; an empty list once exhausted."""

        if window_size <= 0:
            raise ValueError("window_size must be positive")
        if handle.exhausted:
            return []
        records = self._select_page(handle.session_id, handle.cursor, min(window_size, handle.remaining))
        handle.cursor += len(records)
        if not records:
            # The store shrank under us; stop paginating.
            handle.cursor = handle.total
        return records

    def fetch_window(self, session_id: object, window_index: int, window_size: int) -> List[MessageRecord]:
        """Random access to page *window_index* of a session."""

        if window_size <= 0:
            raise ValueError("window_size must be positive")
        if window_index < 0:
            raise ValueError("window_index must not be negative")
        return self._select_page(session_id, window_index * window_size, window_size)

    def get_record(self, record_id: int) -> Optional[MessageRecord]:
        sql = f"SELECT {self._id_expr} AS {_RECORD_ID}, * FROM {_quote(self.schema.table)} WHERE {self._id_expr} = ?"
        with self._cursor() as cur:
            row = cur.execute(sql, (record_id,)).fetchone()
        return None if row is None else self._record(row)

    def _select_page(self, session_id: object, offset: int, limit: int) -> List[MessageRecord]:
        sql = (
            f"SELECT {self._id_expr} AS {_RECORD_ID}, * FROM {_quote(self.schema.table)} "
            f"WHERE {self._session_match} ORDER BY {self._id_expr} LIMIT ? OFFSET ?"
        )
        with self._cursor() as cur:
            rows = cur.execute(sql, (session_id, limit, offset)).fetchall()
        logger.debug("Fetched %d records of session %r at offset %d", len(rows), session_id, offset)
        return [self._record(row) for row in rows]

    def _record(self, row: sqlite3.Row) -> MessageRecord:
        schema = self.schema
        keys = row.keys()
        consumed = schema.consumed_columns | {_RECORD_ID}
        payload, error = _payload_bytes(row[schema.payload_column])
        if error is not None:
            logger.warning("Record %s is undecodable: %s", row[_RECORD_ID], error)
        return MessageRecord(
            record_id=row[_RECORD_ID],
            session_id=row[schema.session_column],
            timestamp=row[schema.timestamp_column],
            payload=payload,
            proto=row[schema.proto_column] if schema.proto_column is not None else None,
            metadata={key: row[key] for key in keys if key not in consumed},
            decoder=self.decoder,
            error=error,
        )


def _payload_bytes(raw: object) -> Tuple[bytes, Optional[DecodeError]]:
    if raw is None:
        return b"", None
    # SQLite columns are dynamically typed; numbers are not payloads.
    if isinstance(raw, (int, float)):
        return b"", DecodeError(f"Payload column holds a {type(raw).__name__}, not a blob")
    return ensure_bytes(raw), None  # type: ignore[arg-type]


def decode_all(records: Sequence[MessageRecord]) -> List[MessageRecord]:
    """Decode every record up front (used by background loaders)."""

    for record in records:
        record.decode()
    return list(records)


__all__ = [
    "CorpusAccessor",
    "MessageRecord",
    "RecordHeader",
    "RecordSchema",
    "SessionHandle",
    "SessionSummary",
    "decode_all",
]
