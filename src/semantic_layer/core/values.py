"""Canonical value trees for decoded protocol messages.

Decoders hand over plain Python structures (``dict``/``list``/scalars, or
:class:`DecodedPairs` when the decoder preserved duplicate map keys).
:func:`canonicalize` turns them into immutable :class:`Value` trees whose map
keys carry a :class:`CanonicalKey` token, so that keys which only differ in how
wide their wire encoding was compare equal across messages.
"""

from __future__ import annotations

import enum
import json
import logging
import math
from collections.abc import Mapping as _AbcMapping
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple, Union

from .common import MAX_DEPTH, PREVIEW_LIMIT, SHORT_BINARY_KEY_LIMIT, DecodeError, shorten

logger = logging.getLogger(__name__)


class ValueKind(enum.Enum):
    NULL = "null"
    BOOL = "bool"
    INT = "int"
    FLOAT = "float"
    STR = "str"
    BIN = "bin"
    SEQ = "seq"
    MAP = "map"

    @classmethod
    def parse(cls, text: str) -> "ValueKind":
        try:
            return cls(text.strip().lower())
        except ValueError:
            choices = ", ".join(kind.value for kind in cls)
            raise ValueError(f"Unknown value kind {text!r}; expected one of: {choices}") from None


CONTAINER_KINDS = frozenset({ValueKind.SEQ, ValueKind.MAP})


class KeyTag(enum.IntEnum):
    INT = 0
    STR = 1
    BYTES = 2


@dataclass(frozen=True, order=True)
class CanonicalKey:
    """Comparable, hashable token standing in for a map key."""

    tag: KeyTag
    token: Union[int, str, bytes]

    @classmethod
    def integer(cls, value: int) -> "CanonicalKey":
        return cls(KeyTag.INT, int(value))

    @classmethod
    def text(cls, value: str) -> "CanonicalKey":
        return cls(KeyTag.STR, value)

    @classmethod
    def binary(cls, value: bytes) -> "CanonicalKey":
        return cls(KeyTag.BYTES, bytes(value))

    def __str__(self) -> str:
        if self.tag is KeyTag.INT:
            return f"#{self.token}"
        if self.tag is KeyTag.BYTES:
            return "0x" + bytes(self.token).hex()  # type: ignore[arg-type]
        return str(self.token)


class DecodedPairs(tuple):
    """Ordered ``(key, value)`` pairs of a decoded map, duplicates included."""

    __slots__ = ()


@dataclass(frozen=True)
class MapEntry:
    token: CanonicalKey
    key: "Value"
    value: "Value"


@dataclass(frozen=True)
class Value:
    """Immutable node of a decoded message tree.

    ``data`` holds the Python scalar for scalar kinds, a tuple of child values
    for :attr:`ValueKind.SEQ` and a tuple of :class:`MapEntry` for
    :attr:`ValueKind.MAP`.
    """

    kind: ValueKind
    data: object = None

    @property
    def is_container(self) -> bool:
        return self.kind in CONTAINER_KINDS

    @property
    def entries(self) -> Tuple[MapEntry, ...]:
        if self.kind is not ValueKind.MAP:
            return ()
        return self.data  # type: ignore[return-value]

    @property
    def elements(self) -> Tuple["Value", ...]:
        if self.kind is not ValueKind.SEQ:
            return ()
        return self.data  # type: ignore[return-value]

    def __len__(self) -> int:
        if self.is_container:
            return len(self.data)  # type: ignore[arg-type]
        return 0

    def lookup(self, token: CanonicalKey) -> Optional["Value"]:
        for entry in self.entries:
            if entry.token == token:
                return entry.value
        return None

    def to_python(self) -> object:
        if self.kind is ValueKind.SEQ:
            return [item.to_python() for item in self.elements]
        if self.kind is ValueKind.MAP:
            return {entry.key.to_python(): entry.value.to_python() for entry in self.entries}
        return self.data

    def preview(self, limit: int = PREVIEW_LIMIT) -> str:
        kind = self.kind
        if kind is ValueKind.NULL:
            return "null"
        if kind is ValueKind.BOOL:
            return "true" if self.data else "false"
        if kind is ValueKind.INT:
            return str(self.data)
        if kind is ValueKind.FLOAT:
            return repr(self.data)
        if kind is ValueKind.STR:
            return shorten(json.dumps(self.data, ensure_ascii=False), limit)
        if kind is ValueKind.BIN:
            raw = bytes(self.data)  # type: ignore[arg-type]
            return shorten(f"0x{raw.hex()}", limit) + f" ({len(raw)} bytes)"
        if kind is ValueKind.SEQ:
            return f"[{len(self)} items]"
        return f"{{{len(self)} entries}}"


NULL = Value(ValueKind.NULL)


def kind_of(raw: object) -> ValueKind:
    """Return the :class:`ValueKind` a raw decoded object canonicalizes to."""

    if isinstance(raw, Value):
        return raw.kind
    if raw is None:
        return ValueKind.NULL
    if isinstance(raw, bool):
        return ValueKind.BOOL
    if isinstance(raw, int):
        return ValueKind.INT
    if isinstance(raw, float):
        return ValueKind.FLOAT
    if isinstance(raw, str):
        return ValueKind.STR
    if isinstance(raw, (bytes, bytearray, memoryview)):
        return ValueKind.BIN
    if isinstance(raw, (DecodedPairs, _AbcMapping)):
        return ValueKind.MAP
    if isinstance(raw, (list, tuple)):
        return ValueKind.SEQ
    raise DecodeError(f"Unsupported value type {type(raw).__name__}")


def key_token(key: object) -> CanonicalKey:
    """Map a decoded map key (raw or :class:`Value`) to its canonical token."""

    if isinstance(key, Value):
        if key.is_container:
            raise DecodeError(f"Map keys must be scalars, got {key.kind.value}")
        key = key.data
    if key is None:
        raise DecodeError("Map keys must not be null")
    if isinstance(key, bool):
        return CanonicalKey.integer(int(key))
    if isinstance(key, int):
        return CanonicalKey.integer(key)
    if isinstance(key, float):
        if math.isfinite(key) and key.is_integer():
            return CanonicalKey.integer(int(key))
        return CanonicalKey.text(repr(key))
    if isinstance(key, str):
        return CanonicalKey.text(key)
    if isinstance(key, (bytes, bytearray, memoryview)):
        return _binary_token(bytes(key))
    raise DecodeError(f"Map keys must be scalars, got {type(key).__name__}")


def _binary_token(raw: bytes) -> CanonicalKey:
    if raw:
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            text = None
        if text is not None and text.isprintable():
            return CanonicalKey.text(text)
        if len(raw) <= SHORT_BINARY_KEY_LIMIT:
            return CanonicalKey.integer(int.from_bytes(raw, "big"))
    return CanonicalKey.binary(raw)


def canonicalize(raw: object) -> Value:
    """Normalize a decoded structure into an immutable :class:`Value` tree."""

    return _canonicalize(raw, depth=0, active=set())


def _canonicalize(raw: object, *, depth: int, active: set) -> Value:
    if isinstance(raw, Value):
        return raw
    if depth > MAX_DEPTH:
        raise DecodeError(f"Value nesting exceeds {MAX_DEPTH} levels")
    kind = kind_of(raw)
    if kind is ValueKind.NULL:
        return NULL
    if kind is ValueKind.BIN:
        return Value(kind, bytes(raw))  # type: ignore[arg-type]
    if kind not in CONTAINER_KINDS:
        return Value(kind, raw)

    marker = id(raw)
    if marker in active:
        raise DecodeError("Cyclic reference in decoded value")
    active.add(marker)
    try:
        if kind is ValueKind.SEQ:
            items: List[Value] = []
            for item in raw:  # type: ignore[union-attr]
                items.append(_canonicalize(item, depth=depth + 1, active=active))
            return Value(kind, tuple(items))
        pairs = raw if isinstance(raw, DecodedPairs) else tuple(raw.items())  # type: ignore[union-attr]
        return Value(kind, _canonical_entries(pairs, depth=depth, active=active))
    finally:
        active.discard(marker)


def _canonical_entries(pairs, *, depth: int, active: set) -> Tuple[MapEntry, ...]:
    seen: set = set()
    entries: List[MapEntry] = []
    for pair in pairs:
        try:
            raw_key, raw_value = pair
        except (TypeError, ValueError) as exc:
            raise DecodeError("Map entries must be (key, value) pairs") from exc
        key = _canonicalize(raw_key, depth=depth + 1, active=active)
        token = key_token(key)
        if token in seen:
            logger.debug("Dropping duplicate map key %s", token)
            continue
        seen.add(token)
        entries.append(MapEntry(token, key, _canonicalize(raw_value, depth=depth + 1, active=active)))
    return tuple(entries)


def walk(value: Value) -> Iterator[Value]:
    """Yield every node of *value* in pre-order."""

    yield value
    if value.kind is ValueKind.SEQ:
        for item in value.elements:
            yield from walk(item)
    elif value.kind is ValueKind.MAP:
        for entry in value.entries:
            yield from walk(entry.value)


__all__ = [
    "CONTAINER_KINDS",
    "CanonicalKey",
    "DecodedPairs",
    "KeyTag",
    "MapEntry",
    "NULL",
    "Value",
    "ValueKind",
    "canonicalize",
    "key_token",
    "kind_of",
    "walk",
]
