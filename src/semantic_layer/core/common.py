"""Shared constants, errors and byte helpers used across the semantic layer."""

from __future__ import annotations

from typing import Iterable, Tuple, Union

LAYER_FORMAT_VERSION = 1
DEFAULT_TABLE = "tcp_proto_messages"
DEFAULT_WINDOW_SIZE = 50
MAX_DEPTH = 256
SHORT_BINARY_KEY_LIMIT = 8
PREVIEW_LIMIT = 48
CODECS: Tuple[str, ...] = ("auto", "msgpack", "json")


class SemanticLayerError(RuntimeError):
    """Base class for every error raised by the semantic layer."""


class DecodeError(SemanticLayerError):
    """Raised when a payload cannot be turned into a value tree."""


class InvalidPath(SemanticLayerError, ValueError):
    """Raised when a path is empty or a path expression is malformed."""

    def __init__(self, message: str, *, expression: str | None = None, column: int | None = None) -> None:
        self.expression = expression
        self.column = column
        if expression is not None and column is not None:
            message = f"{message} (column {column} of {expression!r})"
        super().__init__(message)


class InvalidName(SemanticLayerError, ValueError):
    """Raised when a semantic name is empty."""


class LayerFormatError(SemanticLayerError):
    """Raised when a layer document cannot be imported."""


class StoreAccessError(SemanticLayerError):
    """Raised when the record store is unreachable or has the wrong schema."""


def ensure_bytes(value: Union[str, bytes, bytearray, memoryview, Iterable[int]]) -> bytes:
    """Coerce the provided payload into a ``bytes`` instance."""

    if isinstance(value, bytes):
        return value
    if isinstance(value, bytearray):
        return bytes(value)
    if isinstance(value, memoryview):
        return bytes(value.tobytes())
    if isinstance(value, str):
        return value.encode("utf-8")
    return bytes(int(part) & 0xFF for part in value)


def shorten(text: str, limit: int = PREVIEW_LIMIT) -> str:
    if limit <= 0 or len(text) <= limit:
        return text
    return text[: max(1, limit - 1)] + "…"


__all__ = [
    "CODECS",
    "DEFAULT_TABLE",
    "DEFAULT_WINDOW_SIZE",
    "DecodeError",
    "InvalidName",
    "InvalidPath",
    "LAYER_FORMAT_VERSION",
    "LayerFormatError",
    "MAX_DEPTH",
    "PREVIEW_LIMIT",
    "SHORT_BINARY_KEY_LIMIT",
    "SemanticLayerError",
    "StoreAccessError",
    "ensure_bytes",
    "shorten",
]
