"""Decode captured payloads into canonical value trees."""

from __future__ import annotations

import functools
import json
import logging
from typing import Callable, List, Tuple, Union

import msgpack

from ..core.common import CODECS, DecodeError, ensure_bytes
from ..core.values import DecodedPairs, Value, canonicalize

logger = logging.getLogger(__name__)

Decoder = Callable[[bytes], Value]
Payload = Union[str, bytes, bytearray, memoryview]

_JSON_OPENERS = (b"{", b"[")


def _pairs(items: List[Tuple[object, object]]) -> DecodedPairs:
    return DecodedPairs(items)


def _reject_ext(code: int, data: bytes) -> object:
    raise DecodeError(f"Unsupported msgpack extension type {code} ({len(data)} bytes)")


def _canonical(raw: object, label: str) -> Value:
    try:
        return canonicalize(raw)
    except RecursionError as exc:
        raise DecodeError(f"{label} payload is nested too deeply") from exc


def decode_msgpack(data: bytes) -> Value:
    try:
        raw = msgpack.unpackb(
            data,
            raw=False,
            strict_map_key=False,
            object_pairs_hook=_pairs,
            ext_hook=_reject_ext,
        )
    except msgpack.ExtraData as exc:
        raise DecodeError(f"Trailing data after msgpack value ({len(exc.extra)} bytes)") from exc
    except (msgpack.UnpackException, ValueError) as exc:
        raise DecodeError(f"Malformed msgpack payload: {exc}") from exc
    except RecursionError as exc:
        raise DecodeError("msgpack payload is nested too deeply") from exc
    return _canonical(raw, "msgpack")


def decode_json(data: bytes) -> Value:
    try:
        text = data.decode("utf-8")
        raw = json.loads(text, object_pairs_hook=_pairs)
    except UnicodeDecodeError as exc:
        raise DecodeError(f"JSON payload is not UTF-8: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise DecodeError(f"Malformed JSON payload: {exc.msg} at offset {exc.pos}") from exc
    except RecursionError as exc:
        raise DecodeError("JSON payload is nested too deeply") from exc
    return _canonical(raw, "JSON")


def sniff_codec(data: bytes) -> str:
    """Guess the codec of *data*: JSON documents start with ``{`` or ``[``."""

    return "json" if data.lstrip().startswith(_JSON_OPENERS) else "msgpack"


_DECODERS = {"msgpack": decode_msgpack, "json": decode_json}


def decode_payload(data: Payload, codec: str = "auto") -> Value:
    """Decode *data* with *codec* (``auto``, ``msgpack`` or ``json``)."""

    if codec not in CODECS:
        raise ValueError(f"Unknown codec {codec!r}; expected one of {CODECS}")
    payload = ensure_bytes(data)
    if codec == "auto":
        codec = sniff_codec(payload)
    return _DECODERS[codec](payload)


def decoder_for(codec: str) -> Decoder:
    if codec not in CODECS:
        raise ValueError(f"Unknown codec {codec!r}; expected one of {CODECS}")
    return functools.partial(decode_payload, codec=codec)


__all__ = [
    "Decoder",
    "Payload",
    "decode_json",
    "decode_msgpack",
    "decode_payload",
    "decoder_for",
    "sniff_codec",
]
