"""Capture store access and payload decoding."""

from .accessor import CorpusAccessor, MessageRecord, RecordHeader, RecordSchema, SessionHandle, SessionSummary
from .codec import decode_payload, decoder_for
from .loader import PageLoader, PageResult

__all__ = [
    "CorpusAccessor",
    "MessageRecord",
    "PageLoader",
    "PageResult",
    "RecordHeader",
    "RecordSchema",
    "SessionHandle",
    "SessionSummary",
    "decode_payload",
    "decoder_for",
]
