from __future__ import annotations

import pytest

from semantic_layer.core.common import MAX_DEPTH, DecodeError
from semantic_layer.core.paths import parse_path, paths_of
from semantic_layer.core.values import (
    CanonicalKey,
    DecodedPairs,
    KeyTag,
    Value,
    ValueKind,
    canonicalize,
    key_token,
    kind_of,
    walk,
)


def test_canonicalize_builds_immutable_tree() -> None:
    value = canonicalize({"a": {"x": 1, "y": [True, None, 2.5]}, 7: b"\x01\x02"})

    assert value.kind is ValueKind.MAP
    assert [str(entry.token) for entry in value.entries] == ["a", "#7"]
    inner = value.lookup(CanonicalKey.text("a"))
    assert inner is not None and inner.kind is ValueKind.MAP
    seq = inner.lookup(CanonicalKey.text("y"))
    assert seq is not None
    assert [item.kind for item in seq.elements] == [ValueKind.BOOL, ValueKind.NULL, ValueKind.FLOAT]
    assert value.lookup(CanonicalKey.integer(7)) == Value(ValueKind.BIN, b"\x01\x02")
    with pytest.raises(AttributeError):
        value.kind = ValueKind.SEQ  # type: ignore[misc]


def test_canonicalize_keeps_first_duplicate_key() -> None:
    value = canonicalize(DecodedPairs([("a", 1), ("b", 2), ("a", 3)]))

    assert len(value) == 2
    assert value.lookup(CanonicalKey.text("a")) == Value(ValueKind.INT, 1)


def test_duplicate_detection_uses_canonical_tokens() -> None:
    # 1 and b"\x01" normalize to the same integer token.
    value = canonicalize(DecodedPairs([(1, "first"), (b"\x01", "second")]))

    assert len(value) == 1
    assert value.entries[0].value == Value(ValueKind.STR, "first")


@pytest.mark.parametrize(
    "key, expected",
    [
        (7, CanonicalKey(KeyTag.INT, 7)),
        (True, CanonicalKey(KeyTag.INT, 1)),
        (3.0, CanonicalKey(KeyTag.INT, 3)),
        (2.5, CanonicalKey(KeyTag.STR, "2.5")),
        ("name", CanonicalKey(KeyTag.STR, "name")),
        (b"name", CanonicalKey(KeyTag.STR, "name")),
        (b"\x00\x07", CanonicalKey(KeyTag.INT, 7)),
        (b"\x00\x00\x00\x00\x00\x00\x00\x07", CanonicalKey(KeyTag.INT, 7)),
        (b"\x00" * 9, CanonicalKey(KeyTag.BYTES, b"\x00" * 9)),
        (b"", CanonicalKey(KeyTag.BYTES, b"")),
    ],
)
def test_key_token_normalization(key: object, expected: CanonicalKey) -> None:
    assert key_token(key) == expected


@pytest.mark.parametrize("key", [None, [1], {"a": 1}])
def test_key_token_rejects_null_and_container_keys(key: object) -> None:
    with pytest.raises(DecodeError):
        key_token(key)


def test_canonical_keys_are_totally_ordered() -> None:
    keys = [CanonicalKey.binary(b"\x00" * 9), CanonicalKey.text("b"), CanonicalKey.integer(3), CanonicalKey.text("a")]

    assert sorted(keys) == [
        CanonicalKey.integer(3),
        CanonicalKey.text("a"),
        CanonicalKey.text("b"),
        CanonicalKey.binary(b"\x00" * 9),
    ]


def test_cycles_are_rejected() -> None:
    looped: list = [1]
    looped.append(looped)

    with pytest.raises(DecodeError, match="Cyclic"):
        canonicalize(looped)


def test_shared_subtrees_are_not_cycles() -> None:
    shared = {"x": 1}

    value = canonicalize([shared, shared])

    assert value.elements[0] == value.elements[1]


def test_excessive_nesting_is_rejected() -> None:
    nested: list = []
    for _ in range(MAX_DEPTH + 5):
        nested = [nested]

    with pytest.raises(DecodeError, match="nesting"):
        canonicalize(nested)


def test_unsupported_types_are_rejected() -> None:
    with pytest.raises(DecodeError):
        kind_of(object())


def test_paths_of_is_preorder_root_first() -> None:
    value = canonicalize({"a": {"x": 1}, "b": [10, 20]})

    assert [str(path) for path in paths_of(value)] == ["", "a", "a.x", "b", "b[0]", "b[1]"]
    assert parse_path("b[1]") in set(paths_of(value))
    assert len(list(walk(value))) == 6


def test_to_python_and_preview() -> None:
    value = canonicalize({"a": [1, "two"], "blob": b"\xff" * 4})

    assert value.to_python() == {"a": [1, "two"], "blob": b"\xff" * 4}
    blob = value.lookup(CanonicalKey.text("blob"))
    assert blob is not None
    assert blob.preview() == "0xffffffff (4 bytes)"
    assert value.preview() == "{2 entries}"
    assert Value(ValueKind.STR, "x" * 100).preview(10).endswith("…")
