from __future__ import annotations

import threading

import msgpack
import pytest

from semantic_layer.core.overlay import AnnotatedNode, flatten, project, render, render_text
from semantic_layer.core.paths import parse_path, paths_of
from semantic_layer.core.store import MappingStore
from semantic_layer.core.values import canonicalize
from semantic_layer.corpus.codec import decode_msgpack


def _by_path(node: AnnotatedNode) -> dict:
    return {str(current.path): current for current in node.iter()}


def test_empty_store_render_is_isomorphic() -> None:
    value = canonicalize({"a": {"x": 1, "y": [1, 2, {"z": b"\x00"}]}, 3: None})

    node = render(value, MappingStore())

    nodes = list(node.iter())
    assert [current.path for current in nodes] == list(paths_of(value))
    assert all(current.name is None and current.fallback is None for current in nodes)
    assert node.value is value


def test_wildcard_and_concrete_end_to_end() -> None:
    store = MappingStore()
    store.bind("a.*", "field")
    store.bind("a.x", "x_name")
    value = canonicalize({"a": {"x": 1, "y": 2}})

    nodes = _by_path(render(value, store))

    assert nodes["a.x"].name == "x_name"
    assert nodes["a.x"].matched_path == parse_path("a.x")
    assert nodes["a.y"].name == "field"
    assert nodes["a.y"].matched_path == parse_path("a.*")
    assert nodes["a"].name is None


def test_wildcard_names_become_fallbacks_for_descendants() -> None:
    store = MappingStore()
    store.bind("a.*", "entry")
    store.bind("a.*.id", "entry_id")
    value = canonicalize({"a": {"p": {"id": 1, "extra": True}}})

    nodes = _by_path(render(value, store))

    assert nodes["a.p"].name == "entry"
    assert nodes["a.p.id"].name == "entry_id"
    assert nodes["a.p.extra"].name is None
    assert nodes["a.p.extra"].fallback == "entry"
    assert nodes["a.p.extra"].display_label == "entry"


def test_concrete_names_do_not_propagate() -> None:
    store = MappingStore()
    store.bind("a", "alpha")
    value = canonicalize({"a": {"x": 1}})

    nodes = _by_path(render(value, store))

    assert nodes["a"].name == "alpha"
    assert nodes["a.x"].fallback is None


def test_guarded_binding_uses_node_kind() -> None:
    store = MappingStore()
    store.bind("items[*]:str", "label")
    value = canonicalize({"items": ["a", 1, "b"]})

    nodes = _by_path(render(value, store))

    assert nodes["items[0]"].name == "label"
    assert nodes["items[1]"].name is None
    assert nodes["items[2]"].name == "label"


def test_compact_and_wide_integer_keys_resolve_identically() -> None:
    compact = msgpack.packb({1: "v"})
    wide = b"\x81\xce\x00\x00\x00\x01\xa1v"  # same map, key encoded as uint32
    store = MappingStore()
    store.bind("#1", "field_one")

    left = decode_msgpack(compact)
    right = decode_msgpack(wide)

    assert compact != wide
    assert left == right
    assert render(left, store).children[0][1].name == "field_one"
    assert render(right, store).children[0][1].name == "field_one"


def test_render_does_not_mutate_input() -> None:
    value = canonicalize({"a": [1, 2]})
    before = value.to_python()
    store = MappingStore()
    store.bind("a[*]", "n")

    render(value, store)

    assert value.to_python() == before


def test_project_replaces_labelled_keys() -> None:
    store = MappingStore()
    store.bind("#1", "user")
    store.bind("#2", "user")
    store.bind("items[*].qty", "quantity")
    value = canonicalize({1: "alice", 2: "bob", "items": [{"qty": 3}], "raw": b"\x01"})

    projected = project(render(value, store))

    assert projected == {
        "user": "alice",
        "user (2)": "bob",
        "items": [{"quantity": 3}],
        "raw": b"\x01",
    }


def test_flatten_and_render_text() -> None:
    store = MappingStore()
    store.bind("a.*", "field")
    store.bind("a.x", "x_name")
    node = render(canonicalize({"a": {"x": 1, "y": {"deep": "s"}}}), store)

    rows = flatten(node)
    assert [(row.depth, row.label) for row in rows] == [(1, "a"), (2, "x"), (2, "y"), (3, "deep")]

    annotated = render_text(node).splitlines()
    assert annotated == [
        "a = {2 entries}",
        "  x_name (x) = 1",
        "  field (y) = {1 entries}",
        '    deep = "s"  ~field',
    ]
    assert render_text(node, "raw").splitlines()[1] == "  x = 1"
    with pytest.raises(ValueError):
        render_text(node, "fancy")


def test_scalar_messages_render_as_preview() -> None:
    node = render(canonicalize(42), MappingStore())

    assert render_text(node) == "42"
    assert flatten(node) == []
    assert project(node) == 42


def test_render_holds_store_lock() -> None:
    store = MappingStore()
    value = canonicalize({"a": 1})
    results = []

    with store.locked():
        worker = threading.Thread(target=lambda: results.append(store.bind("a", "late")))
        worker.start()
        worker.join(timeout=0.2)
        assert worker.is_alive()
        assert render(value, store).children[0][1].name is None
    worker.join()

    assert render(value, store).children[0][1].name == "late"
    assert results == [None]
