from __future__ import annotations

import os
import stat
from datetime import UTC, datetime
from pathlib import Path

import pytest
import tomlkit

from semantic_layer.core.common import LayerFormatError
from semantic_layer.core.layer_io import export_layer, import_layer, load_or_create, save_layer
from semantic_layer.core.store import MappingStore


def _store() -> MappingStore:
    created = datetime(2026, 10, 18, 9, 30, tzinfo=UTC)
    store = MappingStore("session-a", created_at=created, clock=lambda: datetime(2026, 10, 18, 10, 2, 11, 123456, tzinfo=UTC))
    store.bind("a.*", "field", "generic entry")
    store.bind("a.x", "x_name")
    store.bind('"dotted.key"[2].#7', "deep")
    store.bind("0x000000000000000000:bin", "blob")
    return store


def test_round_trip_is_lossless() -> None:
    store = _store()

    restored = import_layer(export_layer(store))

    assert restored.all_bindings() == store.all_bindings()
    assert restored.metadata == store.metadata


def test_export_layout() -> None:
    doc = tomlkit.parse(export_layer(_store())).unwrap()

    assert doc["layer"]["name"] == "session-a"
    assert doc["layer"]["format_version"] == 1
    assert doc["binding"][0] == {"path": "a.*", "name": "field", "note": "generic entry", "recency": 1}
    assert doc["binding"][1] == {"path": "a.x", "name": "x_name", "recency": 2}


def test_rebind_stays_most_recent_after_reload() -> None:
    store = MappingStore("tie")
    store.bind("*.x", "p")
    store.bind("a.*", "q")
    store.bind("*.x", "p2")
    assert store.resolve("a.x")[0].name == "p2"

    restored = import_layer(export_layer(store))

    assert [b.path for b in restored.all_bindings()] == [b.path for b in store.all_bindings()]
    assert restored.recency() == store.recency()
    assert restored.resolve("a.x")[0].name == "p2"


def test_bindings_without_recency_keep_file_order() -> None:
    text = '[layer]\nname = "n"\n[[binding]]\npath = "*.x"\nname = "p"\n[[binding]]\npath = "a.*"\nname = "q"\n'

    store = import_layer(text)

    assert store.resolve("a.x")[0].name == "q"


def test_empty_layer_round_trips() -> None:
    store = MappingStore("empty")

    restored = import_layer(export_layer(store))

    assert len(restored) == 0
    assert restored.name == "empty"


def test_hand_written_layer_without_timestamps() -> None:
    text = """
[layer]
name = "manual"

[[binding]]
path = "#1"
name = "id"
"""

    store = import_layer(text)

    assert store.get("#1").name == "id"  # type: ignore[union-attr]
    assert store.metadata.created_at.tzinfo is not None


def test_naive_timestamps_are_taken_as_utc() -> None:
    text = '[layer]\nname = "n"\ncreated_at = 2026-10-18T09:00:00\n'

    store = import_layer(text)

    assert store.metadata.created_at == datetime(2026, 10, 18, 9, 0, tzinfo=UTC)


@pytest.mark.parametrize(
    "text, fragment",
    [
        ("not = [valid", "not valid TOML"),
        ('[[binding]]\npath = "a"\nname = "n"\n', r"Missing \[layer\]"),
        ("[layer]\n", "Missing layer name"),
        ('[layer]\nname = "n"\nformat_version = 99\n', "Unsupported layer format version"),
        ('[layer]\nname = "n"\n[[binding]]\nname = "x"\n', "missing its path"),
        ('[layer]\nname = "n"\n[[binding]]\npath = "a"\n', "missing its name"),
        ('[layer]\nname = "n"\n[[binding]]\npath = "a"\nname = "  "\n', "missing its name"),
        ('[layer]\nname = "n"\n[[binding]]\npath = "a..b"\nname = "x"\n', "invalid path"),
        (
            '[layer]\nname = "n"\n[[binding]]\npath = "a[*]"\nname = "x"\n[[binding]]\npath = "a.*"\nname = "y"\n',
            "repeats path",
        ),
        ('[layer]\nname = "n"\ncreated_at = "yesterday"\n', "not an ISO timestamp"),
        ('[layer]\nname = "n"\n[[binding]]\npath = "a"\nname = "x"\nrecency = 0\n', "invalid recency"),
        ('[layer]\nname = "n"\n[[binding]]\npath = "a"\nname = "x"\nrecency = true\n', "invalid recency"),
    ],
)
def test_malformed_layers(text: str, fragment: str) -> None:
    with pytest.raises(LayerFormatError, match=fragment):
        import_layer(text)


def test_load_or_create_missing_file(tmp_path: Path) -> None:
    result = load_or_create(tmp_path / "fresh-layer.toml")

    assert result.error is None
    assert not result.existed
    assert result.store.name == "fresh-layer"
    assert len(result.store) == 0


def test_load_or_create_falls_back_on_malformed_file(tmp_path: Path) -> None:
    path = tmp_path / "broken.toml"
    path.write_text("[layer]\n", encoding="utf-8")

    result = load_or_create(path)

    assert result.fell_back
    assert isinstance(result.error, LayerFormatError)
    assert len(result.store) == 0


def test_save_layer_writes_atomically_and_keeps_backup(tmp_path: Path) -> None:
    path = tmp_path / "layers" / "layer.toml"
    store = _store()

    save_layer(store, path)
    assert import_layer(path.read_text(encoding="utf-8")).all_bindings() == store.all_bindings()

    path.write_text("garbage", encoding="utf-8")
    save_layer(MappingStore("replacement"), path, backup=True)

    assert (tmp_path / "layers" / "layer.toml.bak").read_text(encoding="utf-8") == "garbage"
    assert import_layer(path.read_text(encoding="utf-8")).name == "replacement"
    assert sorted(p.name for p in path.parent.iterdir()) == ["layer.toml", "layer.toml.bak"]


def test_load_after_save(tmp_path: Path) -> None:
    path = tmp_path / "layer.toml"
    save_layer(_store(), path)

    result = load_or_create(path)

    assert result.existed and result.error is None
    assert [b.name for b in result.store.all_bindings()] == ["field", "x_name", "deep", "blob"]


@pytest.mark.skipif(os.name == "nt", reason="POSIX permission bits")
def test_save_layer_keeps_file_mode(tmp_path: Path) -> None:
    path = tmp_path / "layer.toml"
    path.write_text("", encoding="utf-8")
    path.chmod(0o640)

    save_layer(_store(), path)

    assert stat.S_IMODE(path.stat().st_mode) == 0o640


@pytest.mark.skipif(os.name == "nt", reason="POSIX permission bits")
def test_new_layer_file_follows_umask(tmp_path: Path) -> None:
    path = tmp_path / "layer.toml"
    previous = os.umask(0o022)
    try:
        save_layer(_store(), path)
    finally:
        os.umask(previous)

    assert stat.S_IMODE(path.stat().st_mode) == 0o644
