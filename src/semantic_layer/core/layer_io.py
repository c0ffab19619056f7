"""Read and write semantic layers as TOML documents.

Layout::

    [layer]
    name = "session-a"
    format_version = 1
    created_at = 2026-10-18T09:30:00+00:00
    updated_at = 2026-10-18T10:02:11.123456+00:00

    [[binding]]
    path = "a.*"
    name = "field"
    note = "optional"
    recency = 1

Bindings are an array of tables so their order survives a round trip;
``recency`` ranks them by bind time (1 is the oldest) so equally specific
bindings still resolve to the most recent one after a reload.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path as FilePath
from typing import Dict, List, Mapping, Optional, Tuple

import tomlkit
from tomlkit.exceptions import TOMLKitError

from .common import LAYER_FORMAT_VERSION, InvalidPath, LayerFormatError
from .paths import Path, parse_path
from .store import Binding, MappingStore

logger = logging.getLogger(__name__)

BACKUP_SUFFIX = ".bak"


def export_layer(store: MappingStore) -> str:
    """Serialize *store* (metadata and bindings) to TOML text."""

    with store.locked():
        meta = store.metadata
        bindings = store.all_bindings()
        ranks = store.recency()

    doc = tomlkit.document()
    doc.add(tomlkit.comment("Semantic layer: field names for captured protocol messages."))
    doc.add(tomlkit.nl())

    layer = tomlkit.table()
    layer.add("name", meta.name)
    layer.add("format_version", LAYER_FORMAT_VERSION)
    layer.add("created_at", meta.created_at)
    layer.add("updated_at", meta.updated_at)
    doc.add("layer", layer)

    entries = tomlkit.aot()
    for binding in bindings:
        entry = tomlkit.table()
        entry.add("path", str(binding.path))
        entry.add("name", binding.name)
        if binding.note is not None:
            entry.add("note", binding.note)
        entry.add("recency", ranks[binding.path])
        entries.append(entry)
    if bindings:
        doc.add("binding", entries)
    return tomlkit.dumps(doc)


def import_layer(text: str) -> MappingStore:
    """Parse a layer document produced by :func:`export_layer` (or by hand)."""

    try:
        data = tomlkit.parse(text).unwrap()
    except TOMLKitError as exc:
        raise LayerFormatError(f"Layer is not valid TOML: {exc}") from exc

    layer = data.get("layer")
    if not isinstance(layer, Mapping):
        raise LayerFormatError("Missing [layer] table")
    name = layer.get("name")
    if not isinstance(name, str) or not name.strip():
        raise LayerFormatError("Missing layer name")
    version = layer.get("format_version", LAYER_FORMAT_VERSION)
    if not isinstance(version, int) or version > LAYER_FORMAT_VERSION:
        raise LayerFormatError(f"Unsupported layer format version {version!r}")
    created_at = _timestamp(layer, "created_at")
    updated_at = _timestamp(layer, "updated_at")

    raw_bindings = data.get("binding", [])
    if not isinstance(raw_bindings, list):
        raise LayerFormatError("'binding' must be an array of tables")
    bindings, recency = _parse_bindings(raw_bindings)
    return MappingStore.from_bindings(
        name, bindings, created_at=created_at, updated_at=updated_at, recency=recency
    )


def _timestamp(layer: Mapping[str, object], field: str) -> Optional[datetime]:
    value = layer.get(field)
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError as exc:
            raise LayerFormatError(f"layer.{field} is not an ISO timestamp: {value!r}") from exc
    if not isinstance(value, datetime):
        raise LayerFormatError(f"layer.{field} must be a datetime")
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value


def _parse_bindings(raw_bindings: List[object]) -> Tuple[List[Binding], Dict[Path, int]]:
    seen: Dict[Path, int] = {}
    bindings: List[Binding] = []
    recency: Dict[Path, int] = {}
    for number, entry in enumerate(raw_bindings, start=1):
        if not isinstance(entry, Mapping):
            raise LayerFormatError(f"binding #{number} must be a table")
        expression = entry.get("path")
        name = entry.get("name")
        note = entry.get("note")
        rank = entry.get("recency")
        if not isinstance(expression, str):
            raise LayerFormatError(f"binding #{number} is missing its path")
        if not isinstance(name, str) or not name.strip():
            raise LayerFormatError(f"binding #{number} ({expression}) is missing its name")
        if note is not None and not isinstance(note, str):
            raise LayerFormatError(f"binding #{number} ({expression}) has a non-text note")
        if rank is not None and (isinstance(rank, bool) or not isinstance(rank, int) or rank < 1):
            raise LayerFormatError(f"binding #{number} ({expression}) has an invalid recency {rank!r}")
        try:
            path = parse_path(expression)
        except InvalidPath as exc:
            raise LayerFormatError(f"binding #{number} has an invalid path: {exc}") from exc
        if path in seen:
            raise LayerFormatError(
                f"binding #{number} repeats path {path} already bound by binding #{seen[path]}"
            )
        seen[path] = number
        if rank is not None:
            recency[path] = rank
        bindings.append(Binding(path, name.strip(), note.strip() or None if note else None))
    return bindings, recency


# ---------------------------------------------------------------------- Files
@dataclass
class LoadResult:
    store: MappingStore
    error: Optional[LayerFormatError] = None
    existed: bool = False

    @property
    def fell_back(self) -> bool:
        return self.error is not None


def load_or_create(path: FilePath) -> LoadResult:
    """Load the layer at *path*, or start an empty one.

    A missing file yields an empty layer named after the file.  A malformed
    file also yields an empty layer, with the :class:`LayerFormatError` kept on
    the result so the caller can show it.
    """

    path = FilePath(path).expanduser()
    default_name = path.stem or "untitled"
    if not path.exists():
        logger.info("Layer %s does not exist yet; starting an empty layer", path)
        return LoadResult(MappingStore(default_name))
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        error = LayerFormatError(f"Unable to read layer {path}: {exc}")
        error.__cause__ = exc
        logger.warning("%s; starting an empty layer", error)
        return LoadResult(MappingStore(default_name), error=error, existed=True)
    try:
        store = import_layer(text)
    except LayerFormatError as exc:
        logger.warning("Layer %s is malformed (%s); starting an empty layer", path, exc)
        return LoadResult(MappingStore(default_name), error=exc, existed=True)
    logger.info("Loaded %d bindings from %s", len(store), path)
    return LoadResult(store, existed=True)


def _current_umask() -> int:
    mask = os.umask(0)
    os.umask(mask)
    return mask


def save_layer(store: MappingStore, path: FilePath, *, backup: bool = False) -> FilePath:
    """Atomically write *store* to *path*; optionally keep the old file as ``*.bak``."""

    path = FilePath(path).expanduser()
    text = export_layer(store)
    path.parent.mkdir(parents=True, exist_ok=True)
    if backup and path.exists():
        backup_path = path.with_name(path.name + BACKUP_SUFFIX)
        shutil.copy2(path, backup_path)
        logger.info("Kept previous layer file as %s", backup_path)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
        if path.exists():
            shutil.copymode(path, tmp_name)
        else:
            os.chmod(tmp_name, 0o666 & ~_current_umask())
        os.replace(tmp_name, path)
    except BaseException:
        FilePath(tmp_name).unlink(missing_ok=True)
        raise
    logger.info("Saved %d bindings to %s", len(store), path)
    return path


__all__ = [
    "BACKUP_SUFFIX",
    "LoadResult",
    "export_layer",
    "import_layer",
    "load_or_create",
    "save_layer",
]
