"""Batch helpers around semantic layers.

Sub-commands::

    semantic-layer-tool check LAYER
    semantic-layer-tool show LAYER
    semantic-layer-tool paths DB --session ID [--limit N]
    semantic-layer-tool render DB LAYER --session ID [--window N] [--size N] [--json]
"""

from __future__ import annotations

import argparse
import json
import re
import sys
from collections import Counter
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, TextIO

from ..cli.layer_builder import describe_record
from ..config import BuilderConfig
from ..core.common import CODECS, SemanticLayerError
from ..core.layer_io import import_layer
from ..core.overlay import project, render
from ..core.store import MappingStore
from ..corpus.accessor import CorpusAccessor

BYTES_PREFIX = "0x"
_TAGGED_KEY_RE = re.compile(r"#-?\d+|0x[0-9a-fA-F]*|\".*\"", re.DOTALL)


class ToolError(RuntimeError):
    """Raised for user-facing failures of the layer tool."""


def _read_layer(path: Path) -> MappingStore:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ToolError(f"Unable to read {path}: {exc}") from exc
    return import_layer(text)


def _open_accessor(args: argparse.Namespace) -> CorpusAccessor:
    config = BuilderConfig.from_env().with_overrides(codec=args.codec, table=args.table)
    return CorpusAccessor(Path(args.db), schema=config.schema, codec=config.codec)


def jsonable(value: object) -> object:
    """Make a projected value JSON friendly: bytes become hex, keys become text."""

    if isinstance(value, dict):
        return {_json_key(key): jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(item) for item in value]
    if isinstance(value, (bytes, bytearray, memoryview)):
        return BYTES_PREFIX + bytes(value).hex()
    return value


def _json_key(key: object) -> str:
    # Integer and binary keys use the path syntax (#N, 0x..); text that reads
    # like either is quoted so the three never collide.
    if isinstance(key, str):
        return json.dumps(key, ensure_ascii=False) if _TAGGED_KEY_RE.fullmatch(key) else key
    if isinstance(key, (bytes, bytearray, memoryview)):
        return BYTES_PREFIX + bytes(key).hex()
    if isinstance(key, int) and not isinstance(key, bool):
        return f"#{key}"
    return json.dumps(key)


# ------------------------------------------------------------------ Commands
def cmd_check(args: argparse.Namespace, out: TextIO) -> int:
    store = _read_layer(Path(args.layer))
    meta = store.metadata
    wildcards = sum(1 for binding in store.all_bindings() if binding.path.wildcard_count)
    print(f"{args.layer}: layer {meta.name!r} is valid", file=out)
    print(f"  bindings: {len(store)} ({wildcards} with wildcards)", file=out)
    print(f"  created:  {meta.created_at.isoformat()}", file=out)
    print(f"  updated:  {meta.updated_at.isoformat()}", file=out)
    return 0


def cmd_show(args: argparse.Namespace, out: TextIO) -> int:
    store = _read_layer(Path(args.layer))
    bindings = store.all_bindings()
    if not bindings:
        print("(no bindings)", file=out)
        return 0
    width = max(len(binding.expression) for binding in bindings)
    for binding in bindings:
        line = f"{binding.expression.ljust(width)}  -> {binding.name}"
        if binding.note:
            line += f"  # {binding.note}"
        print(line, file=out)
    return 0


def cmd_paths(args: argparse.Namespace, out: TextIO) -> int:
    counts: Counter = Counter()
    order: Dict[str, int] = {}
    scanned = undecodable = 0
    with _open_accessor(args) as accessor:
        handle = accessor.open_session(args.session)
        while not handle.exhausted and (args.limit is None or scanned < args.limit):
            size = args.size if args.limit is None else min(args.size, args.limit - scanned)
            records = accessor.next_page(handle, size)
            if not records:
                break
            for record in records:
                scanned += 1
                if not record.is_decodable:
                    undecodable += 1
                    continue
                for path in dict.fromkeys(str(path) for path in record.paths()):
                    order.setdefault(path, len(order))
                    counts[path] += 1
    print(f"session {args.session}: {scanned} records, {undecodable} undecodable, {len(counts)} paths", file=out)
    for path in sorted(counts, key=order.__getitem__):
        print(f"{counts[path]:>6}  {path}", file=out)
    return 0


def cmd_render(args: argparse.Namespace, out: TextIO) -> int:
    store = _read_layer(Path(args.layer))
    with _open_accessor(args) as accessor:
        records = accessor.fetch_window(args.session, args.window, args.size)
        if args.json:
            payload: List[Dict[str, object]] = []
            for record in records:
                entry: Dict[str, object] = {
                    "record_id": record.record_id,
                    "session": record.session_id,
                    "timestamp": record.timestamp,
                    "status": "ok" if record.is_decodable else "undecodable",
                }
                if record.is_decodable:
                    entry["value"] = jsonable(project(render(record.value, store)))
                else:
                    entry["error"] = str(record.decode_error)
                payload.append(entry)
            print(json.dumps(jsonable(payload), indent=2, ensure_ascii=False), file=out)
            return 0
        for record in records:
            print(describe_record(record, store), file=out)
    return 0


def _add_store_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("db", type=str, help="SQLite capture database")
    parser.add_argument("--session", required=True, help="Session id")
    parser.add_argument("--codec", choices=CODECS, help="Payload codec (default: auto)")
    parser.add_argument("--table", type=str, help="Capture table name")


def _positive(text: str) -> int:
    value = int(text)
    if value <= 0:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {text}")
    return value


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="semantic-layer-tool", description="Inspect semantic layers and captures")
    sub = parser.add_subparsers(dest="command", required=True)

    check = sub.add_parser("check", help="Validate a layer file")
    check.add_argument("layer", type=str)
    check.set_defaults(func=cmd_check)

    show = sub.add_parser("show", help="List the bindings of a layer")
    show.add_argument("layer", type=str)
    show.set_defaults(func=cmd_show)

    paths = sub.add_parser("paths", help="Count the distinct paths of a session's records")
    _add_store_options(paths)
    paths.add_argument("--limit", type=_positive, help="Scan at most N records")
    paths.add_argument("--size", type=_positive, default=200, help="Records fetched per page")
    paths.set_defaults(func=cmd_paths)

    render_cmd = sub.add_parser("render", help="Print records through a layer")
    _add_store_options(render_cmd)
    render_cmd.add_argument("layer", type=str)
    render_cmd.add_argument("--window", type=int, default=0, help="Window index (default: 0)")
    render_cmd.add_argument("--size", type=_positive, default=10, help="Records per window")
    render_cmd.add_argument("--json", action="store_true", help="Emit the projected records as JSON")
    render_cmd.set_defaults(func=cmd_render)
    return parser.parse_args(argv)


def main(argv: Optional[Iterable[str]] = None, *, out: Optional[TextIO] = None) -> int:
    args = _parse_args(list(argv) if argv is not None else None)
    try:
        return args.func(args, out or sys.stdout)
    except (SemanticLayerError, ToolError, ValueError) as exc:
        print(f"semantic-layer-tool: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main())
