"""Launch the semantic layer builder over a capture database.

``semantic-layer DB LAYER`` opens the capture store read-only, loads (or starts)
the layer file and hands both to the terminal UI.  Whatever happens during the
session, the layer is written back on exit unless ``--no-save`` was given or
the analyst discarded their edits.

``--plain`` skips the UI: the first window of the selected session is printed
as annotated text, which is handy for scripting and for checking a layer
against a fresh capture.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, TextIO

from ..config import LOG_FORMAT, BuilderConfig
from ..core.common import CODECS, StoreAccessError
from ..core.layer_io import LoadResult, load_or_create, save_layer
from ..core.overlay import render, render_text
from ..core.store import MappingStore
from ..corpus.accessor import CorpusAccessor, MessageRecord

logger = logging.getLogger(__name__)

EXIT_STORE_ERROR = 2


def describe_record(record: MessageRecord, store: MappingStore, mode: str = "annotated") -> str:
    """Header line plus the overlay (or raw tree) of one record."""

    header = _format_header(record)
    value = record.decode()
    if value is None:
        return f"{header}\n  <undecodable: {record.decode_error}>"
    body = render_text(render(value, store), mode)
    indented = "\n".join(f"  {line}" for line in body.splitlines())
    return f"{header}\n{indented}" if indented else header


def _format_header(record: MessageRecord) -> str:
    proto = record.proto if record.proto is not None else "?"
    return f"#{record.record_id} session={record.session_id} proto={proto} t={record.timestamp} [{record.status}]"


def configure_logging(config: BuilderConfig, layer_path: Path, *, to_file: bool) -> logging.Handler:
    """Send log records to a file while the UI owns the terminal, else stderr."""

    handler: logging.Handler
    if to_file:
        log_path = config.log_path_for(layer_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_path, encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger("semantic_layer")
    root.addHandler(handler)
    root.setLevel(config.level)
    return handler


def _resolve_session(accessor: CorpusAccessor, requested: Optional[str]) -> Optional[object]:
    if requested is not None:
        return requested
    sessions = accessor.list_sessions()
    if not sessions:
        logger.warning("Record store %s holds no sessions", accessor.db_path)
        return None
    return sessions[0].session_id


def _load_messages(load: LoadResult, layer_path: Path) -> List[str]:
    messages: List[str] = []
    if load.error is not None:
        messages.append(f"Layer {layer_path} could not be loaded: {load.error}")
        messages.append("Started an empty layer; the old file is kept as a .bak on save.")
    elif load.existed:
        messages.append(f"Loaded {len(load.store)} bindings from {layer_path}")
    else:
        messages.append(f"New layer {load.store.name!r}; it will be written to {layer_path}")
    return messages


def run_plain(
    accessor: CorpusAccessor,
    store: MappingStore,
    session_id: Optional[object],
    config: BuilderConfig,
    *,
    stream: TextIO,
    messages: Sequence[str] = (),
) -> int:
    for line in messages:
        print(line, file=stream)
    if session_id is None:
        print("No sessions to show.", file=stream)
        return 0
    handle = accessor.open_session(session_id)
    records = accessor.next_page(handle, config.window_size)
    print(f"Session {session_id}: showing {len(records)} of {handle.total} records", file=stream)
    for record in records:
        print(describe_record(record, store), file=stream)
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="semantic-layer",
        description="Name the fields of captured protocol messages and keep the names as a semantic layer",
    )
    parser.add_argument("db", type=str, help="SQLite capture database (opened read-only)")
    parser.add_argument("layer", type=str, help="Layer file (TOML); created on save when missing")
    parser.add_argument("--session", type=str, help="Session to open (defaults to the first one)")
    parser.add_argument("--window", type=int, help="Records per window")
    parser.add_argument("--codec", choices=CODECS, help="Payload codec (default: auto)")
    parser.add_argument("--table", type=str, help="Capture table name")
    parser.add_argument("--log-file", type=str, help="Log file used while the terminal UI runs")
    parser.add_argument("--verbose", action="store_true", help="Log at DEBUG level")
    parser.add_argument(
        "--plain",
        action="store_true",
        help="Print the first window as annotated text instead of launching the UI",
    )
    parser.add_argument("--no-save", action="store_true", help="Leave the layer file untouched on exit")
    return parser


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        config = BuilderConfig.from_env().with_overrides(
            window_size=args.window,
            codec=args.codec,
            table=args.table,
            log_file=Path(args.log_file).expanduser() if args.log_file else None,
            log_level="DEBUG" if args.verbose else None,
        )
    except ValueError as exc:
        parser.error(str(exc))

    layer_path = Path(args.layer).expanduser()
    handler = configure_logging(config, layer_path, to_file=not args.plain)
    try:
        return _run(args, config, layer_path)
    finally:
        logging.getLogger("semantic_layer").removeHandler(handler)
        handler.close()


def _run(args: argparse.Namespace, config: BuilderConfig, layer_path: Path) -> int:
    load = load_or_create(layer_path)
    store = load.store
    try:
        accessor = CorpusAccessor(Path(args.db), schema=config.schema, codec=config.codec)
    except StoreAccessError as exc:
        logger.error("Cannot open record store: %s", exc)
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_STORE_ERROR

    messages = _load_messages(load, layer_path)
    should_save = not args.no_save
    tui = None
    try:
        session_id = _resolve_session(accessor, args.session)
        if args.plain:
            return run_plain(accessor, store, session_id, config, stream=sys.stdout, messages=messages)

        from .layer_tui import LayerBuilderTUI

        tui = LayerBuilderTUI(
            accessor=accessor,
            store=store,
            layer_path=layer_path,
            config=config,
            session_id=session_id,
            load_messages=messages,
            backup_on_save=load.fell_back,
        )
        tui.run()
        if tui.discarded:
            should_save = False
    except KeyboardInterrupt:
        print("\nExiting.")
    finally:
        accessor.close()
        if should_save:
            backup = tui.backup_pending if tui is not None else load.fell_back
            save_layer(store, layer_path, backup=backup)
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
