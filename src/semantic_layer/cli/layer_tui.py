"""Interactive terminal UI for the semantic layer builder."""

from __future__ import annotations

import logging
import textwrap
from concurrent.futures import Executor
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from prompt_toolkit.application import Application
from prompt_toolkit.buffer import Buffer
from prompt_toolkit.document import Document
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.layout import HSplit, Layout, VSplit
from prompt_toolkit.layout.dimension import Dimension
from prompt_toolkit.widgets import Frame, TextArea

from ..config import BuilderConfig
from ..core.common import InvalidName, InvalidPath, SemanticLayerError, shorten
from ..core.layer_io import save_layer
from ..core.overlay import RENDER_MODES
from ..core.paths import parse_path
from ..core.store import MappingStore
from ..corpus.accessor import CorpusAccessor, MessageRecord
from ..corpus.loader import PageLoader, PageResult
from .layer_builder import describe_record

logger = logging.getLogger(__name__)

_MAX_MESSAGES = 200
_NOTE_SEPARATOR = " -- "

HELP_LINES = (
    "bind PATH NAME [-- NOTE]   name the field at PATH (wildcards: a.*, items[*])",
    "unbind PATH                remove a binding",
    "note PATH TEXT             attach a note to a binding",
    "filter TEXT                list the session's records whose protocol tag contains TEXT",
    "session ID / window N      jump to a session or window",
    "raw / paths                toggle the preview / list the record's paths",
    "save / quit / discard      write the layer / save and exit / exit unsaved",
)


class LayerBuilderTUI:
    """Prompt-toolkit front end for ``semantic-layer``."""

    _STATUS_PANEL_WIDTH = 34

    def __init__(
        self,
        *,
        accessor: CorpusAccessor,
        store: MappingStore,
        layer_path: Path,
        config: BuilderConfig,
        session_id: Optional[object],
        load_messages: Sequence[str] = (),
        backup_on_save: bool = False,
        executor: Optional[Executor] = None,
    ) -> None:
        self.accessor = accessor
        self.store = store
        self.layer_path = Path(layer_path)
        self.config = config
        self.session_id = session_id
        self.window_index = 0
        self.mode = RENDER_MODES[0]
        self.name_filter = ""
        self.filtered_ids: Optional[List[int]] = None
        self.records: List[MessageRecord] = []
        self.selected = 0
        self.discarded = False
        self.backup_pending = backup_on_save
        self.loading = False
        self.loader = PageLoader(accessor, executor=executor, post=self._post)
        self._messages: List[str] = [f"[system] {msg}" for msg in load_messages]
        self._commands: Dict[str, Callable[[str], None]] = {
            "bind": self._cmd_bind,
            "unbind": self._cmd_unbind,
            "note": self._cmd_note,
            "filter": self._cmd_filter,
            "session": self._cmd_session,
            "window": self._cmd_window,
            "raw": lambda _rest: self.toggle_mode(),
            "paths": lambda _rest: self.show_paths(),
            "save": lambda _rest: self.save(),
            "quit": lambda _rest: self.quit(save=True),
            "discard": lambda _rest: self.quit(save=False),
            "help": lambda _rest: self._show_help(),
        }
        self._app: Optional[Application] = None
        self._records_area: Optional[TextArea] = None
        self._preview_area: Optional[TextArea] = None
        self._status_area: Optional[TextArea] = None
        self._messages_area: Optional[TextArea] = None
        self._input_area: Optional[TextArea] = None

    # ------------------------------------------------------------------ UI glue
    def _ensure_application(self) -> Application:
        if self._app is not None:
            return self._app

        records_area = TextArea(read_only=True, scrollbar=True, wrap_lines=False, width=Dimension(min=30, preferred=44))
        preview_area = TextArea(read_only=True, scrollbar=True, wrap_lines=False)
        status_area = TextArea(read_only=True, width=Dimension(min=24, preferred=self._STATUS_PANEL_WIDTH))
        messages_area = TextArea(read_only=True, wrap_lines=True, height=Dimension(min=3, preferred=6))
        input_area = TextArea(
            height=1,
            prompt="> ",
            multiline=False,
            wrap_lines=False,
            accept_handler=self._handle_submit,
        )

        body = HSplit(
            [
                VSplit(
                    [
                        Frame(records_area, title="Messages"),
                        Frame(preview_area, title="Preview"),
                        Frame(status_area, title="Layer"),
                    ],
                    padding=1,
                ),
                Frame(messages_area, title="Log"),
                input_area,
            ]
        )

        kb = KeyBindings()

        @kb.add("up")
        def _(event) -> None:
            self.move_selection(-1)

        @kb.add("down")
        def _(event) -> None:
            self.move_selection(1)

        @kb.add("pagedown")
        def _(event) -> None:
            self.next_window()

        @kb.add("pageup")
        def _(event) -> None:
            self.previous_window()

        @kb.add("f2")
        def _(event) -> None:
            self.toggle_mode()

        @kb.add("f5")
        def _(event) -> None:
            self.refresh()

        @kb.add("c-s")
        def _(event) -> None:
            self.save()

        @kb.add("c-c")
        def _(event) -> None:  # pragma: no cover - interactive exit
            self.quit(save=True)

        self._records_area = records_area
        self._preview_area = preview_area
        self._status_area = status_area
        self._messages_area = messages_area
        self._input_area = input_area

        self._app = Application(layout=Layout(body, focused_element=input_area), full_screen=True, key_bindings=kb)
        self._refresh_messages()
        self._refresh_all()
        if self.session_id is not None:
            self.load_window(0)
        else:
            self._append_message("[system] The record store holds no sessions.")
        return self._app

    def run(self) -> None:
        app = self._ensure_application()
        try:
            app.run()
        finally:
            self.loader.shutdown()

    def _post(self, func: Callable[[], None]) -> None:
        app = self._app
        if app is not None and app.is_running and app.loop is not None:
            app.loop.call_soon_threadsafe(func)
        else:
            func()

    # ----------------------------------------------------------------- Handlers
    def _handle_submit(self, buff: Buffer) -> bool:
        text = buff.text.strip()
        buff.reset()
        if not text:
            return False
        self.handle_command(text)
        return False

    def handle_command(self, text: str) -> None:
        word, _, rest = text.strip().partition(" ")
        handler = self._commands.get(word.lower())
        if handler is None:
            self._append_message(f"[error] Unknown command {word!r}; type 'help' for the list.")
            return
        try:
            handler(rest.strip())
        except (InvalidPath, InvalidName) as exc:
            self._append_message(f"[error] {exc}")
        except SemanticLayerError as exc:
            logger.warning("Command %r failed: %s", text, exc)
            self._append_message(f"[error] {exc}")

    def _cmd_bind(self, rest: str) -> None:
        expression, _, tail = rest.partition(" ")
        name, _, note = tail.partition(_NOTE_SEPARATOR)
        if not expression or not name.strip():
            self._append_message("[error] usage: bind PATH NAME [-- NOTE]")
            return
        path = parse_path(expression)
        with self.store.locked():
            previous = self.store.bind(path, name.strip(), note.strip() or None)
            self._refresh_preview()
        verb = "Rebound" if previous is not None else "Bound"
        self._append_message(f"[layer] {verb} {path} -> {name.strip()}")
        self._refresh_status()

    def _cmd_unbind(self, rest: str) -> None:
        if not rest:
            self._append_message("[error] usage: unbind PATH")
            return
        path = parse_path(rest)
        with self.store.locked():
            removed = self.store.unbind(path)
            self._refresh_preview()
        if removed:
            self._append_message(f"[layer] Unbound {path}")
        else:
            self._append_message(f"[layer] {path} was not bound")
        self._refresh_status()

    def _cmd_note(self, rest: str) -> None:
        expression, _, text = rest.partition(" ")
        if not expression:
            self._append_message("[error] usage: note PATH TEXT")
            return
        path = parse_path(expression)
        try:
            self.store.update(path, note=text.strip() or None)
        except KeyError:
            self._append_message(f"[error] {path} is not bound")
            return
        self._append_message(f"[layer] Note on {path} {'set' if text.strip() else 'cleared'}")

    def _cmd_filter(self, rest: str) -> None:
        self.name_filter = rest
        self.selected = 0
        if not rest:
            self.filtered_ids = None
            self._append_message("[view] Filter cleared")
        else:
            self.filtered_ids = self._matching_ids()
            self._append_message(f"[view] Filter {rest!r}: {len(self.filtered_ids)} records")
        self.load_window(0)

    def _cmd_session(self, rest: str) -> None:
        if not rest:
            self._append_message("[error] usage: session ID")
            return
        self.open_session(rest)

    def _cmd_window(self, rest: str) -> None:
        try:
            index = int(rest)
        except ValueError:
            self._append_message("[error] usage: window N")
            return
        if index < 0:
            self._append_message("[error] Window numbers start at 0")
            return
        self.load_window(index)

    # ----------------------------------------------------------------- Actions
    def open_session(self, session_id: object) -> None:
        self.session_id = session_id
        self.records = []
        self.selected = 0
        if self.name_filter:
            self.filtered_ids = self._matching_ids()
        self._append_message(f"[view] Session {session_id}")
        self.load_window(0)

    def load_window(self, index: int) -> None:
        if self.session_id is None:
            return
        if self.filtered_ids is not None:
            self._load_filtered_window(index)
            return
        self.loading = True
        self._refresh_status()
        self.loader.request(self.session_id, index, self.config.window_size, self._apply_page)

    def _matching_ids(self) -> List[int]:
        """Ids of the current session's records whose protocol tag contains the filter."""

        if self.session_id is None:
            return []
        try:
            headers = self.accessor.list_headers(self.name_filter)
        except SemanticLayerError as exc:
            self._append_message(f"[error] {exc}")
            return []
        wanted = str(self.session_id)
        return [header.record_id for header in headers if str(header.session_id) == wanted]

    def _load_filtered_window(self, index: int) -> None:
        # Supersede any page still in flight from the unfiltered view.
        self.loader.cancel()
        size = self.config.window_size
        result = PageResult(self.loader.epoch, self.session_id, index, size)
        try:
            for record_id in self.filtered_ids[index * size : (index + 1) * size]:  # type: ignore[index]
                record = self.accessor.get_record(record_id)
                if record is not None:
                    result.records.append(record)
        except SemanticLayerError as exc:
            result.error = exc
        self._apply_page(result)

    def _apply_page(self, result: PageResult) -> None:
        self.loading = False
        if result.error is not None:
            self._append_message(f"[error] {result.error}")
        elif not result.records and result.window_index > 0:
            self._append_message(f"[view] Window {result.window_index} is past the end of the session")
        else:
            self.window_index = result.window_index
            self.records = result.records
            self.selected = 0
            undecodable = sum(1 for record in self.records if not record.is_decodable)
            if undecodable:
                self._append_message(f"[view] {undecodable} undecodable records in this window")
        self._refresh_all()

    def next_window(self) -> None:
        self.load_window(self.window_index + 1)

    def previous_window(self) -> None:
        if self.window_index > 0:
            self.load_window(self.window_index - 1)

    def refresh(self) -> None:
        self._append_message("[view] Refreshing")
        if self.name_filter:
            self.filtered_ids = self._matching_ids()
        self.load_window(self.window_index)

    def visible_records(self) -> List[MessageRecord]:
        return list(self.records)

    @property
    def current_record(self) -> Optional[MessageRecord]:
        visible = self.visible_records()
        if not visible:
            return None
        return visible[min(self.selected, len(visible) - 1)]

    def move_selection(self, delta: int) -> None:
        visible = self.visible_records()
        if not visible:
            return
        self.selected = (min(self.selected, len(visible) - 1) + delta) % len(visible)
        self._refresh_records()
        self._refresh_preview()

    def toggle_mode(self) -> None:
        index = RENDER_MODES.index(self.mode)
        self.mode = RENDER_MODES[(index + 1) % len(RENDER_MODES)]
        self._refresh_preview()
        self._refresh_status()

    def show_paths(self) -> None:
        record = self.current_record
        if record is None:
            self._append_message("[view] No record selected")
            return
        if not record.is_decodable:
            self._append_message(f"[view] Record #{record.record_id} is undecodable")
            return
        paths = [str(path) for path in record.paths()]
        self._append_message(f"[paths] #{record.record_id}: {len(paths)} paths")
        for path in paths:
            self._append_message(f"  {path}")

    def save(self) -> Optional[Path]:
        try:
            path = save_layer(self.store, self.layer_path, backup=self.backup_pending)
        except OSError as exc:
            logger.error("Saving %s failed: %s", self.layer_path, exc)
            self._append_message(f"[error] Could not save {self.layer_path}: {exc}")
            return None
        self.backup_pending = False
        self._append_message(f"[layer] Saved {len(self.store)} bindings to {path}")
        return path

    def quit(self, *, save: bool) -> None:
        """Leave the UI; the launcher writes the layer unless *save* is false."""

        self.discarded = not save
        if self._app is not None and self._app.is_running:
            self._app.exit()

    def _show_help(self) -> None:
        for line in HELP_LINES:
            self._append_message(f"[help] {line}")

    # ---------------------------------------------------------------- Utilities
    def _append_message(self, line: str) -> None:
        self._messages.append(line)
        del self._messages[:-_MAX_MESSAGES]
        self._refresh_messages()

    def _refresh_all(self) -> None:
        self._refresh_records()
        self._refresh_preview()
        self._refresh_status()

    def _refresh_messages(self) -> None:
        if self._messages_area is None:
            return
        text = "\n".join(self._messages)
        self._set_text(self._messages_area, text, cursor_at_end=True)

    def _refresh_records(self) -> None:
        if self._records_area is None:
            return
        visible = self.visible_records()
        lines: List[str] = []
        for position, record in enumerate(visible):
            marker = ">" if position == min(self.selected, len(visible) - 1) else " "
            proto = shorten(str(record.proto or "?"), 16)
            flag = " !" if record.status == "undecodable" else ""
            lines.append(f"{marker} #{record.record_id:<6} {proto:<16} {record.timestamp}{flag}")
        if not lines:
            lines.append("(loading)" if self.loading else "(no records)")
        self._set_text(self._records_area, "\n".join(lines))

    def _refresh_preview(self) -> None:
        if self._preview_area is None:
            return
        record = self.current_record
        text = "" if record is None else describe_record(record, self.store, self.mode)
        self._set_text(self._preview_area, text)

    def _refresh_status(self) -> None:
        if self._status_area is None:
            return
        meta = self.store.metadata
        lines = [f"Layer: {meta.name}", f"Bindings: {len(self.store)}"]
        lines.extend(self._wrap_label_value("File:", str(self.layer_path)))
        lines.append("")
        lines.append(f"Session: {self.session_id if self.session_id is not None else '-'}")
        lines.append(f"Window: {self.window_index} (size {self.config.window_size})")
        lines.append(f"Preview: {self.mode}")
        if self.filtered_ids is not None:
            lines.append(f"Filter: {self.name_filter} ({len(self.filtered_ids)} matches)")
        if self.loading:
            lines.append("Loading…")
        lines.append("")
        lines.append("Hotkeys:")
        lines.extend(self._format_hotkey_lines())
        self._set_text(self._status_area, "\n".join(lines))

    def _format_hotkey_lines(self) -> List[str]:
        entries = [
            ("Up/Down", "Select record"),
            ("PgDn/PgUp", "Next/previous window"),
            ("F2", "Raw/annotated"),
            ("F5", "Refresh"),
            ("Ctrl+S", "Save layer"),
            ("Ctrl+C", "Save and exit"),
        ]
        width = max(len(key) for key, _ in entries)
        return [f"  [{key.ljust(width)}] {description}" for key, description in entries]

    def _wrap_label_value(self, label: str, value: str) -> List[str]:
        width = max(8, self._STATUS_PANEL_WIDTH - len(label) - 1)
        wrapped = textwrap.wrap(value, width=width, break_long_words=True, break_on_hyphens=False)
        if not wrapped:
            return [label]
        first, *rest = wrapped
        indent = " " * (len(label) + 1)
        return [f"{label} {first}"] + [f"{indent}{chunk}" for chunk in rest]

    def _set_text(self, area: TextArea, text: str, *, cursor_at_end: bool = False) -> None:
        area.document = Document(text, len(text) if cursor_at_end else 0)
        self._invalidate()

    def _invalidate(self) -> None:
        if self._app is not None:
            self._app.invalidate()

    @property
    def messages(self) -> List[str]:
        return list(self._messages)


__all__ = ["HELP_LINES", "LayerBuilderTUI"]
