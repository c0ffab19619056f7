"""Project a semantic layer onto a decoded message without touching it."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Protocol, Sequence, Tuple

from .common import PREVIEW_LIMIT
from .paths import ROOT, Path, Step, StepKind
from .values import Value, ValueKind

logger = logging.getLogger(__name__)

RENDER_MODES: Tuple[str, ...] = ("annotated", "raw")


class BindingResolver(Protocol):
    def resolve(self, candidate: Path, kinds: Optional[Sequence[ValueKind]] = None) -> list: ...


@dataclass(frozen=True)
class AnnotatedNode:
    """A node of the rendered overlay.

    ``name`` comes from the most specific binding matching ``path`` and
    ``matched_path`` is that binding's path.  ``fallback`` is the name of the
    closest ancestor labelled through a wildcard binding; it is only meant for
    grouping in displays and never replaces ``name``.
    """

    path: Path
    value: Value
    name: Optional[str] = None
    matched_path: Optional[Path] = None
    fallback: Optional[str] = None
    key: Optional[Value] = None
    children: Tuple[Tuple[Step, "AnnotatedNode"], ...] = ()

    @property
    def kind(self) -> ValueKind:
        return self.value.kind

    @property
    def display_label(self) -> Optional[str]:
        return self.name if self.name is not None else self.fallback

    @property
    def step(self) -> Optional[Step]:
        return self.path.steps[-1] if self.path.steps else None

    def step_label(self) -> str:
        step = self.step
        if step is None:
            return "(root)"
        if step.kind is StepKind.INDEX:
            return f"[{step.index}]"
        if self.key is not None and self.key.kind is ValueKind.STR:
            return str(self.key.data)
        return str(step.key)

    def iter(self) -> Iterator["AnnotatedNode"]:
        yield self
        for _step, child in self.children:
            yield from child.iter()


def render(value: Value, store: BindingResolver) -> AnnotatedNode:
    """Annotate every node of *value* with the names bound in *store*.

    The store's lock (when it has one) is held for the whole pass so a
    concurrent mutation cannot interleave with the resolution of one message.
    """

    locked = getattr(store, "locked", None)
    if locked is None:
        return _render(value, ROOT, (), None, None, store)
    with locked():
        return _render(value, ROOT, (), None, None, store)


def _render(
    value: Value,
    path: Path,
    kinds: Tuple[ValueKind, ...],
    inherited: Optional[str],
    key: Optional[Value],
    store: BindingResolver,
) -> AnnotatedNode:
    name: Optional[str] = None
    matched: Optional[Path] = None
    if path.steps:
        matches = store.resolve(path, kinds)
        if matches:
            top = matches[0]
            name, matched = top.name, top.path
    passed_down = name if matched is not None and matched.wildcard_count else inherited

    children: List[Tuple[Step, AnnotatedNode]] = []
    if value.kind is ValueKind.SEQ:
        for index, item in enumerate(value.elements):
            step = Step.at(index)
            children.append(
                (step, _render(item, path.child(step), kinds + (item.kind,), passed_down, None, store))
            )
    elif value.kind is ValueKind.MAP:
        for entry in value.entries:
            step = Step(StepKind.KEY, key=entry.token)
            child = _render(
                entry.value,
                path.child(step),
                kinds + (entry.value.kind,),
                passed_down,
                entry.key,
                store,
            )
            children.append((step, child))
    return AnnotatedNode(
        path=path,
        value=value,
        name=name,
        matched_path=matched,
        fallback=inherited,
        key=key,
        children=tuple(children),
    )


# ------------------------------------------------------------------ Displays
@dataclass(frozen=True)
class OverlayRow:
    depth: int
    path: Path
    label: str
    name: Optional[str]
    fallback: Optional[str]
    preview: str


def flatten(node: AnnotatedNode, *, include_root: bool = False, limit: int = PREVIEW_LIMIT) -> List[OverlayRow]:
    """Flatten an overlay into display rows in pre-order."""

    rows: List[OverlayRow] = []
    for current in node.iter():
        depth = len(current.path)
        if depth == 0 and not include_root:
            continue
        rows.append(
            OverlayRow(
                depth=depth,
                path=current.path,
                label=current.step_label(),
                name=current.name,
                fallback=current.fallback,
                preview=current.value.preview(limit),
            )
        )
    return rows


def project(node: AnnotatedNode) -> object:
    """Build the deobfuscated view: map keys replaced by their bound names.

    Unlabelled keys keep their original value.  When two siblings would end up
    under the same key the later one is suffixed with its original key.
    Sequence elements keep their positions.
    """

    if node.kind is ValueKind.SEQ:
        return [project(child) for _step, child in node.children]
    if node.kind is not ValueKind.MAP:
        return node.value.to_python()
    projected: Dict[object, object] = {}
    for _step, child in node.children:
        original = child.key.to_python() if child.key is not None else child.step_label()
        target = child.name if child.name is not None else original
        if target in projected:
            target = f"{target} ({original})"
        projected[target] = project(child)
    return projected


def render_text(node: AnnotatedNode, mode: str = "annotated", *, limit: int = PREVIEW_LIMIT) -> str:
    """Indented text used by the terminal preview pane."""

    if mode not in RENDER_MODES:
        raise ValueError(f"Unknown render mode {mode!r}; expected one of {RENDER_MODES}")
    if not node.value.is_container:
        return node.value.preview(limit)
    lines: List[str] = []
    for row in flatten(node, limit=limit):
        indent = "  " * (row.depth - 1)
        if mode == "raw" or (row.name is None and row.fallback is None):
            lines.append(f"{indent}{row.label} = {row.preview}")
        elif row.name is not None:
            lines.append(f"{indent}{row.name} ({row.label}) = {row.preview}")
        else:
            lines.append(f"{indent}{row.label} = {row.preview}  ~{row.fallback}")
    return "\n".join(lines)


__all__ = [
    "AnnotatedNode",
    "BindingResolver",
    "OverlayRow",
    "RENDER_MODES",
    "flatten",
    "project",
    "render",
    "render_text",
]
