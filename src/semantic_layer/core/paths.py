"""Paths addressing nodes inside canonical value trees.

A :class:`Path` is an immutable sequence of :class:`Step` objects.  Steps are
map keys (compared through their :class:`~semantic_layer.core.values.CanonicalKey`),
sequence indices or single-level wildcards, and any step may carry a type guard
restricting the match to nodes of one :class:`~semantic_layer.core.values.ValueKind`.

Paths have a textual form used by layer files and the command line::

    a.x            map key "a", then map key "x"
    a.*            any child of "a"
    items[3].#7    index 3 of "items", then integer key 7
    "dotted.key"   quoted string key
    0xdeadbeef...  binary key (normalized like decoded keys)
    a.*:int        any child of "a" holding an integer
"""

from __future__ import annotations

import enum
import json
import re
from dataclasses import dataclass
from json.decoder import scanstring
from typing import Iterator, List, Optional, Sequence, Tuple, Union

from .common import DecodeError, InvalidPath
from .values import CanonicalKey, KeyTag, Value, ValueKind, key_token

_IDENT_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_\-]*")
_INT_RE = re.compile(r"-?[0-9]+")
_HEX_RE = re.compile(r"[0-9A-Fa-f]*")
_DIGITS_RE = re.compile(r"[0-9]+")
_KIND_RE = re.compile(r"[a-z]+")


class StepKind(enum.Enum):
    KEY = "key"
    INDEX = "index"
    WILDCARD = "wildcard"


@dataclass(frozen=True)
class Step:
    kind: StepKind
    key: Optional[CanonicalKey] = None
    index: Optional[int] = None
    guard: Optional[ValueKind] = None

    @classmethod
    def map_key(cls, key: object, guard: Optional[ValueKind] = None) -> "Step":
        token = key if isinstance(key, CanonicalKey) else key_token(key)
        return cls(StepKind.KEY, key=token, guard=guard)

    @classmethod
    def at(cls, index: int, guard: Optional[ValueKind] = None) -> "Step":
        if index < 0:
            raise InvalidPath(f"Sequence index must be non-negative, got {index}")
        return cls(StepKind.INDEX, index=int(index), guard=guard)

    @classmethod
    def any(cls, guard: Optional[ValueKind] = None) -> "Step":
        return cls(StepKind.WILDCARD, guard=guard)

    @property
    def is_wildcard(self) -> bool:
        return self.kind is StepKind.WILDCARD

    def with_guard(self, guard: Optional[ValueKind]) -> "Step":
        return Step(self.kind, key=self.key, index=self.index, guard=guard)

    def matches(self, concrete: "Step", kind: Optional[ValueKind] = None) -> bool:
        if self.guard is not None and self.guard is not kind:
            return False
        if self.kind is StepKind.WILDCARD:
            return True
        if self.kind is not concrete.kind:
            return False
        if self.kind is StepKind.KEY:
            return self.key == concrete.key
        return self.index == concrete.index


@dataclass(frozen=True)
class Path:
    steps: Tuple[Step, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.steps, tuple):
            object.__setattr__(self, "steps", tuple(self.steps))

    @classmethod
    def of(cls, *steps: Step) -> "Path":
        return cls(tuple(steps))

    @classmethod
    def parse(cls, text: str) -> "Path":
        return parse_path(text)

    def __len__(self) -> int:
        return len(self.steps)

    def __iter__(self) -> Iterator[Step]:
        return iter(self.steps)

    def __str__(self) -> str:
        return format_path(self)

    @property
    def is_root(self) -> bool:
        return not self.steps

    @property
    def parent(self) -> "Path":
        return Path(self.steps[:-1])

    @property
    def wildcard_count(self) -> int:
        return sum(1 for step in self.steps if step.is_wildcard)

    @property
    def is_concrete(self) -> bool:
        return all(not step.is_wildcard and step.guard is None for step in self.steps)

    def child(self, step: Step) -> "Path":
        return Path(self.steps + (step,))

    def specificity(self) -> Tuple[int, int]:
        """Return ``(non-wildcard steps, length)``; larger is more specific."""

        return len(self.steps) - self.wildcard_count, len(self.steps)

    def matches(self, candidate: "Path", kinds: Optional[Sequence[ValueKind]] = None) -> bool:
        """Check whether this (stored) path addresses the concrete *candidate*.

        ``kinds`` lists the kind of the node reached after each candidate step;
        guarded steps never match when it is not supplied.
        """

        if len(self.steps) != len(candidate.steps):
            return False
        if kinds is not None and len(kinds) != len(candidate.steps):
            raise ValueError("kinds must describe every step of the candidate path")
        for position, (stored, concrete) in enumerate(zip(self.steps, candidate.steps)):
            kind = kinds[position] if kinds is not None else None
            if not stored.matches(concrete, kind):
                return False
        return True


ROOT = Path()
PathLike = Union[Path, str]


def as_path(value: PathLike) -> Path:
    if isinstance(value, Path):
        return value
    if isinstance(value, str):
        return parse_path(value)
    raise TypeError(f"Expected a Path or path expression, got {type(value).__name__}")


# ---------------------------------------------------------------- Expressions
def parse_path(text: str) -> Path:
    """Parse a path expression into a :class:`Path`."""

    if not isinstance(text, str):
        raise InvalidPath(f"Path expression must be a string, got {type(text).__name__}")
    source = text.strip()
    if not source:
        raise InvalidPath("Path expression is empty", expression=text, column=1)
    parser = _PathParser(source)
    return Path(tuple(parser.parse()))


class _PathParser:
    def __init__(self, source: str) -> None:
        self.source = source
        self.pos = 0

    def fail(self, message: str, pos: Optional[int] = None) -> InvalidPath:
        column = (self.pos if pos is None else pos) + 1
        return InvalidPath(message, expression=self.source, column=column)

    def parse(self) -> List[Step]:
        steps: List[Step] = []
        first = True
        while self.pos < len(self.source):
            char = self.source[self.pos]
            if char == "[":
                steps.append(self._bracket())
            elif first:
                steps.append(self._segment())
            elif char == ".":
                self.pos += 1
                if self.pos >= len(self.source):
                    raise self.fail("Expected a segment after '.'")
                steps.append(self._segment())
            else:
                raise self.fail(f"Unexpected character {char!r}")
            first = False
        return steps

    def _bracket(self) -> Step:
        start = self.pos
        self.pos += 1
        if self.source.startswith("*]", self.pos):
            self.pos += 2
            return Step.any(self._guard())
        match = _DIGITS_RE.match(self.source, self.pos)
        if match is None:
            raise self.fail("Expected a sequence index or '*' inside brackets")
        self.pos = match.end()
        if not self.source.startswith("]", self.pos):
            raise self.fail("Unterminated index, expected ']'", start)
        self.pos += 1
        return Step.at(int(match.group()), self._guard())

    def _segment(self) -> Step:
        source, pos = self.source, self.pos
        char = source[pos]
        if char == "*":
            self.pos += 1
            return Step.any(self._guard())
        if char == "#":
            match = _INT_RE.match(source, pos + 1)
            if match is None:
                raise self.fail("Expected an integer after '#'", pos + 1)
            self.pos = match.end()
            return Step.map_key(CanonicalKey.integer(int(match.group())), self._guard())
        if source.startswith("0x", pos):
            match = _HEX_RE.match(source, pos + 2)
            digits = match.group() if match else ""
            if len(digits) % 2:
                raise self.fail("Binary keys need an even number of hex digits", pos)
            self.pos = pos + 2 + len(digits)
            return Step.map_key(self._binary(bytes.fromhex(digits), pos), self._guard())
        if char == '"':
            try:
                text, end = scanstring(source, pos + 1)
            except json.JSONDecodeError as exc:
                raise self.fail(f"Malformed quoted key: {exc.msg}", pos) from exc
            self.pos = end
            return Step.map_key(CanonicalKey.text(text), self._guard())
        match = _IDENT_RE.match(source, pos)
        if match is None:
            if char.isdigit():
                raise self.fail("Bare numbers are ambiguous; use #N for integer keys or [N] for indices")
            raise self.fail(f"Unexpected character {char!r}")
        self.pos = match.end()
        return Step.map_key(CanonicalKey.text(match.group()), self._guard())

    def _binary(self, raw: bytes, pos: int) -> CanonicalKey:
        try:
            return key_token(raw)
        except DecodeError as exc:  # pragma: no cover - bytes always tokenize
            raise self.fail(str(exc), pos) from exc

    def _guard(self) -> Optional[ValueKind]:
        if not self.source.startswith(":", self.pos):
            return None
        start = self.pos + 1
        match = _KIND_RE.match(self.source, start)
        if match is None:
            raise self.fail("Expected a value kind after ':'", start)
        self.pos = match.end()
        try:
            return ValueKind.parse(match.group())
        except ValueError as exc:
            raise self.fail(str(exc), start) from exc


def format_path(path: Path) -> str:
    """Render *path* in its canonical textual form."""

    parts: List[str] = []
    for position, step in enumerate(path.steps):
        if step.kind is StepKind.INDEX:
            text = f"[{step.index}]"
        else:
            text = "*" if step.is_wildcard else _format_key(step.key)  # type: ignore[arg-type]
            if position:
                text = "." + text
        if step.guard is not None:
            text += f":{step.guard.value}"
        parts.append(text)
    return "".join(parts)


def _format_key(key: CanonicalKey) -> str:
    if key.tag is KeyTag.STR:
        token = str(key.token)
        if _IDENT_RE.fullmatch(token):
            return token
        return json.dumps(token, ensure_ascii=False)
    return str(key)


# ---------------------------------------------------------------- Traversal
NodeEntry = Tuple[Path, Value, Tuple[ValueKind, ...]]


def iter_nodes(value: Value) -> Iterator[NodeEntry]:
    """Yield ``(path, node, kinds)`` for every node in pre-order, root first.

    ``kinds`` holds the kind of each node reached along ``path`` and is what
    :meth:`Path.matches` expects for evaluating type guards.
    """

    yield from _iter_nodes(value, ROOT, ())


def _iter_nodes(value: Value, path: Path, kinds: Tuple[ValueKind, ...]) -> Iterator[NodeEntry]:
    yield path, value, kinds
    if value.kind is ValueKind.SEQ:
        for index, item in enumerate(value.elements):
            yield from _iter_nodes(item, path.child(Step.at(index)), kinds + (item.kind,))
    elif value.kind is ValueKind.MAP:
        for entry in value.entries:
            step = Step(StepKind.KEY, key=entry.token)
            yield from _iter_nodes(entry.value, path.child(step), kinds + (entry.value.kind,))


def paths_of(value: Value) -> Iterator[Path]:
    """Lazily enumerate the path of every addressable node of *value*."""

    for path, _node, _kinds in iter_nodes(value):
        yield path


def node_at(value: Value, path: Path) -> Optional[Value]:
    """Follow a concrete *path* from *value*; ``None`` when it leads nowhere."""

    node: Optional[Value] = value
    for step in path.steps:
        if node is None:
            return None
        if step.kind is StepKind.KEY:
            node = node.lookup(step.key)  # type: ignore[arg-type]
        elif step.kind is StepKind.INDEX:
            elements = node.elements
            node = elements[step.index] if step.index is not None and step.index < len(elements) else None
        else:
            raise InvalidPath("node_at requires a concrete path")
    return node


__all__ = [
    "NodeEntry",
    "Path",
    "PathLike",
    "ROOT",
    "Step",
    "StepKind",
    "as_path",
    "format_path",
    "iter_nodes",
    "node_at",
    "parse_path",
    "paths_of",
]
