"""In-memory mapping store holding the bindings of one semantic layer."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Set, Tuple

from .common import InvalidName, InvalidPath
from .paths import Path, PathLike, as_path
from .values import ValueKind

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class Binding:
    """Association between a path and the semantic name shown for it."""

    path: Path
    name: str
    note: Optional[str] = None

    @property
    def expression(self) -> str:
        return str(self.path)


@dataclass(frozen=True)
class LayerMetadata:
    name: str
    created_at: datetime
    updated_at: datetime


_UNSET = object()


def _check_name(name: str) -> str:
    if not isinstance(name, str) or not name.strip():
        raise InvalidName("Semantic names must be non-empty strings")
    return name.strip()


def _check_note(note: Optional[str]) -> Optional[str]:
    if note is None:
        return None
    note = str(note).strip()
    return note or None


class MappingStore:
    """Ordered Path → name bindings plus layer metadata.

    Every operation takes the store's re-entrant lock.  Callers that need a
    mutation and the render that follows it to happen as one unit hold
    :meth:`locked` around both; concurrent readers can instead render against
    :meth:`snapshot`.
    """

    def __init__(
        self,
        name: str = "untitled",
        *,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
        clock: Clock = _utcnow,
    ) -> None:
        self._lock = threading.RLock()
        self._clock = clock
        self._name = _check_name(name)
        self._created_at = created_at or clock()
        self._updated_at = updated_at or self._created_at
        self._bindings: Dict[Path, Binding] = {}
        self._stamps: Dict[Path, int] = {}
        self._by_length: Dict[int, Set[Path]] = {}
        self._sequence = 0

    @classmethod
    def from_bindings(
        cls,
        name: str,
        bindings: Iterable[Binding],
        *,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
        clock: Clock = _utcnow,
        recency: Optional[Mapping[Path, int]] = None,
    ) -> "MappingStore":
        """Rebuild a store; the metadata timestamps are kept as given.

        *recency* ranks the bindings from oldest to newest bind (see
        :meth:`recency`).  Bindings it does not mention count as older than
        every ranked one; ties keep the order of *bindings*.
        """

        store = cls(name, created_at=created_at, updated_at=updated_at, clock=clock)
        ordered = list(bindings)
        for binding in ordered:
            store.bind(binding.path, binding.name, binding.note)
        if recency:
            position = {binding.path: index for index, binding in enumerate(ordered)}
            by_age = sorted(position, key=lambda path: (recency.get(path, 0), position[path]))
            store._stamps = {path: stamp for stamp, path in enumerate(by_age, start=1)}
            store._sequence = len(by_age)
        store._updated_at = updated_at or store._created_at
        return store

    # ---------------------------------------------------------------- Metadata
    @property
    def name(self) -> str:
        return self._name

    @property
    def metadata(self) -> LayerMetadata:
        with self._lock:
            return LayerMetadata(self._name, self._created_at, self._updated_at)

    def rename_layer(self, name: str) -> None:
        with self._lock:
            self._name = _check_name(name)
            self._touch()

    def _touch(self) -> None:
        self._updated_at = self._clock()

    def locked(self) -> threading.RLock:
        return self._lock

    # ---------------------------------------------------------------- Mutation
    def bind(self, path: PathLike, name: str, note: Optional[str] = None) -> Optional[Binding]:
        """Insert or overwrite the binding for *path*; return the previous one."""

        target = as_path(path)
        if target.is_root:
            raise InvalidPath("A binding needs at least one path step")
        binding = Binding(target, _check_name(name), _check_note(note))
        with self._lock:
            previous = self._bindings.get(target)
            self._bindings[target] = binding
            self._by_length.setdefault(len(target), set()).add(target)
            self._sequence += 1
            self._stamps[target] = self._sequence
            self._touch()
        logger.debug("Bound %s -> %r (replaced=%s)", target, binding.name, previous is not None)
        return previous

    def unbind(self, path: PathLike) -> bool:
        target = as_path(path)
        with self._lock:
            if target not in self._bindings:
                return False
            del self._bindings[target]
            del self._stamps[target]
            bucket = self._by_length.get(len(target))
            if bucket is not None:
                bucket.discard(target)
                if not bucket:
                    del self._by_length[len(target)]
            self._touch()
        logger.debug("Unbound %s", target)
        return True

    def update(self, path: PathLike, *, name: object = _UNSET, note: object = _UNSET) -> Binding:
        """Edit the name and/or note of an existing binding in place."""

        target = as_path(path)
        with self._lock:
            current = self._bindings.get(target)
            if current is None:
                raise KeyError(f"No binding for {target}")
            updated = Binding(
                target,
                current.name if name is _UNSET else _check_name(name),  # type: ignore[arg-type]
                current.note if note is _UNSET else _check_note(note),  # type: ignore[arg-type]
            )
            self._bindings[target] = updated
            self._touch()
            return updated

    # ------------------------------------------------------------------ Lookup
    def get(self, path: PathLike) -> Optional[Binding]:
        target = as_path(path)
        with self._lock:
            return self._bindings.get(target)

    def __contains__(self, path: object) -> bool:
        if not isinstance(path, (Path, str)):
            return False
        return self.get(path) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._bindings)

    def __iter__(self) -> Iterator[Binding]:
        return iter(self.all_bindings())

    def all_bindings(self) -> Tuple[Binding, ...]:
        """Snapshot of every binding in insertion order."""

        with self._lock:
            return tuple(self._bindings.values())

    def resolve(self, candidate: PathLike, kinds: Optional[Sequence[ValueKind]] = None) -> List[Binding]:
        """Return every binding matching *candidate*, most specific first."""

        target = as_path(candidate)
        with self._lock:
            bucket = self._by_length.get(len(target), ())
            matches = [path for path in bucket if path.matches(target, kinds)]
            matches.sort(key=self._rank)
            return [self._bindings[path] for path in matches]

    def recency(self) -> Dict[Path, int]:
        """Rank of every binding by bind time, 1 for the oldest."""

        with self._lock:
            ordered = sorted(self._stamps, key=self._stamps.__getitem__)
            return {path: rank for rank, path in enumerate(ordered, start=1)}

    def _rank(self, path: Path) -> Tuple[int, int, int]:
        concrete_steps, length = path.specificity()
        return (-concrete_steps, -length, -self._stamps[path])

    def snapshot(self) -> "MappingStore":
        """Independent copy for readers that must not observe later edits."""

        with self._lock:
            clone = MappingStore(
                self._name,
                created_at=self._created_at,
                updated_at=self._updated_at,
                clock=self._clock,
            )
            clone._bindings = dict(self._bindings)
            clone._stamps = dict(self._stamps)
            clone._by_length = {length: set(paths) for length, paths in self._by_length.items()}
            clone._sequence = self._sequence
            return clone

    def __repr__(self) -> str:
        return f"MappingStore(name={self._name!r}, bindings={len(self)})"


__all__ = ["Binding", "LayerMetadata", "MappingStore"]
