"""Runtime configuration for the layer builder.

Values resolve as defaults, then ``SEMANTIC_LAYER_*`` environment variables,
then command-line flags (see :meth:`BuilderConfig.with_overrides`).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Mapping, Optional

from .core.common import CODECS, DEFAULT_TABLE, DEFAULT_WINDOW_SIZE
from .corpus.accessor import RecordSchema

ENV_PREFIX = "SEMANTIC_LAYER_"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
DEFAULT_LOG_NAME = "semantic_layer.log"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

_ENV_NAMES = {
    "window_size": "WINDOW",
    "codec": "CODEC",
    "table": "TABLE",
    "log_file": "LOG_FILE",
    "log_level": "LOG_LEVEL",
}
_ENV_PARSERS = {
    "window_size": int,
    "log_file": lambda raw: Path(raw).expanduser(),
}


@dataclass(frozen=True)
class BuilderConfig:
    window_size: int = DEFAULT_WINDOW_SIZE
    codec: str = "auto"
    table: str = DEFAULT_TABLE
    log_file: Optional[Path] = None
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.window_size <= 0:
            raise ValueError(f"window_size must be positive, got {self.window_size}")
        if self.codec not in CODECS:
            raise ValueError(f"codec must be one of {CODECS}, got {self.codec!r}")
        if self.log_level.upper() not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {LOG_LEVELS}, got {self.log_level!r}")
        RecordSchema(table=self.table)
        object.__setattr__(self, "log_level", self.log_level.upper())

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "BuilderConfig":
        env = os.environ if environ is None else environ
        values: dict = {}
        for name, suffix in _ENV_NAMES.items():
            raw = env.get(ENV_PREFIX + suffix, "").strip()
            if not raw:
                continue
            try:
                value = _ENV_PARSERS.get(name, str)(raw)
                cls(**{name: value})
            except ValueError as exc:
                raise ValueError(f"Invalid {ENV_PREFIX}{suffix}={raw!r}: {exc}") from exc
            values[name] = value
        return cls(**values)

    def with_overrides(self, **overrides: object) -> "BuilderConfig":
        """Apply command-line values; ``None`` means "not given"."""

        known = {item.name for item in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise TypeError(f"Unknown configuration fields: {', '.join(sorted(unknown))}")
        return replace(self, **{key: value for key, value in overrides.items() if value is not None})

    @property
    def schema(self) -> RecordSchema:
        return RecordSchema(table=self.table)

    @property
    def level(self) -> int:
        return logging.getLevelName(self.log_level)

    def log_path_for(self, layer_path: Path) -> Path:
        if self.log_file is not None:
            return self.log_file
        return Path(layer_path).expanduser().parent / DEFAULT_LOG_NAME


__all__ = ["BuilderConfig", "DEFAULT_LOG_NAME", "ENV_PREFIX", "LOG_FORMAT", "LOG_LEVELS"]
