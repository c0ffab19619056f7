"""Value trees, paths, mapping store, overlay rendering and layer files."""

from .common import (
    DecodeError,
    InvalidName,
    InvalidPath,
    LayerFormatError,
    SemanticLayerError,
    StoreAccessError,
)
from .layer_io import LoadResult, export_layer, import_layer, load_or_create, save_layer
from .overlay import AnnotatedNode, flatten, project, render, render_text
from .paths import ROOT, Path, Step, StepKind, format_path, iter_nodes, parse_path, paths_of
from .store import Binding, MappingStore
from .values import CanonicalKey, Value, ValueKind, canonicalize, key_token

__all__ = [
    "AnnotatedNode",
    "Binding",
    "CanonicalKey",
    "DecodeError",
    "InvalidName",
    "InvalidPath",
    "LayerFormatError",
    "LoadResult",
    "MappingStore",
    "Path",
    "ROOT",
    "SemanticLayerError",
    "Step",
    "StepKind",
    "StoreAccessError",
    "Value",
    "ValueKind",
    "canonicalize",
    "export_layer",
    "flatten",
    "format_path",
    "import_layer",
    "iter_nodes",
    "key_token",
    "load_or_create",
    "parse_path",
    "paths_of",
    "project",
    "render",
    "render_text",
    "save_layer",
]
