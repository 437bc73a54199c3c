"""Unit graph: model, discovery and DAG operations."""

from cairn.graph.discovery import discover_unit_graph, manifest_dependencies, read_manifest
from cairn.graph.graph import UnitGraph
from cairn.graph.models import (
    DepRefMode,
    InternalDepRef,
    Unit,
    UnitKind,
    UnitManifest,
    parse_internal_dep_ref,
)

__all__ = [
    "DepRefMode",
    "InternalDepRef",
    "Unit",
    "UnitGraph",
    "UnitKind",
    "UnitManifest",
    "discover_unit_graph",
    "manifest_dependencies",
    "parse_internal_dep_ref",
    "read_manifest",
]
