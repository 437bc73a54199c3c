"""Cairn - incremental, content-addressed builds for multi-repo workspaces.

Units (libraries, panels, about pages, agents) each live in their own git
repository. Cairn derives an effective version for every unit from its git
tree hash and the effective versions of its internal dependencies, builds
each unit at most once per effective version, and rebuilds only what a
push actually changed.
"""

from cairn.config import CairnConfig, load_config
from cairn.foundation.errors import CairnError, CycleError, UnknownUnitError
from cairn.graph import Unit, UnitGraph, UnitKind, discover_unit_graph
from cairn.orchestration import (
    BuildSystem,
    CommandBundler,
    PushEvent,
    create_service_handler,
)
from cairn.versioning import EffectiveVersionEngine, GitCli

__version__ = "0.1.0"

__all__ = [
    # Configuration
    "CairnConfig",
    "load_config",
    # Errors
    "CairnError",
    "CycleError",
    "UnknownUnitError",
    # Graph
    "Unit",
    "UnitGraph",
    "UnitKind",
    "discover_unit_graph",
    # Versioning
    "EffectiveVersionEngine",
    "GitCli",
    # Orchestration
    "BuildSystem",
    "CommandBundler",
    "PushEvent",
    "create_service_handler",
]
