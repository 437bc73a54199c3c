"""In-memory state of one build system instance.

`BuildState` is created once at startup and passed by reference to the
orchestrator and the public API. Only the orchestrator worker (or the
startup sequence, before the worker runs) mutates it.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from time import time
from typing import Any

from cairn.graph.graph import UnitGraph
from cairn.versioning.engine import ContentHashMap, EffectiveVersionMap, RefState


class BuildStatus(Enum):
    """Outcome of the most recent build attempt of a unit."""

    BUILDING = "building"
    BUILT = "built"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class UnitBuildStatus:
    """Status of a unit's latest build.

    Attributes:
        status: Latest outcome.
        build_key: Key the build targeted.
        error: Error message when failed.
        updated_at: When the status was recorded.
    """

    status: BuildStatus
    build_key: str
    error: str | None = None
    updated_at: float = field(default_factory=time)

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "status": self.status.value,
            "build_key": self.build_key,
            "error": self.error,
            "updated_at": self.updated_at,
        }


@dataclass
class BuildState:
    """Graph, versions and build statuses of the workspace."""

    workspace_root: Path
    graph: UnitGraph
    ev_map: EffectiveVersionMap = field(default_factory=dict)
    ref_state: RefState = field(default_factory=dict)
    content_hashes: ContentHashMap = field(default_factory=dict)
    statuses: dict[str, UnitBuildStatus] = field(default_factory=dict)

    def mark_building(self, name: str, build_key: str) -> None:
        # A failure stays visible until the unit builds successfully
        previous = self.statuses.get(name)
        if previous is not None and previous.status is BuildStatus.FAILED:
            return
        self.statuses[name] = UnitBuildStatus(BuildStatus.BUILDING, build_key)

    def mark_built(self, name: str, build_key: str) -> None:
        self.statuses[name] = UnitBuildStatus(BuildStatus.BUILT, build_key)

    def mark_failed(self, name: str, build_key: str, error: str) -> None:
        self.statuses[name] = UnitBuildStatus(BuildStatus.FAILED, build_key, error)

    def forget_removed(self) -> None:
        """Drop statuses of units that are no longer in the graph."""
        for name in [n for n in self.statuses if not self.graph.has(n)]:
            del self.statuses[name]
