"""Build system: startup sequence and public API.

`BuildSystem.start()` discovers the workspace, computes effective versions
(reusing persisted content hashes where commits did not move), builds what
is missing and starts the push orchestrator. Afterwards the instance serves
builds and versions to the RPC layer and forwards push events to the
orchestrator queue.

Example:
    >>> system = await BuildSystem.start(Path("~/workspace"), CommandBundler(["./build.sh"]))
    >>> system.attach(git_server)
    >>> result = await system.get_build("panels/chat")
    >>> await system.shutdown()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from cairn.config import CairnConfig
from cairn.foundation.errors import MissingVersionError, UnknownMethodError, UnknownUnitError
from cairn.graph.discovery import discover_unit_graph
from cairn.graph.graph import UnitGraph
from cairn.graph.models import UnitKind
from cairn.orchestration.builder import UnitBuilder
from cairn.orchestration.bundler import Bundler
from cairn.orchestration.events import EventBus, EventCallback, PushEvent
from cairn.orchestration.push import PushOrchestrator, PushPhase, PushSource
from cairn.orchestration.state import BuildState, UnitBuildStatus
from cairn.store.builds import BuildResult, BuildStore
from cairn.store.external import ExternalDepsCache, Installer, NpmInstaller
from cairn.versioning.engine import (
    ChangeSet,
    EffectiveVersionEngine,
    EffectiveVersionMap,
    collect_content_hashes,
    diff_ev_maps,
)
from cairn.versioning.git import GitCli, GitReader
from cairn.versioning.state import StateStore

logger = logging.getLogger(__name__)

BUILDS_DIR = "builds"
EXTERNAL_DEPS_DIR = "external-deps"

_LAUNCHER_KINDS = (UnitKind.PANEL, UnitKind.ABOUT)


@dataclass(frozen=True, slots=True)
class LauncherUnit:
    """Display metadata of a unit the launcher can open."""

    name: str
    kind: str
    path: str
    title: str
    description: str | None
    hidden_in_launcher: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind,
            "path": self.path,
            "title": self.title,
            "description": self.description,
            "hiddenInLauncher": self.hidden_in_launcher,
        }


class BuildSystem:
    """Public API of one build system instance.

    Owns the `BuildState` and hands it by reference to the orchestrator.
    Use `BuildSystem.start()` to create one.
    """

    def __init__(
        self,
        state: BuildState,
        *,
        config: CairnConfig,
        builder: UnitBuilder,
        bus: EventBus,
        orchestrator: PushOrchestrator,
    ) -> None:
        self.state = state
        self.config = config
        self.builder = builder
        self.bus = bus
        self.orchestrator = orchestrator
        self._detach: list[Callable[[], None]] = []

    @classmethod
    async def start(
        cls,
        workspace_root: Path | str,
        bundler: Bundler,
        config: CairnConfig | None = None,
        *,
        git: GitReader | None = None,
        installer: Installer | None = None,
        state_dir: Path | None = None,
        subscribers: Iterable[EventCallback] = (),
    ) -> BuildSystem:
        """Discover, version and build the workspace, then start listening.

        Args:
            workspace_root: Workspace root directory.
            bundler: Produces artifacts for buildable units.
            config: Configuration (defaults when omitted).
            git: Git reader (the `git` CLI when omitted).
            installer: External dependency installer (npm when omitted).
            state_dir: State directory (from config when omitted).
            subscribers: Event callbacks registered before the initial builds.

        Raises:
            CycleError: If the workspace graph has a cycle.
        """
        config = config or CairnConfig()
        root = Path(workspace_root).expanduser().resolve()
        state_dir = state_dir or config.state_path(root)
        git = git or GitCli(config.git.main_branches, config.git.timeout)

        engine = EffectiveVersionEngine(git)
        store = BuildStore(state_dir / BUILDS_DIR, config.builds.stale_tmp_seconds)
        external_cache = ExternalDepsCache(
            state_dir / EXTERNAL_DEPS_DIR,
            installer
            or NpmInstaller(config.external_deps.install_command, config.external_deps.timeout),
            config.external_deps.env_dirname,
        )
        builder = UnitBuilder(store, external_cache, bundler, root, config.builds)
        state_store = StateStore(state_dir)
        bus = EventBus()
        for callback in subscribers:
            bus.subscribe(callback)

        graph = await asyncio.to_thread(discover_unit_graph, root, config.workspace)
        logger.info("Discovered %d units in %s", len(graph), root)

        current_refs = await asyncio.to_thread(engine.snapshot_ref_state, graph)
        persisted = await asyncio.to_thread(state_store.load)
        ev_map = await asyncio.to_thread(
            engine.compute_effective_versions_with_cache,
            graph,
            current_refs,
            persisted.ref_state,
            persisted.ev_map,
            persisted.content_hashes,
        )
        changes = diff_ev_maps(persisted.ev_map, ev_map)
        logger.info(
            "EV diff since last run: %d changed, %d added, %d removed",
            len(changes.changed),
            len(changes.added),
            len(changes.removed),
        )

        state = BuildState(
            workspace_root=root,
            graph=graph,
            ev_map=ev_map,
            ref_state=current_refs,
            content_hashes=collect_content_hashes(graph),
        )
        await asyncio.to_thread(state_store.save, state.ref_state, state.ev_map, state.content_hashes)

        orchestrator = PushOrchestrator(state, engine, builder, state_store, bus, git, config)
        built = await orchestrator.build_units([u.name for u in graph.all_nodes()], current_refs)
        if built:
            logger.info("Initial builds complete (%d attempted)", built)
        else:
            logger.info("All builds up to date")

        orchestrator.start()
        return cls(state, config=config, builder=builder, bus=bus, orchestrator=orchestrator)

    # =========================================================================
    # Queries
    # =========================================================================

    @property
    def graph(self) -> UnitGraph:
        return self.state.graph

    @property
    def ev_map(self) -> EffectiveVersionMap:
        """Copy of the current effective versions."""
        return dict(self.state.ev_map)

    @property
    def workspace_root(self) -> Path:
        return self.state.workspace_root

    @property
    def phase(self) -> PushPhase:
        return self.orchestrator.phase

    def get_effective_version(self, name: str) -> str | None:
        return self.state.ev_map.get(name)

    def has_unit(self, name: str) -> bool:
        return self.state.graph.has(name)

    def get_build_status(self, name: str) -> UnitBuildStatus | None:
        return self.state.statuses.get(name)

    def list_launcher_units(self) -> list[LauncherUnit]:
        """Display metadata of every panel and about page, sorted by path."""
        units = []
        for unit in self.state.graph.all_nodes():
            if unit.kind not in _LAUNCHER_KINDS:
                continue
            units.append(
                LauncherUnit(
                    name=unit.name,
                    kind=unit.kind.value,
                    path=unit.relative_path,
                    title=unit.manifest.title or unit.name,
                    description=unit.manifest.description,
                    hidden_in_launcher=unit.manifest.hidden_in_launcher,
                )
            )
        return sorted(units, key=lambda u: u.path)

    def get_about_pages(self) -> list[LauncherUnit]:
        """Launcher entries of about pages, named by directory."""
        return [
            LauncherUnit(
                name=Path(u.path).name,
                kind=u.kind,
                path=u.path,
                title=u.title,
                description=u.description,
                hidden_in_launcher=u.hidden_in_launcher,
            )
            for u in self.list_launcher_units()
            if u.kind == UnitKind.ABOUT.value
        ]

    # =========================================================================
    # Builds
    # =========================================================================

    async def get_build(self, unit_path: str) -> BuildResult:
        """Return the build of a unit, building it on a cache miss.

        Args:
            unit_path: Unit name, workspace-relative path, or directory name.

        Raises:
            UnknownUnitError: If nothing matches `unit_path`.
            MissingVersionError: If the unit has no effective version.
        """
        state = self.state
        unit = state.graph.resolve(unit_path)
        if unit is None:
            raise UnknownUnitError(unit_path)
        ev = state.ev_map.get(unit.name)
        if ev is None:
            raise MissingVersionError(unit.name)

        key = self.builder.build_key(unit, ev)
        try:
            result = await self.builder.build(unit, ev, state.graph, dict(state.ref_state))
        except Exception as e:
            state.mark_failed(unit.name, key, str(e))
            raise
        if unit.is_buildable:
            state.mark_built(unit.name, key)
        return result

    async def recompute(self) -> ChangeSet:
        """Force a full rediscovery through the orchestrator queue."""
        return await self.orchestrator.request_rediscovery()

    async def gc(self, active_unit_names: Iterable[str]) -> dict[str, int]:
        """Delete every stored build except the current builds of the named units."""
        state = self.state
        active_keys: set[str] = set()
        for name in active_unit_names:
            unit = state.graph.try_get(name)
            ev = state.ev_map.get(name)
            if unit is None or ev is None:
                continue
            active_keys.add(self.builder.build_key(unit, ev))
        return await asyncio.to_thread(self.builder.store.gc, active_keys)

    # =========================================================================
    # Events and pushes
    # =========================================================================

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Subscribe to lifecycle events; returns an unsubscribe function."""
        return self.bus.subscribe(callback)

    def handle_push(self, event: PushEvent) -> None:
        """Queue a push event for processing."""
        self.orchestrator.submit(event)

    def attach(self, source: PushSource) -> Callable[[], None]:
        """Forward every push from `source` to the orchestrator."""
        unsubscribe = source.on_push(self.handle_push)
        self._detach.append(unsubscribe)
        return unsubscribe

    async def shutdown(self) -> None:
        """Detach push sources and stop the orchestrator after queued jobs finish."""
        while self._detach:
            self._detach.pop()()
        await self.orchestrator.stop()
        logger.info("Build system shut down")


ServiceHandler = Callable[[str, list[Any]], Awaitable[Any]]


def create_service_handler(system: BuildSystem) -> ServiceHandler:
    """Method dispatcher for the RPC layer.

    Results are JSON-serializable.

    Raises (from the returned handler):
        UnknownMethodError: For a method name not listed below.
    """

    async def handle(method: str, args: list[Any]) -> Any:
        match method:
            case "getBuild":
                return (await system.get_build(str(args[0]))).to_dict()
            case "getEffectiveVersion":
                return system.get_effective_version(str(args[0]))
            case "recompute":
                return (await system.recompute()).to_dict()
            case "gc":
                return await system.gc(list(args[0]) if args else [])
            case "getAboutPages":
                return [page.to_dict() for page in system.get_about_pages()]
            case "hasUnit":
                return system.has_unit(str(args[0]))
            case _:
                raise UnknownMethodError(method)

    return handle
