"""Push orchestrator: serialized incremental rebuilds.

Every job for the build system (push events and explicit full recomputes)
goes through one `asyncio.Queue` consumed by a single worker task. A job
runs to completion before the next one starts, so the in-memory state and
the persisted documents are never updated by overlapping operations.

Per push `{repo, branch, commit}`:

    IDLE → RESOLVING ─┬─ untracked repo / unpinned branch → IDLE
                      ├─ main branch, manifest unchanged → FAST_INCREMENTAL
                      └─ otherwise                       → FULL_REDISCOVERY
         → BUILDING → IDLE

A failure inside a job is logged and the worker moves on. A failed
rediscovery (for example a new dependency cycle) leaves the last-good graph
and versions in place. New versions are persisted before they replace the
in-memory state, so a failed save changes nothing and a redelivered push
recomputes and rebuilds.
"""

import asyncio
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from cairn.config import CairnConfig
from cairn.foundation.errors import GitError, ManifestError
from cairn.graph.discovery import discover_unit_graph, manifest_dependencies
from cairn.graph.graph import UnitGraph
from cairn.graph.models import Unit, UnitManifest
from cairn.orchestration.builder import UnitBuilder
from cairn.orchestration.events import (
    BuildCompleted,
    BuildFailed,
    BuildStarted,
    ChangeDetected,
    EventBus,
    GraphUpdated,
    PushEvent,
)
from cairn.orchestration.state import BuildState
from cairn.versioning.engine import (
    ChangeSet,
    EffectiveVersionEngine,
    collect_content_hashes,
    diff_ev_maps,
)
from cairn.versioning.git import GitReader
from cairn.versioning.state import StateStore

logger = logging.getLogger(__name__)


class PushSource(Protocol):
    """Emitter of push notifications (the git hosting layer)."""

    def on_push(self, callback: Callable[[PushEvent], None]) -> Callable[[], None]:
        """Register `callback` for every push; returns an unsubscribe function."""
        ...


class PushPhase(Enum):
    """What the worker is doing right now."""

    IDLE = "idle"
    RESOLVING = "resolving"
    FULL_REDISCOVERY = "full_rediscovery"
    FAST_INCREMENTAL = "fast_incremental"
    BUILDING = "building"


@dataclass(frozen=True, slots=True)
class RediscoveryRequest:
    """Queued request for a full rediscovery, answered through `future`."""

    future: asyncio.Future[ChangeSet]
    reason: str = "recompute requested"


class _Stop:
    """Queue sentinel that ends the worker."""


_STOP = _Stop()

Job = PushEvent | RediscoveryRequest | _Stop


class PushOrchestrator:
    """Single-consumer queue driving version recomputation and rebuilds."""

    def __init__(
        self,
        state: BuildState,
        engine: EffectiveVersionEngine,
        builder: UnitBuilder,
        state_store: StateStore,
        bus: EventBus,
        git: GitReader,
        config: CairnConfig | None = None,
    ) -> None:
        self.state = state
        self.engine = engine
        self.builder = builder
        self.state_store = state_store
        self.bus = bus
        self.git = git
        self.config = config or CairnConfig()
        self.phase = PushPhase.IDLE
        self._queue: asyncio.Queue[Job] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self._stopping = False

    # =========================================================================
    # Queue lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start the worker task on the running loop."""
        if self._worker is None:
            self._worker = asyncio.create_task(self._run(), name="cairn-push-worker")

    @property
    def is_running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def pending(self) -> int:
        """Jobs waiting in the queue."""
        return self._queue.qsize()

    def submit(self, event: PushEvent) -> None:
        """Queue a push event. Never blocks, never raises."""
        if self._stopping:
            logger.warning("Dropping push for %s@%s: orchestrator is stopping", event.repo, event.branch)
            return
        self._queue.put_nowait(event)

    def request_rediscovery(self, reason: str = "recompute requested") -> asyncio.Future[ChangeSet]:
        """Queue a full rediscovery.

        Returns:
            Future resolved with the resulting ChangeSet, or with the error
            that aborted the rediscovery.
        """
        future: asyncio.Future[ChangeSet] = asyncio.get_running_loop().create_future()
        if self._stopping:
            future.set_exception(RuntimeError("orchestrator is stopping"))
            return future
        self._queue.put_nowait(RediscoveryRequest(future, reason))
        return future

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        await self._queue.join()

    async def stop(self) -> None:
        """Finish queued jobs, then stop the worker."""
        self._stopping = True
        if self._worker is None:
            return
        self._queue.put_nowait(_STOP)
        await self._worker
        self._worker = None

    async def _run(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                if isinstance(job, _Stop):
                    return
                await self._process(job)
            except Exception:
                logger.exception("Failed to process %s", _describe(job))
            finally:
                self.phase = PushPhase.IDLE
                self._queue.task_done()

    async def _process(self, job: PushEvent | RediscoveryRequest) -> None:
        if isinstance(job, RediscoveryRequest):
            try:
                changes = await self.full_rediscovery(job.reason)
            except Exception as e:
                if not job.future.done():
                    job.future.set_exception(e)
                raise
            if not job.future.done():
                job.future.set_result(changes)
            return
        await self.handle_push(job)

    # =========================================================================
    # Push handling
    # =========================================================================

    async def handle_push(self, event: PushEvent) -> ChangeSet | None:
        """Process one push. Must only be called from the worker.

        Returns:
            The ChangeSet applied, or None when the push was ignored.
        """
        self.phase = PushPhase.RESOLVING
        unit = self.state.graph.find_by_relative_path(event.repo)
        if unit is None:
            logger.debug("Ignoring push to untracked repo %s", event.repo)
            return None

        if event.branch not in self.config.git.main_branches:
            if not self._is_pinned(unit.name, event):
                logger.debug("Ignoring push to %s@%s: branch not tracked", unit.name, event.branch)
                return None
            logger.info("Tracked ref %s of %s moved, rediscovering", event.branch, unit.name)
            return await self.full_rediscovery(f"tracked ref {event.branch} of {unit.name}")

        if await asyncio.to_thread(self._manifest_changed, unit, event.commit):
            logger.info("Manifest of %s changed, rediscovering", unit.name)
            return await self.full_rediscovery(f"manifest change in {unit.name}")

        return await self.fast_incremental(unit, event.commit)

    def _is_pinned(self, name: str, event: PushEvent) -> bool:
        """Whether some unit pins `name` at the pushed branch, ref or commit."""
        for dependent in self.state.graph.all_nodes():
            pin = dependent.internal_dep_refs.get(name)
            if pin is not None and pin.pins_branch(event.branch, event.commit):
                return True
        return False

    def _manifest_at(self, unit: Unit, commit: str) -> dict[str, Any]:
        manifest_file = self.config.workspace.manifest_file
        try:
            data = json.loads(self.git.show_file(unit.path, commit, manifest_file))
        except ValueError as e:
            raise ManifestError(f"{manifest_file} of {unit.name} at {commit[:12]}: {e}") from e
        if not isinstance(data, dict):
            raise ManifestError(f"{manifest_file} of {unit.name} at {commit[:12]} is not an object")
        return data

    def _manifest_signature(self, dependencies: dict[str, str], build_block: Any) -> str:
        manifest = UnitManifest.from_dict(build_block if isinstance(build_block, dict) else None)
        return json.dumps(
            {"dependencies": dependencies, "build": manifest.to_dict()},
            sort_keys=True,
        )

    def _manifest_changed(self, unit: Unit, commit: str) -> bool:
        """Compare dependencies and build config between the last known and pushed commits.

        Any read failure counts as a change.
        """
        key = self.config.workspace.manifest_key
        try:
            new = self._manifest_at(unit, commit)
            new_signature = self._manifest_signature(manifest_dependencies(new), new.get(key))

            previous_commit = self.state.ref_state.get(unit.name)
            if previous_commit:
                old = self._manifest_at(unit, previous_commit)
                old_signature = self._manifest_signature(manifest_dependencies(old), old.get(key))
            else:
                old_signature = self._manifest_signature(unit.dependencies, unit.manifest.to_dict())
        except (GitError, ManifestError) as e:
            logger.warning("Cannot compare manifest of %s, assuming changed: %s", unit.name, e)
            return True

        return new_signature != old_signature

    # =========================================================================
    # Recompute paths
    # =========================================================================

    async def fast_incremental(self, unit: Unit, commit: str) -> ChangeSet:
        """Recompute `unit` and its reverse dependencies at the pushed commit."""
        self.phase = PushPhase.FAST_INCREMENTAL
        state = self.state
        commit_map = {**state.ref_state, unit.name: commit}

        ev_map = await asyncio.to_thread(
            self.engine.recompute_from_node, state.graph, unit.name, state.ev_map, commit
        )
        changes = diff_ev_maps(state.ev_map, ev_map)
        content_hashes = collect_content_hashes(state.graph)
        await asyncio.to_thread(self.state_store.save, commit_map, ev_map, content_hashes)

        state.ev_map = ev_map
        state.ref_state = commit_map
        state.content_hashes = content_hashes

        logger.info(
            "Push to %s: %d changed, %d added, %d removed",
            unit.name,
            len(changes.changed),
            len(changes.added),
            len(changes.removed),
        )
        await self._build_changes(changes, commit_map)
        return changes

    async def full_rediscovery(self, reason: str = "recompute requested") -> ChangeSet:
        """Rescan the workspace and recompute every effective version.

        Raises:
            CycleError: If the new graph has a cycle. State is left untouched.
            OSError: If the new versions cannot be persisted. State is left untouched.
        """
        self.phase = PushPhase.FULL_REDISCOVERY
        state = self.state
        start = time.perf_counter()

        graph = await asyncio.to_thread(
            discover_unit_graph, state.workspace_root, self.config.workspace
        )
        refs = await asyncio.to_thread(self.engine.snapshot_ref_state, graph)
        ev_map = await asyncio.to_thread(
            self.engine.compute_effective_versions_with_cache,
            graph,
            refs,
            state.ref_state,
            state.ev_map,
            state.content_hashes,
        )
        changes = diff_ev_maps(state.ev_map, ev_map)
        content_hashes = collect_content_hashes(graph)
        await asyncio.to_thread(self.state_store.save, refs, ev_map, content_hashes)

        state.graph = graph
        state.ev_map = ev_map
        state.ref_state = refs
        state.content_hashes = content_hashes
        state.forget_removed()

        logger.info(
            "Rediscovery (%s): %d units in %.0fms, %d changed, %d added, %d removed",
            reason,
            len(graph),
            (time.perf_counter() - start) * 1000,
            len(changes.changed),
            len(changes.added),
            len(changes.removed),
        )
        self.bus.emit(
            GraphUpdated(
                units=tuple(u.name for u in graph.topological_order()),
                ev_map=dict(ev_map),
            )
        )
        await self._build_changes(changes, refs)
        return changes

    # =========================================================================
    # Building
    # =========================================================================

    async def _build_changes(self, changes: ChangeSet, commit_map: dict[str, str]) -> None:
        names = changes.changed_or_added
        if not names:
            return
        self.phase = PushPhase.BUILDING
        self.bus.emit(ChangeDetected(names=tuple(names)))
        await self.build_units(names, commit_map)

    async def build_units(self, names: list[str], commit_map: dict[str, str] | None = None) -> int:
        """Build every named buildable unit whose build key is not stored yet.

        Units build in parallel, bounded by the builder's concurrency limit.
        A failing unit does not affect its siblings.

        Returns:
            Number of builds attempted.
        """
        graph = self.state.graph
        ev_map = self.state.ev_map
        targets: list[tuple[Unit, str]] = []
        for name in names:
            unit = graph.try_get(name)
            if unit is None or not unit.is_buildable:
                continue
            ev = ev_map.get(name)
            if ev is None or self.builder.is_built(unit, ev):
                continue
            targets.append((unit, ev))

        if targets:
            await asyncio.gather(
                *(self._build_one(unit, ev, graph, commit_map or {}) for unit, ev in targets)
            )
        return len(targets)

    async def _build_one(
        self,
        unit: Unit,
        ev: str,
        graph: UnitGraph,
        commit_map: dict[str, str],
    ) -> None:
        key = self.builder.build_key(unit, ev)
        self.state.mark_building(unit.name, key)
        self.bus.emit(BuildStarted(name=unit.name))
        start = time.perf_counter()
        try:
            await self.builder.build(unit, ev, graph, commit_map)
        except Exception as e:
            logger.warning("Build of %s failed: %s", unit.name, e)
            self.state.mark_failed(unit.name, key, str(e))
            self.bus.emit(BuildFailed(name=unit.name, error=str(e)))
            return

        self.state.mark_built(unit.name, key)
        self.bus.emit(
            BuildCompleted(
                name=unit.name,
                build_key=key,
                duration_ms=(time.perf_counter() - start) * 1000,
            )
        )


def _describe(job: Job) -> str:
    if isinstance(job, PushEvent):
        return f"push to {job.repo}@{job.branch} ({job.commit[:12]})"
    if isinstance(job, RediscoveryRequest):
        return f"rediscovery ({job.reason})"
    return "stop"
