"""Unit builder: store lookup, coalescing, concurrency limit, bundling.

A build of one unit at one EV goes through these steps:

1. Return the stored result when the build key is already in the store.
2. Join an in-flight build of the same key inside this process.
3. Wait for a slot (at most `max_concurrent` bundler runs at once).
4. Resolve the installed external dependency environment.
5. Run the bundler and write its artifacts to the store.

Cross-process races on one key are settled by the store's rename protocol,
not here.
"""

import asyncio
import logging
import time
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Generic, TypeVar

from cairn.config import BuildsConfig
from cairn.graph.graph import UnitGraph
from cairn.graph.models import Unit
from cairn.orchestration.bundler import BundleRequest, Bundler
from cairn.store.builds import BuildMetadata, BuildResult, BuildStore
from cairn.store.external import ExternalDepsCache, collect_transitive_external_deps
from cairn.versioning.engine import compute_build_key

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class InFlightCoalescer(Generic[T]):
    """Share one running coroutine between concurrent callers with the same key.

    Unlike a result cache, nothing is remembered once the work finishes: a
    failed build is retried by the next caller.

    Example:
        >>> coalescer = InFlightCoalescer[str]()
        >>> results = await asyncio.gather(
        ...     coalescer.do("key1", expensive_work),
        ...     coalescer.do("key1", expensive_work),
        ... )
        >>> # expensive_work ran once, both callers got its result
    """

    _in_flight: dict[str, asyncio.Future[T]] = field(default_factory=dict)
    """Running work by key."""

    async def do(self, key: str, work: Callable[[], Coroutine[Any, Any, T]]) -> T:
        """Run `work`, or join the run already in progress for `key`.

        Raises:
            Exception: Whatever `work` raised, propagated to every caller.
        """
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(work())
            self._in_flight[key] = task

            def _forget(done: asyncio.Future[T]) -> None:
                if self._in_flight.get(key) is done:
                    del self._in_flight[key]

            task.add_done_callback(_forget)

        # A cancelled caller must not cancel the work other callers share
        return await asyncio.shield(task)

    def is_in_flight(self, key: str) -> bool:
        return key in self._in_flight

    @property
    def pending_count(self) -> int:
        """Number of keys with work in progress."""
        return len(self._in_flight)


class UnitBuilder:
    """Builds units into the build store."""

    def __init__(
        self,
        store: BuildStore,
        external_cache: ExternalDepsCache,
        bundler: Bundler,
        workspace_root: Path,
        config: BuildsConfig | None = None,
    ) -> None:
        self.store = store
        self.external_cache = external_cache
        self.bundler = bundler
        self.workspace_root = workspace_root
        self.config = config or BuildsConfig()
        self._semaphore = asyncio.Semaphore(self.config.max_concurrent)
        self._coalescer: InFlightCoalescer[BuildResult] = InFlightCoalescer()

    def build_key(self, unit: Unit, ev: str) -> str:
        """Store key for `unit` at `ev` under the current flags."""
        return compute_build_key(unit.name, ev, unit.manifest.sourcemap, self.config.cache_version)

    def is_built(self, unit: Unit, ev: str) -> bool:
        return self.store.has(self.build_key(unit, ev))

    async def build(
        self,
        unit: Unit,
        ev: str,
        graph: UnitGraph,
        commit_map: dict[str, str] | None = None,
    ) -> BuildResult:
        """Return the build of `unit` at `ev`, building it on a miss.

        Args:
            unit: Unit to build.
            ev: Its effective version.
            graph: Graph used to collect transitive external dependencies.
            commit_map: Unit name → commit the sources should be read at.

        Raises:
            BundlerError: If the bundler fails.
            ExternalDepsError: If external dependencies cannot be installed.
            BuildRaceError: If the store could not promote the result.
        """
        key = self.build_key(unit, ev)
        cached = await asyncio.to_thread(self.store.get, key)
        if cached is not None:
            return cached

        return await self._coalescer.do(
            key, lambda: self._build(unit, ev, key, graph, dict(commit_map or {}))
        )

    async def _build(
        self,
        unit: Unit,
        ev: str,
        key: str,
        graph: UnitGraph,
        commit_map: dict[str, str],
    ) -> BuildResult:
        async with self._semaphore:
            # Another process may have finished this key while we waited
            cached = await asyncio.to_thread(self.store.get, key)
            if cached is not None:
                return cached

            start = time.perf_counter()
            deps = collect_transitive_external_deps(unit, graph)
            external_env = await asyncio.to_thread(self.external_cache.ensure, deps)

            request = BundleRequest(
                unit=unit,
                ev=ev,
                build_key=key,
                sourcemap=unit.manifest.sourcemap,
                workspace_root=self.workspace_root,
                external_env=external_env,
                commit_map=commit_map,
            )
            artifacts = await self.bundler.bundle(request)

            metadata = BuildMetadata.create(unit.kind.value, unit.name, ev, unit.manifest.sourcemap)
            result = await asyncio.to_thread(self.store.put, key, artifacts, metadata)

        logger.info(
            "Built %s (%s) in %.0fms",
            unit.name,
            key,
            (time.perf_counter() - start) * 1000,
        )
        return result
