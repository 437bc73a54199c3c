"""Effective version computation.

Every unit gets an effective version (EV): one hash that captures its own
content and, through its dependency edges, everything it transitively
depends on inside the workspace.

    ev(leaf) = H(tree(leaf))
    ev(unit) = H(tree(unit), sig(dep_1), sig(dep_2), ...)

where each dependency signature carries the dependency's name, its pin as
written in the manifest, the commit that pin resolves to and the
dependency's own EV. Signatures are sorted before hashing, so the EV does
not depend on discovery or edge iteration order.

Units are processed leaves first, so a dependency's EV is always known by the
time its dependents are hashed. A unit whose repository has no main branch
has no EV and is left out of the map.

Example:
    >>> engine = EffectiveVersionEngine(GitCli())
    >>> ev_map = engine.compute_effective_versions(graph)
    >>> ev_map = engine.recompute_from_node(graph, "@workspace/core", ev_map, sha)
    >>> diff_ev_maps(old_map, ev_map).changed
    ['@workspace-panels/chat', '@workspace/core']
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from cairn.foundation.errors import GitError, GraphNotOrderedError
from cairn.foundation.hashing import hash_strings
from cairn.graph.graph import UnitGraph
from cairn.graph.models import DepRefMode, InternalDepRef, Unit
from cairn.versioning.git import GitReader

logger = logging.getLogger(__name__)

# Type aliases
EffectiveVersionMap = dict[str, str]
"""Unit name → effective version."""

RefState = dict[str, str]
"""Unit name → main-branch commit SHA."""

ContentHashMap = dict[str, str]
"""Unit name → git tree hash."""

_DEFAULT_PIN = "workspace:*"


@dataclass(frozen=True, slots=True)
class ChangeSet:
    """Difference between two EV maps. Lists are sorted."""

    changed: list[str] = field(default_factory=list)
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)

    @property
    def changed_or_added(self) -> list[str]:
        return sorted([*self.changed, *self.added])

    @property
    def is_empty(self) -> bool:
        return not (self.changed or self.added or self.removed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "changed": list(self.changed),
            "added": list(self.added),
            "removed": list(self.removed),
        }


def diff_ev_maps(previous: EffectiveVersionMap, current: EffectiveVersionMap) -> ChangeSet:
    """Compare two EV maps by key set and value."""
    changed = sorted(n for n, ev in current.items() if n in previous and previous[n] != ev)
    added = sorted(n for n in current if n not in previous)
    removed = sorted(n for n in previous if n not in current)
    return ChangeSet(changed=changed, added=added, removed=removed)


def compute_build_key(name: str, ev: str, sourcemap: bool, cache_version: str) -> str:
    """Content-addressed build store key for one unit at one EV.

    The unit name is part of the key so two units with identical content
    never share a build: their entry points and titles differ.
    """
    return hash_strings([cache_version, name, ev, f"sourcemap:{str(sourcemap).lower()}"])


def collect_content_hashes(graph: UnitGraph) -> ContentHashMap:
    """Content hashes currently stored on the graph's units."""
    return {u.name: u.content_hash for u in graph.all_nodes() if u.content_hash}


def _ordered(graph: UnitGraph) -> list[Unit]:
    try:
        return graph.topological_order()
    except GraphNotOrderedError:
        return graph.compute_topological_order()


class EffectiveVersionEngine:
    """Computes EV maps from a unit graph and the unit repositories.

    Stateless apart from the git reader; callers own the graph and maps.
    Content hashes are written onto the graph's units as they are computed.
    """

    def __init__(self, git: GitReader) -> None:
        self.git = git

    # =========================================================================
    # Dependency signatures
    # =========================================================================

    def _pin_git_ref(self, pin: InternalDepRef | None) -> str | None:
        """Git ref a dependency pin points at (None for the main branch)."""
        if pin is None or pin.mode is DepRefMode.DEFAULT:
            return None
        if pin.mode is DepRefMode.BRANCH:
            return f"refs/heads/{pin.branch or 'main'}"
        if pin.mode is DepRefMode.REF:
            return pin.ref
        return pin.commit

    def _dep_signatures(
        self,
        graph: UnitGraph,
        unit: Unit,
        ev_map: EffectiveVersionMap,
        commit_cache: dict[tuple[str, str | None], str | None],
    ) -> list[str]:
        signatures: list[str] = []
        for dep_name in unit.internal_deps:
            dep = graph.try_get(dep_name)
            if dep is None:
                continue

            pin = unit.internal_dep_refs.get(dep_name)
            git_ref = self._pin_git_ref(pin)
            cache_key = (str(dep.path), git_ref)
            if cache_key not in commit_cache:
                commit_cache[cache_key] = self.git.commit_at(dep.path, git_ref)
            commit = commit_cache[cache_key]

            raw = pin.raw if pin is not None else _DEFAULT_PIN
            signatures.append(
                f"{dep_name}\0ref:{raw}\0commit:{commit or 'missing'}\0ev:{ev_map.get(dep_name, '')}"
            )
        return sorted(signatures)

    def _hash_unit(
        self,
        graph: UnitGraph,
        unit: Unit,
        ev_map: EffectiveVersionMap,
        commit_cache: dict[tuple[str, str | None], str | None],
    ) -> str:
        return hash_strings([unit.content_hash, *self._dep_signatures(graph, unit, ev_map, commit_cache)])

    # =========================================================================
    # Full computation
    # =========================================================================

    def compute_effective_versions(self, graph: UnitGraph) -> EffectiveVersionMap:
        """Compute EVs for every unit from main-branch content.

        Units that already carry a content hash keep it. Units without a main
        branch are skipped.
        """
        ev_map: EffectiveVersionMap = {}
        commit_cache: dict[tuple[str, str | None], str | None] = {}

        for unit in _ordered(graph):
            if not unit.content_hash:
                try:
                    unit.content_hash = self.git.tree_hash(unit.path)
                except GitError as e:
                    logger.debug("Skipping %s: %s", unit.name, e.detail)
                    continue
            ev_map[unit.name] = self._hash_unit(graph, unit, ev_map, commit_cache)

        return ev_map

    def compute_effective_versions_with_cache(
        self,
        graph: UnitGraph,
        current_refs: RefState,
        prev_refs: RefState,
        prev_ev_map: EffectiveVersionMap,
        prev_content_hashes: ContentHashMap | None = None,
    ) -> EffectiveVersionMap:
        """Compute EVs, reusing content hashes of units whose commit did not move.

        Reading a tree hash costs a git invocation per unit; on a cold start
        most units are unchanged. EVs are still recomputed bottom-up for every
        unit because a dependency may have moved even when the unit did not.

        Args:
            graph: Ordered unit graph.
            current_refs: Commit each unit's main branch points at now.
            prev_refs: Persisted ref state from the last run.
            prev_ev_map: Persisted EV map from the last run.
            prev_content_hashes: Persisted content hashes from the last run.

        Returns:
            New EV map. Units without a current commit are omitted.
        """
        start = time.perf_counter()
        prev_content_hashes = prev_content_hashes or {}
        ev_map: EffectiveVersionMap = {}
        commit_cache: dict[tuple[str, str | None], str | None] = {}
        reused = 0
        hashed = 0

        for unit in _ordered(graph):
            commit = current_refs.get(unit.name)
            if not commit:
                continue

            cached_hash = prev_content_hashes.get(unit.name)
            if cached_hash and prev_refs.get(unit.name) == commit:
                unit.content_hash = cached_hash
                reused += 1
            else:
                try:
                    unit.content_hash = self.git.tree_hash(unit.path, commit)
                except GitError as e:
                    logger.warning("Cannot hash %s at %s: %s", unit.name, commit[:12], e.detail)
                    continue
                hashed += 1

            ev_map[unit.name] = self._hash_unit(graph, unit, ev_map, commit_cache)

        unchanged = sum(1 for n, ev in ev_map.items() if prev_ev_map.get(n) == ev)
        logger.info(
            "Computed %d effective versions in %.0fms (%d content hashes reused, %d read, %d unchanged)",
            len(ev_map),
            (time.perf_counter() - start) * 1000,
            reused,
            hashed,
            unchanged,
        )
        return ev_map

    # =========================================================================
    # Incremental computation
    # =========================================================================

    def recompute_from_node(
        self,
        graph: UnitGraph,
        name: str,
        prev_ev_map: EffectiveVersionMap,
        new_commit: str | None = None,
    ) -> EffectiveVersionMap:
        """Recompute the EV of one unit and everything that depends on it.

        The content hash of `name` is read at `new_commit` (the main branch
        when omitted) and stored on the unit. EVs of `name` and its reverse
        dependencies are recomputed in topological order; every other entry
        of `prev_ev_map` is copied unchanged.

        Raises:
            UnknownUnitError: If `name` is not in the graph.
            GitError: If the content hash of `name` cannot be read.
        """
        unit = graph.get(name)
        unit.content_hash = self.git.tree_hash(unit.path, new_commit)

        affected = {name} | graph.get_reverse_deps(name)
        ev_map = dict(prev_ev_map)
        commit_cache: dict[tuple[str, str | None], str | None] = {}

        for current in _ordered(graph):
            if current.name not in affected:
                continue
            if not current.content_hash:
                try:
                    current.content_hash = self.git.tree_hash(current.path)
                except GitError as e:
                    logger.debug("Skipping %s: %s", current.name, e.detail)
                    continue
            ev_map[current.name] = self._hash_unit(graph, current, ev_map, commit_cache)

        logger.debug("Recomputed %d effective versions from %s", len(affected), name)
        return ev_map

    def snapshot_ref_state(self, graph: UnitGraph) -> RefState:
        """Current main-branch commit of every unit that has one."""
        state: RefState = {}
        for unit in graph.all_nodes():
            if commit := self.git.commit_at(unit.path):
                state[unit.name] = commit
        return state
