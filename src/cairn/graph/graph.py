"""Directed acyclic graph of workspace units.

Edges run from a unit to each of its internal dependencies. The graph must
be a DAG: a cycle is a hard error that aborts ordering, never something that
is resolved by dropping a unit.

Example:
    >>> graph = UnitGraph()
    >>> graph.add_node(lib)
    >>> graph.add_node(panel)  # panel depends on lib
    >>> [u.name for u in graph.compute_topological_order()]
    ['lib', 'panel']
    >>> graph.get_reverse_deps("lib")
    {'panel'}
"""

import logging
from collections import deque
from collections.abc import Iterator
from pathlib import Path, PurePosixPath

from cairn.foundation.errors import CycleError, GraphNotOrderedError, UnknownUnitError
from cairn.graph.models import Unit

logger = logging.getLogger(__name__)


class UnitGraph:
    """Mapping of unit name → Unit with internal dependency edges.

    The topological order and the inverted-edge index are computed on
    demand and invalidated whenever a node is added.
    """

    def __init__(self) -> None:
        self._nodes: dict[str, Unit] = {}
        self._order: list[str] | None = None
        self._dependents: dict[str, set[str]] | None = None

    # =========================================================================
    # Nodes
    # =========================================================================

    def add_node(self, unit: Unit) -> None:
        """Add a unit, replacing any existing unit with the same name."""
        if unit.name in self._nodes:
            logger.warning(
                "Duplicate unit %s: %s replaces %s",
                unit.name,
                unit.relative_path,
                self._nodes[unit.name].relative_path,
            )
        self._nodes[unit.name] = unit
        self._order = None
        self._dependents = None

    def get(self, name: str) -> Unit:
        """Get a unit by name.

        Raises:
            UnknownUnitError: If no unit has this name.
        """
        try:
            return self._nodes[name]
        except KeyError:
            raise UnknownUnitError(name) from None

    def try_get(self, name: str) -> Unit | None:
        """Get a unit by name, or None if absent."""
        return self._nodes.get(name)

    def has(self, name: str) -> bool:
        return name in self._nodes

    def is_internal(self, name: str) -> bool:
        """Whether `name` refers to a unit of this workspace."""
        return self.has(name)

    def all_nodes(self) -> list[Unit]:
        return list(self._nodes.values())

    def __contains__(self, name: object) -> bool:
        return name in self._nodes

    def __iter__(self) -> Iterator[str]:
        return iter(self._nodes)

    def __len__(self) -> int:
        return len(self._nodes)

    # =========================================================================
    # Ordering
    # =========================================================================

    def compute_topological_order(self) -> list[Unit]:
        """Order units so every dependency precedes its dependents.

        Depth-first traversal with a recursion stack for cycle detection and a
        visited set so shared dependencies are processed once. Dependencies
        that are not in the graph are ignored.

        Returns:
            Units, leaves first.

        Raises:
            CycleError: If any internal dependencies form a cycle. No partial
                order is stored.
        """
        order: list[str] = []
        visited: set[str] = set()
        stack: list[str] = []
        on_stack: set[str] = set()

        def visit(name: str) -> None:
            if name in visited:
                return
            if name in on_stack:
                start = stack.index(name)
                raise CycleError([*stack[start:], name])

            stack.append(name)
            on_stack.add(name)
            for dep in self._nodes[name].internal_deps:
                if dep in self._nodes:
                    visit(dep)
            stack.pop()
            on_stack.discard(name)

            visited.add(name)
            order.append(name)

        for name in self._nodes:
            visit(name)

        self._order = order
        return [self._nodes[n] for n in order]

    def topological_order(self) -> list[Unit]:
        """Return the last computed topological order.

        Raises:
            GraphNotOrderedError: If the order was never computed, or a node
                was added since.
        """
        if self._order is None:
            raise GraphNotOrderedError()
        return [self._nodes[n] for n in self._order]

    # =========================================================================
    # Reverse dependencies
    # =========================================================================

    def _dependents_index(self) -> dict[str, set[str]]:
        """Inverted edges: unit → units that list it as an internal dep."""
        if self._dependents is None:
            index: dict[str, set[str]] = {name: set() for name in self._nodes}
            for unit in self._nodes.values():
                for dep in unit.internal_deps:
                    if dep in index:
                        index[dep].add(unit.name)
            self._dependents = index
        return self._dependents

    def get_reverse_deps(self, name: str) -> set[str]:
        """Every unit whose dependency chain passes through `name`.

        Transitively closed: for A → B → C, `get_reverse_deps("C")` contains
        both A and B. `name` itself is never included.
        """
        index = self._dependents_index()
        result: set[str] = set()
        queue = deque(index.get(name, ()))
        while queue:
            current = queue.popleft()
            if current in result or current == name:
                continue
            result.add(current)
            queue.extend(index.get(current, ()))
        return result

    # =========================================================================
    # Lookup by location
    # =========================================================================

    def find_by_relative_path(self, relative_path: str) -> Unit | None:
        """Find a unit by its workspace-relative path."""
        wanted = PurePosixPath(relative_path.strip("/")).as_posix()
        for unit in self._nodes.values():
            if unit.relative_path == wanted:
                return unit
        return None

    def resolve(self, unit_path: str) -> Unit | None:
        """Resolve a caller-supplied identifier to a unit.

        Tries the unit name, then the workspace-relative path, then the
        directory basename.
        """
        if unit := self._nodes.get(unit_path):
            return unit
        if unit := self.find_by_relative_path(unit_path):
            return unit
        basename = Path(unit_path.rstrip("/")).name
        for unit in self._nodes.values():
            if unit.path.name == basename:
                return unit
        return None
