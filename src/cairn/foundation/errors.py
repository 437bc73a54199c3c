"""Error types for Cairn.

Every error raised by the build system derives from `CairnError` so callers
at the RPC boundary can catch one type. Errors that carry structured context
(unit names, build keys, cycles) expose it as attributes.
"""

from __future__ import annotations


class CairnError(Exception):
    """Base exception for build-system errors."""

    pass


# =============================================================================
# Graph
# =============================================================================


class UnknownUnitError(CairnError, KeyError):
    """Raised when a unit name is not present in the graph."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Unknown unit: {name}")

    def __str__(self) -> str:
        # KeyError.__str__ would repr() the message
        return str(self.args[0])


class CycleError(CairnError):
    """Raised when internal dependencies form a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Dependency cycle detected: {' → '.join(cycle)}")


class GraphNotOrderedError(CairnError):
    """Raised when the topological order is read before it was computed."""

    def __init__(self) -> None:
        super().__init__("Topological order has not been computed for this graph")


class ManifestError(CairnError):
    """Raised when a unit manifest cannot be read or parsed."""

    pass


# =============================================================================
# Versioning
# =============================================================================


class GitError(CairnError):
    """Raised when a git invocation fails."""

    def __init__(self, repo: str, args: list[str], detail: str) -> None:
        self.repo = repo
        self.git_args = args
        self.detail = detail
        super().__init__(f"git {' '.join(args)} failed in {repo}: {detail}")


class MissingVersionError(CairnError):
    """Raised when a unit has no effective version (no main branch)."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"No effective version for {name}")


# =============================================================================
# Stores
# =============================================================================


class BuildRaceError(CairnError):
    """Raised when atomic promotion of a cache directory cannot complete.

    The cache key is left absent so the next attempt starts clean.
    """

    def __init__(self, key: str, store: str = "build store") -> None:
        self.key = key
        self.store = store
        super().__init__(f"{store} race: failed to store entry for key {key}")


class ExternalDepsError(CairnError):
    """Raised when installing an external dependency set fails."""

    pass


# =============================================================================
# Orchestration
# =============================================================================


class BundlerError(CairnError):
    """Raised when the bundler cannot produce artifacts for a unit."""

    def __init__(self, unit_name: str, detail: str) -> None:
        self.unit_name = unit_name
        self.detail = detail
        super().__init__(f"Bundler failed for {unit_name}: {detail}")


class UnknownMethodError(CairnError):
    """Raised by the service handler for an unknown method name."""

    def __init__(self, method: str) -> None:
        self.method = method
        super().__init__(f"Unknown build method: {method}")
