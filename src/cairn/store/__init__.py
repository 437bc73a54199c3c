"""On-disk caches: build artifacts and installed external dependencies."""

from cairn.store.builds import BuildArtifacts, BuildMetadata, BuildResult, BuildStore
from cairn.store.external import (
    ExternalDepsCache,
    Installer,
    NpmInstaller,
    collect_transitive_external_deps,
    compare_versions,
    hash_dep_set,
)
from cairn.store.promote import PromoteOutcome, promote

__all__ = [
    "BuildArtifacts",
    "BuildMetadata",
    "BuildResult",
    "BuildStore",
    "ExternalDepsCache",
    "Installer",
    "NpmInstaller",
    "PromoteOutcome",
    "collect_transitive_external_deps",
    "compare_versions",
    "hash_dep_set",
    "promote",
]
