"""Effective versions: git reads, EV computation and persisted state."""

from cairn.versioning.engine import (
    ChangeSet,
    ContentHashMap,
    EffectiveVersionEngine,
    EffectiveVersionMap,
    RefState,
    collect_content_hashes,
    compute_build_key,
    diff_ev_maps,
)
from cairn.versioning.git import GitCli, GitReader
from cairn.versioning.state import PersistedState, StateStore

__all__ = [
    "ChangeSet",
    "ContentHashMap",
    "EffectiveVersionEngine",
    "EffectiveVersionMap",
    "GitCli",
    "GitReader",
    "PersistedState",
    "RefState",
    "StateStore",
    "collect_content_hashes",
    "compute_build_key",
    "diff_ev_maps",
]
