"""Foundation - errors, logging, hashing and persistence helpers.

Everything else in Cairn imports from here; nothing here imports from the
rest of the package.
"""

from cairn.foundation.errors import (
    BuildRaceError,
    BundlerError,
    CairnError,
    CycleError,
    ExternalDepsError,
    GitError,
    GraphNotOrderedError,
    ManifestError,
    MissingVersionError,
    UnknownMethodError,
    UnknownUnitError,
)
from cairn.foundation.hashing import hash_strings
from cairn.foundation.logging import configure_logging
from cairn.foundation.serialization import safe_json_dump, safe_json_load

__all__ = [
    # Errors
    "BuildRaceError",
    "BundlerError",
    "CairnError",
    "CycleError",
    "ExternalDepsError",
    "GitError",
    "GraphNotOrderedError",
    "ManifestError",
    "MissingVersionError",
    "UnknownMethodError",
    "UnknownUnitError",
    # Utilities
    "configure_logging",
    "hash_strings",
    "safe_json_dump",
    "safe_json_load",
]
