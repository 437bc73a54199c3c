"""Atomic directory promotion shared by the on-disk caches.

Writers fill a uniquely named temp directory beside the final entry, write a
completion sentinel last, then rename the temp directory into place. The
rename is the only synchronization: no lock is held inside the process or
across processes.

Outcomes of the rename:

- it succeeds: this writer's entry is now visible;
- the target exists with its sentinel: another writer won, drop ours;
- the target exists without a sentinel: a writer crashed mid-way, remove
  its leftovers and retry once; a second failure removes both directories
  and raises `BuildRaceError` so the key stays absent.
"""

import errno
import logging
import os
import shutil
import time
import uuid
from enum import Enum
from pathlib import Path

from cairn.foundation.errors import BuildRaceError

logger = logging.getLogger(__name__)

TEMP_MARKER = ".tmp."

# rename(2) errors that mean "the target is already there"
_TARGET_EXISTS_ERRNOS = frozenset({errno.EEXIST, errno.ENOTEMPTY, errno.ENOTDIR})


class PromoteOutcome(Enum):
    """How a promotion ended."""

    PROMOTED = "promoted"
    """Our temp directory became the entry."""

    LOST_RACE = "lost_race"
    """A complete entry already existed; ours was discarded."""

    REPLACED_STALE = "replaced_stale"
    """An incomplete entry was removed and ours took its place."""


def is_temp_name(name: str) -> bool:
    """Whether a directory name belongs to an in-flight or abandoned writer."""
    return TEMP_MARKER in name


def make_temp_dir(final: Path) -> Path:
    """Create `{final}.tmp.{pid}.{uuid}` next to the final entry."""
    final.parent.mkdir(parents=True, exist_ok=True)
    tmp = final.with_name(f"{final.name}{TEMP_MARKER}{os.getpid()}.{uuid.uuid4().hex}")
    tmp.mkdir()
    return tmp


def remove_path(path: Path) -> None:
    """Remove a directory tree or file; a missing path is not an error."""
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink(missing_ok=True)
    except FileNotFoundError:
        pass


def discard(path: Path) -> None:
    """Best-effort removal used on cleanup paths; failures are logged."""
    try:
        remove_path(path)
    except OSError as e:
        logger.warning("Could not remove %s: %s", path, e)


def is_stale(path: Path, max_age_seconds: float, now: float | None = None) -> bool:
    """Whether a path has not been modified for `max_age_seconds`."""
    try:
        mtime = path.stat().st_mtime
    except FileNotFoundError:
        return False
    return (now if now is not None else time.time()) - mtime >= max_age_seconds


def promote(
    tmp: Path,
    final: Path,
    sentinel: str,
    *,
    key: str,
    store: str,
) -> PromoteOutcome:
    """Atomically move a completed temp directory into place.

    Args:
        tmp: Completed temp directory (sentinel already written).
        final: Entry directory.
        sentinel: Name of the completion sentinel inside an entry.
        key: Cache key, for errors and logs.
        store: Store name, for errors and logs.

    Returns:
        How the promotion ended.

    Raises:
        BuildRaceError: If an incomplete entry could not be replaced.
        OSError: On any other filesystem error (the temp directory is removed).
    """
    try:
        os.rename(tmp, final)
        return PromoteOutcome.PROMOTED
    except OSError as e:
        if e.errno not in _TARGET_EXISTS_ERRNOS:
            discard(tmp)
            raise

    if (final / sentinel).exists():
        logger.debug("%s: lost race for %s, using existing entry", store, key)
        discard(tmp)
        return PromoteOutcome.LOST_RACE

    logger.warning("%s: replacing incomplete entry %s", store, key)
    try:
        remove_path(final)
        os.rename(tmp, final)
    except OSError as e:
        discard(tmp)
        discard(final)
        raise BuildRaceError(key, store) from e
    return PromoteOutcome.REPLACED_STALE
