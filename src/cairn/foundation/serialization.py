"""Crash-tolerant JSON persistence.

State documents (ref state, EV map, content hashes) are rewritten after every
recompute. Writes go to a temp file in the same directory followed by
`os.replace`, so a crash never leaves a half-written document behind.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def safe_json_load(path: Path, default: Any = None) -> Any:
    """Load a JSON file, returning `default` when missing or corrupt.

    Args:
        path: File to read
        default: Value returned on any read or parse error

    Returns:
        Parsed JSON data, or default on any error

    Example:
        >>> data = safe_json_load(Path("ev-map.json"), default={})
    """
    if not path.exists():
        return default

    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        logger.warning("Corrupted JSON in %s: %s (using default)", path, e)
        return default
    except OSError as e:
        logger.warning("Failed to read %s: %s (using default)", path, e)
        return default


def safe_json_dump(
    obj: dict[str, Any] | list[Any],
    path: Path,
    *,
    indent: int = 2,
) -> None:
    """Write a JSON file atomically.

    Creates parent directories if needed. Unlike a best-effort cache write,
    persistence failures propagate: callers must know their state did not land.

    Args:
        obj: Object to serialize
        path: Destination path
        indent: JSON indentation (default: 2)

    Raises:
        OSError: If the file cannot be written
        TypeError: If obj is not JSON-serializable
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    content = json.dumps(obj, indent=indent, sort_keys=True)

    fd, tmp_path = tempfile.mkstemp(
        suffix=".tmp",
        prefix=path.stem + "_",
        dir=path.parent,
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp_path, path)  # Atomic on POSIX
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
