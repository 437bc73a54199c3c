"""Content-addressed build store.

    {root}/{build_key}/
      ├── bundle.js
      ├── bundle.css     (optional)
      ├── index.html     (optional)
      ├── assets/**      (optional)
      └── metadata.json  ← completion sentinel, written last

Same key, same content: an entry is written once, never modified, and only
removed by `gc`. Concurrent writers of one key are reconciled by
`cairn.store.promote`.
"""

from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath
from typing import Any

from cairn.foundation.errors import BuildRaceError
from cairn.store.promote import (
    PromoteOutcome,
    discard,
    is_stale,
    is_temp_name,
    make_temp_dir,
    promote,
)

logger = logging.getLogger(__name__)

METADATA_FILE = "metadata.json"
BUNDLE_FILE = "bundle.js"
CSS_FILE = "bundle.css"
HTML_FILE = "index.html"
ASSETS_DIR = "assets"

_STORE_NAME = "build store"


@dataclass(frozen=True, slots=True)
class BuildArtifacts:
    """Bundler output for one unit."""

    bundle: str
    css: str | None = None
    html: str | None = None
    assets: dict[str, bytes] = field(default_factory=dict)
    """Path relative to `assets/` → file content."""


@dataclass(frozen=True, slots=True)
class BuildMetadata:
    """Metadata stored beside each build; its file is the completion sentinel."""

    kind: str
    name: str
    ev: str
    sourcemap: bool
    built_at: str

    @classmethod
    def create(cls, kind: str, name: str, ev: str, sourcemap: bool) -> BuildMetadata:
        """Create metadata stamped with the current UTC time."""
        return cls(
            kind=kind,
            name=name,
            ev=ev,
            sourcemap=sourcemap,
            built_at=datetime.now(UTC).isoformat(),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "name": self.name,
            "ev": self.ev,
            "sourcemap": self.sourcemap,
            "built_at": self.built_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BuildMetadata:
        return cls(
            kind=str(data["kind"]),
            name=str(data["name"]),
            ev=str(data["ev"]),
            sourcemap=bool(data["sourcemap"]),
            built_at=str(data["built_at"]),
        )


@dataclass(frozen=True, slots=True)
class BuildResult:
    """A complete build store entry."""

    key: str
    directory: Path
    metadata: BuildMetadata
    artifacts: BuildArtifacts

    @property
    def bundle_path(self) -> Path:
        return self.directory / BUNDLE_FILE

    @property
    def css_path(self) -> Path | None:
        return self.directory / CSS_FILE if self.artifacts.css is not None else None

    @property
    def html_path(self) -> Path | None:
        return self.directory / HTML_FILE if self.artifacts.html is not None else None

    def to_dict(self) -> dict[str, Any]:
        """JSON-serializable form for the service layer. Assets are base64."""
        return {
            "key": self.key,
            "dir": str(self.directory),
            "metadata": self.metadata.to_dict(),
            "bundle": self.artifacts.bundle,
            "css": self.artifacts.css,
            "html": self.artifacts.html,
            "assets": {
                name: base64.b64encode(content).decode("ascii")
                for name, content in sorted(self.artifacts.assets.items())
            },
        }


def _asset_target(assets_dir: Path, name: str) -> Path:
    """Resolve an asset name inside `assets_dir`.

    Raises:
        ValueError: If the name is empty, absolute, or escapes the directory.
    """
    relative = PurePosixPath(name.replace("\\", "/"))
    if not name or relative.is_absolute() or ".." in relative.parts or not relative.parts:
        raise ValueError(f"Invalid asset path: {name!r}")
    return assets_dir.joinpath(*relative.parts)


class BuildStore:
    """On-disk, content-addressed cache of build artifacts.

    Safe for concurrent writers in any number of processes sharing `root`.
    """

    def __init__(self, root: Path, stale_tmp_seconds: float = 3600.0) -> None:
        self.root = root
        self.stale_tmp_seconds = stale_tmp_seconds

    def entry_dir(self, key: str) -> Path:
        return self.root / key

    def has(self, key: str) -> bool:
        """Whether a complete entry exists for `key`."""
        return (self.entry_dir(key) / METADATA_FILE).is_file()

    def get(self, key: str) -> BuildResult | None:
        """Read an entry.

        Returns:
            The stored result, or None when the entry is missing, incomplete,
            or its metadata cannot be read.
        """
        directory = self.entry_dir(key)
        metadata_path = directory / METADATA_FILE
        if not metadata_path.is_file():
            return None

        try:
            metadata = BuildMetadata.from_dict(json.loads(metadata_path.read_text(encoding="utf-8")))
            bundle_path = directory / BUNDLE_FILE
            css_path = directory / CSS_FILE
            html_path = directory / HTML_FILE
            assets_dir = directory / ASSETS_DIR

            assets: dict[str, bytes] = {}
            if assets_dir.is_dir():
                for path in sorted(assets_dir.rglob("*")):
                    if path.is_file():
                        assets[path.relative_to(assets_dir).as_posix()] = path.read_bytes()

            artifacts = BuildArtifacts(
                bundle=bundle_path.read_text(encoding="utf-8") if bundle_path.is_file() else "",
                css=css_path.read_text(encoding="utf-8") if css_path.is_file() else None,
                html=html_path.read_text(encoding="utf-8") if html_path.is_file() else None,
                assets=assets,
            )
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Unreadable build %s: %s", key, e)
            return None

        return BuildResult(key=key, directory=directory, metadata=metadata, artifacts=artifacts)

    def put(self, key: str, artifacts: BuildArtifacts, metadata: BuildMetadata) -> BuildResult:
        """Store artifacts under `key`.

        If another writer stored the key first, its entry is kept and
        returned; both writers see the same result.

        Raises:
            BuildRaceError: If an incomplete entry could not be replaced.
            ValueError: If an asset path escapes the assets directory.
            OSError: On filesystem errors.
        """
        final = self.entry_dir(key)
        tmp = make_temp_dir(final)

        try:
            (tmp / BUNDLE_FILE).write_text(artifacts.bundle, encoding="utf-8")
            if artifacts.css is not None:
                (tmp / CSS_FILE).write_text(artifacts.css, encoding="utf-8")
            if artifacts.html is not None:
                (tmp / HTML_FILE).write_text(artifacts.html, encoding="utf-8")
            if artifacts.assets:
                assets_dir = tmp / ASSETS_DIR
                for name, content in artifacts.assets.items():
                    target = _asset_target(assets_dir, name)
                    target.parent.mkdir(parents=True, exist_ok=True)
                    target.write_bytes(content)

            # Sentinel last: a visible entry is always complete
            (tmp / METADATA_FILE).write_text(
                json.dumps(metadata.to_dict(), indent=2), encoding="utf-8"
            )
        except BaseException:
            discard(tmp)
            raise

        outcome = promote(tmp, final, METADATA_FILE, key=key, store=_STORE_NAME)
        if outcome is not PromoteOutcome.LOST_RACE:
            logger.debug("Stored build %s for %s", key, metadata.name)

        result = self.get(key)
        if result is None:
            raise BuildRaceError(key, _STORE_NAME)
        return result

    def keys(self) -> list[str]:
        """Keys of every complete entry on disk."""
        if not self.root.is_dir():
            return []
        return sorted(
            entry.name
            for entry in self.root.iterdir()
            if not is_temp_name(entry.name) and (entry / METADATA_FILE).is_file()
        )

    def gc_candidates(self, active_keys: set[str]) -> list[str]:
        """Entries `gc` would delete: every non-temp entry outside `active_keys`.

        Incomplete entries (no metadata) are included, unlike `keys()`.
        """
        if not self.root.is_dir():
            return []
        return sorted(
            entry.name
            for entry in self.root.iterdir()
            if not is_temp_name(entry.name) and entry.name not in active_keys
        )

    def gc(self, active_keys: set[str]) -> dict[str, int]:
        """Delete every entry whose key is not in `active_keys`.

        Temp directories are left alone until they are older than the stale
        age, so in-flight writers of other processes are not disturbed.

        Returns:
            {"freed": number of entries removed}
        """
        if not self.root.is_dir():
            return {"freed": 0}

        for entry in self.root.iterdir():
            if is_temp_name(entry.name) and is_stale(entry, self.stale_tmp_seconds):
                logger.debug("Removing abandoned temp directory %s", entry.name)
                discard(entry)

        freed = 0
        for key in self.gc_candidates(active_keys):
            entry = self.root / key
            discard(entry)
            if not entry.exists():
                freed += 1

        if freed:
            logger.info("Build store gc freed %d entries", freed)
        return {"freed": freed}
