"""Unit model for the workspace graph.

A unit is one repository in the workspace: a library (`package`) or a
buildable panel, about page or agent. Units are created by discovery and
hold everything the version engine and builder need to know about them.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

# 7-40 hex characters: abbreviated or full commit SHA
_SHA_PATTERN = re.compile(r"^[0-9a-f]{7,40}$", re.IGNORECASE)

_WORKSPACE_PREFIX = "workspace:"


class UnitKind(Enum):
    """What a unit is, derived from the workspace directory it lives in."""

    PACKAGE = "package"
    """Library. Consumed by other units, never built on its own."""

    PANEL = "panel"
    ABOUT = "about"
    AGENT = "agent"

    @property
    def is_buildable(self) -> bool:
        """Whether units of this kind produce build artifacts."""
        return self is not UnitKind.PACKAGE


class DepRefMode(Enum):
    """How an internal dependency is pinned."""

    DEFAULT = "default"
    """Follow the dependency's main branch."""

    BRANCH = "branch"
    REF = "ref"
    COMMIT = "commit"


@dataclass(frozen=True, slots=True)
class InternalDepRef:
    """Pin of one internal dependency, parsed from its version spec.

    Attributes:
        raw: Version spec as written in the manifest.
        mode: Pin mode.
        branch: Branch name when mode is BRANCH.
        ref: Git ref when mode is REF.
        commit: Commit SHA when mode is COMMIT.
    """

    raw: str
    mode: DepRefMode = DepRefMode.DEFAULT
    branch: str | None = None
    ref: str | None = None
    commit: str | None = None

    def pins_branch(self, branch: str, commit: str) -> bool:
        """Whether a push of `commit` to `branch` moves this pin."""
        if self.mode is DepRefMode.BRANCH:
            return self.branch == branch
        if self.mode is DepRefMode.REF:
            return self.ref in (branch, f"refs/heads/{branch}")
        if self.mode is DepRefMode.COMMIT:
            # Pins may use an abbreviated SHA
            return bool(self.commit) and commit.startswith(self.commit or "")
        return False


def parse_internal_dep_ref(spec: str | None) -> InternalDepRef:
    """Parse an internal dependency version spec into a pin.

    Accepted forms:
        "", "*", "workspace:*", "workspace:"  → default
        "workspace:commit:<sha>"             → commit
        "workspace:ref:<ref>"                → ref
        "workspace:branch:<name>"            → branch
        "workspace:<sha>"                    → commit
        "workspace:refs/..."                 → ref
        "workspace:<name>"                   → branch
        "<sha>" / "refs/..."                 → commit / ref
        anything else                        → default

    Example:
        >>> parse_internal_dep_ref("workspace:feature-x").branch
        'feature-x'
    """
    raw = (spec or "").strip()
    if raw in ("", "*", "workspace:*", "workspace:"):
        return InternalDepRef(raw=raw)

    if raw.startswith(_WORKSPACE_PREFIX):
        value = raw[len(_WORKSPACE_PREFIX):]
        if value.startswith("commit:"):
            return InternalDepRef(raw=raw, mode=DepRefMode.COMMIT, commit=value[len("commit:"):])
        if value.startswith("ref:"):
            return InternalDepRef(raw=raw, mode=DepRefMode.REF, ref=value[len("ref:"):])
        if value.startswith("branch:"):
            return InternalDepRef(raw=raw, mode=DepRefMode.BRANCH, branch=value[len("branch:"):])
        if _SHA_PATTERN.match(value):
            return InternalDepRef(raw=raw, mode=DepRefMode.COMMIT, commit=value)
        if value.startswith("refs/"):
            return InternalDepRef(raw=raw, mode=DepRefMode.REF, ref=value)
        return InternalDepRef(raw=raw, mode=DepRefMode.BRANCH, branch=value)

    if _SHA_PATTERN.match(raw):
        return InternalDepRef(raw=raw, mode=DepRefMode.COMMIT, commit=raw)
    if raw.startswith("refs/"):
        return InternalDepRef(raw=raw, mode=DepRefMode.REF, ref=raw)
    return InternalDepRef(raw=raw)


@dataclass(frozen=True, slots=True)
class UnitManifest:
    """Build-relevant configuration block of a unit manifest.

    Keys the builder does not know about are preserved in `extra` so a
    bundler can read them and so they take part in manifest diffs.
    """

    sourcemap: bool = True
    entry: str | None = None
    title: str | None = None
    description: str | None = None
    hidden_in_launcher: bool = False
    externals: tuple[str, ...] = ()
    extra: dict[str, Any] = field(default_factory=dict)

    _KNOWN_KEYS = frozenset(
        {"sourcemap", "entry", "title", "description", "hiddenInLauncher", "externals"}
    )

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> UnitManifest:
        """Create from the manifest's build block (camelCase keys)."""
        data = data or {}
        externals = data.get("externals") or ()
        if isinstance(externals, str):
            externals = (externals,)
        elif isinstance(externals, dict):
            externals = tuple(externals)
        return cls(
            sourcemap=data.get("sourcemap") is not False,
            entry=data.get("entry"),
            title=data.get("title"),
            description=data.get("description"),
            hidden_in_launcher=bool(data.get("hiddenInLauncher", False)),
            externals=tuple(externals),
            extra={k: v for k, v in data.items() if k not in cls._KNOWN_KEYS},
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert back to the manifest's camelCase form."""
        result: dict[str, Any] = dict(self.extra)
        result["sourcemap"] = self.sourcemap
        result["hiddenInLauncher"] = self.hidden_in_launcher
        if self.entry is not None:
            result["entry"] = self.entry
        if self.title is not None:
            result["title"] = self.title
        if self.description is not None:
            result["description"] = self.description
        if self.externals:
            result["externals"] = list(self.externals)
        return result


@dataclass(slots=True)
class Unit:
    """A node in the workspace graph.

    Mutable only in `content_hash`, which the version engine fills in
    lazily and the fast path updates after a push.
    """

    name: str
    """Unique key (manifest `name`)."""

    path: Path
    """Absolute directory of the unit's repository."""

    relative_path: str
    """Workspace-relative POSIX path, e.g. `panels/chat`."""

    kind: UnitKind

    dependencies: dict[str, str] = field(default_factory=dict)
    """Declared dependencies, internal and external: name → version spec."""

    internal_deps: list[str] = field(default_factory=list)
    """Declared dependencies that are units of this workspace."""

    internal_dep_refs: dict[str, InternalDepRef] = field(default_factory=dict)

    content_hash: str = ""
    """Git tree hash at the unit's current commit. Empty until computed."""

    manifest: UnitManifest = field(default_factory=UnitManifest)

    @property
    def is_buildable(self) -> bool:
        return self.kind.is_buildable

    def __repr__(self) -> str:
        return f"Unit({self.name!r}, kind={self.kind.value}, deps={self.internal_deps!r})"
