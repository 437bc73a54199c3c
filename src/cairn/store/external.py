"""External dependency cache.

For a buildable unit, walks the unit graph and collects every external
(non-workspace) dependency declared by the unit and by each internal unit it
transitively depends on. The union is hashed and installed once into a
shared cache:

    {root}/{dep_set_hash}/
      ├── node_modules/   (installed environment)
      └── .ready          ← completion sentinel

Installation and promotion follow the same temp-directory protocol as the
build store.
"""

import hashlib
import json
import logging
import re
import subprocess
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from cairn.foundation.errors import ExternalDepsError
from cairn.graph.graph import UnitGraph
from cairn.graph.models import Unit
from cairn.store.promote import discard, make_temp_dir, promote

logger = logging.getLogger(__name__)

READY_SENTINEL = ".ready"
DEP_SET_HASH_LENGTH = 16

_STORE_NAME = "external deps cache"
_WILDCARDS = frozenset({"*", "workspace:*"})
_RANGE_PREFIX = re.compile(r"^[\^~>=<]+")


def compare_versions(a: str, b: str) -> int:
    """Compare two version specs, loosely.

    Wildcards (`*`, `workspace:*`) lose to any concrete version. Range
    operators are stripped and dotted parts compared numerically; a part
    that is not a number counts as 0.

    Returns:
        Positive if `a` is higher, negative if lower, 0 if equal.

    Example:
        >>> compare_versions("^1.10.0", "1.9.2") > 0
        True
    """
    if a in _WILDCARDS:
        return 0 if b in _WILDCARDS else -1
    if b in _WILDCARDS:
        return 1

    def parts(version: str) -> list[int]:
        result = []
        for piece in _RANGE_PREFIX.sub("", version.strip()).split("."):
            digits = re.match(r"\d+", piece)
            result.append(int(digits.group()) if digits else 0)
        return result

    a_parts, b_parts = parts(a), parts(b)
    width = max(len(a_parts), len(b_parts))
    a_parts += [0] * (width - len(a_parts))
    b_parts += [0] * (width - len(b_parts))
    for x, y in zip(a_parts, b_parts, strict=True):
        if x != y:
            return x - y
    return 0


def collect_transitive_external_deps(unit: Unit, graph: UnitGraph) -> dict[str, str]:
    """Union of external dependencies reachable from `unit`.

    Internal units are walked, not collected. Specs with a `workspace:`
    prefix are workspace pseudo-references and are skipped. When two units
    declare the same dependency, the higher version wins.
    """
    externals: dict[str, str] = {}
    visited: set[str] = set()
    pending = [unit]

    while pending:
        current = pending.pop()
        if current.name in visited:
            continue
        visited.add(current.name)

        for name, version in current.dependencies.items():
            if graph.is_internal(name):
                if dep := graph.try_get(name):
                    pending.append(dep)
                continue
            if version.startswith("workspace:"):
                continue
            existing = externals.get(name)
            if existing is None or compare_versions(version, existing) > 0:
                externals[name] = version

    return externals


def hash_dep_set(deps: dict[str, str]) -> str:
    """Stable hash of a dependency set (order independent)."""
    payload = json.dumps(sorted(deps.items()), separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:DEP_SET_HASH_LENGTH]


class Installer(Protocol):
    """Installs a dependency set into a directory."""

    def install(self, deps: dict[str, str], target_dir: Path) -> None:
        """Install `deps` inside `target_dir`.

        Raises:
            ExternalDepsError: If installation fails.
        """
        ...


class NpmInstaller:
    """Installer that writes a minimal package.json and runs npm."""

    def __init__(
        self,
        command: tuple[str, ...] = (
            "npm",
            "install",
            "--prefer-offline",
            "--no-audit",
            "--no-fund",
            "--ignore-scripts",
            "--legacy-peer-deps",
        ),
        timeout: float = 120.0,
    ) -> None:
        self.command = command
        self.timeout = timeout

    def install(self, deps: dict[str, str], target_dir: Path) -> None:
        manifest = {
            "name": "external-deps-install",
            "version": "0.0.0",
            "private": True,
            "dependencies": dict(sorted(deps.items())),
        }
        (target_dir / "package.json").write_text(json.dumps(manifest, indent=2), encoding="utf-8")

        try:
            result = subprocess.run(
                list(self.command),
                cwd=target_dir,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ExternalDepsError(f"{' '.join(self.command)} failed: {e}") from e

        if result.returncode != 0:
            detail = result.stderr.strip().splitlines()[-1:] or [f"exit {result.returncode}"]
            raise ExternalDepsError(f"{' '.join(self.command)} failed: {detail[0]}")


class ExternalDepsCache:
    """Installed-environment cache keyed by dependency set hash."""

    def __init__(
        self,
        root: Path,
        installer: Installer | None = None,
        env_dirname: str = "node_modules",
    ) -> None:
        self.root = root
        self.installer = installer or NpmInstaller()
        self.env_dirname = env_dirname

    def entry_dir(self, deps: dict[str, str]) -> Path:
        return self.root / hash_dep_set(deps)

    def has(self, deps: dict[str, str]) -> bool:
        return (self.entry_dir(deps) / READY_SENTINEL).is_file()

    def ensure(self, deps: dict[str, str]) -> Path | None:
        """Return the installed environment for `deps`, installing on a miss.

        Returns:
            Path of the environment directory, or None for an empty set.

        Raises:
            ExternalDepsError: If the installer fails.
            BuildRaceError: If an incomplete entry could not be replaced.
        """
        if not deps:
            return None

        key = hash_dep_set(deps)
        final = self.root / key
        if (final / READY_SENTINEL).is_file():
            return final / self.env_dirname

        logger.info("Installing %d external dependencies (%s)", len(deps), key)
        tmp = make_temp_dir(final)
        try:
            self.installer.install(deps, tmp)
            (tmp / READY_SENTINEL).write_text(datetime.now(UTC).isoformat(), encoding="utf-8")
        except ExternalDepsError:
            discard(tmp)
            raise
        except OSError as e:
            discard(tmp)
            raise ExternalDepsError(f"Failed to prepare dependency set {key}: {e}") from e
        except BaseException:
            discard(tmp)
            raise

        promote(tmp, final, READY_SENTINEL, key=key, store=_STORE_NAME)
        return final / self.env_dirname
