"""Bundler interface.

Cairn does not compile anything itself. A `Bundler` turns one unit at one
effective version into build artifacts; the builder stores whatever it
returns. `CommandBundler` runs an external command for that and collects the
files it leaves in an output directory.
"""

import asyncio
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from cairn.foundation.errors import BundlerError
from cairn.graph.models import Unit
from cairn.store.builds import ASSETS_DIR, BUNDLE_FILE, CSS_FILE, HTML_FILE, BuildArtifacts

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BundleRequest:
    """Everything a bundler needs to build one unit.

    Attributes:
        unit: The unit to build.
        ev: Its effective version.
        build_key: Store key the result will be written under.
        sourcemap: Whether to emit source maps.
        workspace_root: Workspace root directory.
        external_env: Installed external dependency environment, if any.
        commit_map: Unit name → commit the sources should be read at.
    """

    unit: Unit
    ev: str
    build_key: str
    sourcemap: bool
    workspace_root: Path
    external_env: Path | None = None
    commit_map: dict[str, str] = field(default_factory=dict)


class Bundler(Protocol):
    """Produces build artifacts for a unit."""

    async def bundle(self, request: BundleRequest) -> BuildArtifacts:
        """Build the unit described by `request`.

        Raises:
            BundlerError: If the unit cannot be built.
        """
        ...


def collect_output(unit_name: str, out_dir: Path) -> BuildArtifacts:
    """Read bundler output from a directory.

    Raises:
        BundlerError: If the directory holds no bundle.
    """
    bundle_path = out_dir / BUNDLE_FILE
    if not bundle_path.is_file():
        raise BundlerError(unit_name, f"no {BUNDLE_FILE} in output")

    css_path = out_dir / CSS_FILE
    html_path = out_dir / HTML_FILE
    assets_dir = out_dir / ASSETS_DIR

    assets: dict[str, bytes] = {}
    if assets_dir.is_dir():
        for path in sorted(assets_dir.rglob("*")):
            if path.is_file():
                assets[path.relative_to(assets_dir).as_posix()] = path.read_bytes()

    return BuildArtifacts(
        bundle=bundle_path.read_text(encoding="utf-8"),
        css=css_path.read_text(encoding="utf-8") if css_path.is_file() else None,
        html=html_path.read_text(encoding="utf-8") if html_path.is_file() else None,
        assets=assets,
    )


class CommandBundler:
    """Bundler that runs an external command per unit.

    The command runs in the unit directory with these environment variables:

        CAIRN_UNIT_NAME, CAIRN_UNIT_KIND, CAIRN_UNIT_PATH, CAIRN_UNIT_COMMIT,
        CAIRN_ENTRY, CAIRN_EV, CAIRN_BUILD_KEY, CAIRN_SOURCEMAP ("1"/"0"),
        CAIRN_WORKSPACE_ROOT, CAIRN_EXTERNAL_ENV, CAIRN_OUT_DIR

    and must write `bundle.js` (plus optional `bundle.css`, `index.html`
    and `assets/`) into `CAIRN_OUT_DIR`.
    """

    def __init__(self, command: tuple[str, ...] | list[str], timeout: float = 300.0) -> None:
        if not command:
            raise ValueError("CommandBundler needs a command")
        self.command = tuple(command)
        self.timeout = timeout

    def _environment(self, request: BundleRequest, out_dir: Path) -> dict[str, str]:
        unit = request.unit
        return {
            **os.environ,
            "CAIRN_UNIT_NAME": unit.name,
            "CAIRN_UNIT_KIND": unit.kind.value,
            "CAIRN_UNIT_PATH": str(unit.path),
            "CAIRN_UNIT_COMMIT": request.commit_map.get(unit.name, ""),
            "CAIRN_ENTRY": unit.manifest.entry or "",
            "CAIRN_EV": request.ev,
            "CAIRN_BUILD_KEY": request.build_key,
            "CAIRN_SOURCEMAP": "1" if request.sourcemap else "0",
            "CAIRN_WORKSPACE_ROOT": str(request.workspace_root),
            "CAIRN_EXTERNAL_ENV": str(request.external_env) if request.external_env else "",
            "CAIRN_OUT_DIR": str(out_dir),
        }

    async def bundle(self, request: BundleRequest) -> BuildArtifacts:
        name = request.unit.name
        out_dir = Path(tempfile.mkdtemp(prefix=f"cairn-build-{request.build_key}-"))
        try:
            try:
                proc = await asyncio.create_subprocess_exec(
                    *self.command,
                    cwd=request.unit.path,
                    env=self._environment(request, out_dir),
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as e:
                raise BundlerError(name, f"cannot start {self.command[0]}: {e}") from e

            try:
                stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
            except TimeoutError:
                proc.kill()
                await proc.wait()
                raise BundlerError(name, f"timed out after {self.timeout:.0f}s") from None

            if stdout:
                logger.debug("%s bundler output:\n%s", name, stdout.decode(errors="replace"))
            if proc.returncode != 0:
                tail = stderr.decode(errors="replace").strip().splitlines()[-5:]
                raise BundlerError(name, f"exit {proc.returncode}: {' | '.join(tail)}")

            return await asyncio.to_thread(collect_output, name, out_dir)
        finally:
            shutil.rmtree(out_dir, ignore_errors=True)
