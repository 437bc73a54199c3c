"""Workspace discovery.

Scans the configured workspace directories for units and builds the
`UnitGraph`. Each non-hidden child directory that holds a manifest with a
`name` is one unit; its kind comes from the directory it was found in.
"""

import json
import logging
from pathlib import Path
from typing import Any

from cairn.config import WorkspaceConfig
from cairn.foundation.errors import ManifestError
from cairn.graph.graph import UnitGraph
from cairn.graph.models import Unit, UnitKind, UnitManifest, parse_internal_dep_ref

logger = logging.getLogger(__name__)


def read_manifest(unit_dir: Path, manifest_file: str = "package.json") -> dict[str, Any]:
    """Read and parse a unit manifest from a live checkout.

    Raises:
        ManifestError: If the file is missing, unreadable, or not a JSON object.
    """
    path = unit_dir / manifest_file
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ManifestError(f"No {manifest_file} in {unit_dir}") from None
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ManifestError(f"Cannot read {path}: {e}") from e
    if not isinstance(data, dict):
        raise ManifestError(f"{path} is not a JSON object")
    return data


def manifest_dependencies(manifest: dict[str, Any]) -> dict[str, str]:
    """Declared dependencies with `dependencies` taking precedence over peers."""
    merged: dict[str, str] = {}
    for section in ("peerDependencies", "dependencies"):
        deps = manifest.get(section)
        if isinstance(deps, dict):
            merged.update({str(k): str(v) for k, v in deps.items()})
    return merged


def is_internal_name(name: str, scopes: tuple[str, ...]) -> bool:
    """Whether a dependency name carries a workspace scope prefix."""
    return any(name.startswith(scope) for scope in scopes)


def unit_from_manifest(
    manifest: dict[str, Any],
    unit_dir: Path,
    workspace_root: Path,
    kind: UnitKind,
    config: WorkspaceConfig,
) -> Unit:
    """Build a Unit from a parsed manifest.

    Raises:
        ManifestError: If the manifest has no name.
    """
    name = manifest.get("name")
    if not isinstance(name, str) or not name:
        raise ManifestError(f"Manifest in {unit_dir} has no name")

    dependencies = manifest_dependencies(manifest)
    internal_deps = [d for d in dependencies if is_internal_name(d, config.internal_scopes)]
    build_block = manifest.get(config.manifest_key)

    return Unit(
        name=name,
        path=unit_dir,
        relative_path=unit_dir.relative_to(workspace_root).as_posix(),
        kind=kind,
        dependencies=dependencies,
        internal_deps=internal_deps,
        internal_dep_refs={d: parse_internal_dep_ref(dependencies[d]) for d in internal_deps},
        manifest=UnitManifest.from_dict(build_block if isinstance(build_block, dict) else None),
    )


def _scan_directory(
    directory: Path,
    workspace_root: Path,
    kind: UnitKind,
    config: WorkspaceConfig,
) -> list[Unit]:
    if not directory.is_dir():
        return []

    units: list[Unit] = []
    for entry in sorted(directory.iterdir()):
        if not entry.is_dir() or entry.name.startswith("."):
            continue
        if not (entry / config.manifest_file).exists():
            continue
        try:
            manifest = read_manifest(entry, config.manifest_file)
            units.append(unit_from_manifest(manifest, entry, workspace_root, kind, config))
        except ManifestError as e:
            logger.warning("Skipping %s: %s", entry.relative_to(workspace_root).as_posix(), e)
    return units


def discover_unit_graph(
    workspace_root: Path,
    config: WorkspaceConfig | None = None,
) -> UnitGraph:
    """Discover every unit in the workspace and build the graph.

    Internal dependencies that name a unit missing from the workspace are
    dropped with a warning. The topological order is computed before
    returning, so a cycle fails discovery.

    Args:
        workspace_root: Workspace root directory.
        config: Workspace layout settings (defaults apply when omitted).

    Returns:
        Ordered UnitGraph.

    Raises:
        CycleError: If internal dependencies form a cycle.
    """
    config = config or WorkspaceConfig()
    workspace_root = workspace_root.resolve()
    graph = UnitGraph()

    for dirname, kind_value in config.scan_dirs.items():
        kind = UnitKind(kind_value)
        for unit in _scan_directory(workspace_root / dirname, workspace_root, kind, config):
            graph.add_node(unit)

    for unit in graph.all_nodes():
        missing = [d for d in unit.internal_deps if not graph.has(d)]
        for dep in missing:
            logger.warning("%s depends on %s which is not in the workspace", unit.name, dep)
            unit.internal_deps.remove(dep)
            unit.internal_dep_refs.pop(dep, None)

    graph.compute_topological_order()
    logger.debug("Discovered %d units in %s", len(graph), workspace_root)
    return graph
