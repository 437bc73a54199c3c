"""Cairn command-line interface.

Commands:
    cairn graph      - Show the unit graph in build order
    cairn versions   - Show effective versions and what changed since the last run
    cairn build      - Build one unit (skipped when its build is stored)
    cairn gc         - Delete stored builds except those of the given units
    cairn config     - Show the effective configuration
"""

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import click
import yaml
from rich.console import Console
from rich.table import Table

from cairn.config import CairnConfig, load_config
from cairn.foundation.errors import CairnError
from cairn.foundation.logging import configure_logging
from cairn.graph.discovery import discover_unit_graph
from cairn.graph.graph import UnitGraph
from cairn.orchestration.builder import UnitBuilder
from cairn.orchestration.bundler import CommandBundler
from cairn.orchestration.system import BUILDS_DIR, EXTERNAL_DEPS_DIR
from cairn.store.builds import BuildStore
from cairn.store.external import ExternalDepsCache, NpmInstaller
from cairn.versioning.engine import (
    ChangeSet,
    EffectiveVersionEngine,
    EffectiveVersionMap,
    RefState,
    collect_content_hashes,
    compute_build_key,
    diff_ev_maps,
)
from cairn.versioning.git import GitCli
from cairn.versioning.state import StateStore

console = Console()


@dataclass(slots=True)
class _Context:
    """Options shared by every command."""

    workspace: Path
    config: CairnConfig

    @property
    def state_dir(self) -> Path:
        return self.config.state_path(self.workspace)


@dataclass(slots=True)
class _Snapshot:
    """Graph and effective versions of the workspace as it is on disk now."""

    graph: UnitGraph
    ref_state: RefState
    ev_map: EffectiveVersionMap
    changes: ChangeSet


def _fail(message: str) -> NoReturn:
    console.print(f"[red]Error:[/red] {message}")
    raise SystemExit(1)


def _snapshot(ctx: _Context, engine: EffectiveVersionEngine) -> _Snapshot:
    graph = discover_unit_graph(ctx.workspace, ctx.config.workspace)
    refs = engine.snapshot_ref_state(graph)
    persisted = StateStore(ctx.state_dir).load()
    ev_map = engine.compute_effective_versions_with_cache(
        graph, refs, persisted.ref_state, persisted.ev_map, persisted.content_hashes
    )
    return _Snapshot(graph, refs, ev_map, diff_ev_maps(persisted.ev_map, ev_map))


def _engine(config: CairnConfig) -> EffectiveVersionEngine:
    return EffectiveVersionEngine(GitCli(config.git.main_branches, config.git.timeout))


@click.group()
@click.option(
    "--workspace",
    "-w",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("."),
    show_default=True,
    help="Workspace root",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Config file (default: .cairn/config.yaml, then ~/.cairn/config.yaml)",
)
@click.option("--debug", is_flag=True, help="Verbose logging")
@click.pass_context
def cli(ctx: click.Context, workspace: Path, config_path: Path | None, debug: bool) -> None:
    """Incremental, content-addressed builds for multi-repo workspaces.

    \b
    Inspect the workspace:
        cairn graph
        cairn versions --json

    \b
    Build and clean up:
        cairn build panels/chat
        cairn gc --keep chat --keep settings
    """
    config = load_config(config_path)
    root = workspace.expanduser().resolve()
    ctx.obj = _Context(workspace=root, config=config)
    configure_logging(
        debug=debug,
        log_dir=config.state_path(root) / "logs" if debug else None,
    )


# =============================================================================
# Inspection
# =============================================================================


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_obj
def graph(ctx: _Context, as_json: bool) -> None:
    """Show every unit in build order."""
    try:
        unit_graph = discover_unit_graph(ctx.workspace, ctx.config.workspace)
    except CairnError as e:
        _fail(str(e))

    units = unit_graph.topological_order()
    if as_json:
        click.echo(
            json.dumps(
                [
                    {
                        "name": u.name,
                        "kind": u.kind.value,
                        "path": u.relative_path,
                        "internalDeps": list(u.internal_deps),
                    }
                    for u in units
                ],
                indent=2,
            )
        )
        return

    table = Table(title=f"Units in {ctx.workspace}")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Kind")
    table.add_column("Path")
    table.add_column("Depends on")
    for i, unit in enumerate(units, 1):
        table.add_row(
            str(i),
            unit.name,
            unit.kind.value,
            unit.relative_path,
            ", ".join(unit.internal_deps) or "-",
        )
    console.print(table)


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.option("--save", is_flag=True, help="Persist the computed state for the next run")
@click.pass_obj
def versions(ctx: _Context, as_json: bool, save: bool) -> None:
    """Show effective versions and changes since the last persisted run."""
    try:
        snap = _snapshot(ctx, _engine(ctx.config))
    except CairnError as e:
        _fail(str(e))

    if save:
        StateStore(ctx.state_dir).save(
            snap.ref_state, snap.ev_map, collect_content_hashes(snap.graph)
        )

    if as_json:
        click.echo(json.dumps({"versions": snap.ev_map, "changes": snap.changes.to_dict()}, indent=2))
        return

    changed = set(snap.changes.changed)
    added = set(snap.changes.added)
    table = Table(title="Effective versions")
    table.add_column("Unit", style="cyan")
    table.add_column("Commit", style="dim")
    table.add_column("EV")
    table.add_column("Status")
    for unit in snap.graph.topological_order():
        ev = snap.ev_map.get(unit.name)
        if ev is None:
            status = "[red]no version[/red]"
        elif unit.name in added:
            status = "[green]new[/green]"
        elif unit.name in changed:
            status = "[yellow]changed[/yellow]"
        else:
            status = "[dim]unchanged[/dim]"
        table.add_row(
            unit.name,
            (snap.ref_state.get(unit.name) or "-")[:12],
            ev or "-",
            status,
        )
    console.print(table)
    for name in snap.changes.removed:
        console.print(f"[red]removed:[/red] {name}")


@cli.command("config")
@click.pass_obj
def show_config(ctx: _Context) -> None:
    """Show the effective configuration as YAML."""
    click.echo(yaml.safe_dump(ctx.config.to_dict(), sort_keys=False), nl=False)


# =============================================================================
# Builds
# =============================================================================


@cli.command()
@click.argument("unit_path")
@click.option("--json", "as_json", is_flag=True, help="Output the build metadata as JSON")
@click.pass_obj
def build(ctx: _Context, unit_path: str, as_json: bool) -> None:
    """Build UNIT_PATH (name, path, or directory name).

    \b
    Examples:
        cairn build chat
        cairn build panels/chat
    """
    config = ctx.config
    if not config.bundler.command:
        _fail("No bundler configured (set bundler.command in .cairn/config.yaml)")

    try:
        snap = _snapshot(ctx, _engine(config))
    except CairnError as e:
        _fail(str(e))

    unit = snap.graph.resolve(unit_path)
    if unit is None:
        _fail(f"Unknown unit: {unit_path}")
    if not unit.is_buildable:
        _fail(f"{unit.name} is a {unit.kind.value} and is not built on its own")
    ev = snap.ev_map.get(unit.name)
    if ev is None:
        _fail(f"No effective version for {unit.name}")

    state_dir = ctx.state_dir
    builder = UnitBuilder(
        BuildStore(state_dir / BUILDS_DIR, config.builds.stale_tmp_seconds),
        ExternalDepsCache(
            state_dir / EXTERNAL_DEPS_DIR,
            NpmInstaller(config.external_deps.install_command, config.external_deps.timeout),
            config.external_deps.env_dirname,
        ),
        CommandBundler(config.bundler.command, config.bundler.timeout),
        ctx.workspace,
        config.builds,
    )
    was_built = builder.is_built(unit, ev)
    try:
        result = asyncio.run(builder.build(unit, ev, snap.graph, snap.ref_state))
    except CairnError as e:
        _fail(str(e))

    if as_json:
        click.echo(json.dumps({"key": result.key, **result.metadata.to_dict()}, indent=2))
        return
    verb = "Up to date" if was_built else "Built"
    console.print(f"[green]✓[/green] {verb}: [cyan]{unit.name}[/cyan] → {result.directory}")


@cli.command()
@click.option("--keep", "-k", multiple=True, help="Unit whose current build is kept")
@click.option("--dry-run", is_flag=True, help="List what would be deleted")
@click.pass_obj
def gc(ctx: _Context, keep: tuple[str, ...], dry_run: bool) -> None:
    """Delete stored builds except the current builds of --keep units."""
    config = ctx.config
    try:
        snap = _snapshot(ctx, _engine(config))
    except CairnError as e:
        _fail(str(e))

    active: set[str] = set()
    for name in keep:
        unit = snap.graph.resolve(name)
        ev = snap.ev_map.get(unit.name) if unit is not None else None
        if unit is None or ev is None:
            console.print(f"[yellow]Skipping {name}: no current build[/yellow]")
            continue
        active.add(
            compute_build_key(unit.name, ev, unit.manifest.sourcemap, config.builds.cache_version)
        )

    store = BuildStore(ctx.state_dir / BUILDS_DIR, config.builds.stale_tmp_seconds)
    if dry_run:
        doomed = store.gc_candidates(active)
        for key in doomed:
            console.print(f"  would delete {key}")
        console.print(f"{len(doomed)} build(s) would be deleted")
        return

    result = store.gc(active)
    console.print(f"[green]✓[/green] Freed {result['freed']} build(s)")


def main() -> None:
    """Entry point for the `cairn` script."""
    cli()


if __name__ == "__main__":
    main()
