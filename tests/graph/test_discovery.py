"""Tests for workspace discovery."""

import json
import logging
from pathlib import Path

import pytest

from cairn.config import WorkspaceConfig
from cairn.foundation.errors import CycleError, ManifestError
from cairn.graph.discovery import (
    discover_unit_graph,
    manifest_dependencies,
    read_manifest,
)
from cairn.graph.models import DepRefMode, UnitKind


def _write(root: Path, relative: str, manifest: dict | str) -> Path:
    unit_dir = root / relative
    unit_dir.mkdir(parents=True)
    text = manifest if isinstance(manifest, str) else json.dumps(manifest)
    (unit_dir / "package.json").write_text(text)
    return unit_dir


@pytest.fixture
def root(tmp_path: Path) -> Path:
    _write(tmp_path, "packages/core", {"name": "@workspace/core", "dependencies": {"zod": "^3.0.0"}})
    _write(
        tmp_path,
        "packages/ui",
        {
            "name": "@workspace/ui",
            "dependencies": {"@workspace/core": "workspace:*", "react": "^18.2.0"},
            "peerDependencies": {"react": "^18.0.0"},
        },
    )
    _write(
        tmp_path,
        "panels/chat",
        {
            "name": "@workspace-panels/chat",
            "dependencies": {"@workspace/ui": "workspace:feature-x"},
            "cairn": {"title": "Chat", "sourcemap": False},
        },
    )
    _write(tmp_path, "about/credits", {"name": "@workspace-about/credits"})
    _write(tmp_path, "agents/helper", {"name": "@workspace-agents/helper"})
    return tmp_path


class TestDiscoverUnitGraph:
    """Tests for discover_unit_graph."""

    def test_discovers_every_kind(self, root: Path) -> None:
        graph = discover_unit_graph(root)

        kinds = {u.name: u.kind for u in graph.all_nodes()}
        assert kinds == {
            "@workspace/core": UnitKind.PACKAGE,
            "@workspace/ui": UnitKind.PACKAGE,
            "@workspace-panels/chat": UnitKind.PANEL,
            "@workspace-about/credits": UnitKind.ABOUT,
            "@workspace-agents/helper": UnitKind.AGENT,
        }

    def test_graph_is_ordered(self, root: Path) -> None:
        """The returned graph already carries its topological order."""
        order = [u.name for u in discover_unit_graph(root).topological_order()]

        assert order.index("@workspace/core") < order.index("@workspace/ui")
        assert order.index("@workspace/ui") < order.index("@workspace-panels/chat")

    def test_unit_fields(self, root: Path) -> None:
        graph = discover_unit_graph(root)
        chat = graph.get("@workspace-panels/chat")

        assert chat.relative_path == "panels/chat"
        assert chat.path == (root / "panels/chat").resolve()
        assert chat.internal_deps == ["@workspace/ui"]
        assert chat.internal_dep_refs["@workspace/ui"].mode is DepRefMode.BRANCH
        assert chat.manifest.title == "Chat"
        assert chat.manifest.sourcemap is False

    def test_regular_dependency_wins_over_peer(self, root: Path) -> None:
        ui = discover_unit_graph(root).get("@workspace/ui")

        assert ui.dependencies["react"] == "^18.2.0"
        assert ui.internal_deps == ["@workspace/core"]

    def test_skips_hidden_and_manifestless_dirs(self, root: Path) -> None:
        (root / "panels" / "notes").mkdir()
        _write(root, "panels/.draft", {"name": "@workspace-panels/draft"})

        graph = discover_unit_graph(root)

        assert not graph.has("@workspace-panels/draft")
        assert len(graph) == 5

    def test_malformed_manifest_skipped(self, root: Path, caplog: pytest.LogCaptureFixture) -> None:
        """A broken manifest skips that unit with a warning."""
        _write(root, "panels/broken", "{ not json")
        _write(root, "panels/nameless", {"version": "1.0.0"})

        with caplog.at_level(logging.WARNING, logger="cairn.graph.discovery"):
            graph = discover_unit_graph(root)

        assert len(graph) == 5
        assert "panels/broken" in caplog.text
        assert "panels/nameless" in caplog.text

    def test_missing_internal_dependency_dropped(
        self, root: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        _write(
            root,
            "panels/settings",
            {"name": "@workspace-panels/settings", "dependencies": {"@workspace/gone": "*"}},
        )

        with caplog.at_level(logging.WARNING, logger="cairn.graph.discovery"):
            graph = discover_unit_graph(root)

        settings = graph.get("@workspace-panels/settings")
        assert settings.internal_deps == []
        assert "@workspace/gone" not in settings.internal_dep_refs
        assert "@workspace/gone" in caplog.text

    def test_cycle_fails_discovery(self, tmp_path: Path) -> None:
        _write(tmp_path, "packages/a", {"name": "@workspace/a", "dependencies": {"@workspace/b": "*"}})
        _write(tmp_path, "packages/b", {"name": "@workspace/b", "dependencies": {"@workspace/a": "*"}})

        with pytest.raises(CycleError):
            discover_unit_graph(tmp_path)

    def test_empty_workspace(self, tmp_path: Path) -> None:
        assert len(discover_unit_graph(tmp_path)) == 0

    def test_custom_layout(self, tmp_path: Path) -> None:
        """Scan directories and scopes come from the workspace config."""
        _write(tmp_path, "libs/base", {"name": "@acme/base"})
        _write(tmp_path, "apps/shell", {"name": "@acme/shell", "dependencies": {"@acme/base": "*"}})
        config = WorkspaceConfig(
            scan_dirs={"libs": "package", "apps": "panel"},
            internal_scopes=("@acme/",),
        )

        graph = discover_unit_graph(tmp_path, config)

        assert graph.get("@acme/shell").internal_deps == ["@acme/base"]
        assert graph.get("@acme/base").kind is UnitKind.PACKAGE


class TestReadManifest:
    def test_missing(self, tmp_path: Path) -> None:
        with pytest.raises(ManifestError, match="No package.json"):
            read_manifest(tmp_path)

    def test_not_an_object(self, tmp_path: Path) -> None:
        (tmp_path / "package.json").write_text("[1, 2]")

        with pytest.raises(ManifestError, match="not a JSON object"):
            read_manifest(tmp_path)

    def test_manifest_dependencies_ignores_non_dict_sections(self) -> None:
        deps = manifest_dependencies({"dependencies": ["react"], "peerDependencies": {"vue": 3}})

        assert deps == {"vue": "3"}
