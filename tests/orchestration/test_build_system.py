"""Tests for BuildSystem startup, public API and the service handler."""

import json
import logging
import shutil
from pathlib import Path

import pytest
from fakes import FakeBundler, FakeInstaller, FakePushSource, Workspace, start_system

from cairn.foundation.errors import MissingVersionError, UnknownMethodError, UnknownUnitError
from cairn.orchestration.system import create_service_handler
from cairn.versioning.state import StateStore

CORE = "@workspace/core"
CHAT = "@workspace-panels/chat"
WIDGET = "@workspace-panels/chat-widget"
SETTINGS = "@workspace-panels/settings"
CREDITS = "@workspace-about/credits"

BUILDABLE = sorted([CHAT, WIDGET, SETTINGS, CREDITS])


class TestStartup:
    """Tests for BuildSystem.start."""

    @pytest.mark.asyncio
    async def test_builds_every_buildable_unit(
        self,
        chat_workspace: Workspace,
        bundler: FakeBundler,
        installer: FakeInstaller,
        state_dir: Path,
    ) -> None:
        """Libraries are versioned but never built on their own."""
        system = await start_system(chat_workspace, bundler, installer, state_dir)

        assert sorted(bundler.built) == BUILDABLE
        assert set(system.ev_map) == {CORE, *BUILDABLE}
        assert system.orchestrator.is_running
        await system.shutdown()

    @pytest.mark.asyncio
    async def test_persists_documents(
        self,
        chat_workspace: Workspace,
        bundler: FakeBundler,
        installer: FakeInstaller,
        state_dir: Path,
    ) -> None:
        system = await start_system(chat_workspace, bundler, installer, state_dir)

        persisted = StateStore(state_dir).load()
        assert persisted.ev_map == system.ev_map
        assert persisted.ref_state == system.state.ref_state
        assert set(persisted.content_hashes) == set(system.ev_map)
        await system.shutdown()

    @pytest.mark.asyncio
    async def test_warm_restart_reuses_everything(
        self,
        chat_workspace: Workspace,
        bundler: FakeBundler,
        installer: FakeInstaller,
        state_dir: Path,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """A restart with nothing pushed reads no trees and builds nothing."""
        first = await start_system(chat_workspace, bundler, installer, state_dir)
        await first.shutdown()
        chat_workspace.git.tree_hash_calls.clear()
        bundler.requests.clear()

        with caplog.at_level(logging.INFO, logger="cairn.orchestration.system"):
            second = await start_system(chat_workspace, bundler, installer, state_dir)

        assert second.ev_map == first.ev_map
        assert chat_workspace.git.tree_hash_calls == []
        assert bundler.built == []
        assert "All builds up to date" in caplog.text
        await second.shutdown()

    @pytest.mark.asyncio
    async def test_restart_after_missed_push(
        self,
        chat_workspace: Workspace,
        bundler: FakeBundler,
        installer: FakeInstaller,
        state_dir: Path,
    ) -> None:
        """Commits that landed while stopped are picked up on the next start."""
        first = await start_system(chat_workspace, bundler, installer, state_dir)
        await first.shutdown()
        chat_workspace.push("packages/core", {"index.ts": "core v2"})
        bundler.requests.clear()

        second = await start_system(chat_workspace, bundler, installer, state_dir)

        assert second.ev_map[CORE] != first.ev_map[CORE]
        assert second.ev_map[SETTINGS] == first.ev_map[SETTINGS]
        assert sorted(bundler.built) == [CHAT, WIDGET]
        await second.shutdown()

    @pytest.mark.asyncio
    async def test_external_env_passed_to_bundler(
        self,
        chat_workspace: Workspace,
        bundler: FakeBundler,
        installer: FakeInstaller,
        state_dir: Path,
    ) -> None:
        system = await start_system(chat_workspace, bundler, installer, state_dir)

        requests = {r.unit.name: r for r in bundler.requests}
        assert requests[CHAT].external_env is not None
        assert requests[CHAT].external_env.is_dir()
        assert requests[SETTINGS].external_env is None
        assert requests[CHAT].commit_map[CHAT] == system.state.ref_state[CHAT]
        assert installer.installs == [{"zod": "^3.22.0"}]
        await system.shutdown()


class TestQueries:
    """Tests for lookups and launcher metadata."""

    @pytest.mark.asyncio
    async def test_effective_versions(
        self,
        chat_workspace: Workspace,
        bundler: FakeBundler,
        installer: FakeInstaller,
        state_dir: Path,
    ) -> None:
        system = await start_system(chat_workspace, bundler, installer, state_dir)

        assert system.get_effective_version(CHAT) == system.ev_map[CHAT]
        assert system.get_effective_version("@workspace/nope") is None
        assert system.has_unit(CHAT)
        assert not system.has_unit("@workspace/nope")
        await system.shutdown()

    @pytest.mark.asyncio
    async def test_ev_map_is_a_copy(
        self,
        chat_workspace: Workspace,
        bundler: FakeBundler,
        installer: FakeInstaller,
        state_dir: Path,
    ) -> None:
        system = await start_system(chat_workspace, bundler, installer, state_dir)

        system.ev_map[CHAT] = "tampered"

        assert system.get_effective_version(CHAT) != "tampered"
        await system.shutdown()

    @pytest.mark.asyncio
    async def test_launcher_units(
        self,
        chat_workspace: Workspace,
        bundler: FakeBundler,
        installer: FakeInstaller,
        state_dir: Path,
    ) -> None:
        """Panels and about pages, sorted by path, with display metadata."""
        system = await start_system(chat_workspace, bundler, installer, state_dir)

        units = system.list_launcher_units()

        assert [u.path for u in units] == [
            "about/credits",
            "panels/chat",
            "panels/chat-widget",
            "panels/settings",
        ]
        by_name = {u.name: u for u in units}
        assert by_name[WIDGET].hidden_in_launcher is True
        assert by_name[SETTINGS].description == "Preferences"
        assert by_name[CHAT].to_dict()["hiddenInLauncher"] is False
        await system.shutdown()

    @pytest.mark.asyncio
    async def test_about_pages(
        self,
        chat_workspace: Workspace,
        bundler: FakeBundler,
        installer: FakeInstaller,
        state_dir: Path,
    ) -> None:
        system = await start_system(chat_workspace, bundler, installer, state_dir)

        pages = system.get_about_pages()

        assert [(p.name, p.title, p.kind) for p in pages] == [("credits", "Credits", "about")]
        await system.shutdown()


class TestGetBuild:
    """Tests for get_build."""

    @pytest.mark.asyncio
    async def test_resolves_name_path_and_basename(
        self,
        chat_workspace: Workspace,
        bundler: FakeBundler,
        installer: FakeInstaller,
        state_dir: Path,
    ) -> None:
        """All identifiers hit the stored build without bundling again."""
        system = await start_system(chat_workspace, bundler, installer, state_dir)
        bundler.requests.clear()

        by_name = await system.get_build(CHAT)
        by_path = await system.get_build("panels/chat")
        by_dir = await system.get_build("chat")

        assert by_name.key == by_path.key == by_dir.key
        assert by_name.metadata.ev == system.ev_map[CHAT]
        assert by_name.artifacts.bundle.startswith(f"// {CHAT}@")
        assert bundler.built == []
        await system.shutdown()

    @pytest.mark.asyncio
    async def test_builds_on_miss(
        self,
        chat_workspace: Workspace,
        bundler: FakeBundler,
        installer: FakeInstaller,
        state_dir: Path,
    ) -> None:
        system = await start_system(chat_workspace, bundler, installer, state_dir)
        await system.gc([])
        bundler.requests.clear()

        result = await system.get_build("settings")

        assert bundler.built == [SETTINGS]
        assert result.bundle_path.is_file()
        await system.shutdown()

    @pytest.mark.asyncio
    async def test_unknown_unit(
        self,
        chat_workspace: Workspace,
        bundler: FakeBundler,
        installer: FakeInstaller,
        state_dir: Path,
    ) -> None:
        system = await start_system(chat_workspace, bundler, installer, state_dir)

        with pytest.raises(UnknownUnitError):
            await system.get_build("panels/nope")
        await system.shutdown()

    @pytest.mark.asyncio
    async def test_missing_version(
        self,
        chat_workspace: Workspace,
        bundler: FakeBundler,
        installer: FakeInstaller,
        state_dir: Path,
    ) -> None:
        """A unit whose repository has no main branch cannot be built."""
        draft = chat_workspace.root / "panels" / "draft"
        draft.mkdir()
        text = json.dumps({"name": "@workspace-panels/draft"})
        (draft / "package.json").write_text(text)
        chat_workspace.git.commit(draft, {"package.json": text}, branch="wip")
        system = await start_system(chat_workspace, bundler, installer, state_dir)

        assert system.has_unit("@workspace-panels/draft")
        with pytest.raises(MissingVersionError):
            await system.get_build("draft")
        await system.shutdown()


class TestMaintenance:
    """Tests for gc and recompute."""

    @pytest.mark.asyncio
    async def test_gc_keeps_active_units(
        self,
        chat_workspace: Workspace,
        bundler: FakeBundler,
        installer: FakeInstaller,
        state_dir: Path,
    ) -> None:
        system = await start_system(chat_workspace, bundler, installer, state_dir)

        result = await system.gc([CHAT, "@workspace/nope"])

        assert result == {"freed": 3}
        chat = system.graph.get(CHAT)
        assert system.builder.is_built(chat, system.ev_map[CHAT])
        settings = system.graph.get(SETTINGS)
        assert not system.builder.is_built(settings, system.ev_map[SETTINGS])
        await system.shutdown()

    @pytest.mark.asyncio
    async def test_gc_drops_superseded_builds(
        self,
        chat_workspace: Workspace,
        bundler: FakeBundler,
        installer: FakeInstaller,
        state_dir: Path,
    ) -> None:
        """Builds of old EVs go away when their unit is kept at its current EV."""
        system = await start_system(chat_workspace, bundler, installer, state_dir)
        system.handle_push(chat_workspace.push("panels/settings", {"index.ts": "v2"}))
        await system.orchestrator.join()

        result = await system.gc(BUILDABLE)

        assert result == {"freed": 1}
        await system.shutdown()

    @pytest.mark.asyncio
    async def test_recompute_without_changes(
        self,
        chat_workspace: Workspace,
        bundler: FakeBundler,
        installer: FakeInstaller,
        state_dir: Path,
    ) -> None:
        system = await start_system(chat_workspace, bundler, installer, state_dir)

        changes = await system.recompute()

        assert changes.is_empty
        await system.shutdown()

    @pytest.mark.asyncio
    async def test_recompute_finds_added_and_removed_units(
        self,
        chat_workspace: Workspace,
        bundler: FakeBundler,
        installer: FakeInstaller,
        state_dir: Path,
    ) -> None:
        system = await start_system(chat_workspace, bundler, installer, state_dir)
        chat_workspace.add_unit("panels/notes", "@workspace-panels/notes", {CORE: "workspace:*"})
        shutil.rmtree(chat_workspace.root / "panels" / "settings")
        bundler.requests.clear()

        changes = await system.recompute()

        assert changes.added == ["@workspace-panels/notes"]
        assert changes.removed == [SETTINGS]
        assert bundler.built == ["@workspace-panels/notes"]
        assert system.get_build_status(SETTINGS) is None
        assert not system.has_unit(SETTINGS)
        await system.shutdown()


class TestPushSources:
    """Tests for attach and shutdown."""

    @pytest.mark.asyncio
    async def test_attach_forwards_pushes(
        self,
        chat_workspace: Workspace,
        bundler: FakeBundler,
        installer: FakeInstaller,
        state_dir: Path,
    ) -> None:
        system = await start_system(chat_workspace, bundler, installer, state_dir)
        source = FakePushSource()
        system.attach(source)
        before = system.ev_map

        source.push(chat_workspace.push("panels/settings", {"index.ts": "v2"}))
        await system.orchestrator.join()

        assert system.ev_map[SETTINGS] != before[SETTINGS]
        await system.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_detaches_and_stops(
        self,
        chat_workspace: Workspace,
        bundler: FakeBundler,
        installer: FakeInstaller,
        state_dir: Path,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        system = await start_system(chat_workspace, bundler, installer, state_dir)
        source = FakePushSource()
        system.attach(source)

        await system.shutdown()

        assert source.callbacks == []
        assert not system.orchestrator.is_running
        with caplog.at_level(logging.WARNING, logger="cairn.orchestration.push"):
            system.handle_push(chat_workspace.push("panels/settings", {"index.ts": "v2"}))
        assert "orchestrator is stopping" in caplog.text
        assert system.orchestrator.pending == 0

    @pytest.mark.asyncio
    async def test_shutdown_drains_queue(
        self,
        chat_workspace: Workspace,
        bundler: FakeBundler,
        installer: FakeInstaller,
        state_dir: Path,
    ) -> None:
        """Jobs queued before shutdown still run."""
        system = await start_system(chat_workspace, bundler, installer, state_dir)
        event = chat_workspace.push("panels/settings", {"index.ts": "v2"})
        system.handle_push(event)

        await system.shutdown()

        assert system.state.ref_state[SETTINGS] == event.commit


class TestServiceHandler:
    """Tests for create_service_handler."""

    @pytest.mark.asyncio
    async def test_dispatch(
        self,
        chat_workspace: Workspace,
        bundler: FakeBundler,
        installer: FakeInstaller,
        state_dir: Path,
    ) -> None:
        system = await start_system(chat_workspace, bundler, installer, state_dir)
        handle = create_service_handler(system)

        build = await handle("getBuild", ["panels/chat"])
        assert build["metadata"]["name"] == CHAT
        assert build["assets"] == {"icons/logo.svg": "PHN2Zy8+"}

        assert await handle("getEffectiveVersion", [CHAT]) == system.ev_map[CHAT]
        assert await handle("getEffectiveVersion", ["nope"]) is None
        assert await handle("hasUnit", [SETTINGS]) is True
        assert await handle("getAboutPages", []) == [
            {
                "name": "credits",
                "kind": "about",
                "path": "about/credits",
                "title": "Credits",
                "description": None,
                "hiddenInLauncher": False,
            }
        ]
        assert await handle("recompute", []) == {"changed": [], "added": [], "removed": []}
        assert await handle("gc", [[CHAT, WIDGET, SETTINGS, CREDITS]]) == {"freed": 0}
        await system.shutdown()

    @pytest.mark.asyncio
    async def test_results_are_json(
        self,
        chat_workspace: Workspace,
        bundler: FakeBundler,
        installer: FakeInstaller,
        state_dir: Path,
    ) -> None:
        system = await start_system(chat_workspace, bundler, installer, state_dir)
        handle = create_service_handler(system)

        json.dumps(await handle("getBuild", [SETTINGS]))
        await system.shutdown()

    @pytest.mark.asyncio
    async def test_unknown_method(
        self,
        chat_workspace: Workspace,
        bundler: FakeBundler,
        installer: FakeInstaller,
        state_dir: Path,
    ) -> None:
        system = await start_system(chat_workspace, bundler, installer, state_dir)
        handle = create_service_handler(system)

        with pytest.raises(UnknownMethodError):
            await handle("deleteEverything", [])
        await system.shutdown()
