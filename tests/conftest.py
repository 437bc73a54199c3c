"""Pytest fixtures for Cairn tests."""

from pathlib import Path

import pytest
from fakes import FakeBundler, FakeGit, FakeInstaller, Workspace, populate_chat_workspace

from cairn.config import CairnConfig
from cairn.store.builds import BuildArtifacts, BuildMetadata, BuildStore
from cairn.store.external import ExternalDepsCache


@pytest.fixture
def fake_git() -> FakeGit:
    """In-memory git repositories."""
    return FakeGit()


@pytest.fixture
def workspace(tmp_path: Path, fake_git: FakeGit) -> Workspace:
    """Empty workspace checkout backed by `fake_git`."""
    root = tmp_path / "workspace"
    root.mkdir()
    return Workspace(root, fake_git)


@pytest.fixture
def chat_workspace(workspace: Workspace) -> Workspace:
    """core, chat, chat-widget, settings and credits."""
    return populate_chat_workspace(workspace)


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    return tmp_path / "state"


@pytest.fixture
def bundler() -> FakeBundler:
    return FakeBundler()


@pytest.fixture
def installer() -> FakeInstaller:
    return FakeInstaller()


@pytest.fixture
def config() -> CairnConfig:
    return CairnConfig()


@pytest.fixture
def build_store(tmp_path: Path) -> BuildStore:
    """Build store in a temp directory."""
    return BuildStore(tmp_path / "builds")


@pytest.fixture
def external_cache(tmp_path: Path, installer: FakeInstaller) -> ExternalDepsCache:
    return ExternalDepsCache(tmp_path / "external-deps", installer)


@pytest.fixture
def sample_artifacts() -> BuildArtifacts:
    return BuildArtifacts(
        bundle="export default function App() {}\n",
        css=".app { color: red; }",
        html="<div id=root></div>",
        assets={"logo.png": b"\x89PNG", "fonts/inter.woff2": b"wOF2"},
    )


@pytest.fixture
def sample_metadata() -> BuildMetadata:
    return BuildMetadata.create("panel", "@workspace-panels/chat", "ev123", True)
