"""In-memory stand-ins for git, the bundler and the dependency installer."""

import asyncio
import hashlib
import json
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from cairn.config import CairnConfig
from cairn.foundation.errors import BundlerError, ExternalDepsError, GitError
from cairn.graph.graph import UnitGraph
from cairn.graph.models import Unit, UnitKind, UnitManifest, parse_internal_dep_ref
from cairn.orchestration.bundler import BundleRequest
from cairn.orchestration.events import PushEvent
from cairn.orchestration.system import BuildSystem
from cairn.store.builds import BuildArtifacts
from cairn.versioning.state import StateStore

# =============================================================================
# Git
# =============================================================================


@dataclass
class FakeCommit:
    sha: str
    tree: str
    files: dict[str, str]


@dataclass
class FakeRepo:
    branches: dict[str, str] = field(default_factory=dict)
    commits: dict[str, FakeCommit] = field(default_factory=dict)


class FakeGit:
    """GitReader over in-memory repositories.

    Tree hashes are derived from file contents, so identical content gives
    identical trees, as in git.
    """

    def __init__(self, main_branches: tuple[str, ...] = ("main", "master")) -> None:
        self.main_branches = main_branches
        self.repos: dict[Path, FakeRepo] = {}
        self.tree_hash_calls: list[tuple[Path, str | None]] = []
        self._counter = 0

    def _repo(self, repo: Path) -> FakeRepo:
        try:
            return self.repos[Path(repo).resolve()]
        except KeyError:
            raise GitError(str(repo), ["rev-parse"], "not a git repository") from None

    def commit(self, repo: Path, files: dict[str, str], branch: str = "main") -> str:
        """Record a commit with exactly `files` and move `branch` to it."""
        state = self.repos.setdefault(Path(repo).resolve(), FakeRepo())
        self._counter += 1
        sha = hashlib.sha1(f"{repo}:{self._counter}".encode()).hexdigest()
        tree = hashlib.sha1(json.dumps(files, sort_keys=True).encode()).hexdigest()
        state.commits[sha] = FakeCommit(sha, tree, dict(files))
        state.branches[branch] = sha
        return sha

    def head(self, repo: Path, branch: str = "main") -> str:
        return self._repo(repo).branches[branch]

    def files_at(self, repo: Path, branch: str = "main") -> dict[str, str]:
        state = self._repo(repo)
        return dict(state.commits[state.branches[branch]].files)

    def _resolve(self, repo: Path, ref: str | None) -> FakeCommit:
        state = self._repo(repo)
        if ref is None:
            ref = self.resolve_main_ref(repo)
        name = ref.removeprefix("refs/heads/")
        if name in state.branches:
            return state.commits[state.branches[name]]
        for sha, commit in state.commits.items():
            if sha.startswith(ref):
                return commit
        raise GitError(str(repo), ["rev-parse", ref], f"unknown revision {ref}")

    def resolve_main_ref(self, repo: Path) -> str:
        state = self._repo(repo)
        for branch in self.main_branches:
            if branch in state.branches:
                return f"refs/heads/{branch}"
        raise GitError(str(repo), ["rev-parse", "--verify"], "no main branch")

    def tree_hash(self, repo: Path, ref: str | None = None) -> str:
        self.tree_hash_calls.append((Path(repo).resolve(), ref))
        return self._resolve(repo, ref).tree

    def commit_at(self, repo: Path, ref: str | None = None) -> str | None:
        try:
            return self._resolve(repo, ref).sha
        except GitError:
            return None

    def show_file(self, repo: Path, commit: str, path: str) -> str:
        files = self._resolve(repo, commit).files
        if path not in files:
            raise GitError(str(repo), ["show", f"{commit}:{path}"], "path does not exist")
        return files[path]


# =============================================================================
# Bundler and installer
# =============================================================================


class FakeBundler:
    """Bundler that records requests and returns deterministic artifacts."""

    def __init__(self, fail: set[str] | None = None, delay: float = 0.0) -> None:
        self.fail = fail or set()
        self.delay = delay
        self.requests: list[BundleRequest] = []
        self.active = 0
        self.max_active = 0

    @property
    def built(self) -> list[str]:
        return [r.unit.name for r in self.requests]

    async def bundle(self, request: BundleRequest) -> BuildArtifacts:
        self.requests.append(request)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if request.unit.name in self.fail:
                raise BundlerError(request.unit.name, "syntax error")
            return BuildArtifacts(
                bundle=f"// {request.unit.name}@{request.ev}\n",
                css=f"/* {request.unit.name} */",
                assets={"icons/logo.svg": b"<svg/>"},
            )
        finally:
            self.active -= 1


class FakeInstaller:
    """Installer that creates the environment directory without installing anything."""

    def __init__(self, env_dirname: str = "node_modules", fail: bool = False) -> None:
        self.env_dirname = env_dirname
        self.fail = fail
        self.installs: list[dict[str, str]] = []

    def install(self, deps: dict[str, str], target_dir: Path) -> None:
        self.installs.append(dict(deps))
        if self.fail:
            raise ExternalDepsError("npm install failed: E404")
        env = target_dir / self.env_dirname
        env.mkdir()
        for name in deps:
            (env / name.replace("/", "__")).mkdir()


# =============================================================================
# Units and workspaces
# =============================================================================


def make_unit(
    name: str,
    deps: dict[str, str] | list[str] | None = None,
    *,
    kind: UnitKind = UnitKind.PANEL,
    root: Path = Path("/ws"),
    relative_path: str | None = None,
    content_hash: str = "",
    manifest: UnitManifest | None = None,
) -> Unit:
    """Unit with dependencies; names starting with `@workspace` are internal."""
    if isinstance(deps, list):
        deps = {d: "workspace:*" for d in deps}
    deps = deps or {}
    relative_path = relative_path or f"{kind.value}s/{name.split('/')[-1]}"
    internal = [d for d in deps if d.startswith("@workspace")]
    return Unit(
        name=name,
        path=root / relative_path,
        relative_path=relative_path,
        kind=kind,
        dependencies=dict(deps),
        internal_deps=internal,
        internal_dep_refs={d: parse_internal_dep_ref(deps[d]) for d in internal},
        content_hash=content_hash,
        manifest=manifest or UnitManifest(),
    )


def make_graph(*units: Unit) -> UnitGraph:
    """Ordered graph of `units`."""
    graph = UnitGraph()
    for unit in units:
        graph.add_node(unit)
    graph.compute_topological_order()
    return graph


class Workspace:
    """Workspace on disk whose unit repositories live in a FakeGit.

    Manifests are written both to the checkout (read by discovery) and to
    the repository (read when comparing manifests across commits).
    """

    def __init__(self, root: Path, git: FakeGit) -> None:
        self.root = root.resolve()
        self.git = git

    def manifest(
        self,
        name: str,
        deps: dict[str, str] | None = None,
        build: dict[str, Any] | None = None,
        peer: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        data: dict[str, Any] = {"name": name, "version": "1.0.0"}
        if deps:
            data["dependencies"] = deps
        if peer:
            data["peerDependencies"] = peer
        if build is not None:
            data["cairn"] = build
        return data

    def add_unit(
        self,
        relative_path: str,
        name: str,
        deps: dict[str, str] | None = None,
        *,
        build: dict[str, Any] | None = None,
        files: dict[str, str] | None = None,
    ) -> str:
        """Create a unit checkout and its first commit. Returns the commit."""
        return self.write(relative_path, self.manifest(name, deps, build), files or {"index.ts": name})

    def write(self, relative_path: str, manifest: dict[str, Any], files: dict[str, str]) -> str:
        unit_dir = self.root / relative_path
        unit_dir.mkdir(parents=True, exist_ok=True)
        text = json.dumps(manifest, indent=2)
        (unit_dir / "package.json").write_text(text, encoding="utf-8")
        return self.git.commit(unit_dir, {"package.json": text, **files})

    def push(
        self,
        relative_path: str,
        files: dict[str, str],
        *,
        branch: str = "main",
        manifest: dict[str, Any] | None = None,
    ) -> PushEvent:
        """Commit new source files (and optionally a new manifest) to a branch."""
        unit_dir = self.root / relative_path
        current = self.git.files_at(unit_dir) if branch == "main" else {}
        if manifest is not None:
            text = json.dumps(manifest, indent=2)
            (unit_dir / "package.json").write_text(text, encoding="utf-8")
        else:
            text = current.get("package.json") or (unit_dir / "package.json").read_text()
        sha = self.git.commit(unit_dir, {**current, **files, "package.json": text}, branch)
        return PushEvent(repo=relative_path, branch=branch, commit=sha)


def populate_chat_workspace(ws: Workspace) -> Workspace:
    """A library, three panels and an about page.

    chat-widget depends on chat, chat depends on core, settings stands alone.
    """
    ws.add_unit("packages/core", "@workspace/core", {"zod": "^3.22.0"})
    ws.add_unit(
        "panels/chat",
        "@workspace-panels/chat",
        {"@workspace/core": "workspace:*"},
        build={"title": "Chat", "entry": "src/main.tsx"},
    )
    ws.add_unit(
        "panels/chat-widget",
        "@workspace-panels/chat-widget",
        {"@workspace-panels/chat": "workspace:*"},
        build={"title": "Chat Widget", "hiddenInLauncher": True},
    )
    ws.add_unit(
        "panels/settings",
        "@workspace-panels/settings",
        build={"title": "Settings", "description": "Preferences"},
    )
    ws.add_unit("about/credits", "@workspace-about/credits", build={"title": "Credits"})
    return ws


async def start_system(
    ws: Workspace,
    bundler: Any,
    installer: FakeInstaller,
    state_dir: Path,
    config: CairnConfig | None = None,
    **kwargs: Any,
) -> BuildSystem:
    return await BuildSystem.start(
        ws.root,
        bundler,
        config or CairnConfig(),
        git=ws.git,
        installer=installer,
        state_dir=state_dir,
        **kwargs,
    )


class RecordingStateStore(StateStore):
    """StateStore that keeps a copy of every saved ref state."""

    def __init__(self, state_dir: Path) -> None:
        super().__init__(state_dir)
        self.saved_refs: list[dict[str, str]] = []

    def save(self, ref_state, ev_map, content_hashes) -> None:
        super().save(ref_state, ev_map, content_hashes)
        self.saved_refs.append(dict(ref_state))


class FakePushSource:
    """Push source the tests trigger by hand."""

    def __init__(self) -> None:
        self.callbacks: list[Callable[[PushEvent], None]] = []

    def on_push(self, callback: Callable[[PushEvent], None]) -> Callable[[], None]:
        self.callbacks.append(callback)
        return lambda: self.callbacks.remove(callback)

    def push(self, event: PushEvent) -> None:
        for callback in list(self.callbacks):
            callback(event)
