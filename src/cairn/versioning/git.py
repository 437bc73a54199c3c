"""Git access for the version engine.

Every workspace unit is its own git repository. The engine needs four reads:
the main branch ref, the tree hash at a ref, the commit at a ref, and a file
at a commit. They are expressed as the `GitReader` protocol so tests and
alternative backends can stand in for the `git` binary.

All reads are synchronous; async callers run them through `asyncio.to_thread`.
"""

import logging
import subprocess
import threading
from pathlib import Path
from typing import Protocol, runtime_checkable

from cairn.foundation.errors import GitError

logger = logging.getLogger(__name__)


@runtime_checkable
class GitReader(Protocol):
    """Read-only view of the unit repositories."""

    def resolve_main_ref(self, repo: Path) -> str:
        """Return the main branch ref (e.g. `refs/heads/main`).

        Raises:
            GitError: If the repository has neither main branch.
        """
        ...

    def tree_hash(self, repo: Path, ref: str | None = None) -> str:
        """Return the tree hash at `ref` (main branch when None).

        Raises:
            GitError: If the ref cannot be resolved.
        """
        ...

    def commit_at(self, repo: Path, ref: str | None = None) -> str | None:
        """Return the commit SHA at `ref` (main branch when None), or None."""
        ...

    def show_file(self, repo: Path, commit: str, path: str) -> str:
        """Return the content of `path` at `commit`.

        Raises:
            GitError: If the file or commit does not exist.
        """
        ...


class GitCli:
    """GitReader backed by the `git` command line.

    The resolved main ref is cached per repository for the lifetime of the
    instance.
    """

    def __init__(
        self,
        main_branches: tuple[str, ...] = ("main", "master"),
        timeout: float = 30.0,
    ) -> None:
        self.main_branches = main_branches
        self.timeout = timeout
        self._main_refs: dict[Path, str] = {}
        self._lock = threading.Lock()

    def _run(self, repo: Path, args: list[str]) -> str:
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=repo,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise GitError(str(repo), args, str(e)) from e
        if result.returncode != 0:
            raise GitError(str(repo), args, result.stderr.strip() or f"exit {result.returncode}")
        return result.stdout

    def resolve_main_ref(self, repo: Path) -> str:
        with self._lock:
            cached = self._main_refs.get(repo)
        if cached:
            return cached

        for branch in self.main_branches:
            ref = f"refs/heads/{branch}"
            try:
                self._run(repo, ["rev-parse", "--verify", "--quiet", ref])
            except GitError:
                continue
            with self._lock:
                self._main_refs[repo] = ref
            return ref

        raise GitError(
            str(repo),
            ["rev-parse", "--verify"],
            f"no {'/'.join(self.main_branches)} branch",
        )

    def tree_hash(self, repo: Path, ref: str | None = None) -> str:
        resolved = ref or self.resolve_main_ref(repo)
        return self._run(repo, ["rev-parse", f"{resolved}^{{tree}}"]).strip()

    def commit_at(self, repo: Path, ref: str | None = None) -> str | None:
        try:
            resolved = ref or self.resolve_main_ref(repo)
            return self._run(repo, ["rev-parse", "--verify", f"{resolved}^{{commit}}"]).strip()
        except GitError as e:
            logger.debug("No commit at %s in %s: %s", ref or "main", repo, e.detail)
            return None

    def show_file(self, repo: Path, commit: str, path: str) -> str:
        return self._run(repo, ["show", f"{commit}:{path}"])

