"""Fetch and check out a revision of the application source."""

from __future__ import annotations

from pathlib import Path
from typing import Protocol

from analytics_deploy.errors import DirtyWorkingTree, RefNotFound, SourceUpdateError
from analytics_deploy.logging import get_logger
from analytics_deploy.shell import CommandResult, CommandRunner

log = get_logger("analytics_deploy.source")


class SourceUpdater(Protocol):
    def is_present(self) -> bool: ...

    async def current_revision(self) -> str: ...

    async def fetch(self, ref: str) -> str: ...

    async def checkout(self, revision: str) -> str: ...


class GitSourceUpdater:
    """``SourceUpdater`` for a local git checkout.

    Never force-checks-out: local modifications to tracked files abort the
    update instead of being discarded.
    """

    def __init__(
        self,
        repo_dir: Path | str,
        runner: CommandRunner | None = None,
        remote: str = "origin",
        timeout: float = 120.0,
    ) -> None:
        self._repo_dir = Path(repo_dir)
        self._runner = runner or CommandRunner(cwd=self._repo_dir)
        self._remote = remote
        self._timeout = timeout

    def is_present(self) -> bool:
        return (self._repo_dir / ".git").exists()

    async def current_revision(self) -> str:
        result = await self._git("rev-parse", "HEAD")
        if not result.ok:
            raise SourceUpdateError(f"cannot read HEAD: {result.describe_failure()}")
        return result.stdout.strip()

    async def fetch(self, ref: str) -> str:
        """Fetch from the remote and resolve ``ref`` to a commit sha."""
        result = await self._git("fetch", "--force", "--tags", "--prune", self._remote)
        if not result.ok:
            raise SourceUpdateError(f"git fetch failed: {result.describe_failure()}")
        sha = await self._resolve(ref)
        if sha is None:
            raise RefNotFound(ref)
        log.info("source_fetched", ref=ref, sha=sha[:12], remote=self._remote)
        return sha

    async def checkout(self, revision: str) -> str:
        """Switch the working tree to ``revision`` and return the new HEAD sha."""
        dirty = await self._dirty_paths()
        if dirty:
            raise DirtyWorkingTree(dirty)

        sha = await self._resolve(revision)
        if sha is None:
            raise RefNotFound(revision)

        result = await self._git("-c", "advice.detachedHead=false", "checkout", "--detach", sha)
        if not result.ok:
            raise SourceUpdateError(f"git checkout failed: {result.describe_failure()}")

        head = await self.current_revision()
        log.info("source_checked_out", revision=revision, sha=head[:12])
        return head

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _candidates(self, ref: str) -> list[str]:
        # Remote branch first so a stale local branch of the same name never wins
        return [f"refs/remotes/{self._remote}/{ref}", f"refs/tags/{ref}", ref]

    async def _resolve(self, ref: str) -> str | None:
        for candidate in self._candidates(ref):
            result = await self._git("rev-parse", "--verify", "--quiet", f"{candidate}^{{commit}}")
            if result.ok and result.stdout.strip():
                return result.stdout.strip()
        return None

    async def _dirty_paths(self) -> list[str]:
        result = await self._git("status", "--porcelain", "--untracked-files=no")
        if not result.ok:
            raise SourceUpdateError(f"git status failed: {result.describe_failure()}")
        return [line[3:] for line in result.stdout.splitlines() if line.strip()]

    async def _git(self, *args: str) -> CommandResult:
        return await self._runner.run(["git", *args], timeout=self._timeout, cwd=self._repo_dir)
