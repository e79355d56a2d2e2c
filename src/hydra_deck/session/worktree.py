"""Git worktrees for sessions that work on their own branch."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from ..backends.runner import CommandResult, CommandRunner
from ..errors import AlreadyExistsError, DeckError, NotFoundError

logger = logging.getLogger(__name__)

DEFAULT_PATH_TEMPLATE = "../{repo-name}-worktrees/{branch}"


class WorktreeError(DeckError):
    """Raised when a git worktree or branch command fails."""


def compute_worktree_path(
    repo_path: str | Path,
    branch: str,
    template: str = DEFAULT_PATH_TEMPLATE,
    session_id: str = "",
) -> Path:
    """Expand ``template`` into the directory a new worktree is created in.

    Supported placeholders are ``{repo-name}``, ``{branch}`` (with ``/``
    replaced by ``-``) and ``{session-id}``. Relative results are taken
    relative to the repository root.
    """

    repo = Path(repo_path)
    values = {
        "{repo-name}": repo.name or "repo",
        "{branch}": branch.replace("/", "-"),
        "{session-id}": session_id,
    }
    expanded = template
    for placeholder, value in values.items():
        expanded = expanded.replace(placeholder, value)

    path = Path(expanded).expanduser()
    if not path.is_absolute():
        path = repo / path
    return Path(os.path.normpath(path))


class GitWorktree:
    """Create and remove worktrees of one repository through the git CLI."""

    def __init__(
        self, repo_path: str | Path, runner: CommandRunner | None = None, *, timeout: float | None = 30.0
    ) -> None:
        self._repo_path = Path(repo_path)
        self._runner = runner or CommandRunner("git")
        self._timeout = timeout

    @classmethod
    async def discover(
        cls, path: str | Path, runner: CommandRunner | None = None, *, timeout: float | None = 30.0
    ) -> "GitWorktree":
        """Find the main repository that ``path`` belongs to.

        Works from the main checkout and from any linked worktree, since
        both share the same common git directory.
        """

        runner = runner or CommandRunner("git")
        result = await runner.run(
            "-C", str(path), "rev-parse", "--path-format=absolute", "--git-common-dir", timeout=timeout
        )
        if not result.ok or not result.stdout.strip():
            raise NotFoundError(f"'{path}' is not inside a git repository")
        common = Path(result.stdout.strip())
        repo = common.parent if common.name == ".git" else common
        return cls(repo, runner, timeout=timeout)

    @property
    def repo_path(self) -> Path:
        return self._repo_path

    async def create(self, branch: str, path: str | Path, *, create_branch: bool = True) -> None:
        path = Path(path)
        if path.exists():
            raise AlreadyExistsError(f"Worktree path '{path}' already exists")

        # Stale entries of deleted worktree directories block reuse of their paths.
        _check(await self._git("worktree", "prune"), "worktree prune")
        if create_branch:
            args = ("worktree", "add", "-b", branch, str(path))
        else:
            args = ("worktree", "add", str(path), branch)
        _check(await self._git(*args), "worktree add")
        logger.info("Worktree created", extra={"repo": str(self._repo_path), "branch": branch, "path": str(path)})

    async def remove(self, path: str | Path, *, force: bool = False) -> None:
        args = ["worktree", "remove"]
        if force:
            args.append("--force")
        args.append(str(path))
        _check(await self._git(*args), "worktree remove")
        logger.info("Worktree removed", extra={"repo": str(self._repo_path), "path": str(path)})

    async def delete_branch(self, branch: str) -> None:
        """Delete a local branch, forcing when it has unmerged commits."""

        result = await self._git("branch", "-d", branch)
        if not result.ok and "not fully merged" in result.stderr:
            result = await self._git("branch", "-D", branch)
        _check(result, "branch delete")

    async def _git(self, *args: str) -> CommandResult:
        return await self._runner.run("-C", str(self._repo_path), *args, timeout=self._timeout)


def _check(result: CommandResult, action: str) -> None:
    if not result.ok:
        raise WorktreeError(f"git {action} failed: {result.stderr.strip() or result.returncode}")


__all__ = ["DEFAULT_PATH_TEMPLATE", "GitWorktree", "WorktreeError", "compute_worktree_path"]
