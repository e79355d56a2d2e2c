"""tmux-backed execution strategy."""

from __future__ import annotations

import logging
import os

from ..errors import AlreadyExistsError, BackendUnavailableError, DeckError, NotFoundError
from .runner import CommandResult, CommandRunner
from .utils import is_no_server, tail_lines

logger = logging.getLogger(__name__)

_MISSING_SESSION_MARKERS = ("can't find session", "session not found", "can't find pane")


def session_target(handle: str) -> str:
    # "=" forces an exact match; tmux otherwise accepts name prefixes.
    return f"={handle}"


def pane_target(handle: str) -> str:
    return f"={handle}:"


def build_create_args(handle: str, working_directory: str, command: str | None) -> list[str]:
    """Build the argument list for ``tmux new-session``."""

    args = ["new-session", "-d", "-s", handle, "-c", working_directory]
    if command:
        args.append(command)
    return args


def _session_missing(result: CommandResult) -> bool:
    stderr = result.stderr.lower()
    return is_no_server(stderr) or any(marker in stderr for marker in _MISSING_SESSION_MARKERS)


class TmuxBackend:
    """Run each agent in its own detached tmux session.

    The tmux server is shared by every session of the profile, so a server
    that cannot be reached is reported as :class:`BackendUnavailableError`
    rather than as a per-session failure.
    """

    name = "tmux"

    def __init__(
        self,
        runner: CommandRunner | None = None,
        *,
        prefix: str = "hd_",
        timeout: float | None = 5.0,
    ) -> None:
        self._runner = runner or CommandRunner("tmux")
        self._prefix = prefix
        self._timeout = timeout

    @property
    def prefix(self) -> str:
        return self._prefix

    async def _tmux(self, *args: str) -> CommandResult:
        return await self._runner.run(*args, timeout=self._timeout)

    async def version(self) -> str:
        result = await self._tmux("-V")
        if not result.ok:
            raise BackendUnavailableError(result.stderr.strip() or "tmux -V failed")
        return result.stdout.strip()

    async def create(self, handle: str, command: str, working_directory: str) -> None:
        if await self.exists(handle):
            raise AlreadyExistsError(f"tmux session '{handle}' already exists")

        args = build_create_args(handle, working_directory, command)
        logger.debug("tmux new-session", extra={"handle": handle, "args": args})
        result = await self._tmux(*args)
        if not result.ok:
            stderr = result.stderr.strip()
            if "duplicate session" in stderr:
                raise AlreadyExistsError(f"tmux session '{handle}' already exists")
            raise DeckError(f"Failed to create tmux session '{handle}': {stderr}")

    async def exists(self, handle: str) -> bool:
        result = await self._tmux("has-session", "-t", session_target(handle))
        return result.ok

    async def list_handles(self) -> set[str]:
        result = await self._tmux("list-sessions", "-F", "#{session_name}")
        if not result.ok:
            if is_no_server(result.stderr):
                return set()
            raise BackendUnavailableError(
                f"tmux list-sessions failed: {result.stderr.strip() or result.returncode}"
            )
        return {
            line.strip()
            for line in result.stdout.splitlines()
            if line.strip().startswith(self._prefix)
        }

    async def capture(self, handle: str, max_lines: int) -> str:
        result = await self._tmux(
            "capture-pane", "-p", "-t", pane_target(handle), "-S", f"-{max_lines}"
        )
        if not result.ok:
            if _session_missing(result):
                raise NotFoundError(f"tmux session '{handle}' not found")
            raise BackendUnavailableError(f"tmux capture-pane failed: {result.stderr.strip()}")
        return tail_lines(result.stdout, max_lines)

    async def send_keys(self, handle: str, text: str, *, enter: bool = False) -> None:
        result = await self._tmux("send-keys", "-t", pane_target(handle), "-l", text)
        if result.ok and enter:
            result = await self._tmux("send-keys", "-t", pane_target(handle), "Enter")
        if not result.ok:
            if _session_missing(result):
                raise NotFoundError(f"tmux session '{handle}' not found")
            raise DeckError(f"tmux send-keys failed: {result.stderr.strip()}")

    async def kill(self, handle: str) -> None:
        result = await self._tmux("kill-session", "-t", session_target(handle))
        if not result.ok and not _session_missing(result):
            raise DeckError(f"Failed to kill tmux session '{handle}': {result.stderr.strip()}")

    async def rename(self, handle: str, new_handle: str) -> None:
        if handle == new_handle:
            return
        if await self.exists(new_handle):
            raise AlreadyExistsError(f"tmux session '{new_handle}' already exists")
        result = await self._tmux("rename-session", "-t", session_target(handle), new_handle)
        if not result.ok:
            if _session_missing(result):
                raise NotFoundError(f"tmux session '{handle}' not found")
            raise DeckError(f"Failed to rename tmux session '{handle}': {result.stderr.strip()}")

    async def attach(self, handle: str) -> int:
        if not await self.exists(handle):
            raise NotFoundError(f"tmux session '{handle}' not found")

        if os.environ.get("TMUX"):
            # Already inside a client: switch it instead of nesting tmux.
            code = await self._runner.interactive("switch-client", "-t", session_target(handle))
            if code == 0:
                return code
            logger.debug("switch-client failed, falling back to attach", extra={"handle": handle})

        return await self._runner.interactive("attach-session", "-t", session_target(handle))


__all__ = ["TmuxBackend", "build_create_args", "pane_target", "session_target"]
