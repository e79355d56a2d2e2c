"""Async subprocess runner shared by the tmux and container backends."""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from ..errors import BackendUnavailableError
from .utils import sanitize_environment

logger = logging.getLogger(__name__)


class CommandNotFoundError(BackendUnavailableError):
    """Raised when a backend executable cannot be located."""


@dataclass(slots=True)
class CommandResult:
    """Holds the outcome of one backend CLI invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """Execute a backend CLI (tmux, docker, podman) asynchronously.

    The executable is resolved lazily so that a missing binary surfaces as a
    recoverable :class:`BackendUnavailableError` on first use instead of
    failing at construction time.
    """

    def __init__(self, binary: str, executable: Path | None = None) -> None:
        self._binary = binary
        self._explicit = Path(executable) if executable is not None else None
        self._executable_path: Path | None = None

    @property
    def binary(self) -> str:
        return self._binary

    def _resolve_executable(self) -> Path:
        if self._executable_path is not None:
            return self._executable_path

        if self._explicit is not None:
            if not (self._explicit.exists() and self._explicit.is_file()):
                raise CommandNotFoundError(f"{self._binary} executable not found at {self._explicit}")
            self._executable_path = self._explicit
            return self._explicit

        found = shutil.which(self._binary)
        if found is None:
            raise CommandNotFoundError(f"{self._binary} executable not found on PATH")
        self._executable_path = Path(found)
        return self._executable_path

    async def run(self, *args: str, timeout: float | None = None) -> CommandResult:
        """Run the CLI with ``args`` and collect its output.

        A call that exceeds ``timeout`` kills the child and raises
        :class:`BackendUnavailableError`. Cancellation kills the child
        without waiting for it.
        """

        return await self._invoke(*args, timeout=timeout)

    async def interactive(self, *args: str) -> int:
        """Run the CLI attached to the caller's terminal and wait for it to exit."""

        cmd = [str(self._resolve_executable()), *args]
        process = await asyncio.create_subprocess_exec(*cmd)
        try:
            return await process.wait()
        except asyncio.CancelledError:
            _kill_quietly(process)
            raise

    async def _invoke(self, *args: str, timeout: float | None = None) -> CommandResult:
        cmd = [str(self._resolve_executable()), *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=sanitize_environment(),
            )
        except OSError as exc:
            raise BackendUnavailableError(f"Failed to launch {self._binary}: {exc}") from exc

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout)
        except asyncio.TimeoutError as exc:
            _kill_quietly(process)
            raise BackendUnavailableError(
                f"{self._binary} {' '.join(args[:1])} timed out after {timeout}s"
            ) from exc
        except asyncio.CancelledError:
            _kill_quietly(process)
            raise

        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        logger.debug(
            "Backend command finished",
            extra={"binary": self._binary, "args": list(args), "returncode": process.returncode},
        )
        return CommandResult(args=tuple(cmd), returncode=process.returncode, stdout=stdout, stderr=stderr)


def _kill_quietly(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass


class FakeCommandRunner(CommandRunner):
    """Test double that replays scripted CLI responses."""

    def __init__(self, binary: str = "tmux", responses: Iterable[CommandResult] | None = None) -> None:
        super().__init__(binary, Path(f"/tmp/fake-{binary}"))
        self._responses = list(responses or [])
        self._invocations: list[tuple[str, ...]] = []
        self.timeouts: list[float | None] = []
        self.interactive_invocations: list[tuple[str, ...]] = []
        self.interactive_returncodes: list[int] = []

    def queue(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        self._responses.append(
            CommandResult(args=(self.binary,), returncode=returncode, stdout=stdout, stderr=stderr)
        )

    async def _invoke(self, *args: str, timeout: float | None = None) -> CommandResult:  # type: ignore[override]
        self._invocations.append(tuple(args))
        self.timeouts.append(timeout)
        if self._responses:
            return self._responses.pop(0)
        return CommandResult(args=tuple(args), returncode=0, stdout="", stderr="")

    async def interactive(self, *args: str) -> int:  # type: ignore[override]
        self.interactive_invocations.append(tuple(args))
        if self.interactive_returncodes:
            return self.interactive_returncodes.pop(0)
        return 0

    @property
    def invocations(self) -> list[tuple[str, ...]]:
        return self._invocations


__all__ = [
    "CommandNotFoundError",
    "CommandResult",
    "CommandRunner",
    "FakeCommandRunner",
]
