"""Sandboxed execution strategy: one container per session, driven through tmux."""

from __future__ import annotations

import logging
import os
import shlex
from dataclasses import dataclass, field

from ..errors import AlreadyExistsError, BackendUnavailableError, DeckError
from .runner import CommandResult, CommandRunner
from .tmux import TmuxBackend

logger = logging.getLogger(__name__)

_DAEMON_DOWN_MARKERS = (
    "cannot connect to the docker daemon",
    "is the docker daemon running",
    "unable to connect to podman",
)


@dataclass(slots=True, frozen=True)
class ContainerRuntime:
    """CLI differences between supported container runtimes."""

    binary: str
    name: str
    daemon_check_args: tuple[str, ...] = ("info",)
    pull_prefix: tuple[str, ...] = ("pull",)
    remove_subcommand: str = "rm"


DOCKER = ContainerRuntime(binary="docker", name="Docker")
PODMAN = ContainerRuntime(binary="podman", name="Podman")

RUNTIMES = {"docker": DOCKER, "podman": PODMAN}


@dataclass(slots=True)
class SandboxConfig:
    """Per-container resource and isolation parameters."""

    image: str = "ubuntu:24.04"
    workdir: str = "/workspace"
    network: str | None = None
    cpu_limit: str | None = None
    memory_limit: str | None = None
    environment: tuple[str, ...] = field(default_factory=tuple)


def _daemon_down(result: CommandResult) -> bool:
    stderr = result.stderr.lower()
    return any(marker in stderr for marker in _DAEMON_DOWN_MARKERS)


class SandboxBackend:
    """Run each agent inside its own long-lived container.

    The container idles on ``sleep infinity``; the agent itself is started
    with ``<runtime> exec -it`` from a tmux session carrying the same
    handle, so capture, input and attach go through tmux while the process
    runs isolated. Container failures only affect their own session.
    """

    name = "sandbox"

    def __init__(
        self,
        tmux: TmuxBackend,
        *,
        runtime: ContainerRuntime = DOCKER,
        config: SandboxConfig | None = None,
        runner: CommandRunner | None = None,
        container_prefix: str = "hd-sandbox-",
        timeout: float | None = 30.0,
        pull_timeout: float | None = None,
    ) -> None:
        self._tmux = tmux
        self._runtime = runtime
        self._config = config or SandboxConfig()
        self._runner = runner or CommandRunner(runtime.binary)
        self._container_prefix = container_prefix
        self._timeout = timeout
        self._pull_timeout = pull_timeout

    @property
    def tmux(self) -> TmuxBackend:
        return self._tmux

    @property
    def runtime(self) -> ContainerRuntime:
        return self._runtime

    @property
    def config(self) -> SandboxConfig:
        return self._config

    @property
    def pull_timeout(self) -> float | None:
        return self._pull_timeout

    def container_name(self, handle: str) -> str:
        return f"{self._container_prefix}{handle}"

    async def _container(self, *args: str) -> CommandResult:
        return await self._runner.run(*args, timeout=self._timeout)

    def build_create_args(self, name: str, working_directory: str) -> list[str]:
        """Build the ``<runtime> run`` arguments for a session container."""

        config = self._config
        args = ["run", "-d", "--name", name, "-w", config.workdir]
        args.extend(["-v", f"{working_directory}:{config.workdir}"])
        if config.network:
            args.extend(["--network", config.network])
        for key in config.environment:
            value = os.environ.get(key)
            if value is not None:
                args.extend(["-e", f"{key}={value}"])
        if config.cpu_limit:
            args.extend(["--cpus", config.cpu_limit])
        if config.memory_limit:
            args.extend(["-m", config.memory_limit])
        args.extend([config.image, "sleep", "infinity"])
        return args

    def exec_command(self, name: str, command: str) -> str:
        return " ".join(
            [self._runtime.binary, "exec", "-it", "-w", self._config.workdir, shlex.quote(name), command]
        )

    async def is_daemon_running(self) -> bool:
        result = await self._container(*self._runtime.daemon_check_args)
        return result.ok

    async def container_state(self, name: str) -> bool | None:
        """Return True if running, False if stopped, None if the container does not exist."""

        result = await self._container("container", "inspect", "-f", "{{.State.Running}}", name)
        if not result.ok:
            if _daemon_down(result):
                raise BackendUnavailableError(f"{self._runtime.name} daemon is not reachable")
            return None
        return result.stdout.strip() == "true"

    async def batch_running_states(self) -> dict[str, bool] | None:
        """Map container name to running state for every sandbox container, or None on failure."""

        result = await self._container(
            "ps",
            "-a",
            "--filter",
            f"name={self._container_prefix}",
            "--format",
            "{{.Names}}\t{{.State}}",
        )
        if not result.ok:
            logger.debug(
                "Container state listing failed",
                extra={"runtime": self._runtime.binary, "stderr": result.stderr.strip()},
            )
            return None

        states: dict[str, bool] = {}
        for line in result.stdout.splitlines():
            name, _, state = line.partition("\t")
            name = name.strip()
            # --filter name= matches substrings, keep only exact prefix matches
            if name.startswith(self._container_prefix):
                states[name] = state.strip() == "running"
        return states

    async def ensure_image(self) -> None:
        image = self._config.image
        inspect = await self._container("image", "inspect", image)
        if inspect.ok:
            logger.info("Using local sandbox image", extra={"image": image})
            return

        logger.info("Pulling sandbox image", extra={"image": image, "runtime": self._runtime.binary})
        # Pulls are bounded by pull_timeout only; None waits for the download.
        pulled = await self._runner.run(*self._runtime.pull_prefix, image, timeout=self._pull_timeout)
        if not pulled.ok:
            if _daemon_down(pulled):
                raise BackendUnavailableError(f"{self._runtime.name} daemon is not reachable")
            raise DeckError(f"Sandbox image '{image}' not available: {pulled.stderr.strip()}")

    async def _ensure_container(self, name: str, working_directory: str) -> None:
        state = await self.container_state(name)
        if state is True:
            return
        if state is False:
            started = await self._container("start", name)
            if not started.ok:
                raise DeckError(f"Failed to start container '{name}': {started.stderr.strip()}")
            return

        await self.ensure_image()
        created = await self._container(*self.build_create_args(name, working_directory))
        if not created.ok:
            if _daemon_down(created):
                raise BackendUnavailableError(f"{self._runtime.name} daemon is not reachable")
            raise DeckError(f"Failed to create container '{name}': {created.stderr.strip()}")
        logger.info(
            "Created sandbox container",
            extra={"container": name, "container_id": created.stdout.strip()[:12]},
        )

    async def create(self, handle: str, command: str, working_directory: str) -> None:
        if await self._tmux.exists(handle):
            raise AlreadyExistsError(f"Sandbox session '{handle}' already exists")

        name = self.container_name(handle)
        await self._ensure_container(name, working_directory)
        await self._tmux.create(handle, self.exec_command(name, command), working_directory)

    async def exists(self, handle: str) -> bool:
        if not await self._tmux.exists(handle):
            return False
        try:
            state = await self.container_state(self.container_name(handle))
        except BackendUnavailableError:
            return True
        return bool(state)

    async def list_handles(self) -> set[str]:
        handles = await self._tmux.list_handles()
        states = await self.batch_running_states()
        if states is None:
            return handles
        return {handle for handle in handles if states.get(self.container_name(handle), False)}

    async def capture(self, handle: str, max_lines: int) -> str:
        return await self._tmux.capture(handle, max_lines)

    async def send_keys(self, handle: str, text: str, *, enter: bool = False) -> None:
        await self._tmux.send_keys(handle, text, enter=enter)

    async def kill(self, handle: str) -> None:
        await self._tmux.kill(handle)
        name = self.container_name(handle)
        removed = await self._container(self._runtime.remove_subcommand, "-f", name)
        if removed.ok or "no such container" in removed.stderr.lower():
            return
        if _daemon_down(removed):
            raise BackendUnavailableError(f"{self._runtime.name} daemon is not reachable")
        raise DeckError(f"Failed to remove container '{name}': {removed.stderr.strip()}")

    async def rename(self, handle: str, new_handle: str) -> None:
        if handle == new_handle:
            return
        await self._tmux.rename(handle, new_handle)
        old_name, new_name = self.container_name(handle), self.container_name(new_handle)
        if await self.container_state(old_name) is None:
            return
        renamed = await self._container("rename", old_name, new_name)
        if not renamed.ok:
            raise DeckError(f"Failed to rename container '{old_name}': {renamed.stderr.strip()}")

    async def attach(self, handle: str) -> int:
        return await self._tmux.attach(handle)


__all__ = [
    "ContainerRuntime",
    "DOCKER",
    "PODMAN",
    "RUNTIMES",
    "SandboxBackend",
    "SandboxConfig",
]
