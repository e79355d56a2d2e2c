"""Execution backends that host agent sessions."""

from __future__ import annotations

from pathlib import Path

from ..config import DeckSettings
from .base import ExecutionBackend
from .fake import FakeBackend
from .runner import CommandNotFoundError, CommandResult, CommandRunner, FakeCommandRunner
from .sandbox import DOCKER, PODMAN, RUNTIMES, ContainerRuntime, SandboxBackend, SandboxConfig
from .tmux import TmuxBackend


def create_backend(settings: DeckSettings) -> ExecutionBackend:
    """Build the backend selected by ``settings.backend``."""

    executable = Path(settings.tmux_path) if settings.tmux_path else None
    tmux = TmuxBackend(CommandRunner("tmux", executable), prefix=settings.session_prefix)
    if settings.backend == "tmux":
        return tmux

    config = SandboxConfig(
        image=settings.sandbox_image,
        network=settings.sandbox_network,
        cpu_limit=settings.sandbox_cpu_limit,
        memory_limit=settings.sandbox_memory_limit,
        environment=settings.sandbox_environment,
    )
    return SandboxBackend(
        tmux,
        runtime=RUNTIMES[settings.sandbox_runtime],
        config=config,
        pull_timeout=settings.sandbox_pull_timeout,
    )


__all__ = [
    "CommandNotFoundError",
    "CommandResult",
    "CommandRunner",
    "ContainerRuntime",
    "DOCKER",
    "ExecutionBackend",
    "FakeBackend",
    "FakeCommandRunner",
    "PODMAN",
    "RUNTIMES",
    "SandboxBackend",
    "SandboxConfig",
    "TmuxBackend",
    "create_backend",
]
