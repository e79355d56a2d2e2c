"""Capability contract every execution backend implements."""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class ExecutionBackend(Protocol):
    """Create, observe, drive and terminate named agent sessions.

    Every higher layer (registry, poller, attach coordinator) depends on
    this contract only. Implementations raise
    :class:`~hydra_deck.errors.BackendUnavailableError` when the underlying
    tool cannot be reached and :class:`~hydra_deck.errors.NotFoundError`
    for handles that no longer exist.
    """

    name: str

    async def create(self, handle: str, command: str, working_directory: str) -> None:
        """Start a session running ``command``; ``AlreadyExistsError`` if taken."""
        ...

    async def exists(self, handle: str) -> bool:
        ...

    async def list_handles(self) -> set[str]:
        """Return every live handle this backend owns."""
        ...

    async def capture(self, handle: str, max_lines: int) -> str:
        """Return the last ``max_lines`` rendered lines of the session."""
        ...

    async def send_keys(self, handle: str, text: str, *, enter: bool = False) -> None:
        ...

    async def kill(self, handle: str) -> None:
        """Terminate the session; killing a missing handle is not an error."""
        ...

    async def rename(self, handle: str, new_handle: str) -> None:
        ...

    async def attach(self, handle: str) -> int:
        """Give the real terminal to the session until the user detaches."""
        ...


__all__ = ["ExecutionBackend"]
