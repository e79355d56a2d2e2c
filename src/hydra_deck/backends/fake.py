"""In-memory execution backend used by tests and the diagnostics script."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from ..errors import AlreadyExistsError, BackendUnavailableError, NotFoundError


@dataclass(slots=True)
class FakePane:
    command: str
    working_directory: str
    screen: str = ""
    keys: list[str] = field(default_factory=list)


class FakeBackend:
    """Scriptable stand-in for :class:`TmuxBackend`.

    ``set_screen`` controls what ``capture`` returns, ``vanish`` simulates a
    process that exited on its own, ``available = False`` makes the handle
    listing fail, handles in ``hung`` never finish capturing and handles in
    ``missing`` stay listed while ``capture`` reports them gone.
    """

    name = "fake"

    def __init__(self) -> None:
        self.panes: dict[str, FakePane] = {}
        self.available = True
        self.hung: set[str] = set()
        self.failing: set[str] = set()
        self.missing: set[str] = set()
        self.killed: list[str] = []
        self.attached: list[str] = []
        self.attach_event: asyncio.Event | None = None
        self.capture_calls: list[str] = []

    def set_screen(self, handle: str, text: str) -> None:
        self.panes[handle].screen = text

    def vanish(self, handle: str) -> None:
        self.panes.pop(handle, None)

    def _require_available(self) -> None:
        if not self.available:
            raise BackendUnavailableError("fake backend unavailable")

    async def create(self, handle: str, command: str, working_directory: str) -> None:
        self._require_available()
        if handle in self.panes:
            raise AlreadyExistsError(f"fake session '{handle}' already exists")
        self.panes[handle] = FakePane(command=command, working_directory=working_directory)

    async def exists(self, handle: str) -> bool:
        self._require_available()
        return handle in self.panes

    async def list_handles(self) -> set[str]:
        self._require_available()
        return set(self.panes)

    async def capture(self, handle: str, max_lines: int) -> str:
        self.capture_calls.append(handle)
        if handle in self.hung:
            await asyncio.Event().wait()
        if handle in self.failing:
            raise RuntimeError(f"capture exploded for '{handle}'")
        pane = self.panes.get(handle)
        if pane is None or handle in self.missing:
            raise NotFoundError(f"fake session '{handle}' not found")
        lines = pane.screen.splitlines()
        return "\n".join(lines[-max_lines:])

    async def send_keys(self, handle: str, text: str, *, enter: bool = False) -> None:
        pane = self.panes.get(handle)
        if pane is None:
            raise NotFoundError(f"fake session '{handle}' not found")
        pane.keys.append(text + ("\n" if enter else ""))

    async def kill(self, handle: str) -> None:
        self._require_available()
        self.killed.append(handle)
        self.panes.pop(handle, None)

    async def rename(self, handle: str, new_handle: str) -> None:
        if handle == new_handle:
            return
        if new_handle in self.panes:
            raise AlreadyExistsError(f"fake session '{new_handle}' already exists")
        pane = self.panes.pop(handle, None)
        if pane is None:
            raise NotFoundError(f"fake session '{handle}' not found")
        self.panes[new_handle] = pane

    async def attach(self, handle: str) -> int:
        if handle not in self.panes:
            raise NotFoundError(f"fake session '{handle}' not found")
        self.attached.append(handle)
        if self.attach_event is not None:
            await self.attach_event.wait()
        return 0


__all__ = ["FakeBackend", "FakePane"]
