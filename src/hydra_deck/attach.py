"""Hand the terminal to a session and take it back afterwards."""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

from .backends.base import ExecutionBackend
from .errors import InvalidStateError
from .scheduler import StatusPoller
from .session.registry import SessionRegistry

logger = logging.getLogger(__name__)


@runtime_checkable
class Renderer(Protocol):
    """Whatever currently owns the terminal (dashboard, TUI, nothing)."""

    def suspend(self) -> None:
        ...

    def resume(self) -> None:
        ...


class NullRenderer:
    """Renderer for headless use; records how often it was toggled."""

    def __init__(self) -> None:
        self.suspended = 0
        self.resumed = 0

    def suspend(self) -> None:
        self.suspended += 1

    def resume(self) -> None:
        self.resumed += 1


class AttachCoordinator:
    """Scoped foreground takeover of one session at a time.

    While attached, the poller skips the session and the renderer is
    suspended. Whatever way the attach ends, the renderer is restored
    first and the session is then refreshed out of cycle.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        backend: ExecutionBackend,
        poller: StatusPoller,
        renderer: Renderer | None = None,
    ) -> None:
        self._registry = registry
        self._backend = backend
        self._poller = poller
        self._renderer = renderer or NullRenderer()
        self._attached: str | None = None

    @property
    def attached(self) -> str | None:
        return self._attached

    async def attach(self, session_id: str) -> int:
        """Block until the user detaches; returns the backend's exit code."""

        if self._attached is not None:
            raise InvalidStateError(f"Session '{self._attached}' is already attached")

        session = self._registry.get_session(session_id)
        if not await self._backend.exists(session.backend_handle):
            raise InvalidStateError(f"Session '{session.title}' has no live backend session")

        self._attached = session_id
        try:
            await self._poller.pause(session_id)
            logger.info("Attaching", extra={"session_id": session_id, "handle": session.backend_handle})
            self._renderer.suspend()
            try:
                return await self._backend.attach(session.backend_handle)
            finally:
                self._renderer.resume()
        finally:
            self._attached = None
            await self._poller.resume(session_id, refresh=True)
            logger.info("Detached", extra={"session_id": session_id})


__all__ = ["AttachCoordinator", "NullRenderer", "Renderer"]
