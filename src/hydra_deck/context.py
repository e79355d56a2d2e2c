"""Wiring of one active profile: registry, backend, poller and attach."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .attach import AttachCoordinator, Renderer
from .backends import ExecutionBackend, create_backend
from .config import DeckSettings
from .profiles.loader import ProfileLoader
from .scheduler import StatusPoller
from .session.registry import SessionRegistry
from .storage.profile_store import ProfileStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ProfileContext:
    """Everything bound to the active profile.

    Contexts are passed explicitly; there is no process-wide current
    profile. Close a context before opening another one for the same
    profile.
    """

    settings: DeckSettings
    base_settings: DeckSettings
    registry: SessionRegistry
    backend: ExecutionBackend
    poller: StatusPoller
    attach: AttachCoordinator

    @property
    def profile(self) -> str:
        return self.settings.profile

    async def close(self) -> None:
        await self.poller.stop()
        logger.info("Closed profile", extra={"profile": self.profile})


async def open_profile(
    settings: DeckSettings,
    profile: str | None = None,
    *,
    backend: ExecutionBackend | None = None,
    renderer: Renderer | None = None,
    start_poller: bool = True,
) -> ProfileContext:
    """Load a profile and start polling it.

    Raises ``ProfileStoreError`` or ``ProfileLoadError`` when the persisted
    data or the profile's ``config.yaml`` is invalid.
    """

    loader = ProfileLoader(settings.profiles_dir)
    resolved = loader.resolve_settings(settings, profile)
    backend = backend or create_backend(resolved)

    store = ProfileStore(resolved.profiles_dir, resolved.profile)
    registry = await SessionRegistry.load(
        resolved.profile,
        backend,
        store,
        session_prefix=resolved.session_prefix,
        worktree_template=resolved.worktree_path_template,
    )
    poller = StatusPoller.from_settings(registry, backend, resolved)
    coordinator = AttachCoordinator(registry, backend, poller, renderer)
    if start_poller:
        poller.start()

    logger.info(
        "Opened profile",
        extra={"profile": resolved.profile, "backend": backend.name, "sessions": len(registry.list_sessions())},
    )
    return ProfileContext(
        settings=resolved,
        base_settings=settings,
        registry=registry,
        backend=backend,
        poller=poller,
        attach=coordinator,
    )


async def switch_profile(
    context: ProfileContext,
    profile: str,
    *,
    backend: ExecutionBackend | None = None,
    renderer: Renderer | None = None,
) -> ProfileContext:
    """Close ``context`` and open ``profile`` with the same base settings."""

    start = context.poller.running
    await context.close()
    return await open_profile(
        context.base_settings, profile, backend=backend, renderer=renderer, start_poller=start
    )


__all__ = ["ProfileContext", "open_profile", "switch_profile"]
