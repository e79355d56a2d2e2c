"""FastMCP server bootstrap for Hydra Deck."""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastmcp import FastMCP

from . import __version__
from .backends import ExecutionBackend
from .config import DeckSettings, get_settings
from .profiles import ProfileLoader
from .tools import DeckState, register_tools


def configure_logging(level: str) -> None:
    """Configure root logging for the Hydra Deck server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def create_server(
    settings: Optional[DeckSettings] = None,
    backend: ExecutionBackend | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server; the active profile is polled while it runs."""

    settings = settings or get_settings()
    state = DeckState(settings=settings, backend=backend)

    @asynccontextmanager
    async def lifespan(_server: FastMCP):
        context = await state.ensure()
        logging.getLogger(__name__).info(
            "Profile ready",
            extra={"profile": context.profile, "backend": context.backend.name},
        )
        try:
            yield state
        finally:
            await state.close()

    server = FastMCP(
        name="Hydra Deck",
        version=__version__,
        instructions=(
            "Hydra Deck manages long-running claude and opencode sessions in tmux or "
            "sandbox containers. Use the tools to create, group, drive and inspect "
            "sessions; statuses are refreshed in the background."
        ),
        lifespan=lifespan,
    )

    handles = register_tools(server, state=state)

    @server.resource(
        "resource://hydra-deck/status",
        name="hydra_deck_status",
        title="Hydra Deck Status",
        description="Provides the active profile, backend health and session status counts.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource() -> str:
        """Return a JSON string summarizing basic runtime state."""

        return json.dumps(build_status(state))

    setattr(server, "deck_state", state)
    setattr(server, "tool_handles", handles)
    return server


def build_status(state: DeckState) -> dict:
    loader = ProfileLoader(state.settings.profiles_dir)
    payload = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "server_version": __version__,
        "log_level": state.settings.log_level,
        "profiles": loader.list_profiles(),
        "active_profile": None,
    }

    context = state.context
    if context is None:
        return payload

    counts = context.registry.status_counts()
    payload.update(
        {
            "active_profile": context.profile,
            "backend": {
                "name": context.backend.name,
                "available": context.poller.backend_available,
            },
            "poller": {
                "running": context.poller.running,
                "interval": context.settings.poll_interval,
                "paused": sorted(context.poller.paused),
            },
            "sessions": {
                "count": sum(counts.values()),
                "status_counts": {status.value: count for status, count in counts.items()},
                "attached": context.attach.attached,
            },
            "groups": {"count": len(context.registry.list_groups())},
        }
    )
    return payload


def main() -> None:
    """Entry point for running the Hydra Deck MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logging.getLogger(__name__).info(
        "Launching Hydra Deck MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "profile": settings.profile,
            "backend": settings.backend,
        },
    )
    server.run()


if __name__ == "__main__":
    main()
