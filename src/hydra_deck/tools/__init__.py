"""Tool registration for the Hydra Deck MCP server."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Literal

from fastmcp import Context, FastMCP

from ..backends import ExecutionBackend
from ..classifier import classify, precedence_table
from ..config import DeckSettings
from ..context import ProfileContext, open_profile, switch_profile
from ..profiles import ProfileLoader
from ..session.groups import GroupDeletePolicy
from ..session.models import Group, Session

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DeckState:
    """Holds the active profile context shared by every tool."""

    settings: DeckSettings
    backend: ExecutionBackend | None = None
    start_poller: bool = True
    context: ProfileContext | None = None
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def ensure(self) -> ProfileContext:
        async with self._lock:
            if self.context is None:
                self.context = await open_profile(
                    self.settings, backend=self.backend, start_poller=self.start_poller
                )
            return self.context

    async def switch(self, profile: str) -> ProfileContext:
        async with self._lock:
            if self.context is None:
                self.context = await open_profile(
                    self.settings, profile, backend=self.backend, start_poller=self.start_poller
                )
            else:
                self.context = await switch_profile(self.context, profile, backend=self.backend)
            return self.context

    async def close(self) -> None:
        async with self._lock:
            if self.context is not None:
                await self.context.close()
                self.context = None


@dataclass(slots=True)
class ToolHandles:
    state: DeckState
    tools: dict[str, Any]


def _session_payload(session: Session) -> dict[str, Any]:
    return session.model_dump(mode="json")


def _group_payload(group: Group) -> dict[str, Any]:
    return group.model_dump(mode="json")


def register_tools(server: FastMCP, *, state: DeckState) -> ToolHandles:
    """Register Hydra Deck's MCP tools on the server."""

    tools: dict[str, Any] = {}

    def _register(name: str, description: str, fn) -> None:
        tools[name] = server.tool(name=name, description=description)(fn)

    # Sessions

    async def _list_sessions(
        group_id: str | None = None, context: Context | None = None
    ) -> list[dict[str, Any]]:
        """List sessions of the active profile, optionally limited to a group subtree."""

        deck = await state.ensure()
        sessions = deck.registry.list_sessions(group_id)
        _emit_log(context, "debug", "Listing sessions", extra={"count": len(sessions)})
        return [_session_payload(session) for session in sessions]

    async def _get_session(identifier: str, context: Context | None = None) -> dict[str, Any]:
        """Look a session up by id, id prefix or title."""

        deck = await state.ensure()
        return _session_payload(deck.registry.find_session(identifier))

    async def _add_session(
        title: str,
        working_directory: str,
        tool_kind: Literal["claude", "opencode", "unknown"] = "claude",
        group_id: str | None = None,
        command: str = "",
        start: bool = True,
        yolo_mode: bool = False,
        worktree_branch: str | None = None,
        create_branch: bool = True,
        context: Context | None = None,
    ) -> dict[str, Any]:
        deck = await state.ensure()
        session = await deck.registry.add_session(
            title,
            working_directory,
            tool_kind,
            group_id=group_id,
            command=command,
            start=start,
            yolo_mode=yolo_mode,
            worktree_branch=worktree_branch,
            create_branch=create_branch,
        )
        _emit_log(
            context,
            "info",
            "Added session",
            extra={"session_id": session.id, "handle": session.backend_handle},
        )
        if start:
            await deck.poller.refresh_now(session.id)
        return _session_payload(session)

    async def _remove_session(
        session_id: str,
        orphan: bool = False,
        delete_worktree: bool | None = None,
        delete_branch: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        deck = await state.ensure()
        session = await deck.registry.remove_session(
            session_id, orphan=orphan, delete_worktree=delete_worktree, delete_branch=delete_branch
        )
        _emit_log(context, "warning", "Removed session", extra={"session_id": session_id, "orphan": orphan})
        return {"session_id": session.id, "orphan": orphan, "backend_handle": session.backend_handle}

    async def _rename_session(session_id: str, title: str) -> dict[str, Any]:
        deck = await state.ensure()
        return _session_payload(await deck.registry.rename_session(session_id, title))

    async def _move_session(session_id: str, group_id: str | None = None) -> dict[str, Any]:
        deck = await state.ensure()
        return _session_payload(await deck.registry.move_session(session_id, group_id))

    async def _set_tool_kind(
        session_id: str, tool_kind: Literal["claude", "opencode", "unknown"]
    ) -> dict[str, Any]:
        deck = await state.ensure()
        session = await deck.registry.set_tool_kind(session_id, tool_kind)
        await deck.poller.refresh_now(session_id)
        return _session_payload(session)

    async def _start_session(session_id: str) -> dict[str, Any]:
        deck = await state.ensure()
        session = await deck.registry.start_session(session_id)
        await deck.poller.refresh_now(session_id)
        return _session_payload(session)

    async def _stop_session(session_id: str) -> dict[str, Any]:
        deck = await state.ensure()
        session = await deck.registry.stop_session(session_id)
        await deck.poller.refresh_now(session_id)
        return _session_payload(session)

    async def _restart_session(session_id: str) -> dict[str, Any]:
        deck = await state.ensure()
        session = await deck.registry.restart_session(session_id)
        await deck.poller.refresh_now(session_id)
        return _session_payload(session)

    async def _send_keys(
        session_id: str, text: str, enter: bool = True, context: Context | None = None
    ) -> dict[str, Any]:
        """Type text into a session's terminal."""

        deck = await state.ensure()
        session = deck.registry.get_session(session_id)
        await deck.backend.send_keys(session.backend_handle, text, enter=enter)
        _emit_log(context, "info", "Sent keys", extra={"session_id": session_id, "length": len(text)})
        return {"session_id": session_id, "sent": len(text), "enter": enter}

    async def _capture_session(session_id: str, lines: int | None = None) -> dict[str, Any]:
        """Return the tail of a session's terminal and how it classifies."""

        deck = await state.ensure()
        session = deck.registry.get_session(session_id)
        max_lines = lines or deck.settings.capture_lines
        text = await deck.backend.capture(session.backend_handle, max_lines)
        return {
            "session_id": session_id,
            "tool_kind": session.tool_kind.value,
            "classified_state": classify(
                session.tool_kind,
                text,
                precedence=precedence_table(deck.settings.classifier_precedence).get(session.tool_kind),
            ).value,
            "text": text,
        }

    _register("list_sessions", "List sessions of the active profile with their current status.", _list_sessions)
    _register("get_session", "Resolve a session by id, unique id prefix or exact title.", _get_session)
    _register(
        "add_session",
        "Create a session for an agent CLI (claude or opencode) in a working directory and start it. "
        "yolo_mode skips the tool's permission prompts; worktree_branch runs it in a new git worktree.",
        _add_session,
    )
    _register(
        "remove_session",
        "Remove a session; kills its backend process unless orphan=true. "
        "delete_worktree and delete_branch clean up a worktree the deck created.",
        _remove_session,
    )
    _register("rename_session", "Rename a session and its backend session.", _rename_session)
    _register("move_session", "Move a session into a group, or to the root when group_id is null.", _move_session)
    _register("set_tool_kind", "Change which agent CLI a session is classified as.", _set_tool_kind)
    _register("start_session", "Start the backend process of a stopped session.", _start_session)
    _register("stop_session", "Kill the backend process of a session but keep its record.", _stop_session)
    _register("restart_session", "Kill and relaunch the backend process of a session.", _restart_session)
    _register("send_keys", "Type text into a session, optionally followed by Enter.", _send_keys)
    _register("capture_session", "Capture the tail of a session's terminal and classify it.", _capture_session)

    # Groups

    async def _list_groups() -> list[dict[str, Any]]:
        deck = await state.ensure()
        return [_group_payload(group) for group in deck.registry.list_groups()]

    async def _create_group(name: str, parent_id: str | None = None) -> dict[str, Any]:
        deck = await state.ensure()
        return _group_payload(await deck.registry.create_group(name, parent_id))

    async def _rename_group(group_id: str, name: str) -> dict[str, Any]:
        deck = await state.ensure()
        return _group_payload(await deck.registry.rename_group(group_id, name))

    async def _move_group(group_id: str, parent_id: str | None = None) -> dict[str, Any]:
        deck = await state.ensure()
        return _group_payload(await deck.registry.move_group(group_id, parent_id))

    async def _delete_group(
        group_id: str,
        policy: Literal["forbid", "reassign", "cascade"] = "forbid",
        context: Context | None = None,
    ) -> dict[str, Any]:
        deck = await state.ensure()
        removed = await deck.registry.delete_group(group_id, GroupDeletePolicy(policy))
        _emit_log(
            context,
            "warning",
            "Deleted group",
            extra={"group_id": group_id, "policy": policy, "removed_sessions": removed},
        )
        return {"group_id": group_id, "policy": policy, "removed_sessions": removed}

    async def _set_group_collapsed(group_id: str, collapsed: bool) -> dict[str, Any]:
        deck = await state.ensure()
        return _group_payload(await deck.registry.set_group_collapsed(group_id, collapsed))

    _register("list_groups", "List groups depth-first in display order.", _list_groups)
    _register("create_group", "Create a group, optionally under a parent group.", _create_group)
    _register("rename_group", "Rename a group.", _rename_group)
    _register("move_group", "Reparent a group; moves that would create a cycle are rejected.", _move_group)
    _register(
        "delete_group",
        "Delete a group. policy=forbid refuses non-empty groups, reassign moves sessions to the root, "
        "cascade removes contained sessions and kills their processes.",
        _delete_group,
    )
    _register("set_group_collapsed", "Persist whether a group is collapsed in the dashboard.", _set_group_collapsed)

    # Status and profiles

    async def _status_counts() -> dict[str, int]:
        deck = await state.ensure()
        return {status.value: count for status, count in deck.registry.status_counts().items()}

    async def _refresh_status(session_id: str | None = None) -> dict[str, Any]:
        """Poll one session (or all) ahead of the next cycle; paused sessions are skipped."""

        deck = await state.ensure()
        statuses = await deck.poller.refresh_now(session_id)
        return {key: value.value for key, value in statuses.items()}

    def _list_profiles() -> dict[str, Any]:
        loader = ProfileLoader(state.settings.profiles_dir)
        active = state.context.profile if state.context is not None else state.settings.profile
        return {"active": active, "profiles": loader.list_profiles()}

    def _create_profile(name: str) -> dict[str, Any]:
        path = ProfileLoader(state.settings.profiles_dir).create_profile(name)
        return {"profile": name, "path": str(path)}

    async def _switch_profile(name: str, context: Context | None = None) -> dict[str, Any]:
        deck = await state.switch(name)
        _emit_log(context, "info", "Switched profile", extra={"profile": deck.profile})
        return {"profile": deck.profile, "sessions": len(deck.registry.list_sessions())}

    _register("status_counts", "Count sessions per status in the active profile.", _status_counts)
    _register("refresh_status", "Poll one session, or every session, out of cycle.", _refresh_status)
    _register("list_profiles", "List profiles and report the active one.", _list_profiles)
    _register("create_profile", "Create an empty profile.", _create_profile)
    _register("switch_profile", "Close the active profile and open another one.", _switch_profile)

    return ToolHandles(state=state, tools=tools)


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)


__all__ = ["DeckState", "ToolHandles", "register_tools"]
