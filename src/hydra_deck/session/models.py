"""Session and group records for a Hydra Deck profile."""

from __future__ import annotations

import re
import shlex
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, field_validator

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_-]")

MAX_TITLE_IN_HANDLE = 20
MAX_PROFILE_IN_HANDLE = 12


class ToolKind(str, Enum):
    """Agent CLI running inside a session."""

    CLAUDE = "claude"
    OPENCODE = "opencode"
    UNKNOWN = "unknown"

    @property
    def binary(self) -> str:
        return _TOOL_BINARIES[self]


_TOOL_BINARIES = {
    ToolKind.CLAUDE: "claude",
    ToolKind.OPENCODE: "opencode",
    ToolKind.UNKNOWN: "bash",
}

# How each tool is told to skip its permission prompts.
_YOLO_FLAGS = {ToolKind.CLAUDE: "--dangerously-skip-permissions"}
_YOLO_ENVIRONMENT = {ToolKind.OPENCODE: ("OPENCODE_PERMISSION", '{"*":"allow"}')}


class SessionStatus(str, Enum):
    """Semantic state inferred from a session's terminal output."""

    IDLE = "idle"
    RUNNING = "running"
    WAITING_PERMISSION = "waiting_permission"
    WAITING_QUESTION = "waiting_question"
    STOPPED = "stopped"
    UNKNOWN = "unknown"

    @property
    def is_waiting(self) -> bool:
        return self in (SessionStatus.WAITING_PERMISSION, SessionStatus.WAITING_QUESTION)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_id() -> str:
    """Return a new 16 character hex session or group id."""

    return uuid.uuid4().hex[:16]


def sanitize_name(value: str, limit: int) -> str:
    return _UNSAFE_NAME_CHARS.sub("_", value)[:limit]


def derive_handle(prefix: str, profile: str, title: str, session_id: str) -> str:
    """Build the backend session name for a session.

    tmux rejects ``.`` and ``:`` in session names, so every component is
    reduced to ``[A-Za-z0-9_-]``. The profile keeps handles of different
    profiles apart and the id prefix keeps equal titles apart.
    """

    safe_profile = sanitize_name(profile, MAX_PROFILE_IN_HANDLE)
    safe_title = sanitize_name(title, MAX_TITLE_IN_HANDLE)
    return f"{prefix}{safe_profile}_{safe_title}_{session_id[:8]}"


class WorktreeInfo(BaseModel):
    """Git worktree a session runs in."""

    branch: str
    main_repo_path: str
    managed: bool = Field(default=True, description="Created by Hydra Deck rather than adopted.")
    created_at: datetime = Field(default_factory=_utcnow)
    cleanup_on_delete: bool = Field(default=True)


class Session(BaseModel):
    """One managed agent instance."""

    id: str = Field(default_factory=generate_id, description="Unique id within the profile.")
    title: str = Field(..., description="User-facing label.")
    working_directory: str = Field(..., description="Directory the agent operates in.")
    backend_handle: str = Field(..., description="Name of the backend session.")
    tool_kind: ToolKind = Field(default=ToolKind.UNKNOWN)
    command: str = Field(default="", description="Overrides the tool's default binary when set.")
    group_id: str | None = Field(default=None)
    yolo_mode: bool = Field(default=False, description="Launch the tool with permission prompts disabled.")
    worktree_info: WorktreeInfo | None = Field(default=None)
    status: SessionStatus = Field(default=SessionStatus.UNKNOWN)
    last_polled_at: datetime | None = Field(default=None)
    created_at: datetime = Field(default_factory=_utcnow)

    @field_validator("id", "title", "backend_handle")
    @classmethod
    def _require_text(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Session id, title and backend handle must not be empty")
        return normalized

    @property
    def launch_command(self) -> str:
        """Command line run inside the backend session."""

        cmd = self.command.strip() or self.tool_kind.binary
        prefix = ""
        if self.yolo_mode:
            flag = _YOLO_FLAGS.get(self.tool_kind)
            if flag:
                cmd = f"{cmd} {flag}"
            variable = _YOLO_ENVIRONMENT.get(self.tool_kind)
            if variable:
                prefix = f"{variable[0]}={shlex.quote(variable[1])} "
        return "bash -c " + shlex.quote(f"stty susp undef; {prefix}exec {cmd}")


class Group(BaseModel):
    """A folder node in the profile's group forest."""

    id: str = Field(default_factory=generate_id)
    name: str = Field(..., description="Display name of the group.")
    parent_id: str | None = Field(default=None)
    display_order: int = Field(default=0)
    collapsed: bool = Field(default=False, description="UI hint, persisted with the group.")

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Group name must not be empty")
        return normalized


@dataclass(slots=True, frozen=True)
class StatusSnapshot:
    """Result of one capture + classify pass; never persisted."""

    session_id: str
    raw_text: str
    tool_kind: ToolKind
    classified_state: SessionStatus
    captured_at: datetime


__all__ = [
    "Group",
    "Session",
    "SessionStatus",
    "StatusSnapshot",
    "ToolKind",
    "WorktreeInfo",
    "derive_handle",
    "generate_id",
    "sanitize_name",
]
