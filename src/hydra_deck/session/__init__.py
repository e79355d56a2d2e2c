"""Session and group records plus the group hierarchy."""

from .groups import GroupDeletePolicy, GroupForest
from .models import (
    Group,
    Session,
    SessionStatus,
    StatusSnapshot,
    ToolKind,
    WorktreeInfo,
    derive_handle,
    generate_id,
)
from .worktree import GitWorktree, WorktreeError, compute_worktree_path

__all__ = [
    "Group",
    "GroupDeletePolicy",
    "GitWorktree",
    "GroupForest",
    "Session",
    "SessionStatus",
    "StatusSnapshot",
    "ToolKind",
    "WorktreeError",
    "WorktreeInfo",
    "compute_worktree_path",
    "derive_handle",
    "generate_id",
]
