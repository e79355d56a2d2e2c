"""Utility helpers for backend subprocesses."""

from __future__ import annotations

import os
from typing import Mapping

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
}

# Markers tmux prints when it has no server to talk to. "error connecting to"
# counts only together with a missing socket.
NO_SERVER_MARKERS = ("no server running",)
MISSING_SOCKET_MARKERS = ("error connecting to", "no such file or directory")


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a sanitized environment suitable for backend subprocesses."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


def tail_lines(text: str, max_lines: int) -> str:
    """Return the last ``max_lines`` lines of ``text`` ignoring trailing blank padding."""

    lines = text.rstrip("\n").splitlines()
    while lines and not lines[-1].strip():
        lines.pop()
    return "\n".join(lines[-max_lines:]) if max_lines > 0 else ""


def is_no_server(stderr: str) -> bool:
    lowered = stderr.lower()
    if any(marker in lowered for marker in NO_SERVER_MARKERS):
        return True
    return all(marker in lowered for marker in MISSING_SOCKET_MARKERS)


__all__ = ["MISSING_SOCKET_MARKERS", "NO_SERVER_MARKERS", "is_no_server", "sanitize_environment", "tail_lines"]
