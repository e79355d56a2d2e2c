"""Marker detection for the ``opencode`` TUI.

opencode mixes case freely between releases, so the capture is lowercased
before any marker is checked.
"""

from __future__ import annotations

import re
from typing import Sequence

from ..session.models import SessionStatus
from .base import Strategy, contains_any, has_bare_prompt, has_spinner

_RUNNING_MARKERS = (
    "esc interrupt",
    "esc to interrupt",
    "working...",
    "thinking...",
    "generating...",
)

_PERMISSION_MARKERS = (
    "permission required",
    "allow once",
    "allow always",
    "(y/n)",
    "[y/n]",
    "do you want to proceed",
)

_CURSOR_OPTION = re.compile(r"^\s*[❯›>]\s*\d+\.\s+\S")
_QUESTION_MARKERS = ("select an option", "type your own answer")

_IDLE_MARKERS = ("enter send", "ctrl+p commands")


def _running(lines: Sequence[str]) -> bool:
    return contains_any(lines, _RUNNING_MARKERS) or has_spinner(lines)


def _permission(lines: Sequence[str]) -> bool:
    return contains_any(lines, _PERMISSION_MARKERS)


def _question(lines: Sequence[str]) -> bool:
    if contains_any(lines, _QUESTION_MARKERS):
        return True
    return any(_CURSOR_OPTION.match(line) for line in lines)


def _idle(lines: Sequence[str]) -> bool:
    return contains_any(lines, _IDLE_MARKERS) or has_bare_prompt(lines)


OPENCODE = Strategy(
    name="opencode",
    detectors={
        SessionStatus.RUNNING: _running,
        SessionStatus.WAITING_PERMISSION: _permission,
        SessionStatus.WAITING_QUESTION: _question,
        SessionStatus.IDLE: _idle,
    },
    preprocess=str.lower,
)

__all__ = ["OPENCODE"]
