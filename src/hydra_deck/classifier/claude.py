"""Marker detection for the ``claude`` CLI."""

from __future__ import annotations

import re
from typing import Sequence

from ..session.models import SessionStatus
from .base import Strategy, contains_any, has_bare_prompt, has_spinner

_RUNNING_MARKERS = ("esc to interrupt", "ctrl+c to interrupt")
# "✻ Thinking…" style status lines; finished turns read "✻ Worked for 3m" without an ellipsis.
_THINKING_LINE = re.compile(r"^\s*[✻✽✢✳✶·]\s+\S.*(?:…|\.\.\.)")

_PERMISSION_MARKERS = (
    "Do you want to proceed",
    "Do you want to make this edit",
    "Do you want to create",
    "Do you want to allow",
    "Yes, and don't ask again",
    "(y/n)",
    "[y/n]",
    "[Y/n]",
    "(Y/n)",
)

_INLINE_OPTIONS = re.compile(r"(?:^|\s)1\.\s+\S.*\s2\.\s+\S")
_CURSOR_OPTION = re.compile(r"^\s*[❯›>]\s*\d+\.\s+\S")
_OPTION_LINE = re.compile(r"^\s*(?:[❯›>]\s*)?\d+\.\s+\S")
_QUESTION_FOOTERS = ("Enter to select", "↑/↓ to navigate", "Type something")

_IDLE_HINTS = ("? for shortcuts",)


def _running(lines: Sequence[str]) -> bool:
    if contains_any(lines, _RUNNING_MARKERS) or has_spinner(lines):
        return True
    return any(_THINKING_LINE.match(line) for line in lines)


def _permission(lines: Sequence[str]) -> bool:
    return contains_any(lines, _PERMISSION_MARKERS)


def _question(lines: Sequence[str]) -> bool:
    if any(_INLINE_OPTIONS.search(line) for line in lines):
        return True
    if any(_CURSOR_OPTION.match(line) for line in lines):
        return True
    if contains_any(lines, _QUESTION_FOOTERS):
        return True
    for previous, current in zip(lines, lines[1:]):
        if previous.rstrip().endswith("?") and _OPTION_LINE.match(current):
            return True
    return False


def _idle(lines: Sequence[str]) -> bool:
    if has_bare_prompt(lines) or contains_any(lines, _IDLE_HINTS):
        return True
    return any(line.strip().startswith('> Try "') for line in lines)


CLAUDE = Strategy(
    name="claude",
    detectors={
        SessionStatus.RUNNING: _running,
        SessionStatus.WAITING_PERMISSION: _permission,
        SessionStatus.WAITING_QUESTION: _question,
        SessionStatus.IDLE: _idle,
    },
)

__all__ = ["CLAUDE"]
