"""Shared machinery for per-tool status strategies."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping, Sequence

from ..session.models import SessionStatus

# CSI / OSC escape sequences and single-character escapes.
_ANSI_ESCAPE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)|\x1b[@-Z\\-_]")
# Box drawing and block elements used for TUI frames.
_FRAME_CHARS = re.compile("[─-▟]")

RECENT_LINES = 15

CLASSIFIED_STATES = (
    SessionStatus.WAITING_PERMISSION,
    SessionStatus.WAITING_QUESTION,
    SessionStatus.RUNNING,
    SessionStatus.IDLE,
)
DEFAULT_PRECEDENCE = CLASSIFIED_STATES

SPINNER_GLYPHS = "⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏⣾⣽⣻⢿⡿⣟⣯⣷"
PROMPT_GLYPHS = frozenset({">", "❯", "›", "$", "#", "%"})

Detector = Callable[[Sequence[str]], bool]


def strip_ansi(text: str) -> str:
    return _ANSI_ESCAPE.sub("", text)


def recent_lines(text: str, limit: int = RECENT_LINES) -> list[str]:
    """Return the last ``limit`` non-blank lines with escapes and frames removed."""

    cleaned = _FRAME_CHARS.sub(" ", strip_ansi(text))
    lines = [line.rstrip() for line in cleaned.splitlines() if line.strip()]
    return lines[-limit:]


def contains_any(lines: Sequence[str], needles: Iterable[str]) -> bool:
    needles = tuple(needles)
    return any(needle in line for line in lines for needle in needles)


def has_spinner(lines: Sequence[str]) -> bool:
    return any(line.strip()[:1] in SPINNER_GLYPHS for line in lines if line.strip())


def has_bare_prompt(lines: Sequence[str]) -> bool:
    return any(line.strip() in PROMPT_GLYPHS for line in lines)


@dataclass(frozen=True, slots=True)
class Strategy:
    """Marker detectors for one agent CLI.

    ``detectors`` maps each classified state to a predicate over the recent
    lines; ``preprocess`` runs on the raw capture before line splitting.
    """

    name: str
    detectors: Mapping[SessionStatus, Detector]
    precedence: tuple[SessionStatus, ...] = DEFAULT_PRECEDENCE
    preprocess: Callable[[str], str] = field(default=lambda text: text)

    def matches(self, raw_text: str) -> set[SessionStatus]:
        lines = recent_lines(self.preprocess(raw_text))
        return {state for state, detector in self.detectors.items() if detector(lines)}

    def classify(
        self, raw_text: str, precedence: Sequence[SessionStatus] | None = None
    ) -> SessionStatus:
        matched = self.matches(raw_text)
        for state in resolve_precedence(precedence or self.precedence):
            if state in matched:
                return state
        return SessionStatus.UNKNOWN


def resolve_precedence(order: Iterable[SessionStatus | str]) -> tuple[SessionStatus, ...]:
    """Normalize an override: listed states first, omitted states after in default order."""

    resolved: list[SessionStatus] = []
    for item in order:
        state = SessionStatus(item)
        if state not in CLASSIFIED_STATES:
            raise ValueError(f"'{state.value}' cannot be produced by a classifier")
        if state not in resolved:
            resolved.append(state)
    resolved.extend(state for state in DEFAULT_PRECEDENCE if state not in resolved)
    return tuple(resolved)


__all__ = [
    "CLASSIFIED_STATES",
    "DEFAULT_PRECEDENCE",
    "PROMPT_GLYPHS",
    "RECENT_LINES",
    "SPINNER_GLYPHS",
    "Strategy",
    "contains_any",
    "has_bare_prompt",
    "has_spinner",
    "recent_lines",
    "resolve_precedence",
    "strip_ansi",
]
