"""Per-tool classification of captured terminal text."""

from __future__ import annotations

from typing import Mapping, Sequence

from ..session.models import SessionStatus, ToolKind
from .base import DEFAULT_PRECEDENCE, Strategy, resolve_precedence
from .claude import CLAUDE
from .opencode import OPENCODE

STRATEGIES: dict[ToolKind, Strategy] = {
    ToolKind.CLAUDE: CLAUDE,
    ToolKind.OPENCODE: OPENCODE,
}

PrecedenceTable = Mapping[ToolKind, Sequence[SessionStatus]]


def classify(
    tool_kind: ToolKind,
    raw_text: str,
    *,
    precedence: Sequence[SessionStatus | str] | None = None,
) -> SessionStatus:
    """Map a tail capture to a semantic state.

    Pure and deterministic: the same ``(tool_kind, raw_text, precedence)``
    always yields the same result. Sessions of unknown tools are never
    classified, and text without any recognized marker is ``unknown``.
    """

    strategy = STRATEGIES.get(ToolKind(tool_kind))
    if strategy is None:
        return SessionStatus.UNKNOWN
    order = resolve_precedence(precedence) if precedence else None
    return strategy.classify(raw_text, order)


def precedence_table(overrides: Mapping[str, Sequence[str]] | None) -> dict[ToolKind, tuple[SessionStatus, ...]]:
    """Turn the ``classifier_precedence`` setting into a per-tool table."""

    table: dict[ToolKind, tuple[SessionStatus, ...]] = {}
    for tool, order in (overrides or {}).items():
        kind = ToolKind(tool)
        if kind in STRATEGIES:
            table[kind] = resolve_precedence(order)
    return table


__all__ = [
    "DEFAULT_PRECEDENCE",
    "STRATEGIES",
    "PrecedenceTable",
    "Strategy",
    "classify",
    "precedence_table",
    "resolve_precedence",
]
