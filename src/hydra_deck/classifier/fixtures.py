"""Golden-corpus harness for the status classifier.

Fixtures live under ``<root>/<tool>/<state>/NNN_<description>.txt``. Each
file starts with a block of ``#`` header lines (tool, state, capture time,
tool version) followed by the raw terminal capture. Nothing here needs a
running backend.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Sequence

from ..session.models import SessionStatus, ToolKind
from . import STRATEGIES, classify

_FIXTURE_NAME = re.compile(r"^(\d+)_")
_UNSAFE_DESCRIPTION = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True, slots=True)
class Fixture:
    path: Path
    tool_kind: ToolKind
    expected: SessionStatus
    content: str

    @property
    def name(self) -> str:
        return f"{self.tool_kind.value}/{self.expected.value}/{self.path.name}"


def strip_fixture_header(text: str) -> str:
    """Drop the leading ``#`` comment block of a fixture file."""

    lines = text.splitlines()
    index = 0
    while index < len(lines) and lines[index].startswith("#"):
        index += 1
    return "\n".join(lines[index:])


def load_fixtures(root: Path) -> list[Fixture]:
    """Load every fixture under ``root`` in a stable order."""

    fixtures: list[Fixture] = []
    for tool_kind in STRATEGIES:
        tool_dir = Path(root) / tool_kind.value
        if not tool_dir.is_dir():
            continue
        for state_dir in sorted(path for path in tool_dir.iterdir() if path.is_dir()):
            expected = SessionStatus(state_dir.name)
            for path in sorted(state_dir.glob("*.txt")):
                content = strip_fixture_header(path.read_text(encoding="utf-8"))
                fixtures.append(
                    Fixture(path=path, tool_kind=tool_kind, expected=expected, content=content)
                )
    return fixtures


def check_fixture(
    fixture: Fixture, *, precedence: Sequence[SessionStatus | str] | None = None
) -> SessionStatus:
    """Classify a fixture and return the state it produced."""

    return classify(fixture.tool_kind, fixture.content, precedence=precedence)


def _next_number(directory: Path) -> int:
    numbers = [
        int(match.group(1))
        for match in (_FIXTURE_NAME.match(path.name) for path in directory.glob("*.txt"))
        if match
    ]
    return max(numbers, default=0) + 1


def write_fixture(
    root: Path,
    tool_kind: ToolKind | str,
    state: SessionStatus | str,
    text: str,
    *,
    description: str = "capture",
    version: str | None = None,
    captured_at: datetime | None = None,
) -> Path:
    """Store a capture as the next numbered fixture of ``<tool>/<state>``."""

    kind = ToolKind(tool_kind)
    status = SessionStatus(state)
    directory = Path(root) / kind.value / status.value
    directory.mkdir(parents=True, exist_ok=True)

    slug = _UNSAFE_DESCRIPTION.sub("_", description.lower()).strip("_") or "capture"
    path = directory / f"{_next_number(directory):03d}_{slug}.txt"
    timestamp = (captured_at or datetime.now(timezone.utc)).isoformat()

    header = [
        f"# tool: {kind.value}",
        f"# state: {status.value}",
        f"# captured: {timestamp}",
    ]
    if version:
        header.append(f"# version: {version}")
    path.write_text("\n".join(header) + "\n" + text.rstrip("\n") + "\n", encoding="utf-8")
    return path


__all__ = ["Fixture", "check_fixture", "load_fixtures", "strip_fixture_header", "write_fixture"]
