from __future__ import annotations

from pathlib import Path

import pytest

from hydra_deck.classifier import STRATEGIES, classify, precedence_table, resolve_precedence
from hydra_deck.classifier.base import recent_lines
from hydra_deck.classifier.fixtures import check_fixture, load_fixtures
from hydra_deck.session.models import SessionStatus, ToolKind

FIXTURES = Path(__file__).resolve().parent / "fixtures"
CORPUS = load_fixtures(FIXTURES)


def test_corpus_covers_every_tool_and_state() -> None:
    covered = {(fixture.tool_kind, fixture.expected) for fixture in CORPUS}
    for tool_kind in STRATEGIES:
        for state in (
            SessionStatus.IDLE,
            SessionStatus.RUNNING,
            SessionStatus.WAITING_PERMISSION,
            SessionStatus.WAITING_QUESTION,
        ):
            assert (tool_kind, state) in covered, f"no fixture for {tool_kind.value}/{state.value}"


@pytest.mark.parametrize("fixture", CORPUS, ids=lambda fixture: fixture.name)
def test_golden_corpus(fixture) -> None:
    detected = check_fixture(fixture)
    assert detected is fixture.expected, f"{fixture.name} classified as {detected.value}:\n{fixture.content}"


@pytest.mark.parametrize("fixture", CORPUS, ids=lambda fixture: fixture.name)
def test_classification_is_deterministic(fixture) -> None:
    first = classify(fixture.tool_kind, fixture.content)
    assert all(classify(fixture.tool_kind, fixture.content) is first for _ in range(5))


def test_bare_shell_prompt_is_idle() -> None:
    assert classify(ToolKind.CLAUDE, "$ ") is SessionStatus.IDLE


def test_permission_prompt_beats_spinner_above_it() -> None:
    text = "⠋ Running tool…\nDo you want to proceed? (y/n)"
    assert classify(ToolKind.CLAUDE, text) is SessionStatus.WAITING_PERMISSION


def test_inline_numbered_options_with_cursor_are_a_question() -> None:
    text = "Pick how to continue\n1. Yes  2. No  3. Edit\n❯"
    assert classify(ToolKind.CLAUDE, text) is SessionStatus.WAITING_QUESTION


def test_unknown_tool_is_never_classified() -> None:
    assert classify(ToolKind.UNKNOWN, "Do you want to proceed? (y/n)") is SessionStatus.UNKNOWN


def test_text_without_markers_is_unknown() -> None:
    assert classify(ToolKind.CLAUDE, "compiling module 3 of 12\nlinking") is SessionStatus.UNKNOWN
    assert classify(ToolKind.OPENCODE, "") is SessionStatus.UNKNOWN


def test_opencode_markers_ignore_case() -> None:
    assert classify(ToolKind.OPENCODE, "PERMISSION REQUIRED\nAllow Once") is SessionStatus.WAITING_PERMISSION
    assert classify(ToolKind.OPENCODE, "  Working...\n  ESC interrupt") is SessionStatus.RUNNING


def test_ansi_sequences_and_frames_are_stripped() -> None:
    text = "\x1b[2m╭────╮\x1b[0m\n\x1b[1m│ > │\x1b[0m\n╰────╯\n"
    assert recent_lines(text) == ["  >"]
    assert classify(ToolKind.CLAUDE, text) is SessionStatus.IDLE


def test_old_markers_scrolled_out_of_window_are_ignored() -> None:
    stale = ["✻ Thinking… (esc to interrupt)"] + [f"output line {n}" for n in range(20)] + [">"]
    assert classify(ToolKind.CLAUDE, "\n".join(stale)) is SessionStatus.IDLE


def test_precedence_override_changes_the_winner() -> None:
    text = "✻ Thinking… (esc to interrupt)\n>"
    assert classify(ToolKind.CLAUDE, text) is SessionStatus.RUNNING
    assert classify(ToolKind.CLAUDE, text, precedence=["idle"]) is SessionStatus.IDLE


def test_resolve_precedence_appends_missing_states() -> None:
    order = resolve_precedence(["running"])
    assert order == (
        SessionStatus.RUNNING,
        SessionStatus.WAITING_PERMISSION,
        SessionStatus.WAITING_QUESTION,
        SessionStatus.IDLE,
    )


def test_resolve_precedence_rejects_non_classifier_states() -> None:
    with pytest.raises(ValueError):
        resolve_precedence(["stopped"])


def test_precedence_table_from_settings_mapping() -> None:
    table = precedence_table({"opencode": ["idle", "running"]})
    assert table[ToolKind.OPENCODE][:2] == (SessionStatus.IDLE, SessionStatus.RUNNING)
    assert ToolKind.CLAUDE not in table
