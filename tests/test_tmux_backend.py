from __future__ import annotations

import asyncio
import shlex
from pathlib import Path

import pytest

from hydra_deck.backends import CommandNotFoundError, CommandRunner, FakeCommandRunner, TmuxBackend
from hydra_deck.backends.tmux import build_create_args
from hydra_deck.backends.utils import sanitize_environment, tail_lines
from hydra_deck.errors import AlreadyExistsError, BackendUnavailableError, NotFoundError
from hydra_deck.session.models import Session, ToolKind


def make_backend(*responses: tuple[int, str, str]) -> tuple[TmuxBackend, FakeCommandRunner]:
    runner = FakeCommandRunner("tmux")
    for returncode, stdout, stderr in responses:
        runner.queue(returncode, stdout, stderr)
    return TmuxBackend(runner, prefix="hd_"), runner


def test_runner_executes_script(tmp_path: Path) -> None:
    script = tmp_path / "tmux"
    script.write_text("#!/bin/sh\necho \"$@\"\n", encoding="utf-8")
    script.chmod(0o755)

    result = asyncio.run(CommandRunner("tmux", script).run("list-sessions", "-F", "x"))

    assert result.ok
    assert result.stdout.strip() == "list-sessions -F x"


def test_runner_timeout_kills_child(tmp_path: Path) -> None:
    script = tmp_path / "tmux"
    script.write_text("#!/bin/sh\nsleep 5\n", encoding="utf-8")
    script.chmod(0o755)

    with pytest.raises(BackendUnavailableError):
        asyncio.run(CommandRunner("tmux", script).run("capture-pane", timeout=0.2))


def test_runner_missing_binary_is_unavailable(tmp_path: Path) -> None:
    runner = CommandRunner("tmux", tmp_path / "missing")
    with pytest.raises(CommandNotFoundError):
        asyncio.run(runner.run("-V"))
    assert issubclass(CommandNotFoundError, BackendUnavailableError)


def test_sanitize_environment_strips_virtualenv(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PYTHONPATH", "value")
    env = sanitize_environment({"EXTRA": "1"})
    assert "PYTHONPATH" not in env
    assert env["EXTRA"] == "1"


def test_tail_lines_drops_trailing_padding() -> None:
    assert tail_lines("a\nb\nc\n\n   \n", 2) == "b\nc"


def test_build_create_args_passes_wrapped_command() -> None:
    session = Session(
        title="api",
        working_directory="/work",
        backend_handle="hd_default_api_12345678",
        tool_kind=ToolKind.CLAUDE,
    )
    args = build_create_args(session.backend_handle, "/work", session.launch_command)

    assert args[:6] == ["new-session", "-d", "-s", "hd_default_api_12345678", "-c", "/work"]
    assert shlex.split(args[6]) == ["bash", "-c", "stty susp undef; exec claude"]


def test_create_rejects_existing_session() -> None:
    backend, runner = make_backend((0, "", ""))

    with pytest.raises(AlreadyExistsError):
        asyncio.run(backend.create("hd_x", "claude", "/tmp"))

    assert runner.invocations == [("has-session", "-t", "=hd_x")]


def test_create_runs_new_session() -> None:
    backend, runner = make_backend((1, "", "can't find session: hd_x"), (0, "", ""))

    asyncio.run(backend.create("hd_x", "claude", "/tmp"))

    assert runner.invocations[1] == ("new-session", "-d", "-s", "hd_x", "-c", "/tmp", "claude")


def test_list_handles_filters_prefix() -> None:
    backend, _ = make_backend((0, "hd_a\nother\nhd_b\n", ""))
    assert asyncio.run(backend.list_handles()) == {"hd_a", "hd_b"}


def test_list_handles_without_server_is_empty() -> None:
    backend, _ = make_backend((1, "", "no server running on /tmp/tmux-1000/default"))
    assert asyncio.run(backend.list_handles()) == set()


def test_list_handles_other_failure_is_unavailable() -> None:
    backend, _ = make_backend((1, "", "protocol version mismatch"))
    with pytest.raises(BackendUnavailableError):
        asyncio.run(backend.list_handles())


def test_list_handles_missing_socket_is_empty() -> None:
    backend, _ = make_backend((1, "", "error connecting to /tmp/tmux-1000/default (No such file or directory)"))
    assert asyncio.run(backend.list_handles()) == set()


def test_list_handles_unreadable_socket_is_unavailable() -> None:
    backend, _ = make_backend((1, "", "error connecting to /tmp/tmux-1000/default (Permission denied)"))
    with pytest.raises(BackendUnavailableError):
        asyncio.run(backend.list_handles())


def test_capture_returns_tail_and_maps_missing_session() -> None:
    backend, runner = make_backend((0, "one\ntwo\nthree\n\n", ""), (1, "", "can't find pane: hd_x"))

    assert asyncio.run(backend.capture("hd_x", 2)) == "two\nthree"
    assert runner.invocations[0] == ("capture-pane", "-p", "-t", "=hd_x:", "-S", "-2")

    with pytest.raises(NotFoundError):
        asyncio.run(backend.capture("hd_x", 2))


def test_send_keys_sends_literal_text_then_enter() -> None:
    backend, runner = make_backend()

    asyncio.run(backend.send_keys("hd_x", "yes", enter=True))

    assert runner.invocations == [
        ("send-keys", "-t", "=hd_x:", "-l", "yes"),
        ("send-keys", "-t", "=hd_x:", "Enter"),
    ]


def test_kill_is_idempotent() -> None:
    backend, _ = make_backend((1, "", "can't find session: hd_x"))
    asyncio.run(backend.kill("hd_x"))


def test_rename_checks_target_name() -> None:
    backend, _ = make_backend((0, "", ""))
    with pytest.raises(AlreadyExistsError):
        asyncio.run(backend.rename("hd_a", "hd_b"))

    backend, runner = make_backend((1, "", "can't find session"), (0, "", ""))
    asyncio.run(backend.rename("hd_a", "hd_b"))
    assert runner.invocations[-1] == ("rename-session", "-t", "=hd_a", "hd_b")


def test_attach_inside_tmux_switches_client(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TMUX", "/tmp/tmux-1000/default,1,0")
    backend, runner = make_backend((0, "", ""))

    assert asyncio.run(backend.attach("hd_x")) == 0
    assert runner.interactive_invocations == [("switch-client", "-t", "=hd_x")]


def test_attach_falls_back_to_attach_session(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TMUX", "/tmp/tmux-1000/default,1,0")
    backend, runner = make_backend((0, "", ""))
    runner.interactive_returncodes = [1, 0]

    assert asyncio.run(backend.attach("hd_x")) == 0
    assert runner.interactive_invocations[-1] == ("attach-session", "-t", "=hd_x")


def test_attach_missing_session(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("TMUX", raising=False)
    backend, _ = make_backend((1, "", "can't find session"))
    with pytest.raises(NotFoundError):
        asyncio.run(backend.attach("hd_x"))
