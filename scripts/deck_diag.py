"""Hydra Deck diagnostics CLI."""

from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path

from hydra_deck.backends import CommandRunner, SandboxBackend, TmuxBackend, create_backend
from hydra_deck.classifier import classify
from hydra_deck.classifier.fixtures import check_fixture, load_fixtures, strip_fixture_header, write_fixture
from hydra_deck.config import DeckSettings
from hydra_deck.errors import DeckError
from hydra_deck.session.models import SessionStatus, ToolKind
from hydra_deck.storage import ProfileStore, ProfileStoreError

DEFAULT_FIXTURES = Path("tests/fixtures")


def load_settings() -> DeckSettings:
    settings = DeckSettings()
    settings.data_dir = settings.data_dir.expanduser()
    return settings


def load_profile_data(args: argparse.Namespace):
    settings = load_settings()
    profile = args.profile or settings.profile
    store = ProfileStore(settings.profiles_dir, profile)
    try:
        return store.load()
    except ProfileStoreError as exc:
        print(f"Profile data unreadable: {exc}")
        raise SystemExit(1)


def cmd_capture(args: argparse.Namespace) -> None:
    settings = load_settings()
    executable = Path(settings.tmux_path) if settings.tmux_path else None
    backend = TmuxBackend(CommandRunner("tmux", executable), prefix=settings.session_prefix)
    try:
        text = asyncio.run(backend.capture(args.handle, args.lines))
    except DeckError as exc:
        print(f"Capture failed: {exc}")
        raise SystemExit(1)

    path = write_fixture(
        args.root,
        args.tool,
        args.state,
        text,
        description=args.description,
        version=args.version,
    )
    detected = classify(ToolKind(args.tool), text)
    print(json.dumps({"path": str(path), "expected": args.state, "detected": detected.value}, indent=2))
    if detected.value != args.state:
        print("Warning: capture does not classify as the requested state; update the markers.")


def cmd_classify(args: argparse.Namespace) -> None:
    path = Path(args.path)
    text = strip_fixture_header(path.read_text(encoding="utf-8"))
    tool = args.tool or path.parent.parent.name
    detected = classify(ToolKind(tool), text)
    expected = args.expect or path.parent.name
    payload = {"path": str(path), "tool": tool, "detected": detected.value}
    if expected in {status.value for status in SessionStatus}:
        payload["expected"] = expected
    print(json.dumps(payload, indent=2))
    if "expected" in payload and payload["expected"] != detected.value:
        raise SystemExit(1)


def cmd_check(args: argparse.Namespace) -> None:
    fixtures = load_fixtures(args.root)
    failures = []
    for fixture in fixtures:
        detected = check_fixture(fixture)
        if detected is not fixture.expected:
            failures.append({"fixture": fixture.name, "detected": detected.value})
    print(json.dumps({"fixtures": len(fixtures), "failures": failures}, indent=2))
    if failures:
        raise SystemExit(1)


async def inspect_backend(backend) -> dict:
    tmux = backend.tmux if isinstance(backend, SandboxBackend) else backend
    report = {"backend": backend.name, "prefix": tmux.prefix}
    try:
        report["tmux_version"] = await tmux.version()
    except DeckError as exc:
        report["tmux_error"] = str(exc)
    if isinstance(backend, SandboxBackend):
        report["runtime"] = backend.runtime.name
        try:
            report["daemon_running"] = await backend.is_daemon_running()
        except DeckError as exc:
            report["daemon_running"] = False
            report["runtime_error"] = str(exc)
    return report


def cmd_backend(args: argparse.Namespace) -> None:
    report = asyncio.run(inspect_backend(create_backend(load_settings())))
    print(json.dumps(report, indent=2))
    if "tmux_error" in report or report.get("daemon_running") is False:
        raise SystemExit(1)


def cmd_sessions(args: argparse.Namespace) -> None:
    sessions, _ = load_profile_data(args)
    if args.json:
        print(json.dumps([session.model_dump(mode="json") for session in sessions], indent=2))
    else:
        for session in sessions:
            print(f"{session.id} [{session.status.value}] {session.title} -> {session.backend_handle}")


def cmd_groups(args: argparse.Namespace) -> None:
    _, groups = load_profile_data(args)
    print(json.dumps([group.model_dump(mode="json") for group in groups], indent=2))


def cmd_status(args: argparse.Namespace) -> None:
    sessions, groups = load_profile_data(args)
    counts = {status.value: 0 for status in SessionStatus}
    for session in sessions:
        counts[session.status.value] += 1
    print(
        json.dumps(
            {"sessions_total": len(sessions), "groups_total": len(groups), "status_counts": counts},
            indent=2,
        )
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Hydra Deck diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    tools = [kind.value for kind in ToolKind if kind is not ToolKind.UNKNOWN]
    states = ["idle", "running", "waiting_permission", "waiting_question"]

    p_capture = sub.add_parser("capture", help="Capture a tmux pane as a classifier fixture")
    p_capture.add_argument("tool", choices=tools)
    p_capture.add_argument("state", choices=states)
    p_capture.add_argument("handle", help="tmux session name")
    p_capture.add_argument("--description", default="capture")
    p_capture.add_argument("--version", default=None, help="Agent CLI version to record")
    p_capture.add_argument("--lines", type=int, default=50)
    p_capture.add_argument("--root", type=Path, default=DEFAULT_FIXTURES)
    p_capture.set_defaults(func=cmd_capture)

    p_classify = sub.add_parser("classify", help="Classify a fixture or capture file")
    p_classify.add_argument("path")
    p_classify.add_argument("--tool", choices=tools, default=None)
    p_classify.add_argument("--expect", choices=states, default=None)
    p_classify.set_defaults(func=cmd_classify)

    p_check = sub.add_parser("check", help="Classify every fixture in the corpus")
    p_check.add_argument("--root", type=Path, default=DEFAULT_FIXTURES)
    p_check.set_defaults(func=cmd_check)

    p_sessions = sub.add_parser("sessions", help="List persisted sessions")
    p_sessions.add_argument("--profile")
    p_sessions.add_argument("--json", action="store_true", help="Output JSON")
    p_sessions.set_defaults(func=cmd_sessions)

    p_groups = sub.add_parser("groups", help="List persisted groups")
    p_groups.add_argument("--profile")
    p_groups.set_defaults(func=cmd_groups)

    p_status = sub.add_parser("status", help="Show persisted status counts")
    p_status.add_argument("--profile")
    p_status.set_defaults(func=cmd_status)

    p_backend = sub.add_parser("backend", help="Check that the configured backend is reachable")
    p_backend.set_defaults(func=cmd_backend)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
