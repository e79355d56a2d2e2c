from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from hydra_deck.backends import FakeBackend, FakeCommandRunner
from hydra_deck.errors import AlreadyExistsError, BackendUnavailableError, InvalidStateError, NotFoundError
from hydra_deck.session.groups import GroupDeletePolicy
from hydra_deck.session.models import Session, SessionStatus, ToolKind, derive_handle
from hydra_deck.session.worktree import WorktreeError, compute_worktree_path
from hydra_deck.session.registry import SessionRegistry
from hydra_deck.storage import ProfileStore, ProfileStoreError


def make_registry(tmp_path: Path) -> tuple[SessionRegistry, FakeBackend, ProfileStore]:
    backend = FakeBackend()
    store = ProfileStore(tmp_path / "profiles", "default")
    return SessionRegistry("default", backend, store), backend, store


def test_derive_handle_sanitizes_components() -> None:
    handle = derive_handle("hd_", "work.profile", "My Project: v2.0 / api refactor", "0123456789abcdef")
    assert handle == "hd_work_profile_My_Project__v2_0___a_01234567"


def test_add_session_starts_backend_and_persists(tmp_path: Path) -> None:
    registry, backend, store = make_registry(tmp_path)

    session = asyncio.run(registry.add_session("api", tmp_path, ToolKind.CLAUDE))

    assert len(session.id) == 16
    assert session.backend_handle in backend.panes
    assert backend.panes[session.backend_handle].command == session.launch_command
    assert session.status is SessionStatus.UNKNOWN

    sessions, groups = store.load()
    assert [s.id for s in sessions] == [session.id]
    assert groups == []
    raw = json.loads((store.directory / "sessions.json").read_text(encoding="utf-8"))
    assert list(raw) == [session.id]


def test_add_session_without_start_is_stopped(tmp_path: Path) -> None:
    registry, backend, _ = make_registry(tmp_path)
    session = asyncio.run(registry.add_session("api", tmp_path, start=False))
    assert session.status is SessionStatus.STOPPED
    assert backend.panes == {}


def test_add_session_rejects_missing_directory_and_group(tmp_path: Path) -> None:
    registry, _, _ = make_registry(tmp_path)
    with pytest.raises(NotFoundError):
        asyncio.run(registry.add_session("api", tmp_path / "missing"))
    with pytest.raises(NotFoundError):
        asyncio.run(registry.add_session("api", tmp_path, group_id="nope"))
    assert registry.list_sessions() == []


def test_session_ids_are_unique(tmp_path: Path) -> None:
    registry, _, _ = make_registry(tmp_path)

    async def scenario() -> list[Session]:
        return [await registry.add_session("same title", tmp_path, start=False) for _ in range(25)]

    sessions = asyncio.run(scenario())
    assert len({s.id for s in sessions}) == 25
    assert len({s.backend_handle for s in sessions}) == 25


def test_remove_session_kills_backend_and_leaves_group(tmp_path: Path) -> None:
    registry, backend, _ = make_registry(tmp_path)

    async def scenario():
        group = await registry.create_group("backend")
        session = await registry.add_session("api", tmp_path, group_id=group.id)
        await registry.remove_session(session.id)
        return group, session

    group, session = asyncio.run(scenario())

    assert backend.killed == [session.backend_handle]
    assert registry.list_sessions(group.id) == []
    with pytest.raises(NotFoundError):
        registry.get_session(session.id)


def test_remove_session_orphan_keeps_process(tmp_path: Path) -> None:
    registry, backend, _ = make_registry(tmp_path)

    async def scenario():
        session = await registry.add_session("api", tmp_path)
        await registry.remove_session(session.id, orphan=True)
        return session

    session = asyncio.run(scenario())
    assert backend.killed == []
    assert session.backend_handle in backend.panes


def test_rename_session_renames_live_backend(tmp_path: Path) -> None:
    registry, backend, _ = make_registry(tmp_path)

    async def scenario():
        session = await registry.add_session("api", tmp_path)
        return session, await registry.rename_session(session.id, "payments")

    before, after = asyncio.run(scenario())

    assert after.title == "payments"
    assert "payments" in after.backend_handle
    assert before.backend_handle not in backend.panes
    assert after.backend_handle in backend.panes


def test_find_session_by_id_prefix_and_title(tmp_path: Path) -> None:
    registry, _, _ = make_registry(tmp_path)
    session = asyncio.run(registry.add_session("api", tmp_path, start=False))

    assert registry.find_session(session.id).id == session.id
    assert registry.find_session(session.id[:6]).id == session.id
    assert registry.find_session("api").id == session.id
    with pytest.raises(NotFoundError):
        registry.find_session("nothing-like-it")


def test_start_stop_restart(tmp_path: Path) -> None:
    registry, backend, _ = make_registry(tmp_path)

    async def scenario():
        session = await registry.add_session("api", tmp_path, start=False)
        await registry.start_session(session.id)
        with pytest.raises(InvalidStateError):
            await registry.start_session(session.id)
        await registry.restart_session(session.id)
        await registry.stop_session(session.id)
        return session

    session = asyncio.run(scenario())
    assert backend.killed == [session.backend_handle, session.backend_handle]
    assert session.backend_handle not in backend.panes


def test_move_session_and_set_tool_kind(tmp_path: Path) -> None:
    registry, _, _ = make_registry(tmp_path)

    async def scenario():
        group = await registry.create_group("frontend")
        session = await registry.add_session("web", tmp_path, start=False)
        await registry.move_session(session.id, group.id)
        await registry.set_tool_kind(session.id, "opencode")
        return group, registry.get_session(session.id)

    group, session = asyncio.run(scenario())
    assert session.group_id == group.id
    assert session.tool_kind is ToolKind.OPENCODE


def test_group_moves_cannot_create_cycles(tmp_path: Path) -> None:
    registry, _, _ = make_registry(tmp_path)

    async def scenario():
        root = await registry.create_group("root")
        child = await registry.create_group("child", root.id)
        grandchild = await registry.create_group("grandchild", child.id)
        with pytest.raises(InvalidStateError):
            await registry.move_group(root.id, grandchild.id)
        with pytest.raises(InvalidStateError):
            await registry.move_group(child.id, child.id)
        await registry.move_group(grandchild.id, None)
        return root, child, grandchild

    root, child, grandchild = asyncio.run(scenario())
    assert registry.get_group(grandchild.id).parent_id is None
    assert [group.id for group in registry.list_groups()] == [root.id, child.id, grandchild.id]


def test_duplicate_group_names_rejected_per_level(tmp_path: Path) -> None:
    registry, _, _ = make_registry(tmp_path)

    async def scenario():
        parent = await registry.create_group("team")
        await registry.create_group("team", parent.id)
        with pytest.raises(AlreadyExistsError):
            await registry.create_group("team")

    asyncio.run(scenario())


def test_delete_non_empty_group_requires_policy(tmp_path: Path) -> None:
    registry, backend, _ = make_registry(tmp_path)

    async def scenario():
        group = await registry.create_group("backend")
        session = await registry.add_session("api", tmp_path, group_id=group.id)
        with pytest.raises(InvalidStateError):
            await registry.delete_group(group.id)
        return group, session

    group, session = asyncio.run(scenario())
    assert registry.get_group(group.id).name == "backend"
    assert registry.get_session(session.id).group_id == group.id
    assert backend.killed == []


def test_delete_group_reassign_moves_sessions_to_root(tmp_path: Path) -> None:
    registry, backend, _ = make_registry(tmp_path)

    async def scenario():
        group = await registry.create_group("backend")
        child = await registry.create_group("jobs", group.id)
        session = await registry.add_session("worker", tmp_path, group_id=child.id)
        removed = await registry.delete_group(group.id, GroupDeletePolicy.REASSIGN)
        return session, removed

    session, removed = asyncio.run(scenario())
    assert removed == []
    assert registry.get_session(session.id).group_id is None
    assert registry.list_groups() == []
    assert backend.killed == []


def test_delete_group_cascade_removes_sessions(tmp_path: Path) -> None:
    registry, backend, _ = make_registry(tmp_path)

    async def scenario():
        group = await registry.create_group("backend")
        inside = await registry.add_session("api", tmp_path, group_id=group.id)
        outside = await registry.add_session("docs", tmp_path)
        removed = await registry.delete_group(group.id, "cascade")
        return inside, outside, removed

    inside, outside, removed = asyncio.run(scenario())
    assert removed == [inside.id]
    assert backend.killed == [inside.backend_handle]
    assert [s.id for s in registry.list_sessions()] == [outside.id]


def test_set_group_collapsed_persists(tmp_path: Path) -> None:
    registry, backend, store = make_registry(tmp_path)

    async def scenario():
        group = await registry.create_group("archive")
        await registry.set_group_collapsed(group.id, True)
        return group

    group = asyncio.run(scenario())
    reloaded = asyncio.run(SessionRegistry.load("default", backend, store))
    assert reloaded.get_group(group.id).collapsed is True


def test_record_poll_ignores_vanished_ids_and_counts(tmp_path: Path) -> None:
    registry, _, _ = make_registry(tmp_path)

    async def scenario():
        session = await registry.add_session("api", tmp_path)
        changed = await registry.record_poll(
            {session.id: SessionStatus.RUNNING, "gone": SessionStatus.IDLE},
            refreshed={session.id},
        )
        return session, changed

    session, changed = asyncio.run(scenario())
    assert changed == [session.id]
    assert registry.get_session(session.id).last_polled_at is not None
    counts = registry.status_counts()
    assert counts[SessionStatus.RUNNING] == 1
    assert sum(counts.values()) == 1


def test_load_rejects_dangling_group_reference(tmp_path: Path) -> None:
    store = ProfileStore(tmp_path, "default")
    session = Session(
        title="api",
        working_directory=str(tmp_path),
        backend_handle="hd_default_api_deadbeef",
        group_id="missing",
    )
    store.save([session], [])

    with pytest.raises(ProfileStoreError):
        asyncio.run(SessionRegistry.load("default", FakeBackend(), store))


class GatedBackend(FakeBackend):
    """FakeBackend whose ``create`` and ``kill`` wait until ``gate`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.gate: asyncio.Event | None = None

    async def create(self, handle: str, command: str, working_directory: str) -> None:
        if self.gate is not None:
            await self.gate.wait()
        await super().create(handle, command, working_directory)

    async def kill(self, handle: str) -> None:
        if self.gate is not None:
            await self.gate.wait()
        await super().kill(handle)


def test_slow_backend_call_does_not_block_other_writers(tmp_path: Path) -> None:
    backend = GatedBackend()
    registry = SessionRegistry("default", backend)

    async def scenario():
        existing = await registry.add_session("api", tmp_path)
        backend.gate = asyncio.Event()
        starting = asyncio.create_task(registry.add_session("web", tmp_path))
        await asyncio.sleep(0.01)
        changed = await asyncio.wait_for(registry.record_poll({existing.id: SessionStatus.RUNNING}), 1.0)
        group = await asyncio.wait_for(registry.create_group("team"), 1.0)
        titles = [s.title for s in registry.list_sessions()]
        backend.gate.set()
        created = await starting
        return existing, changed, group, titles, created

    existing, changed, group, titles, created = asyncio.run(scenario())
    assert changed == [existing.id]
    assert registry.get_group(group.id).name == "team"
    assert titles == ["api"]
    assert created.backend_handle in backend.panes
    assert [s.title for s in registry.list_sessions()] == ["api", "web"]


def test_session_with_backend_call_in_flight_rejects_other_operations(tmp_path: Path) -> None:
    backend = GatedBackend()
    registry = SessionRegistry("default", backend)

    async def scenario():
        session = await registry.add_session("api", tmp_path)
        backend.gate = asyncio.Event()
        removal = asyncio.create_task(registry.remove_session(session.id))
        await asyncio.sleep(0.01)
        with pytest.raises(InvalidStateError):
            await registry.stop_session(session.id)
        with pytest.raises(InvalidStateError):
            await registry.remove_session(session.id)
        with pytest.raises(InvalidStateError):
            await registry.rename_session(session.id, "payments")
        listed = [s.id for s in registry.list_sessions()]
        backend.gate.set()
        await removal
        return session, listed

    session, listed = asyncio.run(scenario())
    assert listed == [session.id]
    assert registry.list_sessions() == []
    assert backend.killed == [session.backend_handle]


def test_failed_start_records_nothing(tmp_path: Path) -> None:
    registry, backend, store = make_registry(tmp_path)
    backend.available = False

    with pytest.raises(BackendUnavailableError):
        asyncio.run(registry.add_session("api", tmp_path))

    backend.available = True
    session = asyncio.run(registry.add_session("api", tmp_path))
    assert [s.id for s in registry.list_sessions()] == [session.id]
    assert [s.id for s in store.load()[0]] == [session.id]


def test_yolo_mode_adds_tool_specific_switch() -> None:
    base = {"title": "api", "working_directory": "/work", "backend_handle": "hd_default_api_01234567"}

    claude = Session(**base, tool_kind=ToolKind.CLAUDE, yolo_mode=True)
    opencode = Session(**base, tool_kind=ToolKind.OPENCODE, yolo_mode=True)
    plain = Session(**base, tool_kind=ToolKind.CLAUDE)

    assert "exec claude --dangerously-skip-permissions" in claude.launch_command
    assert "OPENCODE_PERMISSION=" in opencode.launch_command
    assert "exec opencode" in opencode.launch_command
    assert "skip-permissions" not in plain.launch_command


def test_compute_worktree_path_expands_template(tmp_path: Path) -> None:
    repo = tmp_path / "app"

    assert compute_worktree_path(repo, "feat/login") == tmp_path / "app-worktrees" / "feat-login"
    assert compute_worktree_path(repo, "fix", "/srv/trees/{session-id}", "abc123") == Path("/srv/trees/abc123")


def test_add_session_in_worktree_and_remove_with_branch(tmp_path: Path) -> None:
    repo = tmp_path / "app"
    repo.mkdir()
    git = FakeCommandRunner("git")
    git.queue(0, f"{repo}/.git\n", "")
    backend = FakeBackend()
    registry = SessionRegistry("default", backend, git_runner=git)
    worktree = tmp_path / "app-worktrees" / "feat-login"

    async def scenario():
        session = await registry.add_session(
            "login", repo, ToolKind.CLAUDE, yolo_mode=True, worktree_branch="feat/login"
        )
        created_calls = list(git.invocations)
        command = backend.panes[session.backend_handle].command
        git.queue(0)
        git.queue(1, "", "error: The branch 'feat/login' is not fully merged.")
        git.queue(0)
        await registry.remove_session(session.id, delete_branch=True)
        return session, created_calls, command

    session, created_calls, command = asyncio.run(scenario())

    assert session.working_directory == str(worktree)
    assert session.worktree_info is not None
    assert session.worktree_info.branch == "feat/login"
    assert session.worktree_info.main_repo_path == str(repo)
    assert backend.panes == {}
    assert "--dangerously-skip-permissions" in command
    assert created_calls == [
        ("-C", str(repo), "rev-parse", "--path-format=absolute", "--git-common-dir"),
        ("-C", str(repo), "worktree", "prune"),
        ("-C", str(repo), "worktree", "add", "-b", "feat/login", str(worktree)),
    ]
    assert git.invocations[3:] == [
        ("-C", str(repo), "worktree", "remove", "--force", str(worktree)),
        ("-C", str(repo), "branch", "-d", "feat/login"),
        ("-C", str(repo), "branch", "-D", "feat/login"),
    ]
    assert registry.list_sessions() == []


def test_failed_worktree_cleanup_keeps_record(tmp_path: Path) -> None:
    repo = tmp_path / "app"
    repo.mkdir()
    git = FakeCommandRunner("git")
    git.queue(0, f"{repo}/.git\n", "")
    registry = SessionRegistry("default", FakeBackend(), git_runner=git)

    async def scenario():
        session = await registry.add_session("login", repo, worktree_branch="feat/login", start=False)
        git.queue(1, "", "fatal: worktree contains modified files")
        with pytest.raises(WorktreeError):
            await registry.remove_session(session.id)
        kept = [s.id for s in registry.list_sessions()]
        await registry.remove_session(session.id, delete_worktree=False)
        return session, kept

    session, kept = asyncio.run(scenario())
    assert kept == [session.id]
    assert registry.list_sessions() == []
