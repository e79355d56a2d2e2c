"""Authoritative store of a profile's sessions and groups."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Callable, Collection, Mapping

from ..backends.base import ExecutionBackend
from ..backends.runner import CommandRunner
from ..errors import AlreadyExistsError, InvalidStateError, NotFoundError
from ..storage.profile_store import ProfileStore, ProfileStoreError
from .groups import GroupDeletePolicy, GroupForest
from .models import Group, Session, SessionStatus, ToolKind, WorktreeInfo, derive_handle, generate_id
from .worktree import DEFAULT_PATH_TEMPLATE, GitWorktree, compute_worktree_path

logger = logging.getLogger(__name__)

MIN_ID_PREFIX = 4


class SessionRegistry:
    """Own every session and group record of one profile.

    Record changes are serialized by a single :class:`asyncio.Lock` and
    persisted through the :class:`ProfileStore` before they return. Backend
    calls are made outside that lock.
    ``status`` and ``last_polled_at`` are written only through
    :meth:`record_poll`, which the status poller calls; every other field
    is changed only by the user-facing API.
    Queries return copies, so callers never observe a half-applied write.
    """

    def __init__(
        self,
        profile: str,
        backend: ExecutionBackend,
        store: ProfileStore | None = None,
        *,
        sessions: Collection[Session] = (),
        groups: Collection[Group] = (),
        session_prefix: str = "hd_",
        worktree_template: str = DEFAULT_PATH_TEMPLATE,
        git_runner: CommandRunner | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._profile = profile
        self._backend = backend
        self._store = store
        self._prefix = session_prefix
        self._worktree_template = worktree_template
        self._git_runner = git_runner
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = asyncio.Lock()
        self._busy: set[str] = set()
        self._reserved_handles: set[str] = set()
        self._groups = GroupForest(groups)
        self._sessions: dict[str, Session] = {}
        for session in sessions:
            if session.id in self._sessions:
                raise AlreadyExistsError(f"Duplicate session id '{session.id}'")
            self._sessions[session.id] = session

    @classmethod
    async def load(
        cls,
        profile: str,
        backend: ExecutionBackend,
        store: ProfileStore,
        *,
        session_prefix: str = "hd_",
        worktree_template: str = DEFAULT_PATH_TEMPLATE,
        git_runner: CommandRunner | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> "SessionRegistry":
        """Build a registry from persisted data, failing loudly on corruption."""

        sessions, groups = await asyncio.to_thread(store.load)
        try:
            registry = cls(
                profile,
                backend,
                store,
                sessions=sessions,
                groups=groups,
                session_prefix=session_prefix,
                worktree_template=worktree_template,
                git_runner=git_runner,
                clock=clock,
            )
            registry._groups.validate()
        except (AlreadyExistsError, NotFoundError, InvalidStateError) as exc:
            raise ProfileStoreError(f"Profile '{profile}' has inconsistent data: {exc}") from exc

        for session in registry._sessions.values():
            if session.group_id is not None and session.group_id not in registry._groups:
                raise ProfileStoreError(
                    f"Session '{session.id}' references missing group '{session.group_id}'"
                )
        logger.info(
            "Loaded profile",
            extra={"profile": profile, "sessions": len(sessions), "groups": len(groups)},
        )
        return registry

    @property
    def profile(self) -> str:
        return self._profile

    @property
    def backend(self) -> ExecutionBackend:
        return self._backend

    # Queries

    def list_sessions(self, group_id: str | None = None, *, recursive: bool = True) -> list[Session]:
        """Return sessions, optionally only those inside ``group_id``."""

        sessions = list(self._sessions.values())
        if group_id is not None:
            members = set(self._groups.subtree(group_id)) if recursive else {self._groups.get(group_id).id}
            sessions = [session for session in sessions if session.group_id in members]
        return [session.model_copy() for session in sessions]

    def get_session(self, session_id: str) -> Session:
        return self._require_session(session_id).model_copy()

    def find_session(self, identifier: str) -> Session:
        """Resolve an id, a unique id prefix or a unique title."""

        identifier = identifier.strip()
        if identifier in self._sessions:
            return self._sessions[identifier].model_copy()

        if len(identifier) >= MIN_ID_PREFIX:
            by_prefix = [s for s in self._sessions.values() if s.id.startswith(identifier)]
            if len(by_prefix) == 1:
                return by_prefix[0].model_copy()
            if len(by_prefix) > 1:
                raise InvalidStateError(f"Id prefix '{identifier}' matches several sessions")

        by_title = [s for s in self._sessions.values() if s.title == identifier]
        if len(by_title) == 1:
            return by_title[0].model_copy()
        if len(by_title) > 1:
            raise InvalidStateError(f"Title '{identifier}' matches several sessions; use the id")
        raise NotFoundError(f"Session '{identifier}' not found")

    def list_groups(self) -> list[Group]:
        return [group.model_copy() for group in self._groups.ordered()]

    def get_group(self, group_id: str) -> Group:
        return self._groups.get(group_id).model_copy()

    def status_counts(self) -> dict[SessionStatus, int]:
        counts = {status: 0 for status in SessionStatus}
        for session in self._sessions.values():
            counts[session.status] += 1
        return counts

    # Session mutations
    #
    # Backend calls run outside the lock. A session with a backend call in
    # flight is busy and rejects other process-level operations until the
    # call settles.

    async def add_session(
        self,
        title: str,
        working_directory: str | Path,
        tool_kind: ToolKind | str = ToolKind.UNKNOWN,
        *,
        group_id: str | None = None,
        command: str = "",
        start: bool = True,
        yolo_mode: bool = False,
        worktree_branch: str | None = None,
        create_branch: bool = True,
    ) -> Session:
        """Register a session and, unless ``start`` is False, launch its process.

        With ``worktree_branch`` the session runs in a new git worktree of
        the repository containing ``working_directory``, checked out on that
        branch.
        """

        directory = Path(working_directory).expanduser()
        if not directory.is_dir():
            raise NotFoundError(f"Working directory '{directory}' does not exist")

        async with self._lock:
            if group_id is not None:
                self._groups.get(group_id)

            session_id = generate_id()
            while session_id in self._sessions:
                session_id = generate_id()
            handle = derive_handle(self._prefix, self._profile, title, session_id)
            self._ensure_handle_free(handle)

            session = Session(
                id=session_id,
                title=title,
                working_directory=str(directory.resolve()),
                backend_handle=handle,
                tool_kind=ToolKind(tool_kind),
                command=command,
                group_id=group_id,
                yolo_mode=yolo_mode,
                status=SessionStatus.UNKNOWN if start else SessionStatus.STOPPED,
                created_at=self._clock(),
            )
            self._reserved_handles.add(handle)

        try:
            worktree: GitWorktree | None = None
            if worktree_branch:
                worktree = await GitWorktree.discover(directory, self._git_runner)
                path = compute_worktree_path(
                    worktree.repo_path, worktree_branch, self._worktree_template, session_id
                )
                await worktree.create(worktree_branch, path, create_branch=create_branch)
                session = session.model_copy(
                    update={
                        "working_directory": str(path),
                        "worktree_info": WorktreeInfo(
                            branch=worktree_branch,
                            main_repo_path=str(worktree.repo_path),
                            created_at=self._clock(),
                        ),
                    }
                )

            if start:
                try:
                    await self._backend.create(handle, session.launch_command, session.working_directory)
                except Exception:
                    if worktree is not None:
                        await worktree.remove(session.working_directory, force=True)
                    raise

            async with self._lock:
                if session.group_id is not None and session.group_id not in self._groups:
                    # The group was deleted while the process was starting.
                    session = session.model_copy(update={"group_id": None})
                self._sessions[session.id] = session
                await self._save()
        finally:
            self._reserved_handles.discard(handle)

        logger.info(
            "Session added",
            extra={"session_id": session.id, "handle": handle, "tool": session.tool_kind.value},
        )
        return session.model_copy()

    async def remove_session(
        self,
        session_id: str,
        *,
        orphan: bool = False,
        delete_worktree: bool | None = None,
        delete_branch: bool = False,
    ) -> Session:
        """Kill the backend process (unless ``orphan``) and drop the record.

        A worktree the deck created is removed as well when
        ``delete_worktree`` is True, or when it is None and the worktree
        was marked for cleanup. ``delete_branch`` also deletes its branch.
        A failed kill or cleanup keeps the record.
        """

        async with self._claim(session_id) as session:
            if not orphan:
                await self._backend.kill(session.backend_handle)
            await self._cleanup_worktree(session, delete_worktree, delete_branch)
            async with self._lock:
                session = self._sessions.pop(session_id, session)
                await self._save()

        logger.info("Session removed", extra={"session_id": session_id, "orphan": orphan})
        return session

    async def rename_session(self, session_id: str, title: str) -> Session:
        async with self._lock:
            session = self._require_session(session_id)
            new_handle = derive_handle(self._prefix, self._profile, title, session.id)
            Session.model_validate({**session.model_dump(), "title": title, "backend_handle": new_handle})
            if new_handle != session.backend_handle:
                self._ensure_handle_free(new_handle)
            self._reserved_handles.add(new_handle)

        try:
            async with self._claim(session_id) as session:
                if new_handle != session.backend_handle and await self._backend.exists(session.backend_handle):
                    await self._backend.rename(session.backend_handle, new_handle)
                async with self._lock:
                    updated = self._sessions[session_id].model_copy(
                        update={"title": title.strip(), "backend_handle": new_handle}
                    )
                    self._sessions[session_id] = updated
                    await self._save()
        finally:
            self._reserved_handles.discard(new_handle)

        logger.info("Session renamed", extra={"session_id": session_id, "handle": new_handle})
        return updated.model_copy()

    async def move_session(self, session_id: str, group_id: str | None) -> Session:
        async with self._lock:
            session = self._require_session(session_id)
            if group_id is not None:
                self._groups.get(group_id)
            updated = session.model_copy(update={"group_id": group_id})
            self._sessions[session_id] = updated
            await self._save()
        return updated.model_copy()

    async def set_tool_kind(self, session_id: str, tool_kind: ToolKind | str) -> Session:
        async with self._lock:
            session = self._require_session(session_id)
            updated = session.model_copy(update={"tool_kind": ToolKind(tool_kind)})
            self._sessions[session_id] = updated
            await self._save()
        return updated.model_copy()

    async def start_session(self, session_id: str) -> Session:
        async with self._claim(session_id) as session:
            if await self._backend.exists(session.backend_handle):
                raise InvalidStateError(f"Session '{session.title}' is already running")
            await self._backend.create(
                session.backend_handle, session.launch_command, session.working_directory
            )
        logger.info("Session started", extra={"session_id": session_id})
        return session.model_copy()

    async def stop_session(self, session_id: str) -> Session:
        async with self._claim(session_id) as session:
            await self._backend.kill(session.backend_handle)
        logger.info("Session stopped", extra={"session_id": session_id})
        return session.model_copy()

    async def restart_session(self, session_id: str) -> Session:
        async with self._claim(session_id) as session:
            await self._backend.kill(session.backend_handle)
            await self._backend.create(
                session.backend_handle, session.launch_command, session.working_directory
            )
        logger.info("Session restarted", extra={"session_id": session_id})
        return session.model_copy()

    # Group mutations

    async def create_group(self, name: str, parent_id: str | None = None) -> Group:
        async with self._lock:
            group = self._groups.create(name, parent_id)
            await self._save()
        logger.info("Group created", extra={"group_id": group.id, "parent_id": parent_id})
        return group.model_copy()

    async def rename_group(self, group_id: str, name: str) -> Group:
        async with self._lock:
            group = self._groups.rename(group_id, name)
            await self._save()
        return group.model_copy()

    async def move_group(self, group_id: str, parent_id: str | None) -> Group:
        async with self._lock:
            group = self._groups.move(group_id, parent_id)
            await self._save()
        return group.model_copy()

    async def set_group_collapsed(self, group_id: str, collapsed: bool) -> Group:
        async with self._lock:
            group = self._groups.set_collapsed(group_id, collapsed)
            await self._save()
        return group.model_copy()

    async def delete_group(
        self, group_id: str, policy: GroupDeletePolicy | str = GroupDeletePolicy.FORBID
    ) -> list[str]:
        """Delete a group and its subgroups; return ids of sessions removed with it.

        With ``cascade`` every contained process is killed before any record
        is dropped. Sessions added to the subtree while the kills run are
        moved to the root instead of being deleted.
        """

        policy = GroupDeletePolicy(policy)
        async with self._lock:
            subtree = self._groups.subtree(group_id)
            members = set(subtree)
            contained = [s for s in self._sessions.values() if s.group_id in members]

            if policy is GroupDeletePolicy.FORBID and (contained or len(subtree) > 1):
                raise InvalidStateError(
                    f"Group '{group_id}' is not empty; choose reassign or cascade"
                )
            if policy is not GroupDeletePolicy.CASCADE:
                for session in contained:
                    self._sessions[session.id] = session.model_copy(update={"group_id": None})
                self._groups.remove(subtree)
                await self._save()
                contained = []
            else:
                self._mark_busy(contained)

        removed: list[str] = []
        if policy is GroupDeletePolicy.CASCADE:
            try:
                for session in contained:
                    await self._backend.kill(session.backend_handle)
                async with self._lock:
                    subtree = self._groups.subtree(group_id)
                    members = set(subtree)
                    for session in contained:
                        if self._sessions.pop(session.id, None) is not None:
                            removed.append(session.id)
                    for session in list(self._sessions.values()):
                        if session.group_id in members:
                            self._sessions[session.id] = session.model_copy(update={"group_id": None})
                    self._groups.remove(subtree)
                    await self._save()
            finally:
                self._busy.difference_update(session.id for session in contained)

        logger.info(
            "Group deleted",
            extra={"group_id": group_id, "policy": policy.value, "removed_sessions": len(removed)},
        )
        return removed

    # Poller writes

    async def record_poll(
        self,
        statuses: Mapping[str, SessionStatus],
        *,
        refreshed: Collection[str] = (),
        polled_at: datetime | None = None,
    ) -> list[str]:
        """Apply poll results; ids that vanished meanwhile are ignored.

        ``refreshed`` names the sessions whose status came from a successful
        capture or liveness check; only those get ``last_polled_at``
        updated. Returns the ids whose status changed.
        """

        polled_at = polled_at or self._clock()
        changed: list[str] = []
        async with self._lock:
            for session_id, status in statuses.items():
                session = self._sessions.get(session_id)
                if session is None:
                    continue
                update: dict[str, object] = {}
                if session.status is not status:
                    update["status"] = status
                    changed.append(session_id)
                if session_id in refreshed:
                    update["last_polled_at"] = polled_at
                if update:
                    self._sessions[session_id] = session.model_copy(update=update)
            if changed:
                await self._save()
        return changed

    # Internals

    def _require_session(self, session_id: str) -> Session:
        try:
            return self._sessions[session_id]
        except KeyError as exc:
            raise NotFoundError(f"Session '{session_id}' not found") from exc

    def _ensure_handle_free(self, handle: str) -> None:
        if handle in self._reserved_handles or any(
            session.backend_handle == handle for session in self._sessions.values()
        ):
            raise AlreadyExistsError(f"Backend handle '{handle}' is already in use")

    def _mark_busy(self, sessions: Collection[Session]) -> None:
        for session in sessions:
            if session.id in self._busy:
                raise InvalidStateError(f"Session '{session.title}' has a backend operation in progress")
        self._busy.update(session.id for session in sessions)

    @asynccontextmanager
    async def _claim(self, session_id: str) -> AsyncIterator[Session]:
        """Hold ``session_id`` busy for the duration of a backend call."""

        async with self._lock:
            session = self._require_session(session_id)
            self._mark_busy([session])
        try:
            yield session
        finally:
            self._busy.discard(session_id)

    async def _cleanup_worktree(self, session: Session, delete_worktree: bool | None, delete_branch: bool) -> None:
        info = session.worktree_info
        if info is None or not info.managed:
            return
        if delete_worktree is None:
            delete_worktree = info.cleanup_on_delete
        if not delete_worktree and not delete_branch:
            return

        worktree = GitWorktree(info.main_repo_path, self._git_runner)
        if delete_worktree:
            await worktree.remove(session.working_directory, force=True)
        if delete_branch:
            await worktree.delete_branch(info.branch)

    async def _save(self) -> None:
        if self._store is None:
            return
        await asyncio.to_thread(self._store.save, list(self._sessions.values()), list(self._groups))


__all__ = ["SessionRegistry"]
