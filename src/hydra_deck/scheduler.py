"""Background status polling for every session of a profile."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Iterable

from .backends.base import ExecutionBackend
from .classifier import PrecedenceTable, classify, precedence_table
from .config import DeckSettings
from .errors import BackendUnavailableError, NotFoundError
from .session.models import Session, SessionStatus, StatusSnapshot
from .session.registry import SessionRegistry

logger = logging.getLogger(__name__)


class _Source(Enum):
    CLASSIFIED = "classified"
    STOPPED = "stopped"
    FORCED = "forced"


class _Command(Enum):
    PAUSE = "pause"
    RESUME = "resume"
    REFRESH = "refresh"


@dataclass(slots=True)
class _ControlMessage:
    command: _Command
    session_id: str | None = None
    refresh: bool = False
    ack: asyncio.Future | None = None


# Returned by a control request when the poller task ended before answering.
_DEAD = object()


@dataclass(slots=True)
class _Observation:
    status: SessionStatus
    source: _Source


class StatusPoller:
    """Capture and classify every live session on a fixed cadence.

    The poller is the only writer of ``status``/``last_polled_at``. It runs
    as one asyncio task; other components talk to it through a control
    queue (pause with acknowledgement, resume, immediate refresh), so a
    pause only returns once no capture of that session is in flight.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        backend: ExecutionBackend,
        *,
        interval: float = 2.0,
        capture_lines: int = 50,
        capture_timeout: float = 3.0,
        debounce_polls: int = 1,
        backoff_interval: float = 10.0,
        precedence: PrecedenceTable | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._registry = registry
        self._backend = backend
        self._interval = interval
        self._capture_lines = capture_lines
        self._capture_timeout = capture_timeout
        self._debounce_polls = debounce_polls
        self._backoff_interval = backoff_interval
        self._precedence = dict(precedence or {})
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._paused: set[str] = set()
        self._pending: dict[str, tuple[SessionStatus, int]] = {}
        self._control: asyncio.Queue[_ControlMessage] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._backend_available = True
        self.snapshots: dict[str, StatusSnapshot] = {}

    @classmethod
    def from_settings(
        cls, registry: SessionRegistry, backend: ExecutionBackend, settings: DeckSettings
    ) -> "StatusPoller":
        return cls(
            registry,
            backend,
            interval=settings.poll_interval,
            capture_lines=settings.capture_lines,
            capture_timeout=settings.capture_timeout,
            debounce_polls=settings.debounce_polls,
            backoff_interval=settings.backoff_interval,
            precedence=precedence_table(settings.classifier_precedence),
        )

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def backend_available(self) -> bool:
        return self._backend_available

    @property
    def paused(self) -> frozenset[str]:
        return frozenset(self._paused)

    # Lifecycle

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"status-poller-{self._registry.profile}")

    async def stop(self) -> None:
        """Cancel the poller task; in-flight captures are killed, not awaited."""

        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # Control channel

    async def pause(self, session_id: str) -> None:
        """Stop polling ``session_id``; returns once the poller acknowledged."""

        if not self.running:
            self._paused.add(session_id)
            return

        if await self._request(_ControlMessage(_Command.PAUSE, session_id)) is _DEAD:
            self._paused.add(session_id)

    async def resume(self, session_id: str, *, refresh: bool = True) -> None:
        if not self.running:
            self._paused.discard(session_id)
            if refresh:
                await self.poll_session(session_id, after_attach=True)
            return
        self._control.put_nowait(_ControlMessage(_Command.RESUME, session_id, refresh=refresh))

    async def refresh_now(self, session_id: str | None = None) -> dict[str, SessionStatus]:
        """Poll one session, or all when ``None``, ahead of the next cycle.

        While the poller task runs, the request goes through its control
        queue so the task stays the only writer. Paused sessions are
        skipped and the debounce window applies as in a regular cycle.
        Returns the statuses written.
        """

        if not self.running:
            return await self._refresh(session_id)
        result = await self._request(_ControlMessage(_Command.REFRESH, session_id))
        return {} if result is _DEAD else result

    async def _request(self, message: _ControlMessage):
        message.ack = asyncio.get_running_loop().create_future()
        self._control.put_nowait(message)
        assert self._task is not None
        await asyncio.wait({message.ack, self._task}, return_when=asyncio.FIRST_COMPLETED)
        if not message.ack.done():
            # Poller died before handling the request.
            message.ack.cancel()
            return _DEAD
        return message.ack.result()

    async def _refresh(self, session_id: str | None) -> dict[str, SessionStatus]:
        if session_id is None:
            return await self.poll_once()
        status = await self.poll_session(session_id)
        return {} if status is None else {session_id: status}

    async def _handle(self, message: _ControlMessage):
        if message.command is _Command.PAUSE:
            self._paused.add(message.session_id)
            return None
        if message.command is _Command.RESUME:
            self._paused.discard(message.session_id)
            if message.refresh:
                await self.poll_session(message.session_id, after_attach=True)
            return None
        return await self._refresh(message.session_id)

    # Loop

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        delay = 0.0
        while True:
            deadline = loop.time() + delay
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    message = await asyncio.wait_for(self._control.get(), remaining)
                except asyncio.TimeoutError:
                    break
                try:
                    result = await self._handle(message)
                except Exception as exc:
                    logger.exception("Poller control message failed", extra={"command": message.command.value})
                    if message.ack is not None and not message.ack.done():
                        message.ack.set_exception(exc)
                else:
                    if message.ack is not None and not message.ack.done():
                        message.ack.set_result(result)

            try:
                await self.poll_once()
            except Exception:
                logger.exception("Status poll cycle failed", extra={"profile": self._registry.profile})
                self._backend_available = False
            delay = self._interval if self._backend_available else self._backoff_interval

    async def poll_once(self) -> dict[str, SessionStatus]:
        """Run one full cycle and return the status written for each polled session."""

        known = self._registry.list_sessions()
        self._forget(session.id for session in known)
        sessions = [s for s in known if s.id not in self._paused]
        if not sessions:
            return {}

        try:
            live = await asyncio.wait_for(self._backend.list_handles(), self._capture_timeout)
        except (BackendUnavailableError, asyncio.TimeoutError) as exc:
            if self._backend_available:
                logger.warning(
                    "Backend unavailable, marking sessions unknown",
                    extra={"backend": self._backend.name, "error": str(exc) or type(exc).__name__},
                )
            self._backend_available = False
            self._pending.clear()
            statuses = {session.id: SessionStatus.UNKNOWN for session in sessions}
            await self._registry.record_poll(statuses)
            return statuses

        if not self._backend_available:
            logger.info("Backend reachable again", extra={"backend": self._backend.name})
        self._backend_available = True

        observations = await asyncio.gather(*(self._observe(session, live) for session in sessions))
        return await self._record(zip(sessions, observations), debounce=True)

    async def poll_session(self, session_id: str, *, after_attach: bool = False) -> SessionStatus | None:
        """Poll a single session now.

        Paused sessions are left alone and return ``None``. ``after_attach``
        marks the refresh that follows a detach: it is the one poll that
        skips the debounce window.
        """

        if session_id in self._paused and not after_attach:
            return None
        try:
            session = self._registry.get_session(session_id)
        except NotFoundError:
            self._forget_one(session_id)
            return None

        try:
            alive = await asyncio.wait_for(self._backend.exists(session.backend_handle), self._capture_timeout)
        except (BackendUnavailableError, asyncio.TimeoutError):
            observation = _Observation(SessionStatus.UNKNOWN, _Source.FORCED)
        else:
            live = {session.backend_handle} if alive else set()
            observation = await self._observe(session, live)

        statuses = await self._record([(session, observation)], debounce=not after_attach)
        return statuses.get(session_id)

    def _forget(self, known_ids: Iterable[str]) -> None:
        """Drop debounce and snapshot state of sessions no longer in the registry."""

        known = set(known_ids)
        for session_id in [key for key in self._pending if key not in known]:
            del self._pending[session_id]
        for session_id in [key for key in self.snapshots if key not in known]:
            del self.snapshots[session_id]

    def _forget_one(self, session_id: str) -> None:
        self._pending.pop(session_id, None)
        self.snapshots.pop(session_id, None)

    async def _observe(self, session: Session, live: set[str]) -> _Observation:
        handle = session.backend_handle
        if handle not in live:
            return _Observation(SessionStatus.STOPPED, _Source.STOPPED)

        try:
            text = await asyncio.wait_for(
                self._backend.capture(handle, self._capture_lines), self._capture_timeout
            )
        except NotFoundError:
            return _Observation(SessionStatus.STOPPED, _Source.STOPPED)
        except asyncio.TimeoutError:
            logger.warning("Capture timed out", extra={"session_id": session.id, "handle": handle})
            return _Observation(SessionStatus.UNKNOWN, _Source.FORCED)
        except Exception as exc:
            logger.warning(
                "Capture failed",
                extra={"session_id": session.id, "handle": handle, "error": str(exc)},
            )
            return _Observation(SessionStatus.UNKNOWN, _Source.FORCED)

        status = classify(session.tool_kind, text, precedence=self._precedence.get(session.tool_kind))
        self.snapshots[session.id] = StatusSnapshot(
            session_id=session.id,
            raw_text=text,
            tool_kind=session.tool_kind,
            classified_state=status,
            captured_at=self._clock(),
        )
        return _Observation(status, _Source.CLASSIFIED)

    def _debounced(self, session: Session, observation: _Observation) -> SessionStatus:
        current, observed = session.status, observation.status
        if (
            observation.source is not _Source.CLASSIFIED
            or not current.is_waiting
            or observed.is_waiting
        ):
            self._pending.pop(session.id, None)
            return observed

        candidate, count = self._pending.get(session.id, (observed, 0))
        count = count + 1 if candidate is observed else 1
        if count > self._debounce_polls:
            self._pending.pop(session.id, None)
            return observed
        self._pending[session.id] = (observed, count)
        return current

    async def _record(
        self, observed: Iterable[tuple[Session, _Observation]], *, debounce: bool
    ) -> dict[str, SessionStatus]:
        statuses: dict[str, SessionStatus] = {}
        refreshed: set[str] = set()
        for session, observation in observed:
            if debounce:
                status = self._debounced(session, observation)
            else:
                self._pending.pop(session.id, None)
                status = observation.status
            statuses[session.id] = status
            if observation.source is not _Source.FORCED:
                refreshed.add(session.id)
            if observation.source is _Source.STOPPED:
                self.snapshots.pop(session.id, None)

        changed = await self._registry.record_poll(statuses, refreshed=refreshed, polled_at=self._clock())
        for session_id in changed:
            logger.debug(
                "Session status changed",
                extra={"session_id": session_id, "status": statuses[session_id].value},
            )
        return statuses


__all__ = ["StatusPoller"]
