from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from threading import Event
from typing import Callable, Protocol

from .config import AppConfig, ConfigError
from .heartbeat import Heartbeat, HeartbeatWriter
from .session import AuthError, FetchError, SessionManager
from .state import PersistError, SeenSet, StateStore
from .tickets import Ticket, TicketFetcher
from .toast import DispatchError, Notification, build_dispatcher, build_notification, resolve_logo_path

LOGGER = logging.getLogger(__name__)


class CycleState(enum.Enum):
    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    FETCHING = "fetching"
    DIFFING = "diffing"
    PERSISTING = "persisting"
    NOTIFYING = "notifying"
    HEARTBEAT_WRITING = "heartbeat_writing"
    SLEEPING = "sleeping"


class Dispatcher(Protocol):
    def dispatch(self, notification: Notification) -> None: ...


@dataclass(frozen=True)
class CycleResult:
    ok: bool
    new_count: int
    notified_ids: list[int] = field(default_factory=list)
    suppressed_ids: list[int] = field(default_factory=list)


def dedupe_tickets(tickets: list[Ticket]) -> list[Ticket]:
    seen: set[int] = set()
    unique: list[Ticket] = []
    for ticket in tickets:
        if ticket.id in seen:
            continue
        seen.add(ticket.id)
        unique.append(ticket)
    return unique


class PollEngine:
    """Runs poll cycles: authenticate, fetch, diff, persist, notify, heartbeat."""

    def __init__(
        self,
        *,
        sessions: SessionManager,
        fetcher: TicketFetcher,
        store: StateStore,
        dispatcher: Dispatcher,
        heartbeat: HeartbeatWriter,
        poll_seconds: int,
        first_run_notify: bool = False,
        image_path: str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.sessions = sessions
        self.fetcher = fetcher
        self.store = store
        self.dispatcher = dispatcher
        self.heartbeat = heartbeat
        self.poll_seconds = poll_seconds
        self.first_run_notify = first_run_notify
        self.image_path = image_path
        self._clock = clock
        self._first_run_done = False
        # loaded once; later cycles keep appending even when saves fail
        self._seen: SeenSet | None = None
        self.state = CycleState.IDLE

    def _transition(self, state: CycleState) -> None:
        LOGGER.debug(
            "Cycle state %s -> %s",
            self.state.value,
            state.value,
            extra={"category": "cycle"},
        )
        self.state = state

    def _finish(self, result: CycleResult) -> CycleResult:
        self._transition(CycleState.HEARTBEAT_WRITING)
        self.heartbeat.write(
            Heartbeat(ts=int(self._clock()), ok=result.ok, new=result.new_count)
        )
        return result

    def run_cycle(self) -> CycleResult:
        """One poll cycle. Only ConfigError escapes."""
        self._transition(CycleState.AUTHENTICATING)
        try:
            self.sessions.ensure_session()
        except AuthError as exc:
            LOGGER.warning("Authentication failed: %s", exc, extra={"category": "session"})
            return self._finish(CycleResult(ok=False, new_count=0))

        self._transition(CycleState.FETCHING)
        try:
            tickets = self.sessions.call(self.fetcher.fetch_new_tickets)
        except AuthError as exc:
            LOGGER.warning(
                "Session rejected after re-authentication: %s",
                exc,
                extra={"category": "session"},
            )
            self.sessions.invalidate()
            return self._finish(CycleResult(ok=False, new_count=0))
        except FetchError as exc:
            LOGGER.warning("Ticket fetch failed: %s", exc, extra={"category": "fetch"})
            return self._finish(CycleResult(ok=False, new_count=0))

        self._transition(CycleState.DIFFING)
        if self._seen is None:
            self._seen = self.store.load()
        seen = self._seen
        tickets = dedupe_tickets(tickets)
        fresh = [ticket for ticket in tickets if ticket.id not in seen]
        first_run = not self._first_run_done and len(seen) == 0
        self._first_run_done = True

        self._transition(CycleState.PERSISTING)
        seen.update(ticket.id for ticket in fresh)
        persisted = True
        try:
            self.store.save(seen)
        except PersistError as exc:
            persisted = False
            LOGGER.error(
                "State persistence failed, notifying from memory: %s",
                exc,
                extra={"category": "state"},
            )

        if first_run and self.first_run_notify:
            LOGGER.info(
                "First run: marked %s 'New' ticket(s) as seen without notifying",
                len(fresh),
                extra={"category": "cycle"},
            )
            return self._finish(
                CycleResult(
                    ok=persisted,
                    new_count=0,
                    suppressed_ids=[ticket.id for ticket in fresh],
                )
            )

        self._transition(CycleState.NOTIFYING)
        notified: list[int] = []
        for ticket in fresh:
            try:
                self.dispatcher.dispatch(build_notification(ticket, image_path=self.image_path))
            except DispatchError as exc:
                LOGGER.warning(
                    "Notification for ticket #%s failed: %s",
                    ticket.id,
                    exc,
                    extra={"category": "notify"},
                )
                continue
            notified.append(ticket.id)
        if fresh:
            LOGGER.info(
                "Notified %s of %s new ticket(s): %s",
                len(notified),
                len(fresh),
                notified,
                extra={"category": "notify"},
            )
        return self._finish(CycleResult(ok=persisted, new_count=len(notified), notified_ids=notified))

    def _safe_cycle(self) -> CycleResult:
        try:
            return self.run_cycle()
        except ConfigError:
            raise
        except Exception as exc:
            LOGGER.exception("Cycle error: %s", exc, extra={"category": "error"})
            return self._finish(CycleResult(ok=False, new_count=0))

    def run_forever(self, stop_event: Event) -> None:
        """Loop until ``stop_event`` is set; checked only between cycles."""
        LOGGER.info(
            "Polling every %ss",
            self.poll_seconds,
            extra={"category": "startup"},
        )
        try:
            while not stop_event.is_set():
                self._safe_cycle()
                self._transition(CycleState.SLEEPING)
                stop_event.wait(self.poll_seconds)
                self._transition(CycleState.IDLE)
        finally:
            LOGGER.info("Poll loop stopping", extra={"category": "shutdown"})
            self.sessions.close()


def build_engine(config: AppConfig) -> PollEngine:
    sessions = SessionManager(config)
    fetcher = TicketFetcher(
        sessions,
        config.ticket_url,
        max_rows=config.max_rows,
        debug_list=config.debug_list,
    )
    return PollEngine(
        sessions=sessions,
        fetcher=fetcher,
        store=StateStore(Path(config.state_file)),
        dispatcher=build_dispatcher(config),
        heartbeat=HeartbeatWriter(Path(config.heartbeat_file)),
        poll_seconds=config.poll_seconds,
        first_run_notify=config.first_run_notify,
        image_path=resolve_logo_path(config.logo_path),
    )
