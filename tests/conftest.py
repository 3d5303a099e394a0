# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the warden test suite.

Provides in-memory stand-ins for everything the supervisor talks to:
- terminal sessions, ticket store, mailbox
- convoy completion checker and change feed
- a clock that only moves when told to

Usage:
    Fixtures are discovered implicitly; request them by name.
"""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Callable

import pytest

from warden.core.config import DaemonConfig
from warden.core.convoy import ChangeFeedError
from warden.core.daemon import Supervisor
from warden.core.events import EventLog
from warden.core.launcher import RoleLaunchLoader, SessionLauncher
from warden.core.mail import MailboxError, Message
from warden.core.sessions import SessionError
from warden.core.tickets import Ticket, TicketStoreError

START = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


# =============================================================================
# Fakes
# =============================================================================


class FakeClock:
    """Clock whose wall and monotonic time advance together, on demand."""

    def __init__(self, start: datetime = START):
        self.current = start
        self.mono = 10_000.0
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return self.mono

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds=seconds)

    def advance(self, **kwargs: float) -> None:
        delta = timedelta(**kwargs)
        self.current += delta
        self.mono += delta.total_seconds()


class FakeSessions:
    """In-memory terminal session manager."""

    def __init__(self) -> None:
        self.sessions: dict[str, Path] = {}
        self.env: dict[str, dict[str, str]] = {}
        self.created: list[str] = []
        self.killed: list[str] = []
        self.sent: list[tuple[str, str]] = []
        self.nudges: list[tuple[str, str]] = []
        self.probe_error: str | None = None
        self.new_session_error: str | None = None
        self.nudge_error: str | None = None

    def has_session(self, name: str) -> bool:
        if self.probe_error:
            raise SessionError(self.probe_error)
        return name in self.sessions

    def new_session(self, name: str, work_dir: Path) -> None:
        if self.new_session_error:
            raise SessionError(self.new_session_error)
        if name in self.sessions:
            raise SessionError(f"duplicate session: {name}")
        self.sessions[name] = Path(work_dir)
        self.created.append(name)

    def kill_session(self, name: str) -> None:
        if name not in self.sessions:
            raise SessionError(f"can't find session: {name}")
        del self.sessions[name]
        self.killed.append(name)

    def kill_session_with_processes(self, name: str) -> None:
        self.kill_session(name)

    def send_keys(self, name: str, keys: str) -> None:
        if name not in self.sessions:
            raise SessionError(f"can't find session: {name}")
        self.sent.append((name, keys))

    def nudge_session(self, name: str, message: str) -> None:
        if self.nudge_error:
            raise SessionError(self.nudge_error)
        if name not in self.sessions:
            raise SessionError(f"can't find session: {name}")
        self.nudges.append((name, message))

    def set_environment(self, name: str, key: str, value: str) -> None:
        self.env.setdefault(name, {})[key] = value


class FakeTicketStore:
    """In-memory ticket store with tracking relations."""

    def __init__(self) -> None:
        self.tickets: dict[str, Ticket] = {}
        # (convoy id, tracked reference) pairs
        self.tracks: list[tuple[str, str]] = []
        self.updates: list[tuple[str, dict[str, str]]] = []
        self.list_error: Exception | None = None
        self.show_error: Exception | None = None

    def add(self, ticket: Ticket) -> Ticket:
        self.tickets[ticket.id] = ticket
        return ticket

    def show(self, ticket_id: str) -> Ticket:
        if self.show_error:
            raise self.show_error
        if ticket_id not in self.tickets:
            raise TicketStoreError(f"Ticket not found: {ticket_id}")
        return self.tickets[ticket_id]

    def list(
        self,
        issue_type: str | None = None,
        status: str | None = None,
        label: str | None = None,
    ) -> list[Ticket]:
        if self.list_error:
            raise self.list_error
        return [
            t
            for t in self.tickets.values()
            if (issue_type is None or t.issue_type == issue_type)
            and (status is None or t.status == status)
            and (label is None or label in t.labels)
        ]

    def update(self, ticket_id: str, **fields: str) -> None:
        self.updates.append((ticket_id, dict(fields)))
        ticket = self.tickets[ticket_id]
        self.tickets[ticket_id] = ticket.model_copy(update=fields)

    def tracking_aggregates(self, item_id: str) -> list[str]:
        return sorted(
            {convoy for convoy, ref in self.tracks if ref == item_id or ref.endswith(f":{item_id}")}
        )


class FakeMailbox:
    """In-memory mailbox."""

    def __init__(self) -> None:
        self.messages: list[Message] = []
        self.sent: list[tuple[str, str, str]] = []
        self.deleted: list[str] = []
        self.delete_error: str | None = None
        self.inbox_error: str | None = None
        self.send_error: str | None = None

    def add(self, **fields: Any) -> Message:
        fields.setdefault("id", f"msg-{len(self.messages) + 1}")
        fields.setdefault("to", "health")
        message = Message.model_validate(fields)
        self.messages.append(message)
        return message

    def ids(self) -> list[str]:
        return [m.id for m in self.messages]

    def inbox(self, identity: str) -> list[Message]:
        if self.inbox_error:
            raise MailboxError(self.inbox_error)
        return [m for m in self.messages if m.to.rstrip("/") == identity]

    def delete(self, message_id: str) -> None:
        if self.delete_error:
            raise MailboxError(self.delete_error)
        self.messages = [m for m in self.messages if m.id != message_id]
        self.deleted.append(message_id)

    def send(self, to: str, subject: str, body: str) -> None:
        if self.send_error:
            raise MailboxError(self.send_error)
        self.sent.append((to, subject, body))


class FakeCompletionChecker:
    """Closes a convoy once every member it tracks is closed. Idempotent."""

    def __init__(self, store: FakeTicketStore) -> None:
        self.store = store
        self.calls: list[str] = []

    def check(self, convoy_id: str) -> None:
        self.calls.append(convoy_id)
        members = [ref.split(":")[-1] for convoy, ref in self.store.tracks if convoy == convoy_id]
        if all(self.store.tickets[m].status == "closed" for m in members):
            convoy = self.store.tickets[convoy_id]
            if convoy.status != "closed":
                self.store.tickets[convoy_id] = convoy.model_copy(update={"status": "closed"})


class FakeChangeFeed:
    """Change feed driven by scripted subscriptions.

    Each script is a list of lines; an Exception entry is raised at that
    point. Once scripts run out, a subscription stays open (idle) until
    cancelled.
    """

    def __init__(self, scripts: list[list[Any]] | None = None) -> None:
        self.scripts = list(scripts or [])
        self.subscriptions = 0
        self.closed = 0

    async def subscribe(self):
        self.subscriptions += 1
        try:
            if not self.scripts:
                await asyncio.Event().wait()
                return
            for item in self.scripts.pop(0):
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            self.closed += 1


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sessions() -> FakeSessions:
    return FakeSessions()


@pytest.fixture
def store() -> FakeTicketStore:
    return FakeTicketStore()


@pytest.fixture
def mailbox() -> FakeMailbox:
    return FakeMailbox()


@pytest.fixture
def checker(store: FakeTicketStore) -> FakeCompletionChecker:
    return FakeCompletionChecker(store)


@pytest.fixture
def feed() -> FakeChangeFeed:
    return FakeChangeFeed()


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Workspace root with an empty daemon directory."""
    root = tmp_path / "town"
    (root / "daemon").mkdir(parents=True)
    return root


@pytest.fixture
def config(workspace: Path) -> DaemonConfig:
    return DaemonConfig(root=workspace, projects=["gastown"], heartbeat_interval=300.0)


@pytest.fixture
def events(config: DaemonConfig) -> EventLog:
    return EventLog(config.events_file)


@pytest.fixture
def launcher(sessions: FakeSessions, workspace: Path, clock: FakeClock) -> SessionLauncher:
    return SessionLauncher(
        sessions,
        workspace,
        "exec claude",
        role_configs=RoleLaunchLoader().load(),
        clock=clock,
    )


@pytest.fixture
def supervisor(
    config: DaemonConfig,
    sessions: FakeSessions,
    store: FakeTicketStore,
    mailbox: FakeMailbox,
    checker: FakeCompletionChecker,
    feed: FakeChangeFeed,
    launcher: SessionLauncher,
    events: EventLog,
    clock: FakeClock,
) -> Supervisor:
    return Supervisor(
        config=config,
        sessions=sessions,
        store=store,
        mailbox=mailbox,
        checker=checker,
        feed=feed,
        launcher=launcher,
        events=events,
        clock=clock,
    )


@pytest.fixture
def make_ticket(store: FakeTicketStore) -> Callable[..., Ticket]:
    """Factory adding tickets to the fake store.

    Example:
        make_ticket("wd-gastown-monitor", heartbeat=clock.now())
    """

    def _make(
        ticket_id: str,
        issue_type: str = "agent",
        status: str = "open",
        agent_state: str = "",
        hook: str = "",
        updated_at: datetime | None = None,
        heartbeat: datetime | None = None,
        labels: list[str] | None = None,
        description: str = "",
    ) -> Ticket:
        labels = list(labels or [])
        if heartbeat is not None:
            labels.append(f"last_activity:{heartbeat.isoformat()}")
        if not description and (agent_state or hook):
            description = f"role_type: agent\nagent_state: {agent_state}\nhook: {hook}\n"
        return store.add(
            Ticket(
                id=ticket_id,
                issue_type=issue_type,
                status=status,
                labels=labels,
                updated_at=updated_at,
                description=description,
            )
        )

    return _make


@pytest.fixture
def write_agent_state(workspace: Path) -> Callable[[Path, dict[str, Any]], Path]:
    """Write an agent's durable state file (path relative to the workspace)."""

    def _write(relative: Path | str, data: dict[str, Any]) -> Path:
        path = workspace / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data))
        return path

    return _write


@pytest.fixture
def feed_error() -> ChangeFeedError:
    return ChangeFeedError("activity stream closed unexpectedly")
