"""Per-tick sweeps over agent records in the ticket store.

- stale liveness: agents still claiming to run with no update for
  DEAD_AGENT_TIMEOUT are marked dead (catches crashes that skipped cleanup)
- stalled assignment: active agents holding work with no update for
  STALLED_ASSIGNMENT_TIMEOUT are reported to their project's monitor
- orphaned work: dead agents that still hold work are reported for
  reassignment

Reports are advisory; nothing here kills a session.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta

from warden.core.events import EventLog, EventType
from warden.core.identity import AgentIdentity, IdentityError, Role, parse_ticket_id
from warden.core.mail import Mailbox, MailboxError
from warden.core.tickets import (
    AGENT_DESCRIPTION_FIELDS,
    Ticket,
    TicketStore,
    TicketStoreError,
    format_agent_description,
)
from warden.core.utils import Clock, format_duration

logger = logging.getLogger(__name__)

DEAD_AGENT_TIMEOUT = timedelta(minutes=15)
STALLED_ASSIGNMENT_TIMEOUT = timedelta(minutes=30)

AGENT_ISSUE_TYPE = "agent"
ACTIVE_AGENT_STATES = frozenset({"running", "working"})
DEAD_STATE = "dead"


@dataclass
class SweepReport:
    marked_dead: list[str] = field(default_factory=list)
    stalled: list[str] = field(default_factory=list)
    orphaned: list[str] = field(default_factory=list)


def _free_text(description: str) -> str:
    """Description lines that are not agent fields."""
    kept = []
    for line in description.splitlines():
        key, sep, _ = line.partition(":")
        if sep and key.strip() in AGENT_DESCRIPTION_FIELDS:
            continue
        kept.append(line)
    return "\n".join(kept).strip()


class SweepChecker:
    """Runs the three sweeps once per heartbeat tick."""

    def __init__(
        self,
        store: TicketStore,
        mailbox: Mailbox,
        events: EventLog,
        clock: Clock | None = None,
    ):
        self.store = store
        self.mailbox = mailbox
        self.events = events
        self.clock = clock or Clock()
        # (ticket id, work ref, updated_at) already reported; one notice per episode
        self._notified: set[tuple[str, str, str]] = set()

    def _agents(self) -> list[Ticket]:
        return self.store.list(issue_type=AGENT_ISSUE_TYPE)

    def run(self, projects: list[str]) -> SweepReport:
        """Run every sweep. Store failures skip the sweep for this tick."""
        report = SweepReport()
        try:
            agents = self._agents()
        except TicketStoreError as e:
            logger.warning(f"Sweeps skipped; cannot list agents: {e}")
            return report

        report.marked_dead = self.sweep_stale_agents(agents)
        for project in projects:
            report.stalled.extend(self.sweep_stalled_assignments(agents, project))
        report.orphaned = self.sweep_orphaned_work(agents)

        # Markers only matter for tickets that still exist.
        live = {ticket.id for ticket in agents}
        self._notified = {marker for marker in self._notified if marker[0] in live}
        return report

    # --- Stale liveness ---

    def sweep_stale_agents(self, agents: list[Ticket]) -> list[str]:
        """Mark agents dead whose running state has not been refreshed."""
        now = self.clock.now()
        marked = []
        for ticket in agents:
            if ticket.state not in ACTIVE_AGENT_STATES or ticket.updated_at is None:
                continue
            age = now - ticket.updated_at
            if age <= DEAD_AGENT_TIMEOUT:
                continue

            fields = {**ticket.agent_fields, "agent_state": DEAD_STATE}
            note = _free_text(ticket.description)
            update = {"description": format_agent_description(fields, note=note)}
            if ticket.agent_state:
                update["agent_state"] = DEAD_STATE
            try:
                self.store.update(ticket.id, **update)
            except TicketStoreError as e:
                logger.warning(f"Failed to mark {ticket.id} dead: {e}")
                continue

            # The in-memory copy now reflects the update for the orphan sweep.
            ticket.description = update["description"]
            if ticket.agent_state:
                ticket.agent_state = DEAD_STATE

            logger.info(f"Marked {ticket.id} dead (no update for {format_duration(age.total_seconds())})")
            self.events.append(EventType.AGENT_MARKED_DEAD, agent=ticket.id, age=age.total_seconds())
            marked.append(ticket.id)
        return marked

    # --- Stalled assignments ---

    def sweep_stalled_assignments(self, agents: list[Ticket], project: str) -> list[str]:
        """Report active agents in ``project`` that hold work without progress."""
        now = self.clock.now()
        monitor = AgentIdentity(Role.MONITOR, project=project).address
        stalled = []
        for ticket in agents:
            identity = self._identity(ticket)
            if identity is None or identity.project != project:
                continue
            work = ticket.current_work
            if not work or ticket.state not in ACTIVE_AGENT_STATES or ticket.updated_at is None:
                continue
            age = now - ticket.updated_at
            if age <= STALLED_ASSIGNMENT_TIMEOUT:
                continue

            subject = f"STALLED: {identity.address} on {work}"
            body = (
                f"Agent {identity.address} holds {work} but has not updated in "
                f"{format_duration(age.total_seconds())}.\n"
                "Advisory only: no action has been taken."
            )
            if self._notify(ticket, monitor, subject, body):
                self.events.append(
                    EventType.STALLED_ASSIGNMENT,
                    agent=identity.address,
                    work=work,
                    age=age.total_seconds(),
                    notified=monitor,
                )
                stalled.append(ticket.id)
        return stalled

    # --- Orphaned work ---

    def sweep_orphaned_work(self, agents: list[Ticket]) -> list[str]:
        """Report dead agents that still hold a work reference."""
        orphaned = []
        for ticket in agents:
            work = ticket.current_work
            if ticket.state != DEAD_STATE or not work:
                continue
            identity = self._identity(ticket)
            if identity is None:
                continue
            if identity.project:
                recipient = AgentIdentity(Role.MONITOR, project=identity.project).address
            else:
                recipient = AgentIdentity(Role.COORDINATOR).address

            subject = f"ORPHANED: {work} held by dead {identity.address}"
            body = f"Agent {identity.address} is dead but still holds {work}. Reassign it."
            if self._notify(ticket, recipient, subject, body):
                self.events.append(
                    EventType.ORPHANED_WORK,
                    agent=identity.address,
                    work=work,
                    notified=recipient,
                )
                orphaned.append(ticket.id)
        return orphaned

    # --- Helpers ---

    def _identity(self, ticket: Ticket) -> AgentIdentity | None:
        try:
            return parse_ticket_id(ticket.id)
        except IdentityError:
            logger.debug(f"Skipping non-agent ticket {ticket.id}")
            return None

    def _notify(self, ticket: Ticket, to: str, subject: str, body: str) -> bool:
        """Send a notice once per (agent, work, last update). Returns True if sent."""
        marker = (ticket.id, ticket.current_work, ticket.updated_at.isoformat() if ticket.updated_at else "")
        if marker in self._notified:
            return False
        try:
            self.mailbox.send(to, subject, body)
        except MailboxError as e:
            logger.warning(f"Failed to notify {to} about {ticket.id}: {e}")
            return False
        self._notified.add(marker)
        logger.info(f"Notified {to}: {subject}")
        return True
