"""Mail-driven lifecycle requests (cycle, restart, shutdown).

Agents ask the health orchestrator's inbox to be cycled, restarted or shut
down. Each request is handled once within a tick:

    received -> validated -> claimed -> executed | rejected | failed

The message is deleted (claimed) before the action runs. A crash or failure
after that point loses the request; the agent has to ask again. A request
is never executed twice.
"""

import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path

from warden.core.agent_state import AgentStateError, AgentStateFile, PreconditionError
from warden.core.events import EventLog, EventType
from warden.core.health import EXIT_SHUTDOWN
from warden.core.identity import AgentIdentity, IdentityError, Role, parse_address
from warden.core.launcher import LaunchError, SessionLauncher
from warden.core.mail import Mailbox, MailboxError, Message
from warden.core.sessions import SessionError, TerminalSessions
from warden.core.state import SupervisorState
from warden.core.tickets import TicketStore, TicketStoreError
from warden.core.utils import Clock

logger = logging.getLogger(__name__)

LIFECYCLE_MARKER = "lifecycle:"
MAX_LIFECYCLE_MESSAGE_AGE = timedelta(hours=6)
# Pause between killing a session and recreating it under the same name.
RESTART_PAUSE_SECONDS = 3.0


class LifecycleError(Exception):
    """A lifecycle request could not be carried out."""

    pass


class LifecycleAction(str, Enum):
    """Transition an agent can request for itself.

    CYCLE and RESTART currently execute identically; only the startup
    beacon topic differs.
    """

    CYCLE = "cycle"
    RESTART = "restart"
    SHUTDOWN = "shutdown"

    @classmethod
    def from_text(cls, text: str) -> "LifecycleAction | None":
        value = text.strip().lower()
        if value == "stop":
            return cls.SHUTDOWN
        try:
            return cls(value)
        except ValueError:
            return None


class RequestOutcome(str, Enum):
    EXECUTED = "executed"
    REJECTED = "rejected"
    FAILED = "failed"
    STALE = "stale"
    CLAIM_FAILED = "claim_failed"


@dataclass
class LifecycleRequest:
    """One parsed request. Lives only while its message is processed."""

    sender: str
    action: LifecycleAction
    timestamp: datetime | None
    message_id: str


@dataclass
class ProcessedRequest:
    request: LifecycleRequest
    outcome: RequestOutcome
    detail: str = ""


def parse_message_timestamp(raw: str) -> datetime | None:
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


# Whole-body forms accepted when the body is not JSON.
PLAIN_TEXT_ACTIONS = {
    "restart": LifecycleAction.RESTART,
    "action: restart": LifecycleAction.RESTART,
    "shutdown": LifecycleAction.SHUTDOWN,
    "action: shutdown": LifecycleAction.SHUTDOWN,
    "stop": LifecycleAction.SHUTDOWN,
    "cycle": LifecycleAction.CYCLE,
    "action: cycle": LifecycleAction.CYCLE,
}


def _action_from_plain_text(text: str) -> LifecycleAction | None:
    return PLAIN_TEXT_ACTIONS.get(text.strip().lower())


def parse_lifecycle_request(message: Message) -> LifecycleRequest | None:
    """Extract a lifecycle request from a message, or None if it is not one.

    The subject must start with ``LIFECYCLE:`` (any case). The body is a JSON
    object with an ``action`` key; a body that is not JSON must be exactly one
    of the plain forms (``restart``, ``action: restart``, ``stop`` ...).
    Anything else, including an empty body, is not a request.
    """
    subject = message.subject.strip()
    if not subject.lower().startswith(LIFECYCLE_MARKER):
        return None

    body = message.body.strip()
    if not body:
        return None

    action: LifecycleAction | None = None
    try:
        decoded = json.loads(body)
    except json.JSONDecodeError:
        action = _action_from_plain_text(body)
    else:
        if isinstance(decoded, dict) and isinstance(decoded.get("action"), str):
            action = LifecycleAction.from_text(decoded["action"])
        elif isinstance(decoded, str):
            action = LifecycleAction.from_text(decoded)

    if action is None:
        return None

    return LifecycleRequest(
        sender=message.from_,
        action=action,
        timestamp=parse_message_timestamp(message.timestamp),
        message_id=message.id,
    )


class LifecycleProcessor:
    """Handles lifecycle requests addressed to the health orchestrator."""

    def __init__(
        self,
        root: Path,
        mailbox: Mailbox,
        sessions: TerminalSessions,
        store: TicketStore,
        launcher: SessionLauncher,
        events: EventLog,
        clock: Clock | None = None,
    ):
        self.root = Path(root)
        self.mailbox = mailbox
        self.sessions = sessions
        self.store = store
        self.launcher = launcher
        self.events = events
        self.clock = clock or Clock()
        self.inbox_address = AgentIdentity(Role.HEALTH_ORCHESTRATOR).address

    def process(self, state: SupervisorState) -> list[ProcessedRequest]:
        """Handle every pending lifecycle request, in inbox order."""
        try:
            messages = self.mailbox.inbox(self.inbox_address)
        except MailboxError as e:
            logger.warning(f"Cannot read {self.inbox_address} inbox: {e}")
            return []

        processed = []
        for message in messages:
            if message.read:
                continue
            request = parse_lifecycle_request(message)
            if request is None:
                continue
            processed.append(self.handle(state, request))
        return processed

    def _record(
        self,
        request: LifecycleRequest,
        outcome: RequestOutcome,
        event_type: EventType,
        detail: str = "",
    ) -> ProcessedRequest:
        self.events.append(
            event_type,
            sender=request.sender,
            action=request.action.value,
            message_id=request.message_id,
            detail=detail,
        )
        return ProcessedRequest(request=request, outcome=outcome, detail=detail)

    def handle(self, state: SupervisorState, request: LifecycleRequest) -> ProcessedRequest:
        """Run one request through the stale gate, claim, precondition and action."""
        label = f"{request.action.value} from {request.sender}"
        now = self.clock.now()

        if request.timestamp is not None and now - request.timestamp > MAX_LIFECYCLE_MESSAGE_AGE:
            age = now - request.timestamp
            logger.info(f"Discarding stale lifecycle request {label} (age {age})")
            try:
                self.mailbox.delete(request.message_id)
            except MailboxError as e:
                logger.warning(f"Failed to delete stale message {request.message_id}: {e}")
            return self._record(request, RequestOutcome.STALE, EventType.LIFECYCLE_STALE, f"age {age}")

        # Claim before execute: once deleted, the request cannot run twice.
        try:
            self.mailbox.delete(request.message_id)
        except MailboxError as e:
            logger.error(f"Cannot claim lifecycle request {label}; not executing: {e}")
            return ProcessedRequest(request=request, outcome=RequestOutcome.CLAIM_FAILED, detail=str(e))

        try:
            identity = parse_address(request.sender)
        except IdentityError as e:
            logger.error(f"Lifecycle request {label} failed: {e}")
            return self._record(request, RequestOutcome.FAILED, EventType.LIFECYCLE_FAILED, str(e))

        state_file = AgentStateFile(identity.state_file(self.root))
        try:
            state_file.verify_requesting(request.action.value)
        except PreconditionError as e:
            logger.error(f"Rejected lifecycle request {label}: {e}")
            return self._record(request, RequestOutcome.REJECTED, EventType.LIFECYCLE_REJECTED, str(e))
        except AgentStateError as e:
            logger.error(f"Lifecycle request {label} failed: {e}")
            return self._record(request, RequestOutcome.FAILED, EventType.LIFECYCLE_FAILED, str(e))

        self._log_agent_state(identity)

        try:
            self.execute(state, identity, request.action)
        except LifecycleError as e:
            logger.error(f"Lifecycle request {label} failed: {e}")
            return self._record(request, RequestOutcome.FAILED, EventType.LIFECYCLE_FAILED, str(e))

        if request.action != LifecycleAction.SHUTDOWN:
            try:
                state_file.clear_requesting(request.action.value)
            except AgentStateError as e:
                logger.warning(f"Executed {label} but could not clear its flag: {e}")

        logger.info(f"Executed lifecycle request {label}")
        return self._record(request, RequestOutcome.EXECUTED, EventType.LIFECYCLE_EXECUTED)

    def _log_agent_state(self, identity: AgentIdentity) -> None:
        try:
            agent_state = self.store.show(identity.ticket_id).state
        except TicketStoreError as e:
            logger.debug(f"No ticket state for {identity}: {e}")
            return
        logger.info(f"{identity} reports agent_state={agent_state or 'unknown'}")

    def execute(self, state: SupervisorState, identity: AgentIdentity, action: LifecycleAction) -> None:
        """Carry out an action for an agent.

        Raises:
            LifecycleError: If a session command or the relaunch fails.
        """
        session = identity.session_name
        try:
            running = self.sessions.has_session(session)
            if running:
                self.sessions.kill_session_with_processes(session)
                logger.info(f"Killed session {session} for {action.value}")
        except SessionError as e:
            raise LifecycleError(f"Cannot stop {session}: {e}") from e

        if action == LifecycleAction.SHUTDOWN:
            agent = state.get_agent_state(identity.key)
            agent.session = session
            agent.exit_reason = EXIT_SHUTDOWN
            agent.last_exited_at = self.clock.now()
            agent.respawn_scheduled_at = None
            agent.nudged_at = None
            return

        if running:
            # The old session must be gone before its name is reused.
            self.clock.sleep(RESTART_PAUSE_SECONDS)
        try:
            new_session = self.launcher.start(identity, topic=action.value)
        except LaunchError as e:
            raise LifecycleError(str(e)) from e
        state.clear_respawn(identity.key, new_session)

    def find_stuck_flags(self, identities: list[AgentIdentity]) -> dict[str, list[str]]:
        """Agents whose state files still carry a ``requesting_*`` flag.

        A leftover flag means a request was lost or never sent. Read-only.
        """
        stuck = {}
        for identity in identities:
            flags = AgentStateFile(identity.state_file(self.root)).staged_flags()
            if flags:
                stuck[identity.address] = flags
        return stuck
