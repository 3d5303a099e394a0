"""Agent health classification and remediation.

``evaluate_health`` is a pure classifier. ``HealthMonitor`` gathers its
inputs (session liveness, ticket heartbeat, time since death), applies the
result (respawn, nudge, kill) and keeps the per-agent bookkeeping in
SupervisorState up to date.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from warden.core.events import EventLog, EventType
from warden.core.identity import AgentIdentity
from warden.core.launcher import LaunchError, SessionLauncher
from warden.core.policy import (
    CRITICAL_STUCK_THRESHOLD,
    RespawnPolicy,
    RespawnTrigger,
    get_respawn_policy,
)
from warden.core.sessions import SessionError, TerminalSessions
from warden.core.state import AgentRuntimeState, SupervisorState
from warden.core.tickets import TicketStore, TicketStoreError
from warden.core.utils import Clock, format_duration

logger = logging.getLogger(__name__)

EXIT_CRASH = "crash"
EXIT_STUCK = "stuck"
EXIT_SHUTDOWN = "shutdown"

NUDGE_MESSAGE = (
    "[WARDEN] No heartbeat from you in {age}. "
    "If you are waiting on something, record progress; otherwise resume your patrol."
)


class HealthStatus(str, Enum):
    """Classification of one agent at one instant."""

    HEALTHY = "healthy"
    NEEDS_RESPAWN = "needs_respawn"
    WAITING_RESPAWN = "waiting_respawn"
    STUCK = "stuck"


@dataclass
class HealthCheckResult:
    """Outcome of a single health evaluation. Never persisted."""

    status: HealthStatus
    session_alive: bool
    heartbeat_age: timedelta | None = None
    last_heartbeat: datetime | None = None
    message: str = ""


def evaluate_health(
    session_alive: bool,
    heartbeat_age: timedelta | None,
    heartbeat_recorded: bool,
    policy: RespawnPolicy,
    time_since_death: timedelta | None,
    last_heartbeat: datetime | None = None,
) -> HealthCheckResult:
    """Classify an agent. Rules are checked in priority order.

    Args:
        session_alive: Whether the agent's terminal session exists.
        heartbeat_age: Time since the last recorded heartbeat, if known.
        heartbeat_recorded: Whether the agent has ever recorded a heartbeat.
        policy: Respawn policy for the agent's role.
        time_since_death: Time since the session was seen dead, or None if
            the agent never died (cold start).
        last_heartbeat: Passed through to the result.
    """
    if not session_alive:
        if time_since_death is None:
            return HealthCheckResult(
                status=HealthStatus.NEEDS_RESPAWN,
                session_alive=False,
                heartbeat_age=heartbeat_age,
                last_heartbeat=last_heartbeat,
                message="session not running (never started)",
            )
        if time_since_death >= policy.delay:
            return HealthCheckResult(
                status=HealthStatus.NEEDS_RESPAWN,
                session_alive=False,
                heartbeat_age=heartbeat_age,
                last_heartbeat=last_heartbeat,
                message=f"session dead for {format_duration(time_since_death.total_seconds())}",
            )
        remaining = policy.delay - time_since_death
        return HealthCheckResult(
            status=HealthStatus.WAITING_RESPAWN,
            session_alive=False,
            heartbeat_age=heartbeat_age,
            last_heartbeat=last_heartbeat,
            message=f"respawn in {format_duration(remaining.total_seconds())}",
        )

    if heartbeat_age is not None and heartbeat_age > policy.stuck_threshold:
        if heartbeat_recorded:
            return HealthCheckResult(
                status=HealthStatus.STUCK,
                session_alive=True,
                heartbeat_age=heartbeat_age,
                last_heartbeat=last_heartbeat,
                message=f"no heartbeat for {format_duration(heartbeat_age.total_seconds())}",
            )
        return HealthCheckResult(
            status=HealthStatus.HEALTHY,
            session_alive=True,
            heartbeat_age=heartbeat_age,
            last_heartbeat=last_heartbeat,
            message="first startup grace period",
        )

    return HealthCheckResult(
        status=HealthStatus.HEALTHY,
        session_alive=True,
        heartbeat_age=heartbeat_age,
        last_heartbeat=last_heartbeat,
        message="" if heartbeat_recorded else "first startup grace period",
    )


class HealthMonitor:
    """Runs health checks for patrolled agents and applies remediation.

    Respawn delays are measured against monotonic marks held here, so a wall
    clock step cannot make an agent respawn early or late. The persisted
    ``last_exited_at`` only seeds the mark after a supervisor restart.
    """

    def __init__(
        self,
        sessions: TerminalSessions,
        store: TicketStore,
        launcher: SessionLauncher,
        events: EventLog,
        clock: Clock | None = None,
    ):
        self.sessions = sessions
        self.store = store
        self.launcher = launcher
        self.events = events
        self.clock = clock or Clock()
        self._death_marks: dict[str, float] = {}

    # --- Probes ---

    def _probe_heartbeat(self, identity: AgentIdentity) -> datetime | None:
        ticket = self.store.show(identity.ticket_id)
        return ticket.last_activity

    def _time_since_death(self, key: str, agent: AgentRuntimeState) -> timedelta | None:
        if agent.last_exited_at is None:
            self._death_marks.pop(key, None)
            return None
        if key not in self._death_marks:
            elapsed = max(0.0, (self.clock.now() - agent.last_exited_at).total_seconds())
            self._death_marks[key] = self.clock.monotonic() - elapsed
        return timedelta(seconds=max(0.0, self.clock.monotonic() - self._death_marks[key]))

    def trigger_satisfied(self, identity: AgentIdentity, trigger: RespawnTrigger) -> bool:
        """Whether a dead agent's respawn trigger currently holds.

        A failing probe counts as "no work"; the next tick retries.
        """
        if trigger == RespawnTrigger.ALWAYS:
            return True
        label = f"project:{identity.project}"
        try:
            if trigger == RespawnTrigger.QUEUE_NOT_EMPTY:
                return bool(self.store.list(issue_type="merge-request", status="open", label=label))
            if trigger == RespawnTrigger.WORK_AVAILABLE:
                tasks = self.store.list(issue_type="task", status="open", label=label)
                return any(not t.assignee for t in tasks)
        except TicketStoreError as e:
            logger.warning(f"Trigger probe for {identity} failed: {e}")
            return False
        return False

    # --- Checks ---

    def check_agent(self, state: SupervisorState, identity: AgentIdentity) -> HealthCheckResult | None:
        """Evaluate one agent and act on the result.

        Returns None when the agent was deliberately shut down and is left
        alone.
        """
        key = identity.key
        session = identity.session_name
        agent = state.get_agent_state(key)
        policy = get_respawn_policy(identity.role)

        try:
            alive = self.sessions.has_session(session)
        except SessionError as e:
            logger.warning(f"Session probe for {identity} failed: {e}")
            return HealthCheckResult(
                status=HealthStatus.HEALTHY,
                session_alive=True,
                message=f"session probe failed: {e}",
            )

        if alive:
            return self._check_alive(state, identity, agent, policy)

        if agent.exit_reason == EXIT_SHUTDOWN:
            logger.debug(f"{identity} was shut down on request; not respawning")
            return None

        if agent.last_exited_at is None and agent.session:
            # Known alive before, no death recorded yet: it crashed.
            state.schedule_respawn(key, session, identity.role.value, EXIT_CRASH, now=self.clock.now())
            self._death_marks[key] = self.clock.monotonic()
            logger.info(f"{identity} session {session} died; respawn scheduled")
            self.events.append(
                EventType.AGENT_RESPAWN_SCHEDULED,
                role=identity.role.value,
                project=identity.project,
                session=session,
                exit_reason=EXIT_CRASH,
            )

        result = evaluate_health(
            session_alive=False,
            heartbeat_age=None,
            heartbeat_recorded=False,
            policy=policy,
            time_since_death=self._time_since_death(key, agent),
        )

        if result.status == HealthStatus.NEEDS_RESPAWN:
            self._respawn(state, identity, policy, result)
        else:
            logger.info(f"{identity}: {result.message}")
        return result

    def _check_alive(
        self,
        state: SupervisorState,
        identity: AgentIdentity,
        agent: AgentRuntimeState,
        policy: RespawnPolicy,
    ) -> HealthCheckResult:
        key = identity.key
        if agent.respawn_scheduled_at is not None or agent.exit_reason:
            # Came back without us (manual start or another supervisor).
            state.clear_respawn(key, identity.session_name)
        agent.session = identity.session_name
        self._death_marks.pop(key, None)

        try:
            last_heartbeat = self._probe_heartbeat(identity)
        except TicketStoreError as e:
            logger.warning(f"Heartbeat probe for {identity} failed: {e}")
            return HealthCheckResult(
                status=HealthStatus.HEALTHY,
                session_alive=True,
                message=f"heartbeat probe failed: {e}",
            )

        heartbeat_age = None
        if last_heartbeat is not None:
            heartbeat_age = self.clock.now() - last_heartbeat
            state.update_patrol_completed(key, last_heartbeat)

        result = evaluate_health(
            session_alive=True,
            heartbeat_age=heartbeat_age,
            heartbeat_recorded=last_heartbeat is not None,
            policy=policy,
            time_since_death=None,
            last_heartbeat=last_heartbeat,
        )

        if result.status == HealthStatus.STUCK:
            self.remediate_stuck(state, identity, result)
        elif agent.nudged_at is not None:
            logger.info(f"{identity} recovered after nudge")
            agent.nudged_at = None
        return result

    def _respawn(
        self,
        state: SupervisorState,
        identity: AgentIdentity,
        policy: RespawnPolicy,
        result: HealthCheckResult,
    ) -> None:
        if not self.trigger_satisfied(identity, policy.trigger):
            logger.debug(f"{identity} needs respawn but trigger {policy.trigger.value} not met")
            return

        logger.info(f"Respawning {identity}: {result.message}")
        try:
            session = self.launcher.start(identity, topic="respawn")
        except LaunchError as e:
            logger.error(f"Respawn of {identity} failed: {e}")
            return

        state.clear_respawn(identity.key, session)
        self._death_marks.pop(identity.key, None)
        self.events.append(
            EventType.AGENT_RESPAWNED,
            role=identity.role.value,
            project=identity.project,
            session=session,
        )

    def remediate_stuck(
        self,
        state: SupervisorState,
        identity: AgentIdentity,
        result: HealthCheckResult,
    ) -> str | None:
        """Nudge a stuck agent, or kill it once past the critical threshold.

        A kill needs a nudge earlier in the same stuck episode. Returns the
        action taken ("nudge" or "kill"), or None if the action failed.
        """
        key = identity.key
        session = identity.session_name
        agent = state.get_agent_state(key)
        age = result.heartbeat_age or timedelta(0)
        record = {
            "role": identity.role.value,
            "project": identity.project,
            "session": session,
            "heartbeat_age": age.total_seconds(),
        }

        if age > CRITICAL_STUCK_THRESHOLD and agent.nudged_at is not None:
            logger.warning(f"Killing stuck {identity}: {result.message}")
            try:
                self.sessions.kill_session_with_processes(session)
            except SessionError as e:
                logger.error(f"Failed to kill stuck session {session}: {e}")
                self.events.append(EventType.AGENT_STUCK, **record, action="none")
                return None
            state.schedule_respawn(key, session, identity.role.value, EXIT_STUCK, now=self.clock.now())
            self._death_marks[key] = self.clock.monotonic()
            self.events.append(EventType.AGENT_KILLED, **record, action="kill")
            return "kill"

        logger.info(f"Nudging stuck {identity}: {result.message}")
        try:
            self.sessions.nudge_session(session, NUDGE_MESSAGE.format(age=format_duration(age.total_seconds())))
        except SessionError as e:
            logger.warning(f"Failed to nudge {session}: {e}")
            self.events.append(EventType.AGENT_STUCK, **record, action="none")
            return None
        if agent.nudged_at is None:
            agent.nudged_at = self.clock.now()
        self.events.append(EventType.AGENT_NUDGED, **record, action="nudge")
        return "nudge"

    def patrol(self, state: SupervisorState, identities: list[AgentIdentity]) -> dict[str, HealthCheckResult]:
        """Check every identity; one agent's failure never stops the rest."""
        results: dict[str, HealthCheckResult] = {}
        for identity in identities:
            result = self.check_agent(state, identity)
            if result is not None:
                results[identity.key] = result
        return results
