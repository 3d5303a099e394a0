"""Persisted supervisor state.

The heartbeat loop is the only writer. State is loaded once at startup,
mutated within a tick and saved after every tick with an atomic
temp-file-then-replace write, so a crash mid-write leaves the previous
file intact.
"""

import json
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from warden.core.policy import get_respawn_policy
from warden.core.utils import atomic_write_text


class StatePersistenceError(Exception):
    """Supervisor state could not be read or written."""

    pass


def utcnow() -> datetime:
    return datetime.now(UTC)


class AgentRuntimeState(BaseModel):
    """Respawn bookkeeping for a single agent."""

    session: str = ""
    last_patrol_completed: datetime | None = None
    respawn_scheduled_at: datetime | None = None
    last_exited_at: datetime | None = None
    # Examples: "crash", "stuck", "shutdown", "cycle"
    exit_reason: str = ""
    # First nudge of the current stuck episode; a kill requires a prior nudge.
    nudged_at: datetime | None = None


class SupervisorState(BaseModel):
    """Runtime state of the supervisor daemon."""

    running: bool = False
    pid: int = 0
    started_at: datetime | None = None
    last_heartbeat: datetime | None = None
    heartbeat_count: int = 0
    # Keyed by agent address (e.g. "health", "gastown/monitor")
    agents: dict[str, AgentRuntimeState] = Field(default_factory=dict)

    def get_agent_state(self, agent_key: str) -> AgentRuntimeState:
        """Return the state for an agent, creating it on first reference."""
        if agent_key not in self.agents:
            self.agents[agent_key] = AgentRuntimeState()
        return self.agents[agent_key]

    def schedule_respawn(
        self,
        agent_key: str,
        session: str,
        role: str,
        exit_reason: str,
        now: datetime | None = None,
    ) -> AgentRuntimeState:
        """Record an agent's death and when its respawn becomes due."""
        agent = self.get_agent_state(agent_key)
        now = now or utcnow()
        agent.session = session
        agent.exit_reason = exit_reason
        agent.last_exited_at = now
        agent.respawn_scheduled_at = now + get_respawn_policy(role).delay
        agent.nudged_at = None
        return agent

    def clear_respawn(self, agent_key: str, session: str) -> AgentRuntimeState:
        """Clear respawn bookkeeping after the agent was started again."""
        agent = self.get_agent_state(agent_key)
        agent.session = session
        agent.respawn_scheduled_at = None
        agent.last_exited_at = None
        agent.exit_reason = ""
        agent.nudged_at = None
        return agent

    def update_patrol_completed(self, agent_key: str, when: datetime | None = None) -> None:
        agent = self.get_agent_state(agent_key)
        agent.last_patrol_completed = when or utcnow()


class StateStore:
    """Loads and atomically saves SupervisorState as JSON."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> SupervisorState:
        """Load state from disk. A missing file yields a fresh state.

        Raises:
            StatePersistenceError: If the file exists but cannot be parsed.
        """
        try:
            data = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return SupervisorState()
        except OSError as e:
            raise StatePersistenceError(f"Cannot read state file {self.path}: {e}") from e

        try:
            return SupervisorState.model_validate(json.loads(data))
        except (json.JSONDecodeError, ValidationError) as e:
            raise StatePersistenceError(f"Corrupt state file {self.path}: {e}") from e

    def save(self, state: SupervisorState) -> None:
        """Write state via temp file + replace.

        Raises:
            StatePersistenceError: If the write fails. Callers treat this as fatal.
        """
        try:
            atomic_write_text(self.path, state.model_dump_json(indent=2), prefix=".state_")
        except OSError as e:
            raise StatePersistenceError(f"Failed to save state to {self.path}: {e}") from e
