"""Durable per-agent state files.

Before asking for its own restart or shutdown, an agent finishes its
pre-shutdown work and sets ``requesting_<action>: true`` in its state file.
The supervisor refuses to kill a session whose agent has not staged that
flag, and clears it once the action has been carried out.
"""

import json
import logging
from pathlib import Path
from typing import Any

from warden.core.utils import atomic_write_text

logger = logging.getLogger(__name__)

REQUESTING_PREFIX = "requesting_"
REQUESTING_TIME_KEY = "requesting_time"


class AgentStateError(Exception):
    """Agent state file could not be read or written."""

    pass


class PreconditionError(AgentStateError):
    """Agent has not staged readiness for the requested action."""

    pass


def requesting_key(action: str) -> str:
    return f"{REQUESTING_PREFIX}{action}"


class AgentStateFile:
    """Reads and updates one agent's state.json."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def read(self) -> dict[str, Any]:
        try:
            data = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise
        except OSError as e:
            raise AgentStateError(f"Cannot read agent state {self.path}: {e}") from e
        try:
            state = json.loads(data)
        except json.JSONDecodeError as e:
            raise AgentStateError(f"Cannot parse agent state {self.path}: {e}") from e
        if not isinstance(state, dict):
            raise AgentStateError(f"Agent state {self.path} is not an object")
        return state

    def verify_requesting(self, action: str) -> None:
        """Check that ``requesting_<action>`` is exactly ``true``.

        Raises:
            PreconditionError: Flag missing, false, or not a boolean, or the
                state file does not exist.
            AgentStateError: State file unreadable.
        """
        key = requesting_key(action)
        try:
            state = self.read()
        except FileNotFoundError:
            raise PreconditionError(
                f"Agent state file not found: {self.path} "
                f"(agent must set {key}=true before a lifecycle request)"
            )

        if key not in state:
            raise PreconditionError(
                f"Agent state missing {key} (agent must set this before a lifecycle request)"
            )
        if state[key] is not True:
            raise PreconditionError(f"Agent state {key} is not true (got: {state[key]!r})")

    def clear_requesting(self, action: str) -> None:
        """Remove ``requesting_<action>`` and ``requesting_time``.

        Raises:
            AgentStateError: If the file cannot be read or rewritten.
        """
        key = requesting_key(action)
        try:
            state = self.read()
        except FileNotFoundError as e:
            raise AgentStateError(f"Agent state file not found: {self.path}") from e

        state.pop(key, None)
        state.pop(REQUESTING_TIME_KEY, None)
        try:
            atomic_write_text(self.path, json.dumps(state, indent=2), prefix=".agent_state_")
        except OSError as e:
            raise AgentStateError(f"Cannot write agent state {self.path}: {e}") from e
        logger.info(f"Cleared {key} from {self.path}")

    def staged_flags(self) -> list[str]:
        """Names of ``requesting_*`` flags currently set to true."""
        try:
            state = self.read()
        except (FileNotFoundError, AgentStateError):
            return []
        return sorted(
            key
            for key, value in state.items()
            if key.startswith(REQUESTING_PREFIX) and key != REQUESTING_TIME_KEY and value is True
        )
