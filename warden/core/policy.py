"""Role-specific respawn policies.

Each role balances responsiveness against churn differently: patrol agents
that must always be present get a dwell delay to stop crash loops, while the
merge processor restarts immediately but only when there is queued work.
"""

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum

from warden.core.identity import Role


class RespawnTrigger(str, Enum):
    """Condition that must hold before a dead agent is respawned."""

    ALWAYS = "always"
    QUEUE_NOT_EMPTY = "queue-not-empty"
    WORK_AVAILABLE = "work-available"


@dataclass(frozen=True)
class RespawnPolicy:
    """Respawn configuration for one role."""

    delay: timedelta
    stuck_threshold: timedelta
    trigger: RespawnTrigger = RespawnTrigger.ALWAYS


# Heartbeat age beyond which a stuck agent is killed instead of nudged,
# independent of the per-role stuck threshold.
CRITICAL_STUCK_THRESHOLD = timedelta(minutes=30)

DEFAULT_RESPAWN_POLICY = RespawnPolicy(
    delay=timedelta(minutes=5),
    stuck_threshold=timedelta(minutes=15),
    trigger=RespawnTrigger.ALWAYS,
)

RESPAWN_POLICIES: dict[Role, RespawnPolicy] = {
    Role.HEALTH_ORCHESTRATOR: RespawnPolicy(
        delay=timedelta(minutes=5),
        stuck_threshold=timedelta(minutes=15),
        trigger=RespawnTrigger.ALWAYS,
    ),
    Role.MONITOR: RespawnPolicy(
        delay=timedelta(minutes=5),
        stuck_threshold=timedelta(minutes=10),
        trigger=RespawnTrigger.ALWAYS,
    ),
    Role.MERGE_PROCESSOR: RespawnPolicy(
        delay=timedelta(0),
        stuck_threshold=timedelta(minutes=5),
        trigger=RespawnTrigger.QUEUE_NOT_EMPTY,  # no idle churn on an empty queue
    ),
}


def get_respawn_policy(role: Role | str) -> RespawnPolicy:
    """Return the respawn policy for a role.

    Never raises: unknown roles (including unparseable role strings) get the
    conservative default.
    """
    try:
        role = Role(role)
    except ValueError:
        return DEFAULT_RESPAWN_POLICY
    return RESPAWN_POLICIES.get(role, DEFAULT_RESPAWN_POLICY)
