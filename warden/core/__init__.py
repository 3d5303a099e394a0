"""Core modules for the warden supervisor."""

from warden.core.identity import AgentIdentity, IdentityError, Role
from warden.core.policy import RespawnPolicy, RespawnTrigger, get_respawn_policy
from warden.core.state import AgentRuntimeState, StatePersistenceError, SupervisorState

__all__ = [
    "AgentIdentity",
    "AgentRuntimeState",
    "IdentityError",
    "RespawnPolicy",
    "RespawnTrigger",
    "Role",
    "StatePersistenceError",
    "SupervisorState",
    "get_respawn_policy",
]
