"""Agent identity parsing and formatting.

This is the ONLY place where session names, mail addresses and ticket ids are
parsed. Everything else works with AgentIdentity values.

Grammar:
- session:  wd-coordinator, wd-health, wd-<project>-monitor, wd-<project>-merge,
            wd-<project>-crew-<name>, wd-<project>-<name>
- address:  coordinator, health, <project>/monitor, <project>/merge,
            <project>/crew/<name>, <project>/workers/<name>
- ticket:   hq-coordinator, hq-health, wd-<project>-monitor, wd-<project>-merge,
            wd-<project>-crew-<name>, wd-<project>-worker-<name>
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

SESSION_PREFIX = "wd-"
TOWN_TICKET_PREFIX = "hq-"

# Hyphen segments that carry meaning in the grammar and so cannot appear
# inside a project or transient worker name.
RESERVED_TOKENS = frozenset({"crew", "worker", "workers", "monitor", "merge"})

_VALID_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")


class IdentityError(ValueError):
    """Identity string or tuple does not fit the grammar."""

    pass


class Role(str, Enum):
    """Behavioral category of an agent."""

    COORDINATOR = "coordinator"
    HEALTH_ORCHESTRATOR = "health-orchestrator"
    MONITOR = "monitor"
    MERGE_PROCESSOR = "merge-processor"
    PERSISTENT_WORKER = "persistent-worker"
    TRANSIENT_WORKER = "transient-worker"

    @property
    def is_town_level(self) -> bool:
        return self in (Role.COORDINATOR, Role.HEALTH_ORCHESTRATOR)

    @property
    def is_worker(self) -> bool:
        return self in (Role.PERSISTENT_WORKER, Role.TRANSIENT_WORKER)


# Short tokens used inside session names, addresses and ticket ids.
_TOWN_TOKENS = {
    Role.COORDINATOR: "coordinator",
    Role.HEALTH_ORCHESTRATOR: "health",
}
_PROJECT_SUFFIXES = {
    Role.MONITOR: "monitor",
    Role.MERGE_PROCESSOR: "merge",
}


@dataclass(frozen=True)
class AgentIdentity:
    """Parsed agent identity: role, project scope and agent name.

    Town-level roles carry neither project nor name; monitor and
    merge-processor carry a project; workers carry both.
    """

    role: Role
    project: str = ""
    name: str = ""

    def __post_init__(self) -> None:
        if not isinstance(self.role, Role):
            try:
                object.__setattr__(self, "role", Role(self.role))
            except ValueError:
                raise IdentityError(f"Unknown role: {self.role!r}")

        if self.role.is_town_level:
            if self.project or self.name:
                raise IdentityError(f"{self.role.value} takes no project or name")
            return

        _validate_project(self.project)

        if not self.role.is_worker:
            if self.name:
                raise IdentityError(f"{self.role.value} takes no agent name")
            return

        if not self.name or not _VALID_NAME.match(self.name):
            raise IdentityError(f"Invalid agent name for {self.role.value}: {self.name!r}")
        if self.role == Role.TRANSIENT_WORKER:
            if "-" in self.name:
                raise IdentityError(f"Transient worker name cannot contain '-': {self.name!r}")
            if self.name in RESERVED_TOKENS:
                raise IdentityError(f"Transient worker name is reserved: {self.name!r}")
        elif self.name.split("-")[-1] in _PROJECT_SUFFIXES.values():
            raise IdentityError(f"Worker name cannot end with a role token: {self.name!r}")

    # --- Formatting ---

    @property
    def session_name(self) -> str:
        """Terminal session name for this agent."""
        if self.role.is_town_level:
            return f"{SESSION_PREFIX}{_TOWN_TOKENS[self.role]}"
        if self.role in _PROJECT_SUFFIXES:
            return f"{SESSION_PREFIX}{self.project}-{_PROJECT_SUFFIXES[self.role]}"
        if self.role == Role.PERSISTENT_WORKER:
            return f"{SESSION_PREFIX}{self.project}-crew-{self.name}"
        return f"{SESSION_PREFIX}{self.project}-{self.name}"

    @property
    def address(self) -> str:
        """Mail-style address, also used as the actor string."""
        if self.role.is_town_level:
            return _TOWN_TOKENS[self.role]
        if self.role in _PROJECT_SUFFIXES:
            return f"{self.project}/{_PROJECT_SUFFIXES[self.role]}"
        if self.role == Role.PERSISTENT_WORKER:
            return f"{self.project}/crew/{self.name}"
        return f"{self.project}/workers/{self.name}"

    @property
    def ticket_id(self) -> str:
        """Id of the agent's record in the work-item store."""
        if self.role.is_town_level:
            return f"{TOWN_TICKET_PREFIX}{_TOWN_TOKENS[self.role]}"
        if self.role in _PROJECT_SUFFIXES:
            return f"{SESSION_PREFIX}{self.project}-{_PROJECT_SUFFIXES[self.role]}"
        if self.role == Role.PERSISTENT_WORKER:
            return f"{SESSION_PREFIX}{self.project}-crew-{self.name}"
        return f"{SESSION_PREFIX}{self.project}-worker-{self.name}"

    @property
    def key(self) -> str:
        """Stable key for per-agent bookkeeping maps."""
        return self.address

    def work_dir(self, root: Path) -> Path:
        """Default working directory under the workspace root."""
        if self.role.is_town_level:
            return root
        if self.role == Role.MONITOR:
            return root / self.project
        if self.role == Role.MERGE_PROCESSOR:
            return root / self.project / "merge" / "rig"
        if self.role == Role.PERSISTENT_WORKER:
            return root / self.project / "crew" / self.name
        return root / self.project / "workers" / self.name

    def state_file(self, root: Path) -> Path:
        """Path of the agent's durable state file."""
        if self.role.is_town_level:
            return root / _TOWN_TOKENS[self.role] / "state.json"
        if self.role == Role.MONITOR:
            return root / self.project / "monitor" / "state.json"
        if self.role == Role.MERGE_PROCESSOR:
            return root / self.project / "merge" / "state.json"
        return self.work_dir(root) / "state.json"

    def __str__(self) -> str:
        return self.address


def _validate_project(project: str) -> None:
    if not project or not _VALID_NAME.match(project):
        raise IdentityError(f"Invalid project name: {project!r}")
    reserved = [seg for seg in project.split("-") if seg in RESERVED_TOKENS]
    if reserved:
        raise IdentityError(f"Project name {project!r} contains reserved segment {reserved[0]!r}")


# --- Parsing ---


def parse_session_name(session: str) -> AgentIdentity:
    """Parse a terminal session name into an AgentIdentity.

    Raises:
        IdentityError: If the name does not fit the session grammar.
    """
    if not session.startswith(SESSION_PREFIX):
        raise IdentityError(f"Invalid session name {session!r}: missing {SESSION_PREFIX!r} prefix")

    suffix = session[len(SESSION_PREFIX):]
    if not suffix:
        raise IdentityError(f"Invalid session name {session!r}: empty after prefix")

    for role, token in _TOWN_TOKENS.items():
        if suffix == token:
            return AgentIdentity(role)

    parts = suffix.split("-")
    if len(parts) < 2:
        raise IdentityError(f"Invalid session name {session!r}: expected project-role format")

    return _parse_project_parts(parts, worker_marker=None, source=session)


def parse_ticket_id(ticket_id: str) -> AgentIdentity:
    """Parse an agent ticket id into an AgentIdentity.

    Raises:
        IdentityError: If the id is not an agent ticket id.
    """
    if ticket_id.startswith(TOWN_TICKET_PREFIX):
        token = ticket_id[len(TOWN_TICKET_PREFIX):]
        for role, town_token in _TOWN_TOKENS.items():
            if token == town_token:
                return AgentIdentity(role)
        raise IdentityError(f"Unknown town-level ticket id: {ticket_id!r}")

    if not ticket_id.startswith(SESSION_PREFIX):
        raise IdentityError(f"Not an agent ticket id: {ticket_id!r}")

    parts = ticket_id[len(SESSION_PREFIX):].split("-")
    if len(parts) < 2:
        raise IdentityError(f"Invalid agent ticket id: {ticket_id!r}")

    return _parse_project_parts(parts, worker_marker="worker", source=ticket_id)


def parse_address(address: str) -> AgentIdentity:
    """Parse a mail address (or legacy dashed identity) into an AgentIdentity.

    Accepts a trailing slash (``health/``) and the dashed forms
    ``<project>-monitor``, ``<project>-merge``, ``<project>-crew-<name>``,
    ``<project>-worker-<name>``.

    Raises:
        IdentityError: If the address cannot be resolved.
    """
    cleaned = address.strip().rstrip("/")
    if not cleaned:
        raise IdentityError("Empty address")

    for role, token in _TOWN_TOKENS.items():
        if cleaned in (token, role.value):
            return AgentIdentity(role)

    if "/" in cleaned:
        segments = cleaned.split("/")
        if len(segments) == 2:
            project, token = segments
            for role, suffix in _PROJECT_SUFFIXES.items():
                if token == suffix:
                    return AgentIdentity(role, project=project)
        if len(segments) == 3:
            project, kind, name = segments
            if kind == "crew":
                return AgentIdentity(Role.PERSISTENT_WORKER, project=project, name=name)
            if kind == "workers":
                return AgentIdentity(Role.TRANSIENT_WORKER, project=project, name=name)
        raise IdentityError(f"Unknown address format: {address!r}")

    parts = cleaned.split("-")
    if len(parts) >= 2 and (
        parts[-1] in _PROJECT_SUFFIXES.values() or "crew" in parts[1:-1] or "worker" in parts[1:-1]
    ):
        return _parse_project_parts(parts, worker_marker="worker", source=address)

    raise IdentityError(f"Unknown address format: {address!r}")


def _parse_project_parts(
    parts: list[str],
    worker_marker: str | None,
    source: str,
) -> AgentIdentity:
    """Resolve ``<project>-<role tokens>`` segments.

    ``worker_marker`` names the infix that introduces a transient worker name;
    None means a bare trailing segment is the transient worker name.
    """
    for role, suffix in _PROJECT_SUFFIXES.items():
        if parts[-1] == suffix:
            return AgentIdentity(role, project="-".join(parts[:-1]))

    # Marker in the middle; the first match wins because project names
    # cannot contain reserved segments.
    for i, part in enumerate(parts):
        if 0 < i < len(parts) - 1:
            if part == "crew":
                return AgentIdentity(
                    Role.PERSISTENT_WORKER,
                    project="-".join(parts[:i]),
                    name="-".join(parts[i + 1:]),
                )
            if worker_marker is not None and part == worker_marker:
                return AgentIdentity(
                    Role.TRANSIENT_WORKER,
                    project="-".join(parts[:i]),
                    name="-".join(parts[i + 1:]),
                )

    if worker_marker is not None:
        raise IdentityError(f"Cannot determine role from {source!r}")

    return AgentIdentity(
        Role.TRANSIENT_WORKER,
        project="-".join(parts[:-1]),
        name=parts[-1],
    )
