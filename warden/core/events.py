"""Observability records for supervisor actions.

Every remediation and lifecycle transition is appended as one JSON line to
the event feed. Recording is best-effort: a failure is logged and never
interrupts the caller.
"""

import logging
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from filelock import FileLock
from filelock import Timeout as FileLockTimeout
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of records in the event feed."""

    # Health remediation
    AGENT_STUCK = "agent_stuck"
    AGENT_NUDGED = "agent_nudged"
    AGENT_KILLED = "agent_killed"
    AGENT_RESPAWN_SCHEDULED = "agent_respawn_scheduled"
    AGENT_RESPAWNED = "agent_respawned"

    # Sweeps
    AGENT_MARKED_DEAD = "agent_marked_dead"
    STALLED_ASSIGNMENT = "stalled_assignment"
    ORPHANED_WORK = "orphaned_work"

    # Lifecycle requests
    LIFECYCLE_EXECUTED = "lifecycle_executed"
    LIFECYCLE_REJECTED = "lifecycle_rejected"
    LIFECYCLE_FAILED = "lifecycle_failed"
    LIFECYCLE_STALE = "lifecycle_stale"

    # Convoys
    CONVOY_CHECK = "convoy_check"


class Event(BaseModel):
    """One observability record."""

    event_type: EventType
    actor: str = "warden"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    payload: dict[str, Any] = Field(default_factory=dict)


class EventLog:
    """Append-only JSONL event feed guarded by a file lock."""

    LOCK_TIMEOUT: int = 10

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = FileLock(str(self.path) + ".lock", timeout=self.LOCK_TIMEOUT)

    def append(self, event_type: EventType, **payload: Any) -> Event:
        """Record an event. Returns the event even when the write failed."""
        event = Event(event_type=event_type, payload=payload)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self._lock:
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(event.model_dump_json() + "\n")
        except FileLockTimeout:
            logger.warning(f"Event log lock timeout after {self.LOCK_TIMEOUT}s; dropped {event_type.value}")
        except OSError as e:
            logger.warning(f"Failed to record {event_type.value} event: {e}")
        return event

    def read(self) -> list[Event]:
        """Read all well-formed events (malformed lines are skipped)."""
        if not self.path.exists():
            return []
        events = []
        with open(self.path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    events.append(Event.model_validate_json(line))
                except ValueError:
                    continue
        return events
