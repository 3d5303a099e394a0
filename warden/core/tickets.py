"""Work-item store interface.

Agent records, merge requests and convoys all live in the external ticket
store. The supervisor reads them through the store CLI and reads tracking
relations straight from the store's SQLite database (read-only).
"""

from __future__ import annotations

import json
import logging
import sqlite3
import subprocess
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

# Fields agents keep in the free-text description of their ticket, one
# "key: value" per line.
AGENT_DESCRIPTION_FIELDS = ("role_type", "project", "agent_state", "hook", "role_ticket")

LAST_ACTIVITY_LABEL = "last_activity:"


class TicketStoreError(Exception):
    """Ticket store could not be queried or updated."""

    pass


class Ticket(BaseModel):
    """A work-item record as returned by the store."""

    id: str
    issue_type: str = ""
    status: str = ""
    assignee: str = ""
    labels: list[str] = Field(default_factory=list)
    updated_at: datetime | None = None
    description: str = ""
    # Column values; the description may carry stale copies.
    hook: str = ""
    agent_state: str = ""

    model_config = {"extra": "ignore"}

    @field_validator("issue_type", "status", "assignee", "description", "hook", "agent_state", mode="before")
    @classmethod
    def _null_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("labels", mode="before")
    @classmethod
    def _null_labels(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("updated_at")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @property
    def agent_fields(self) -> dict[str, str]:
        return parse_agent_fields(self.description)

    @property
    def state(self) -> str:
        """Self-reported agent state, column first, description second."""
        return self.agent_state or self.agent_fields.get("agent_state", "")

    @property
    def current_work(self) -> str:
        """Current-work reference held by the agent, if any."""
        return self.hook or self.agent_fields.get("hook", "")

    def label_value(self, prefix: str) -> str | None:
        for label in self.labels:
            if label.startswith(prefix):
                return label[len(prefix):]
        return None

    @property
    def last_activity(self) -> datetime | None:
        """Heartbeat timestamp from the ``last_activity:<RFC3339>`` label."""
        raw = self.label_value(LAST_ACTIVITY_LABEL)
        if not raw:
            return None
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def parse_agent_fields(description: str) -> dict[str, str]:
    """Parse ``key: value`` lines for the known agent fields."""
    fields: dict[str, str] = {}
    for line in description.splitlines():
        key, sep, value = line.partition(":")
        if not sep:
            continue
        key = key.strip()
        if key in AGENT_DESCRIPTION_FIELDS:
            value = value.strip()
            fields[key] = "" if value == "null" else value
    return fields


def format_agent_description(fields: dict[str, str], note: str = "") -> str:
    """Render agent fields back into description form."""
    lines = [f"{key}: {fields.get(key, '')}" for key in AGENT_DESCRIPTION_FIELDS]
    text = "\n".join(lines) + "\n"
    if note:
        text += f"\n{note}"
    return text


class TicketStore(Protocol):
    """Operations the supervisor needs from the work-item store."""

    def show(self, ticket_id: str) -> Ticket: ...

    def list(
        self,
        issue_type: str | None = None,
        status: str | None = None,
        label: str | None = None,
    ) -> list[Ticket]: ...

    def update(self, ticket_id: str, **fields: str) -> None: ...

    def tracking_aggregates(self, item_id: str) -> list[str]: ...


class CliTicketStore:
    """TicketStore backed by the store CLI and its SQLite database."""

    def __init__(
        self,
        command: list[str],
        cwd: Path,
        db_path: Path,
        timeout: float = 30.0,
    ):
        self.command = list(command)
        self.cwd = Path(cwd)
        self.db_path = Path(db_path)
        self.timeout = timeout

    def _run(self, *args: str) -> str:
        cmd = self.command + list(args)
        try:
            result = subprocess.run(
                cmd,
                cwd=self.cwd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise TicketStoreError(f"{' '.join(cmd)} timed out after {self.timeout}s") from e
        except OSError as e:
            raise TicketStoreError(f"Cannot run {cmd[0]}: {e}") from e

        if result.returncode != 0:
            raise TicketStoreError(f"{' '.join(cmd)} failed: {result.stderr.strip()}")
        return result.stdout

    def _parse_tickets(self, output: str) -> list[Ticket]:
        if not output.strip():
            return []
        try:
            raw = json.loads(output)
        except json.JSONDecodeError as e:
            raise TicketStoreError(f"Unparseable store output: {e}") from e
        if isinstance(raw, dict):
            raw = [raw]
        tickets = []
        for item in raw:
            try:
                tickets.append(Ticket.model_validate(item))
            except ValidationError as e:
                logger.warning(f"Skipping malformed ticket record: {e}")
        return tickets

    def show(self, ticket_id: str) -> Ticket:
        tickets = self._parse_tickets(self._run("show", ticket_id, "--json"))
        if not tickets:
            raise TicketStoreError(f"Ticket not found: {ticket_id}")
        return tickets[0]

    def list(
        self,
        issue_type: str | None = None,
        status: str | None = None,
        label: str | None = None,
    ) -> list[Ticket]:
        args = ["list", "--json"]
        if issue_type:
            args.append(f"--type={issue_type}")
        if status:
            args.append(f"--status={status}")
        if label:
            args.append(f"--label={label}")
        return self._parse_tickets(self._run(*args))

    def update(self, ticket_id: str, **fields: str) -> None:
        args = ["update", ticket_id]
        for key, value in fields.items():
            args.extend([f"--{key.replace('_', '-')}", value])
        self._run(*args)

    def tracking_aggregates(self, item_id: str) -> list[str]:
        """Ids of aggregates declaring a ``tracks`` relation to ``item_id``.

        Matches both the direct id and the namespaced external form
        ``<namespace>:<id>``.
        """
        escaped = item_id.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        query = (
            "SELECT DISTINCT issue_id FROM dependencies "
            "WHERE type = 'tracks' AND (depends_on_id = ? OR depends_on_id LIKE ? ESCAPE '\\')"
        )
        return [row[0] for row in self._query(query, (item_id, f"%:{escaped}"))]

    def _query(self, query: str, params: tuple[Any, ...]) -> list[tuple]:
        if not self.db_path.exists():
            raise TicketStoreError(f"Tracking database not found: {self.db_path}")
        try:
            conn = sqlite3.connect(f"file:{self.db_path}?mode=ro", uri=True, timeout=self.timeout)
            try:
                return conn.execute(query, params).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise TicketStoreError(f"Tracking query failed: {e}") from e
