"""Mailbox interface used for lifecycle requests and sweep notifications."""

from __future__ import annotations

import json
import logging
import subprocess
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)


class MailboxError(Exception):
    """Mailbox could not be read or written."""

    pass


class Message(BaseModel):
    """A mail message as returned by the mailbox."""

    id: str
    from_: str = Field("", alias="from")
    to: str = ""
    subject: str = ""
    body: str = ""
    timestamp: str = ""
    read: bool = False
    priority: str = ""
    type: str = ""

    model_config = {"extra": "ignore", "populate_by_name": True}


class Mailbox(Protocol):
    """Operations the supervisor needs from the mail system."""

    def inbox(self, identity: str) -> list[Message]: ...

    def delete(self, message_id: str) -> None: ...

    def send(self, to: str, subject: str, body: str) -> None: ...


class CliMailbox:
    """Mailbox backed by the mail CLI."""

    def __init__(self, command: list[str], cwd: Path, timeout: float = 30.0):
        self.command = list(command)
        self.cwd = Path(cwd)
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
            raise MailboxError(f"{' '.join(cmd)} timed out after {self.timeout}s") from e
        except OSError as e:
            raise MailboxError(f"Cannot run {cmd[0]}: {e}") from e

        if result.returncode != 0:
            raise MailboxError(f"{' '.join(cmd)} failed: {(result.stderr or result.stdout).strip()}")
        return result.stdout

    def inbox(self, identity: str) -> list[Message]:
        output = self._run("inbox", "--identity", identity, "--json").strip()
        if not output or output == "[]":
            return []
        try:
            raw = json.loads(output)
        except json.JSONDecodeError as e:
            raise MailboxError(f"Unparseable inbox output: {e}") from e

        messages = []
        for item in raw:
            try:
                messages.append(Message.model_validate(item))
            except ValidationError as e:
                logger.warning(f"Skipping malformed inbox entry: {e}")
        return messages

    def delete(self, message_id: str) -> None:
        self._run("delete", message_id)

    def send(self, to: str, subject: str, body: str) -> None:
        self._run("send", to, "-s", subject, "-m", body)
