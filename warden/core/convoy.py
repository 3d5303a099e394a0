"""Convoy completion watcher.

Tails the work-item change feed and, whenever a tracked item closes, asks
every convoy tracking it to re-check its own completion. The check itself is
owned by the external convoy command and is idempotent, so the watcher and
the synchronous ``check_convoys_for_item`` entry point never coordinate.
"""

import asyncio
import json
import logging
import subprocess
from collections.abc import AsyncGenerator
from contextlib import aclosing
from datetime import datetime
from pathlib import Path
from typing import Protocol

from pydantic import AliasChoices, BaseModel, Field, ValidationError

from warden.core.events import EventLog, EventType
from warden.core.tickets import TicketStore, TicketStoreError

logger = logging.getLogger(__name__)

CONVOY_RETRY_BACKOFF = 5.0  # seconds
CLOSED = "closed"


class ChangeFeedError(Exception):
    """Change feed subscription failed."""

    pass


class ConvoyCheckError(Exception):
    """Completion check could not be run."""

    pass


class ChangeRecord(BaseModel):
    """One line of the change feed."""

    type: str
    issue_id: str = Field(validation_alias=AliasChoices("issue_id", "id", "subject_id"))
    timestamp: datetime | None = None
    old_status: str | None = None
    new_status: str | None = None

    model_config = {"extra": "ignore"}

    @property
    def is_closure(self) -> bool:
        return self.type == "status" and self.new_status == CLOSED


def parse_change_record(line: str) -> ChangeRecord | None:
    """Parse a feed line; None for blank or malformed lines."""
    line = line.strip()
    if not line:
        return None
    try:
        return ChangeRecord.model_validate(json.loads(line))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.debug(f"Skipping malformed change record: {e}")
        return None


class ChangeFeed(Protocol):
    """Continuous line-oriented stream of change records."""

    def subscribe(self) -> AsyncGenerator[str, None]: ...


class CompletionChecker(Protocol):
    """Idempotent completion check owned by the convoy system."""

    def check(self, convoy_id: str) -> None: ...


class SubprocessChangeFeed:
    """ChangeFeed backed by a long-running ``--follow`` command."""

    def __init__(self, command: list[str], cwd: Path):
        self.command = list(command)
        self.cwd = Path(cwd)

    async def subscribe(self) -> AsyncGenerator[str, None]:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command,
                cwd=self.cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            raise ChangeFeedError(f"Cannot start {self.command[0]}: {e}") from e

        try:
            assert proc.stdout is not None
            while True:
                line = await proc.stdout.readline()
                if not line:
                    break
                yield line.decode("utf-8", errors="replace")
            returncode = await proc.wait()
        finally:
            if proc.returncode is None:
                proc.terminate()
                try:
                    await asyncio.wait_for(proc.wait(), timeout=5.0)
                except asyncio.TimeoutError:
                    proc.kill()
                    await proc.wait()

        if returncode != 0:
            raise ChangeFeedError(f"{' '.join(self.command)} exited with {returncode}")


class CliCompletionChecker:
    """CompletionChecker that runs ``<command> <convoy_id>``."""

    def __init__(self, command: list[str], cwd: Path, timeout: float = 30.0):
        self.command = list(command)
        self.cwd = Path(cwd)
        self.timeout = timeout

    def check(self, convoy_id: str) -> None:
        cmd = self.command + [convoy_id]
        try:
            result = subprocess.run(cmd, cwd=self.cwd, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.TimeoutExpired as e:
            raise ConvoyCheckError(f"{' '.join(cmd)} timed out after {self.timeout}s") from e
        except OSError as e:
            raise ConvoyCheckError(f"Cannot run {cmd[0]}: {e}") from e
        if result.returncode != 0:
            raise ConvoyCheckError(f"{' '.join(cmd)} failed: {(result.stderr or result.stdout).strip()}")


def check_convoys_for_item(
    store: TicketStore,
    checker: CompletionChecker,
    item_id: str,
    events: EventLog | None = None,
) -> list[str]:
    """Run the completion check for every open convoy tracking ``item_id``.

    Returns the ids of the convoys examined, whether or not their check
    succeeded. Convoys known to be closed are left alone; a convoy whose
    status cannot be read is checked anyway. A failure on one convoy does
    not stop the others.

    Raises:
        TicketStoreError: If the tracking relations cannot be read.
    """
    examined = []
    for convoy_id in store.tracking_aggregates(item_id):
        try:
            if store.show(convoy_id).status == CLOSED:
                logger.debug(f"Convoy {convoy_id} already closed")
                continue
        except TicketStoreError as e:
            # The check is idempotent; an unknown status counts as open.
            logger.warning(f"Cannot read convoy {convoy_id}, checking anyway: {e}")

        examined.append(convoy_id)
        try:
            checker.check(convoy_id)
        except ConvoyCheckError as e:
            logger.warning(f"Completion check for convoy {convoy_id} failed: {e}")
            continue

        logger.info(f"Checked convoy {convoy_id} after {item_id} closed")
        if events is not None:
            events.append(EventType.CONVOY_CHECK, convoy_id=convoy_id, item_id=item_id)
    return examined


class ConvoyWatcher:
    """Standing task that reacts to item closures from the change feed."""

    def __init__(
        self,
        feed: ChangeFeed,
        store: TicketStore,
        checker: CompletionChecker,
        events: EventLog | None = None,
        backoff: float = CONVOY_RETRY_BACKOFF,
    ):
        self.feed = feed
        self.store = store
        self.checker = checker
        self.events = events
        self.backoff = backoff

    def handle_line(self, line: str) -> list[str]:
        """Process one feed line. Returns the convoys examined."""
        record = parse_change_record(line)
        if record is None or not record.is_closure:
            return []
        try:
            return check_convoys_for_item(self.store, self.checker, record.issue_id, self.events)
        except TicketStoreError as e:
            logger.warning(f"Cannot look up convoys tracking {record.issue_id}: {e}")
            return []

    async def _consume(self) -> None:
        async with aclosing(self.feed.subscribe()) as lines:
            async for line in lines:
                await asyncio.to_thread(self.handle_line, line)

    async def run(self, stop: asyncio.Event) -> None:
        """Watch until ``stop`` is set, resubscribing after every failure."""
        logger.info("Convoy watcher started")
        while not stop.is_set():
            consumer = asyncio.create_task(self._consume())
            stopper = asyncio.create_task(stop.wait())
            done, _ = await asyncio.wait({consumer, stopper}, return_when=asyncio.FIRST_COMPLETED)

            if stopper in done:
                consumer.cancel()
                try:
                    await consumer
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    logger.debug(f"Change feed closed with error on stop: {e}")
                break

            stopper.cancel()
            try:
                consumer.result()
                logger.warning(f"Change feed ended; resubscribing in {self.backoff}s")
            except (ChangeFeedError, OSError) as e:
                logger.warning(f"Change feed failed: {e}; resubscribing in {self.backoff}s")
            except Exception as e:
                logger.error(f"Convoy watcher error: {e}; resubscribing in {self.backoff}s")

            try:
                await asyncio.wait_for(stop.wait(), timeout=self.backoff)
            except asyncio.TimeoutError:
                pass
        logger.info("Convoy watcher stopped")
