"""The supervisor daemon: heartbeat loop plus convoy watcher.

A Supervisor is built once at startup with its configuration and
collaborators and owns the SupervisorState for its lifetime. Each heartbeat
tick runs, in order:

1. health patrol over the patrolled agents
2. lifecycle request processing
3. sweeps
4. state update and atomic save

Ticks never overlap and a stop request is honored only between ticks. The
convoy watcher runs beside the loop as an independent task. Failing to save
state is the only fatal error.
"""

import asyncio
import logging
import os
import signal
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from filelock import FileLock
from filelock import Timeout as FileLockTimeout

from warden.core.config import DaemonConfig
from warden.core.convoy import (
    ChangeFeed,
    CliCompletionChecker,
    CompletionChecker,
    ConvoyWatcher,
    SubprocessChangeFeed,
    check_convoys_for_item,
)
from warden.core.events import EventLog
from warden.core.health import HealthCheckResult, HealthMonitor
from warden.core.identity import AgentIdentity, Role
from warden.core.launcher import SessionLauncher
from warden.core.lifecycle import LifecycleProcessor, ProcessedRequest
from warden.core.mail import CliMailbox, Mailbox
from warden.core.sessions import TerminalSessions, TmuxSessions
from warden.core.state import StatePersistenceError, StateStore, SupervisorState
from warden.core.sweeps import SweepChecker, SweepReport
from warden.core.tickets import CliTicketStore, TicketStore
from warden.core.utils import Clock

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DaemonAlreadyRunningError(Exception):
    """Another supervisor holds the daemon lock for this workspace."""

    pass


@dataclass
class TickReport:
    """What one heartbeat tick did."""

    health: dict[str, HealthCheckResult] = field(default_factory=dict)
    lifecycle: list[ProcessedRequest] = field(default_factory=list)
    sweeps: SweepReport = field(default_factory=SweepReport)


class Supervisor:
    """Lifecycle-and-health supervisor for one workspace."""

    def __init__(
        self,
        config: DaemonConfig,
        sessions: TerminalSessions,
        store: TicketStore,
        mailbox: Mailbox,
        checker: CompletionChecker,
        feed: ChangeFeed,
        launcher: SessionLauncher | None = None,
        events: EventLog | None = None,
        state_store: StateStore | None = None,
        clock: Clock | None = None,
    ):
        self.config = config
        self.sessions = sessions
        self.store = store
        self.mailbox = mailbox
        self.checker = checker
        self.clock = clock or Clock()
        self.events = events or EventLog(config.events_file)
        self.state_store = state_store or StateStore(config.state_file)
        self.launcher = launcher or SessionLauncher.from_override_file(
            sessions,
            config.root,
            config.startup_command,
            override_file=config.roles_file,
            clock=self.clock,
        )

        self.health = HealthMonitor(sessions, store, self.launcher, self.events, clock=self.clock)
        self.lifecycle = LifecycleProcessor(
            config.root,
            mailbox,
            sessions,
            store,
            self.launcher,
            self.events,
            clock=self.clock,
        )
        self.sweeps = SweepChecker(store, mailbox, self.events, clock=self.clock)
        self.watcher = ConvoyWatcher(feed, store, checker, self.events)

        self.state = SupervisorState()
        self._stop: asyncio.Event | None = None

    @classmethod
    def from_config(cls, config: DaemonConfig) -> "Supervisor":
        """Wire the supervisor to the real tmux, store and mail CLIs."""
        store = CliTicketStore(
            config.store_command,
            cwd=config.root,
            db_path=config.tracking_db_path,
            timeout=config.command_timeout,
        )
        return cls(
            config=config,
            sessions=TmuxSessions(socket=config.tmux_socket),
            store=store,
            mailbox=CliMailbox(config.mail_command, cwd=config.root, timeout=config.command_timeout),
            checker=CliCompletionChecker(
                config.convoy_check_command, cwd=config.root, timeout=config.command_timeout
            ),
            feed=SubprocessChangeFeed(config.activity_command, cwd=config.root),
        )

    # --- Agents ---

    def patrolled_identities(self) -> list[AgentIdentity]:
        """Agents the heartbeat keeps alive, honoring patrol switches."""
        identities = []
        if self.config.is_patrol_enabled(Role.HEALTH_ORCHESTRATOR):
            identities.append(AgentIdentity(Role.HEALTH_ORCHESTRATOR))
        for project in self.config.projects:
            if self.config.is_patrol_enabled(Role.MONITOR):
                identities.append(AgentIdentity(Role.MONITOR, project=project))
            if self.config.is_patrol_enabled(Role.MERGE_PROCESSOR):
                identities.append(AgentIdentity(Role.MERGE_PROCESSOR, project=project))
        return identities

    def known_identities(self) -> list[AgentIdentity]:
        """Patrolled agents plus the coordinator, for state-file reports."""
        return [AgentIdentity(Role.COORDINATOR)] + self.patrolled_identities()

    # --- Heartbeat ---

    def load_state(self) -> SupervisorState:
        self.state = self.state_store.load()
        return self.state

    def _phase(self, name: str, fn: Callable[[], T], default: T) -> T:
        try:
            return fn()
        except StatePersistenceError:
            raise
        except Exception as e:
            logger.error(f"Heartbeat {name} phase failed: {e}", exc_info=True)
            return default

    def tick(self) -> TickReport:
        """Run one heartbeat tick.

        Raises:
            StatePersistenceError: If state cannot be saved. Fatal.
        """
        state = self.state
        report = TickReport()
        report.health = self._phase(
            "health",
            lambda: self.health.patrol(state, self.patrolled_identities()),
            {},
        )
        report.lifecycle = self._phase("lifecycle", lambda: self.lifecycle.process(state), [])
        report.sweeps = self._phase("sweep", lambda: self.sweeps.run(self.config.projects), SweepReport())

        state.last_heartbeat = self.clock.now()
        state.heartbeat_count += 1
        self.state_store.save(state)
        logger.debug(f"Heartbeat {state.heartbeat_count} complete")
        return report

    def check_convoys(self, item_id: str) -> list[str]:
        """Synchronous "check now" for convoys tracking ``item_id``."""
        return check_convoys_for_item(self.store, self.checker, item_id, self.events)

    # --- Daemon ---

    def request_stop(self) -> None:
        """Stop after the current tick completes."""
        if self._stop is not None:
            self._stop.set()

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"Cannot install handler for {sig.name}")

    def _write_pid(self) -> None:
        self.config.pid_file.parent.mkdir(parents=True, exist_ok=True)
        self.config.pid_file.write_text(f"{os.getpid()}\n", encoding="utf-8")

    def _remove_pid(self) -> None:
        try:
            self.config.pid_file.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Cannot remove {self.config.pid_file}: {e}")

    def acquire_lock(self) -> FileLock:
        """Take the workspace daemon lock without waiting.

        Raises:
            DaemonAlreadyRunningError: If another process holds the lock.
        """
        self.config.daemon_dir.mkdir(parents=True, exist_ok=True)
        lock = FileLock(str(self.config.lock_file))
        try:
            lock.acquire(timeout=0)
        except FileLockTimeout:
            raise DaemonAlreadyRunningError(
                f"Supervisor already running for {self.config.root} (lock: {self.config.lock_file})"
            )
        return lock

    async def run(self, install_signals: bool = True, max_ticks: int | None = None) -> None:
        """Run the heartbeat loop and convoy watcher until stopped.

        Raises:
            DaemonAlreadyRunningError: If another daemon holds the lock.
            StatePersistenceError: If state cannot be loaded or saved.
        """
        lock = self.acquire_lock()
        try:
            await self._run_locked(install_signals, max_ticks)
        finally:
            lock.release()

    async def _run_locked(self, install_signals: bool, max_ticks: int | None) -> None:
        self._stop = asyncio.Event()
        if install_signals:
            self._install_signal_handlers(asyncio.get_running_loop())

        state = self.load_state()
        state.running = True
        state.pid = os.getpid()
        state.started_at = self.clock.now()
        self._write_pid()
        logger.info(
            f"Supervisor started (pid {state.pid}, heartbeat every {self.config.heartbeat_interval}s, "
            f"projects: {', '.join(self.config.projects) or 'none'})"
        )

        watcher_task = asyncio.create_task(self.watcher.run(self._stop))
        ticks = 0
        clean_exit = False
        try:
            while not self._stop.is_set():
                await asyncio.to_thread(self.tick)
                ticks += 1
                if max_ticks is not None and ticks >= max_ticks:
                    break
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.config.heartbeat_interval)
                except asyncio.TimeoutError:
                    pass
            clean_exit = True
        finally:
            self._stop.set()
            await watcher_task
            self._remove_pid()
            if clean_exit:
                state.running = False
                self.state_store.save(state)
            logger.info("Supervisor stopped")

    def status(self) -> dict[str, Any]:
        """Persisted state plus leftover lifecycle flags, for reporting."""
        state = self.state_store.load()
        return {
            "state": state,
            "stuck_flags": self.lifecycle.find_stuck_flags(self.known_identities()),
        }
