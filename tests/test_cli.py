"""Tests for CLI commands.

Tests all warden CLI commands using Click's CliRunner:
- run: Run the daemon
- tick: Run one heartbeat tick
- status: Show persisted state
- check-convoys: Check convoys tracking an item
"""

from __future__ import annotations

from unittest.mock import AsyncMock, Mock

import pytest
from click.testing import CliRunner
from filelock import FileLock

from warden import __version__
from warden.cli import main
from warden.core.daemon import DaemonAlreadyRunningError
from warden.core.state import StatePersistenceError
from warden.core.tickets import TicketStoreError


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def wired(mocker, supervisor):
    """Make every command use the in-memory supervisor."""
    mocker.patch("warden.cli.Supervisor.from_config", return_value=supervisor)
    return supervisor


def test_version(cli_runner):
    """--version prints the package version."""
    result = cli_runner.invoke(main, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


class TestRunCommand:
    """Tests for 'warden run'."""

    def test_already_running(self, cli_runner, workspace, mocker):
        """A second daemon exits with status 1."""
        fake = Mock()
        fake.run = AsyncMock(side_effect=DaemonAlreadyRunningError("Supervisor already running"))
        mocker.patch("warden.cli.Supervisor.from_config", return_value=fake)

        result = cli_runner.invoke(main, ["run", "--root", str(workspace)])

        assert result.exit_code == 1
        assert "already running" in result.output

    def test_persistence_failure(self, cli_runner, workspace, mocker):
        """Losing state persistence exits with status 2."""
        fake = Mock()
        fake.run = AsyncMock(side_effect=StatePersistenceError("disk full"))
        mocker.patch("warden.cli.Supervisor.from_config", return_value=fake)

        result = cli_runner.invoke(main, ["run", "--root", str(workspace)])

        assert result.exit_code == 2

    def test_config_error(self, cli_runner, workspace):
        """A broken config file exits before starting."""
        (workspace / "daemon" / "config.yaml").write_text("projects: [unclosed")
        result = cli_runner.invoke(main, ["run", "--root", str(workspace)])
        assert result.exit_code == 1
        assert "Config error" in result.output


class TestTickCommand:
    """Tests for 'warden tick'."""

    def test_tick_reports(self, cli_runner, workspace, wired):
        """One tick runs and prints a health table and sweep summary."""
        result = cli_runner.invoke(main, ["tick", "--root", str(workspace)])

        assert result.exit_code == 0
        assert "Agent Health" in result.output
        assert "gastown/monitor" in result.output
        assert "Sweeps: 0 marked dead" in result.output
        assert wired.state.heartbeat_count == 1
        assert (workspace / "daemon" / "daemon.log").exists()

    def test_tick_refused_while_daemon_runs(self, cli_runner, workspace, wired):
        """A tick is refused while another process holds the daemon lock."""
        lock = FileLock(str(workspace / "daemon" / "daemon.lock"))
        lock.acquire()
        try:
            result = cli_runner.invoke(main, ["tick", "--root", str(workspace)])
        finally:
            lock.release()

        assert result.exit_code == 1
        assert "already running" in result.output
        assert wired.state.heartbeat_count == 0
        assert not (workspace / "daemon" / "state.json").exists()

    def test_tick_releases_lock(self, cli_runner, workspace, wired):
        """After a tick the daemon lock is free again."""
        result = cli_runner.invoke(main, ["tick", "--root", str(workspace)])
        assert result.exit_code == 0

        lock = FileLock(str(workspace / "daemon" / "daemon.lock"))
        lock.acquire(timeout=0)
        lock.release()


class TestStatusCommand:
    """Tests for 'warden status'."""

    def test_status(self, cli_runner, workspace, wired, write_agent_state):
        """Status shows saved state and leftover flags."""
        wired.tick()
        write_agent_state("gastown/monitor/state.json", {"requesting_cycle": True})

        result = cli_runner.invoke(main, ["status", "--root", str(workspace)])

        assert result.exit_code == 0
        assert "Heartbeats: 1" in result.output
        assert "requesting_cycle" in result.output

    def test_status_corrupt_state(self, cli_runner, workspace, wired):
        """An unreadable state file exits with status 1."""
        (workspace / "daemon" / "state.json").write_text("{broken")
        result = cli_runner.invoke(main, ["status", "--root", str(workspace)])
        assert result.exit_code == 1


class TestCheckConvoysCommand:
    """Tests for 'warden check-convoys'."""

    def test_checked(self, cli_runner, workspace, wired, store, make_ticket):
        """Checked convoys are listed."""
        make_ticket("gt-x", issue_type="task", status="closed")
        make_ticket("hq-c1", issue_type="convoy")
        store.tracks.append(("hq-c1", "gt-x"))

        result = cli_runner.invoke(main, ["check-convoys", "gt-x", "--root", str(workspace)])

        assert result.exit_code == 0
        assert "hq-c1" in result.output

    def test_nothing_tracked(self, cli_runner, workspace, wired):
        """Untracked items say so."""
        result = cli_runner.invoke(main, ["check-convoys", "gt-x", "--root", str(workspace)])
        assert result.exit_code == 0
        assert "No open convoys track gt-x" in result.output

    def test_store_failure(self, cli_runner, workspace, wired, mocker):
        """Tracking lookup failures exit with status 1."""
        mocker.patch.object(wired.store, "tracking_aggregates", side_effect=TicketStoreError("db locked"))
        result = cli_runner.invoke(main, ["check-convoys", "gt-x", "--root", str(workspace)])
        assert result.exit_code == 1
