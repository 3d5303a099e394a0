"""Tests for the ticket store model and CLI adapter."""

import json
from datetime import UTC, datetime
from unittest.mock import Mock

import pytest

from warden.core.tickets import (
    CliTicketStore,
    Ticket,
    TicketStoreError,
    format_agent_description,
    parse_agent_fields,
)


def completed(returncode=0, stdout="", stderr=""):
    result = Mock()
    result.returncode = returncode
    result.stdout = stdout
    result.stderr = stderr
    return result


@pytest.fixture
def cli_store(tmp_path):
    return CliTicketStore(["tk"], cwd=tmp_path, db_path=tmp_path / "tickets.db")


# =============================================================================
# Model
# =============================================================================


class TestTicket:
    """Tests for the Ticket model."""

    def test_nulls_become_empty(self):
        """Null fields from the store read as empty."""
        ticket = Ticket.model_validate({"id": "gt-1", "status": None, "labels": None, "hook": None})
        assert ticket.status == ""
        assert ticket.labels == []
        assert ticket.hook == ""

    def test_last_activity_label(self):
        """Heartbeats come from the last_activity label."""
        ticket = Ticket(id="wd-gastown-monitor", labels=["project:gastown", "last_activity:2026-03-02T08:55:00Z"])
        assert ticket.last_activity == datetime(2026, 3, 2, 8, 55, tzinfo=UTC)

    @pytest.mark.parametrize("labels", [[], ["last_activity:"], ["last_activity:yesterday"]])
    def test_missing_or_bad_activity(self, labels):
        """No usable label means no heartbeat recorded."""
        assert Ticket(id="x", labels=labels).last_activity is None

    def test_naive_updated_at_is_utc(self):
        """Timestamps without zone are taken as UTC."""
        ticket = Ticket.model_validate({"id": "x", "updated_at": "2026-03-02T09:00:00"})
        assert ticket.updated_at.tzinfo is not None

    def test_column_wins_over_description(self):
        """Column values take precedence over description copies."""
        ticket = Ticket(id="x", agent_state="dead", hook="gt-2", description="agent_state: running\nhook: gt-1\n")
        assert ticket.state == "dead"
        assert ticket.current_work == "gt-2"

    def test_description_fields(self):
        """Description fields are parsed; "null" means empty."""
        fields = parse_agent_fields("role_type: crew\nhook: null\nnotes: ignored\nagent_state: working")
        assert fields == {"role_type": "crew", "hook": "", "agent_state": "working"}

    def test_format_description_keeps_note(self):
        """Formatting writes every field and appends the note."""
        text = format_agent_description({"agent_state": "dead"}, note="left a note")
        assert "agent_state: dead\n" in text
        assert text.endswith("\nleft a note")
        assert parse_agent_fields(text)["agent_state"] == "dead"


# =============================================================================
# CLI adapter
# =============================================================================


class TestCliTicketStore:
    """Tests for CliTicketStore."""

    def test_show(self, cli_store, mocker):
        """show accepts a single object or a one-element list."""
        mocker.patch("subprocess.run", return_value=completed(stdout=json.dumps([{"id": "gt-1", "status": "open"}])))
        assert cli_store.show("gt-1").status == "open"

    def test_show_missing(self, cli_store, mocker):
        """Empty output means the ticket does not exist."""
        mocker.patch("subprocess.run", return_value=completed(stdout=""))
        with pytest.raises(TicketStoreError, match="not found"):
            cli_store.show("gt-1")

    def test_list_filters(self, cli_store, mocker):
        """Filters become CLI flags."""
        mock_run = mocker.patch("subprocess.run", return_value=completed(stdout="[]"))
        cli_store.list(issue_type="merge-request", status="open", label="project:gastown")
        assert mock_run.call_args[0][0] == [
            "tk",
            "list",
            "--json",
            "--type=merge-request",
            "--status=open",
            "--label=project:gastown",
        ]

    def test_list_skips_malformed(self, cli_store, mocker):
        """Records without an id are skipped."""
        output = json.dumps([{"id": "gt-1"}, {"status": "open"}])
        mocker.patch("subprocess.run", return_value=completed(stdout=output))
        assert [t.id for t in cli_store.list()] == ["gt-1"]

    def test_update(self, cli_store, mocker):
        """Field names become dashed flags."""
        mock_run = mocker.patch("subprocess.run", return_value=completed())
        cli_store.update("wd-gastown-crew-max", agent_state="dead")
        assert mock_run.call_args[0][0] == ["tk", "update", "wd-gastown-crew-max", "--agent-state", "dead"]

    def test_command_failure(self, cli_store, mocker):
        """Nonzero exits raise TicketStoreError."""
        mocker.patch("subprocess.run", return_value=completed(1, stderr="database locked"))
        with pytest.raises(TicketStoreError, match="database locked"):
            cli_store.list()

    def test_missing_binary(self, cli_store, mocker):
        """A missing store CLI raises TicketStoreError."""
        mocker.patch("subprocess.run", side_effect=FileNotFoundError("tk"))
        with pytest.raises(TicketStoreError):
            cli_store.list()

    def test_missing_tracking_db(self, cli_store):
        """Tracking lookups need the store database."""
        with pytest.raises(TicketStoreError, match="not found"):
            cli_store.tracking_aggregates("gt-1")
