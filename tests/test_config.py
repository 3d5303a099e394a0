"""Tests for daemon configuration loading."""

import pytest
import yaml

from warden.core.config import ConfigError, DaemonConfig, load_config
from warden.core.identity import Role


class TestLoadConfig:
    """Tests for load_config."""

    def test_defaults_without_file(self, workspace):
        """A workspace with no config file runs on defaults."""
        config = load_config(workspace)
        assert config.root == workspace.resolve()
        assert config.heartbeat_interval == 300.0
        assert config.projects == []
        assert config.startup_command == "exec claude"

    def test_file_values(self, workspace):
        """Values from config.yaml override defaults; root is never overridden."""
        (workspace / "daemon" / "config.yaml").write_text(
            yaml.dump(
                {
                    "root": "/elsewhere",
                    "heartbeat_interval": 60,
                    "projects": ["gastown", "beads"],
                    "patrols": {"merge-processor": False},
                    "tmux_socket": "warden",
                }
            )
        )
        config = load_config(workspace)
        assert config.root == workspace.resolve()
        assert config.heartbeat_interval == 60.0
        assert config.projects == ["gastown", "beads"]
        assert config.tmux_socket == "warden"
        assert not config.is_patrol_enabled(Role.MERGE_PROCESSOR)
        assert config.is_patrol_enabled(Role.MONITOR)

    def test_empty_file(self, workspace):
        """An empty file is the same as no file."""
        (workspace / "daemon" / "config.yaml").write_text("")
        assert load_config(workspace).projects == []

    @pytest.mark.parametrize(
        "content",
        [
            "projects: [unclosed",
            "- just\n- a list\n",
            "heartbeat_interval: soon\n",
        ],
    )
    def test_invalid(self, workspace, content):
        """Malformed or mistyped config raises ConfigError."""
        (workspace / "daemon" / "config.yaml").write_text(content)
        with pytest.raises(ConfigError):
            load_config(workspace)


class TestPaths:
    """Tests for derived daemon paths."""

    def test_daemon_files(self, tmp_path):
        """Runtime files live under <root>/daemon."""
        config = DaemonConfig(root=tmp_path)
        assert config.state_file == tmp_path / "daemon" / "state.json"
        assert config.lock_file == tmp_path / "daemon" / "daemon.lock"
        assert config.pid_file == tmp_path / "daemon" / "daemon.pid"
        assert config.log_file == tmp_path / "daemon" / "daemon.log"
        assert config.roles_file == tmp_path / "daemon" / "roles.yaml"

    def test_tracking_db(self, tmp_path):
        """Relative database paths resolve against the root."""
        assert DaemonConfig(root=tmp_path).tracking_db_path == tmp_path / ".tickets" / "tickets.db"
        assert DaemonConfig(root=tmp_path, tracking_db="/var/db/t.db").tracking_db_path.as_posix() == "/var/db/t.db"
