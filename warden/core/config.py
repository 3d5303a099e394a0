"""Daemon configuration.

Loaded from ``<root>/daemon/config.yaml``. Every field has a default, so a
workspace without a config file runs with the built-in settings.
"""

from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

from warden.core.identity import Role

DAEMON_DIR = "daemon"
CONFIG_FILENAME = "config.yaml"


class ConfigError(Exception):
    """Daemon configuration is invalid."""

    pass


class DaemonConfig(BaseModel):
    """Settings for one supervisor deployment."""

    root: Path
    heartbeat_interval: float = 300.0  # seconds
    projects: list[str] = Field(default_factory=list)
    # Patrol family -> enabled. Missing entries default to enabled.
    patrols: dict[str, bool] = Field(default_factory=dict)

    # External collaborators
    store_command: list[str] = Field(default_factory=lambda: ["tk"])
    mail_command: list[str] = Field(default_factory=lambda: ["town", "mail"])
    convoy_check_command: list[str] = Field(default_factory=lambda: ["town", "convoy", "check"])
    activity_command: list[str] = Field(
        default_factory=lambda: ["tk", "activity", "--follow", "--json"]
    )
    tracking_db: str = ".tickets/tickets.db"
    tmux_socket: str | None = None
    command_timeout: float = 30.0
    startup_command: str = "exec claude"

    @property
    def daemon_dir(self) -> Path:
        return self.root / DAEMON_DIR

    @property
    def state_file(self) -> Path:
        return self.daemon_dir / "state.json"

    @property
    def log_file(self) -> Path:
        return self.daemon_dir / "daemon.log"

    @property
    def pid_file(self) -> Path:
        return self.daemon_dir / "daemon.pid"

    @property
    def lock_file(self) -> Path:
        return self.daemon_dir / "daemon.lock"

    @property
    def events_file(self) -> Path:
        return self.daemon_dir / "events.jsonl"

    @property
    def roles_file(self) -> Path:
        return self.daemon_dir / "roles.yaml"

    @property
    def tracking_db_path(self) -> Path:
        path = Path(self.tracking_db)
        return path if path.is_absolute() else self.root / path

    def is_patrol_enabled(self, role: Role) -> bool:
        """Patrols are enabled unless explicitly switched off."""
        return self.patrols.get(role.value, True)


def load_config(root: Path) -> DaemonConfig:
    """Load configuration for the workspace at ``root``.

    Raises:
        ConfigError: If the config file exists but is malformed.
    """
    root = Path(root).resolve()
    config_path = root / DAEMON_DIR / CONFIG_FILENAME
    if not config_path.exists():
        return DaemonConfig(root=root)

    try:
        with open(config_path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read {config_path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"{config_path} must contain a mapping, got {type(raw).__name__}")

    raw.pop("root", None)
    try:
        return DaemonConfig(root=root, **raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid daemon config in {config_path}: {e}") from e
