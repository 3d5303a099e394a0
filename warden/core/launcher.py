"""Session (re)creation for agents.

Role launch settings use a built-in + override model:
- Built-in: ``warden/config/roles.yaml`` (shipped with warden)
- Override: ``<root>/daemon/roles.yaml`` (per workspace)
- Merge semantics: env maps merge, other keys override
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import jsonschema
import yaml

from warden.core.identity import AgentIdentity, Role
from warden.core.sessions import SessionError, TerminalSessions
from warden.core.utils import Clock

logger = logging.getLogger(__name__)

CONFIG_DIR = Path(__file__).parent.parent / "config"
BUILTIN_ROLES_FILE = CONFIG_DIR / "roles.yaml"
ROLE_SCHEMA_FILE = CONFIG_DIR / "role_schema.json"

BEACON_SENDER = "warden"


class RoleConfigError(Exception):
    """Role launch configuration is invalid."""

    pass


class LaunchError(Exception):
    """Agent session could not be started."""

    pass


@dataclass
class RoleLaunchConfig:
    """How to start a session for one role. Values are unexpanded patterns."""

    work_dir: str = ""
    start_command: str = ""
    prompt: str = ""
    env: dict[str, str] = field(default_factory=dict)

    def expand(self, identity: AgentIdentity, root: Path) -> "RoleLaunchConfig":
        """Substitute identity placeholders in every pattern."""
        values = {
            "root": str(root),
            "project": identity.project,
            "name": identity.name,
            "role": identity.role.value,
            "address": identity.address,
        }
        try:
            return RoleLaunchConfig(
                work_dir=self.work_dir.format(**values),
                start_command=self.start_command.format(**values),
                prompt=self.prompt.format(**values),
                env={key: value.format(**values) for key, value in self.env.items()},
            )
        except (KeyError, IndexError, ValueError) as e:
            raise RoleConfigError(f"Bad placeholder in {identity.role.value} launch config: {e}") from e


@dataclass
class RoleLaunchLoader:
    """Load role launch settings from the built-in file plus a workspace override."""

    override_file: Path | None = None
    builtin_file: Path = BUILTIN_ROLES_FILE
    schema_file: Path = ROLE_SCHEMA_FILE

    _schema: dict = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        self._schema = self._load_schema()

    def _load_schema(self) -> dict:
        try:
            with open(self.schema_file, encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            raise RoleConfigError(
                f"Role schema not found at {self.schema_file}. "
                "Ensure warden/config/role_schema.json is installed with the package."
            )
        except json.JSONDecodeError as e:
            raise RoleConfigError(f"Invalid JSON in role schema {self.schema_file}: {e}")

    def _load_yaml(self, path: Path) -> dict[str, Any]:
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise RoleConfigError(f"Invalid YAML in {path}: {e}")
        except OSError as e:
            raise RoleConfigError(f"Cannot read {path}: {e}")
        if data is None:
            return {"roles": {}}
        if not isinstance(data, dict):
            raise RoleConfigError(f"{path} must contain a mapping, got {type(data).__name__}")
        return data

    def _validate(self, data: dict[str, Any], path: Path) -> None:
        try:
            jsonschema.validate(data, self._schema)
        except jsonschema.ValidationError as e:
            location = ".".join(str(p) for p in e.absolute_path) or "<root>"
            raise RoleConfigError(f"Invalid role config in {path} at {location}: {e.message}")
        except jsonschema.SchemaError as e:
            raise RoleConfigError(f"Invalid role schema: {e.message}")

    def load(self) -> dict[Role, RoleLaunchConfig]:
        """Load and merge launch settings for every configured role.

        Raises:
            RoleConfigError: If either file is malformed or fails validation.
        """
        merged: dict[str, dict[str, Any]] = {}
        paths = [self.builtin_file]
        if self.override_file is not None and self.override_file.exists():
            paths.append(self.override_file)

        for path in paths:
            data = self._load_yaml(path)
            self._validate(data, path)
            for role_name, settings in data.get("roles", {}).items():
                base = merged.setdefault(role_name, {"env": {}})
                for key, value in settings.items():
                    if key == "env":
                        base["env"] = {**base["env"], **value}
                    else:
                        base[key] = value

        return {Role(name): RoleLaunchConfig(**settings) for name, settings in merged.items()}


def default_launch_config(role: Role) -> RoleLaunchConfig:
    """Fallback used when no usable role config exists."""
    work_dirs = {
        Role.COORDINATOR: "{root}",
        Role.HEALTH_ORCHESTRATOR: "{root}",
        Role.MONITOR: "{root}/{project}",
        Role.MERGE_PROCESSOR: "{root}/{project}/merge/rig",
        Role.PERSISTENT_WORKER: "{root}/{project}/crew/{name}",
        Role.TRANSIENT_WORKER: "{root}/{project}/workers/{name}",
    }
    return RoleLaunchConfig(work_dir=work_dirs[role])


def format_beacon(address: str, topic: str, when: datetime) -> str:
    """Startup beacon identifying the session, its sender and why it started."""
    return f"[WARDEN] {address} <- {BEACON_SENDER} • {when.strftime('%Y-%m-%dT%H:%M')} • {topic}"


class SessionLauncher:
    """Creates agent sessions and primes them with a startup beacon."""

    def __init__(
        self,
        sessions: TerminalSessions,
        root: Path,
        startup_command: str,
        role_configs: dict[Role, RoleLaunchConfig] | None = None,
        clock: Clock | None = None,
    ):
        self.sessions = sessions
        self.root = Path(root)
        self.startup_command = startup_command
        self.role_configs = role_configs or {}
        self.clock = clock or Clock()

    @classmethod
    def from_override_file(
        cls,
        sessions: TerminalSessions,
        root: Path,
        startup_command: str,
        override_file: Path,
        clock: Clock | None = None,
    ) -> "SessionLauncher":
        """Build a launcher, falling back to defaults when role config is unusable."""
        try:
            role_configs = RoleLaunchLoader(override_file=override_file).load()
        except RoleConfigError as e:
            logger.warning(f"Using default launch settings: {e}")
            role_configs = {}
        return cls(sessions, root, startup_command, role_configs=role_configs, clock=clock)

    def resolve(self, identity: AgentIdentity) -> RoleLaunchConfig:
        """Expanded launch settings for an agent."""
        config = self.role_configs.get(identity.role) or default_launch_config(identity.role)
        if not config.work_dir:
            config = RoleLaunchConfig(
                work_dir=default_launch_config(identity.role).work_dir,
                start_command=config.start_command,
                prompt=config.prompt,
                env=config.env,
            )
        try:
            expanded = config.expand(identity, self.root)
        except RoleConfigError as e:
            logger.warning(f"{e}; using default launch settings for {identity}")
            expanded = default_launch_config(identity.role).expand(identity, self.root)
        if not expanded.start_command:
            expanded.start_command = self.startup_command
        return expanded

    def start(self, identity: AgentIdentity, topic: str) -> str:
        """Create the agent's session and send the startup beacon.

        Returns the session name.

        Raises:
            LaunchError: If the session cannot be created or started.
        """
        session = identity.session_name
        config = self.resolve(identity)
        work_dir = Path(config.work_dir)
        env = {"WD_ROLE": identity.address, "WD_ACTOR": identity.address, **config.env}

        try:
            work_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise LaunchError(f"Cannot create working directory {work_dir}: {e}") from e

        try:
            self.sessions.new_session(session, work_dir)
            for key, value in env.items():
                self.sessions.set_environment(session, key, value)
            self.sessions.send_keys(session, config.start_command)
        except SessionError as e:
            raise LaunchError(f"Failed to start {session}: {e}") from e

        beacon = format_beacon(identity.address, topic, self.clock.now())
        if config.prompt:
            beacon = f"{beacon}\n\n{config.prompt}"
        try:
            self.sessions.nudge_session(session, beacon)
        except SessionError as e:
            # The agent is running; it just missed its first instruction.
            logger.warning(f"Started {session} but startup beacon failed: {e}")

        logger.info(f"Started session {session} in {work_dir} ({topic})")
        return session
