"""
Configuration for deployd.

Settings arrive as an opaque key/value map (normally the process environment
after .env files are loaded) and are resolved against a deployment root.
Every process that takes part in a deployment must resolve the same root.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from dotenv import load_dotenv

DEFAULT_CARRY_OVER = "data,.env,node_modules,build"


def _disabled(value: str | None) -> bool:
    return value is None or value.strip() == "" or value.strip().lower() == "false"


def _command(values: Mapping[str, str], key: str) -> str | None:
    value = values.get(key)
    if _disabled(value):
        return None
    return value.strip()


@dataclass
class Config:
    """deployd configuration."""

    # Paths
    root: Path = field(default_factory=Path.cwd)
    old_path: Path = None
    previous_path: Path = None
    current_path: Path = None
    upcoming_path: Path = None
    repository_path: Path = None
    db_path: Path = None

    # Control plane
    host: str = "127.0.0.1"
    manager_port: int = 49737
    processor_port: int = 49738

    # Pipeline
    trigger_branch: str | None = None
    carry_over: list[str] = field(default_factory=lambda: DEFAULT_CARRY_OVER.split(","))
    install_command: str | None = None
    prebuild_command: str | None = None
    build_command: str | None = None
    test_command: str | None = None
    start_command: str | None = None
    manifest_file: str = "package.json"
    lock_files: list[str] = field(default_factory=lambda: ["package-lock.json", "yarn.lock"])

    # Timeouts (seconds)
    install_timeout: float = 180.0
    build_timeout: float = 60.0
    command_timeout: float = 10.0
    lease_timeout: float = 30.0
    preempt_timeout: float = 60.0

    # Process management
    restart_delay: float = 1.0
    crash_restart_delay: float = 10.0
    crash_restart_max: float = 120.0
    crash_window: float = 30.0
    stop_stage_wait: float = 2.0
    start_grace: float = 1.0

    # Logging
    log_level: str = "INFO"

    def __post_init__(self):
        """Resolve slot paths against the deployment root."""
        self.root = Path(self.root).resolve()
        self.old_path = self._resolve(self.old_path, "old-instance")
        self.previous_path = self._resolve(self.previous_path, "previous-instance")
        self.current_path = self._resolve(self.current_path, "current-instance")
        self.upcoming_path = self._resolve(self.upcoming_path, "upcoming-instance")
        self.repository_path = self._resolve(self.repository_path, ".")
        self.db_path = self._resolve(self.db_path, "deployd.db")

    def _resolve(self, value, default: str) -> Path:
        path = Path(value) if value else Path(default)
        if not path.is_absolute():
            path = self.root / path
        return path.resolve()

    @property
    def build_commands(self) -> list[str]:
        """Commands run by the build/test step, in order."""
        return [
            c for c in (self.prebuild_command, self.build_command, self.test_command) if c
        ]

    def port_for(self, role: str) -> int:
        """Get the control plane port of a daemon role."""
        if role == "manager":
            return self.manager_port
        if role == "processor":
            return self.processor_port
        raise ValueError(f"Unknown daemon role: {role}")

    def log_path(self, role: str) -> Path:
        return self.root / f"{role}.log"

    @classmethod
    def from_mapping(cls, values: Mapping[str, str], root: Path | str | None = None) -> "Config":
        """Build a configuration from a key/value map such as os.environ."""
        carry_over = values.get("PIPELINE_STEP_COPY", DEFAULT_CARRY_OVER)
        return cls(
            root=Path(root or values.get("DEPLOYD_ROOT") or Path.cwd()),
            old_path=values.get("OLD_INSTANCE_PATH"),
            previous_path=values.get("PREVIOUS_INSTANCE_PATH"),
            current_path=values.get("CURRENT_INSTANCE_PATH"),
            upcoming_path=values.get("UPCOMING_INSTANCE_PATH"),
            repository_path=values.get("REPOSITORY_PATH"),
            db_path=values.get("DEPLOYD_DB_PATH"),
            host=values.get("CONTROL_HOST", "127.0.0.1"),
            manager_port=int(values.get("MANAGER_PORT", "49737")),
            processor_port=int(values.get("PROCESSOR_PORT", "49738")),
            trigger_branch=values.get("TRIGGER_BRANCH") or None,
            carry_over=[] if _disabled(carry_over) else [
                p.strip() for p in carry_over.split(",") if p.strip()
            ],
            install_command=_command(values, "PIPELINE_STEP_INSTALL"),
            prebuild_command=_command(values, "PIPELINE_STEP_PREBUILD"),
            build_command=_command(values, "PIPELINE_STEP_BUILD"),
            test_command=_command(values, "PIPELINE_STEP_TEST"),
            start_command=_command(values, "PIPELINE_STEP_START"),
            install_timeout=float(values.get("INSTALL_TIMEOUT", "180")),
            build_timeout=float(values.get("BUILD_TIMEOUT", "60")),
            command_timeout=float(values.get("COMMAND_TIMEOUT", "10")),
            lease_timeout=float(values.get("LEASE_TIMEOUT", "30")),
            preempt_timeout=float(values.get("PREEMPT_TIMEOUT", "60")),
            restart_delay=float(values.get("RESTART_DELAY", "1")),
            crash_restart_delay=float(values.get("CRASH_RESTART_DELAY", "10")),
            crash_restart_max=float(values.get("CRASH_RESTART_MAX", "120")),
            crash_window=float(values.get("CRASH_WINDOW", "30")),
            stop_stage_wait=float(values.get("STOP_STAGE_WAIT", "2")),
            start_grace=float(values.get("START_GRACE", "1")),
            log_level=values.get("LOG_LEVEL", "INFO").upper(),
        )


def load_config(root: Path | str | None = None) -> Config:
    """Load configuration from the environment and .env files.

    A .env file at the deployment root takes part in the lookup, after the one
    found from the working directory.
    """
    load_dotenv()
    base = Path(root or os.environ.get("DEPLOYD_ROOT") or Path.cwd())
    env_file = base / ".env"
    if env_file.is_file():
        load_dotenv(env_file)
    return Config.from_mapping(os.environ, root=base)
