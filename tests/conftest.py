"""Shared test fixtures for deployd tests."""

import json
import logging
import socket
import subprocess
import sys
from collections.abc import Generator
from pathlib import Path

import pytest

from deployd.config import Config
from deployd.slots import SlotLayout, promote_upcoming, remove_tree
from deployd.vcs import CommitInfo

APP_SOURCE = """\
import time
print("instance {version} up", flush=True)
while True:
    time.sleep(0.1)
"""


def free_port() -> int:
    """Find a loopback port nobody listens on."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def write_app(slot: Path, version: str, **extra: str) -> Path:
    """Create an instance slot holding a small long-running Python app."""
    slot.mkdir(parents=True, exist_ok=True)
    (slot / "main.py").write_text(APP_SOURCE.format(version=version))
    (slot / "VERSION").write_text(version)
    for name, content in extra.items():
        (slot / name).write_text(content)
    return slot


class FakeVersionControl:
    """In-memory version control writing a fixed tree on checkout."""

    def __init__(
        self,
        files: dict[str, str] | None = None,
        empty_checkout: bool = False,
        empty_clone: bool = False,
    ):
        self.files = files if files is not None else {
            "main.py": APP_SOURCE.format(version="new"),
            "VERSION": "new",
            "package.json": json.dumps({"name": "app", "version": "1.0.0"}),
            "package-lock.json": json.dumps({"lockfileVersion": 3}),
        }
        self.empty_checkout = empty_checkout
        self.empty_clone = empty_clone
        self.calls: list[tuple[str, str | None]] = []

    def _write(self, target_dir: Path):
        target_dir.mkdir(parents=True, exist_ok=True)
        for name, content in self.files.items():
            path = target_dir / name
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)

    async def checkout(self, ref: str | None, target_dir: Path) -> None:
        self.calls.append(("checkout", ref))
        if not self.empty_checkout:
            self._write(target_dir)

    async def clone(self, ref: str | None, target_dir: Path) -> None:
        self.calls.append(("clone", ref))
        if not self.empty_clone:
            self._write(target_dir)

    async def last_commit(self, ref: str | None) -> CommitInfo | None:
        self.calls.append(("last_commit", ref))
        return CommitInfo(hash="0123456789abcdef", date=None, message="Ship it")


class SwapRecorder:
    """Stands in for the Manager: promotes upcoming like /restart does."""

    def __init__(self, config: Config):
        self.layout = SlotLayout.from_config(config)
        self.calls: list[Path] = []

    async def __call__(self, upcoming: Path) -> None:
        self.calls.append(upcoming)
        aside = promote_upcoming(self.layout, upcoming)
        if aside is not None:
            remove_tree(aside)


@pytest.fixture
def root(tmp_path: Path) -> Path:
    """Temporary deployment root."""
    d = tmp_path / "deploy"
    d.mkdir()
    return d


@pytest.fixture
def config(root: Path) -> Config:
    """Configuration with short waits and private ports."""
    return Config(
        root=root,
        manager_port=free_port(),
        processor_port=free_port(),
        carry_over=["data", ".env"],
        lease_timeout=2.0,
        preempt_timeout=5.0,
        install_timeout=10.0,
        build_timeout=10.0,
        command_timeout=2.0,
        restart_delay=0.05,
        crash_restart_delay=0.1,
        crash_restart_max=0.5,
        stop_stage_wait=0.2,
        start_grace=0.3,
    )


@pytest.fixture
def fake_vcs() -> FakeVersionControl:
    return FakeVersionControl()


@pytest.fixture
def swap(config: Config) -> SwapRecorder:
    return SwapRecorder(config)


@pytest.fixture
def sleeper() -> Generator[subprocess.Popen, None, None]:
    """A live process that is not ours to manage."""
    proc = subprocess.Popen(
        [sys.executable, "-c", "import time; time.sleep(60)"],
        start_new_session=True,
    )
    try:
        yield proc
    finally:
        proc.kill()
        proc.wait()


@pytest.fixture
def dead_pid() -> int:
    """PID of a process that has exited and been reaped."""
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


@pytest.fixture
def restore_logging() -> Generator[None, None, None]:
    """Undo configure_logging changes to the root logger."""
    root_logger = logging.getLogger()
    handlers = root_logger.handlers[:]
    level = root_logger.level
    try:
        yield
    finally:
        for handler in root_logger.handlers[:]:
            if handler not in handlers:
                root_logger.removeHandler(handler)
                handler.close()
        for handler in handlers:
            if handler not in root_logger.handlers:
                root_logger.addHandler(handler)
        root_logger.setLevel(level)


@pytest.fixture
def make_app():
    """Factory writing a small long-running app into a slot."""
    return write_app


@pytest.fixture
def make_vcs():
    """Factory for fake version control with custom behavior."""
    return FakeVersionControl


@pytest.fixture
def port() -> int:
    return free_port()
