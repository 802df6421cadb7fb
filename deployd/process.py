"""
Process supervisor for the deployed application instance.

Starts the application from an instance slot, captures its stdout/stderr
into the log channel, stops it through an escalating signal ladder and
restarts it after unexpected exits with a crash-loop aware backoff.
"""

import asyncio
import json
import logging
import os
import shlex
import signal
import sys
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

import psutil

from .config import Config
from .errors import LeaseIntegrityError, SupervisionFailure
from .lease import Lease, is_alive

logger = logging.getLogger(__name__)
instance_logger = logging.getLogger("deployd.instance")

TERMINATION_LADDER = ("interrupt", "terminate", "kill", "force")
SHELL_OPERATORS = ("&&", "||", "|", ";", ">", "<", "$", "`", "*")
ENTRY_FILES = (
    ("index.js", "node"),
    ("server.js", "node"),
    ("main.py", sys.executable),
    ("app.py", sys.executable),
)


class ChildState(Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    EXITED = "exited"


TRANSITIONS = {
    ChildState.IDLE: {ChildState.STARTING},
    ChildState.STARTING: {ChildState.RUNNING, ChildState.STOPPING, ChildState.EXITED},
    ChildState.RUNNING: {ChildState.STOPPING, ChildState.EXITED},
    ChildState.STOPPING: {ChildState.EXITED},
    ChildState.EXITED: set(),
}


@dataclass
class SupervisedChild:
    """The application process started from an instance slot."""

    slot: Path
    command: str
    pid: int | None = None
    state: ChildState = ChildState.IDLE
    started_at: datetime | None = None
    exited_at: datetime | None = None
    exit_code: int | None = None
    restart_count: int = 0
    stop_requested: bool = False
    process: asyncio.subprocess.Process | None = field(default=None, repr=False)

    def transition(self, state: ChildState):
        if state not in TRANSITIONS[self.state]:
            raise SupervisionFailure(
                f"Invalid child state change {self.state.value} -> {state.value}", self.pid
            )
        logger.debug(f"Child {self.pid} {self.state.value} -> {state.value}")
        self.state = state

    def uptime(self) -> float:
        if not self.started_at:
            return 0.0
        end = self.exited_at or datetime.now()
        return (end - self.started_at).total_seconds()

    @property
    def is_active(self) -> bool:
        return self.state in (ChildState.STARTING, ChildState.RUNNING, ChildState.STOPPING)

    def to_dict(self) -> dict:
        return {
            "pid": self.pid,
            "slot": str(self.slot),
            "command": self.command,
            "state": self.state.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "exited_at": self.exited_at.isoformat() if self.exited_at else None,
            "exit_code": self.exit_code,
            "restart_count": self.restart_count,
            "uptime_seconds": round(self.uptime(), 1),
        }


def resolve_start_command(slot: Path, config: Config) -> str:
    """Find how to run the application in a slot.

    Explicit start command, else the manifest's start script, else a known
    entry file.
    """
    if config.start_command:
        return config.start_command

    manifest = slot / config.manifest_file
    if manifest.is_file():
        try:
            scripts = json.loads(manifest.read_text(encoding="utf-8")).get("scripts") or {}
        except (json.JSONDecodeError, AttributeError, UnicodeDecodeError):
            logger.warning(f"Could not parse manifest at {manifest}")
            scripts = {}
        if "start" in scripts:
            return "npm run start"

    for filename, interpreter in ENTRY_FILES:
        if (slot / filename).is_file():
            return f"{shlex.quote(interpreter)} {filename}"

    raise SupervisionFailure(f"No start command, start script or entry file found at {slot}")


def _split_command(command: str) -> tuple[bool, str | list[str]]:
    """Return (shell, cmd). Commands with shell syntax go through the shell."""
    if any(op in command for op in SHELL_OPERATORS) or command.startswith("cd "):
        return True, command
    return False, shlex.split(command)


def _send_stage(pid: int, stage: str):
    """Deliver one rung of the termination ladder."""
    if stage == "interrupt":
        os.kill(pid, signal.SIGINT)
    elif stage == "terminate":
        os.kill(pid, signal.SIGTERM)
    elif stage == "kill":
        pgid = os.getpgid(pid)
        if pgid == pid and pgid != os.getpgrp():
            os.killpg(pgid, signal.SIGTERM)
        else:
            os.kill(pid, signal.SIGTERM)
    elif stage == "force":
        try:
            descendants = psutil.Process(pid).children(recursive=True)
        except psutil.NoSuchProcess:
            descendants = []
        os.kill(pid, signal.SIGKILL)
        for proc in descendants:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass
    else:
        raise ValueError(f"Unknown termination stage: {stage}")


async def terminate(pid: int, stage_wait: float = 2.0, probe_delay: float = 0.05) -> str | None:
    """Stop a process through interrupt, terminate, group kill and forced kill.

    Each stage waits `stage_wait` seconds and probes liveness before the next
    one. Returns the stage that stopped the process, or None if it was not
    running. Raises SupervisionFailure if it survives every stage.
    """
    if not await is_alive(pid, delay=probe_delay):
        logger.info(f"Process {pid} is not running")
        return None

    for stage in TERMINATION_LADDER:
        logger.info(f"Stopping process {pid} with stage '{stage}'")
        try:
            _send_stage(pid, stage)
        except ProcessLookupError:
            logger.info(f"Process {pid} exited before stage '{stage}'")
            return stage
        except PermissionError as e:
            logger.error(f"Not allowed to signal process {pid} at stage '{stage}': {e}")
        await asyncio.sleep(stage_wait)
        if not await is_alive(pid, delay=probe_delay):
            logger.info(f"Process {pid} stopped after stage '{stage}'")
            return stage

    raise SupervisionFailure(f"Process {pid} survived every termination stage", pid)


def restart_delay(uptime: float, quick_crashes: int, config: Config) -> float:
    """Backoff before restarting a child that exited after `uptime` seconds.

    Children that die inside the crash window wait the crash delay, doubled
    for every consecutive quick crash and capped; long-lived ones restart fast.
    """
    if uptime >= config.crash_window:
        return config.restart_delay
    exponent = max(0, quick_crashes - 1)
    return min(config.crash_restart_delay * (2 ** exponent), config.crash_restart_max)


class ProcessSupervisor:
    """Owns the single supervised application process of a Manager."""

    def __init__(self, config: Config, lease: Lease | None = None):
        self.config = config
        self.lease = lease or Lease("instance", config.root)
        self.child: SupervisedChild | None = None
        self._exit_tasks: dict[int, asyncio.Task] = {}
        self._exited = asyncio.Event()
        self._quick_crashes = 0
        self.stopped = False

    @property
    def pid(self) -> int | None:
        if self.child and self.child.is_active:
            return self.child.pid
        return None

    def is_running(self) -> bool:
        return self.child is not None and self.child.state == ChildState.RUNNING

    async def start(self, slot: Path) -> SupervisedChild:
        """Start the application from a slot and wait out the start grace period."""
        if self.child and self.child.is_active:
            raise SupervisionFailure(
                f"Instance already running with pid {self.child.pid}", self.child.pid
            )

        slot = Path(slot)
        if not slot.is_dir():
            raise SupervisionFailure(f"Instance folder not found at {slot}")
        command = resolve_start_command(slot, self.config)
        shell, cmd = _split_command(command)

        self.stopped = False
        child = SupervisedChild(slot=slot, command=command)
        child.transition(ChildState.STARTING)
        self.child = child

        try:
            if shell:
                process = await asyncio.create_subprocess_shell(
                    cmd,
                    cwd=str(slot),
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=os.environ.copy(),
                    start_new_session=True,
                )
            else:
                process = await asyncio.create_subprocess_exec(
                    *cmd,
                    cwd=str(slot),
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=os.environ.copy(),
                    start_new_session=True,
                )
        except OSError as e:
            child.transition(ChildState.EXITED)
            raise SupervisionFailure(f"Failed to start '{command}' at {slot}: {e}")

        child.process = process
        child.pid = process.pid
        child.started_at = datetime.now()
        self.lease.write(process.pid)
        logger.info(f"Started instance from {slot} with pid {process.pid}: {command}")

        exit_task = asyncio.create_task(self._wait_exit(child))
        self._exit_tasks[process.pid] = exit_task

        done, _ = await asyncio.wait({exit_task}, timeout=self.config.start_grace)
        if done:
            raise SupervisionFailure(
                f"Instance exited with code {child.exit_code} during start", child.pid
            )
        if child.state == ChildState.STARTING:
            child.transition(ChildState.RUNNING)
        return child

    async def stop(self, mandatory: bool = False) -> str | None:
        """Stop the supervised child.

        A child surviving the ladder raises SupervisionFailure when the stop is
        mandatory and is only logged otherwise.
        """
        self.stopped = True
        child = self.child
        if child is None or not child.is_active:
            return None

        exit_task = self._exit_tasks.get(child.pid)
        if child.state == ChildState.STOPPING:
            logger.info(f"Instance {child.pid} is already stopping, waiting for it to exit")
            if exit_task:
                bound = len(TERMINATION_LADDER) * (self.config.stop_stage_wait + 1)
                await asyncio.wait({exit_task}, timeout=bound)
            if child.is_active and mandatory:
                raise SupervisionFailure(f"Instance {child.pid} did not stop", child.pid)
            return None

        child.stop_requested = True
        child.transition(ChildState.STOPPING)
        try:
            stage = await terminate(child.pid, stage_wait=self.config.stop_stage_wait)
        except SupervisionFailure as e:
            logger.error(f"Could not stop instance at {child.slot}: {e}")
            if mandatory:
                raise
            return None

        if exit_task:
            await asyncio.wait({exit_task}, timeout=5)
        return stage

    async def restart(self, slot: Path | None = None) -> SupervisedChild:
        """Stop the running child (mandatory) and start from `slot`."""
        target = Path(slot) if slot else self.config.current_path
        await self.stop(mandatory=True)
        return await self.start(target)

    async def stop_orphan(self) -> str | None:
        """Stop an instance left behind by a previous manager, if any."""
        info = self.lease.read()
        if info is None or (self.child and info.pid == self.child.pid):
            return None
        if not await is_alive(info.pid):
            self.lease.path.unlink(missing_ok=True)
            return None
        logger.warning(f"Found instance pid {info.pid} from a previous manager, stopping it")
        stage = await terminate(info.pid, stage_wait=self.config.stop_stage_wait)
        self.lease.path.unlink(missing_ok=True)
        return stage

    async def _capture(self, stream: asyncio.StreamReader, child: SupervisedChild, level: int):
        """Forward child output lines into the log channel."""
        async for line in stream:
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                instance_logger.log(level, text, extra={"source": "instance", "pid": child.pid})

    async def _wait_exit(self, child: SupervisedChild):
        process = child.process
        readers = [
            asyncio.create_task(self._capture(process.stdout, child, logging.INFO)),
            asyncio.create_task(self._capture(process.stderr, child, logging.WARNING)),
        ]
        code = await process.wait()
        # Descendants may keep the pipes open after the child is gone
        _, pending = await asyncio.wait(readers, timeout=1.0)
        for reader in pending:
            reader.cancel()

        child.exit_code = code
        child.exited_at = datetime.now()
        child.transition(ChildState.EXITED)
        self._exit_tasks.pop(child.pid, None)
        try:
            if self.lease.is_owned_by(child.pid):
                self.lease.release(child.pid)
        except LeaseIntegrityError as e:
            logger.warning(str(e))

        if child.stop_requested:
            logger.info(f"Instance {child.pid} stopped with code {code}")
        else:
            logger.warning(
                f"Instance {child.pid} exited unexpectedly with code {code} "
                f"after {child.uptime():.1f}s"
            )
        self._exited.set()

    async def watch(self):
        """Restart the child after unexpected exits."""
        while True:
            await self._exited.wait()
            self._exited.clear()

            child = self.child
            if self.stopped or child is None or child.stop_requested:
                continue
            if child.state != ChildState.EXITED:
                continue

            uptime = child.uptime()
            if uptime < self.config.crash_window:
                self._quick_crashes += 1
            else:
                self._quick_crashes = 0
            delay = restart_delay(uptime, self._quick_crashes, self.config)
            logger.warning(f"Restarting instance from {child.slot} in {delay:.1f}s")
            await asyncio.sleep(delay)

            if self.child is not child:
                continue
            if self.stopped:
                logger.info(f"Instance from {child.slot} was stopped during the restart delay")
                continue
            try:
                restarted = await self.start(child.slot)
                restarted.restart_count = child.restart_count + 1
            except SupervisionFailure as e:
                logger.error(f"Restart of instance from {child.slot} failed: {e}")

    def metrics(self) -> dict:
        """Resource usage of the supervised process tree."""
        result = {
            "pid": None,
            "cpu_percent": 0.0,
            "memory_mb": 0.0,
            "child_processes": 0,
            "uptime_seconds": 0,
            "restart_count": 0,
        }
        child = self.child
        if child is None or not child.is_active:
            return result

        try:
            proc = psutil.Process(child.pid)
            cpu_percent = proc.cpu_percent(interval=0.1)
            memory_mb = proc.memory_info().rss / 1024 / 1024

            child_count = 0
            try:
                children = proc.children(recursive=True)
                child_count = len(children)
                for sub in children:
                    cpu_percent += sub.cpu_percent(interval=0.1)
                    memory_mb += sub.memory_info().rss / 1024 / 1024
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                pass

            result.update({
                "pid": child.pid,
                "cpu_percent": round(cpu_percent, 1),
                "memory_mb": round(memory_mb, 1),
                "child_processes": child_count,
                "uptime_seconds": round(child.uptime(), 1),
                "restart_count": child.restart_count,
            })
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass

        return result
