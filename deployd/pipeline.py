"""
Deployment pipeline.

Turns a repository reference into a built instance in the `upcoming` slot and
asks the Manager to swap it in. A run holds the `process` lease for its whole
duration and checks, before every step, whether a newer run superseded it.
Failed runs leave `upcoming` untouched for inspection; the next run's purge
clears it.
"""

import asyncio
import logging
import os
import signal
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable

from .config import Config
from .errors import LeaseIntegrityError, LockContention, RunAborted, StepFailure
from .lease import Lease
from .slots import SlotLayout, copy_carry_over, files_identical, is_empty_dir, rotate_for_build
from .vcs import CommitInfo, VersionControl

logger = logging.getLogger(__name__)

PIPELINE_LEASE = "process"


class PipelineState(Enum):
    QUEUED = "queued"
    PURGING = "purging"
    CHECKING_OUT = "checking_out"
    COPYING_CARRY_OVER = "copying_carry_over"
    INSTALLING = "installing"
    BUILDING = "building"
    SWAPPING = "swapping"
    DONE = "done"
    ABORTED = "aborted"
    FAILED = "failed"


TERMINAL_STATES = {PipelineState.DONE, PipelineState.ABORTED, PipelineState.FAILED}


def new_run_id(moment: datetime | None = None) -> str:
    """Sortable UTC timestamp id, e.g. 2024-05-01_12-30-05_123."""
    moment = (moment or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%d_%H-%M-%S_%f")[:-3]


@dataclass
class PipelineRun:
    """One end-to-end execution for a single trigger."""

    id: str
    source_ref: str | None = None
    repository_path: str | None = None
    state: PipelineState = PipelineState.QUEUED
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: datetime | None = None
    error: str | None = None
    commit: CommitInfo | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source_ref": self.source_ref,
            "repository_path": self.repository_path,
            "state": self.state.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
            "commit": self.commit.to_dict() if self.commit else None,
        }


@dataclass
class CommandResult:
    command: str
    exit_code: int
    duration: float
    output: list[str]


async def kill_group(process: asyncio.subprocess.Process):
    """SIGKILL the session a step command runs in and reap its leader."""
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    await process.wait()


async def run_command(command: str, cwd: Path, timeout: float, step: str) -> CommandResult:
    """Run a shell command inside a slot, streaming its output to the log.

    Raises StepFailure on a non-zero exit or when the timeout elapses. The
    command's session is killed on timeout and when the caller is cancelled.
    """
    logger.info(f"$ {command} (in {cwd}, timeout {timeout:.0f}s)")
    started = datetime.now()
    try:
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(cwd),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )
    except OSError as e:
        raise StepFailure(step, f"could not start command: {e}", command=command, path=str(cwd))

    tail: deque[str] = deque(maxlen=20)

    async def pump():
        async for line in process.stdout:
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                tail.append(text)
                logger.info(text)

    reader = asyncio.create_task(pump())
    try:
        await asyncio.wait_for(process.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        await kill_group(process)
        raise StepFailure(
            step, f"timed out after {timeout:.0f}s", command=command, path=str(cwd)
        )
    except asyncio.CancelledError:
        logger.warning(f"Cancelled, killing '{command}' (pid {process.pid})")
        await kill_group(process)
        raise
    finally:
        # Descendants may keep the pipe open after the shell is gone
        _, pending = await asyncio.wait({reader}, timeout=1.0)
        for task in pending:
            task.cancel()

    duration = (datetime.now() - started).total_seconds()
    if process.returncode != 0:
        raise StepFailure(
            step,
            "command failed",
            command=command,
            exit_code=process.returncode,
            path=str(cwd),
        )
    return CommandResult(command, process.returncode, duration, list(tail))


def resolve_install_command(command: str, slot: Path) -> str:
    """Expand the `npm` and `yarn` shorthands depending on lock file presence."""
    if command == "npm":
        return "npm ci" if (slot / "package-lock.json").is_file() else "npm install"
    if command == "yarn":
        return "yarn --frozen-lockfile" if (slot / "yarn.lock").is_file() else "yarn"
    return command


def install_needed(config: Config, current: Path, upcoming: Path) -> tuple[bool, str]:
    """Decide whether the install step must run, with the reason."""
    if not config.install_command:
        return False, "no install command is configured"
    manifest = config.manifest_file
    if not (upcoming / manifest).is_file():
        return False, f'"{manifest}" was not found'
    if files_identical(current / manifest, upcoming / manifest):
        for lock in config.lock_files:
            if files_identical(current / lock, upcoming / lock):
                return False, f'both "{manifest}" and "{lock}" matched'
    return True, f'"{manifest}" or its lock file changed'


class Pipeline:
    """Executes pipeline runs for one deployment root."""

    def __init__(
        self,
        config: Config,
        vcs: VersionControl,
        request_swap: Callable[[Path], Awaitable[None]],
        is_superseded: Callable[[PipelineRun], str | None] | None = None,
        on_state: Callable[[PipelineRun], None] | None = None,
    ):
        self.config = config
        self.vcs = vcs
        self.request_swap = request_swap
        self.is_superseded = is_superseded or (lambda run: None)
        self.on_state = on_state
        self.layout = SlotLayout.from_config(config)
        self.lease = Lease(PIPELINE_LEASE, config.root)

    def _set_state(self, run: PipelineRun, state: PipelineState, error: str | None = None):
        run.state = state
        if error:
            run.error = error
        if state in TERMINAL_STATES:
            run.finished_at = datetime.now()
        if self.on_state:
            try:
                self.on_state(run)
            except Exception as e:
                logger.error(f"Pipeline {run.id} - could not record state {state.value}: {e}")

    def _checkpoint(self, run: PipelineRun):
        superseded_by = self.is_superseded(run)
        if superseded_by:
            raise RunAborted(run.id, superseded_by)

    def steps(self) -> list[tuple[PipelineState, Callable[[PipelineRun], Awaitable[None]]]]:
        return [
            (PipelineState.PURGING, self.purge),
            (PipelineState.CHECKING_OUT, self.checkout),
            (PipelineState.COPYING_CARRY_OVER, self.carry_over),
            (PipelineState.INSTALLING, self.install),
            (PipelineState.BUILDING, self.build),
            (PipelineState.SWAPPING, self.swap),
        ]

    async def execute(self, run: PipelineRun) -> PipelineRun:
        """Run every step under the pipeline lease. Never raises for step errors."""
        logger.info(f"Pipeline {run.id} - Processing started for ref {run.source_ref or 'HEAD'}")
        try:
            await self.lease.wait_and_acquire(timeout=self.config.lease_timeout)
        except LockContention as e:
            logger.error(f"Pipeline {run.id} - Could not lock {self.lease.path}: {e}")
            self._set_state(run, PipelineState.FAILED, str(e))
            return run

        try:
            steps = self.steps()
            for index, (state, step) in enumerate(steps, start=1):
                self._checkpoint(run)
                logger.info(f"Pipeline {run.id} - Starting step {index}/{len(steps)}: {state.value}")
                self._set_state(run, state)
                await step(run)
            self._set_state(run, PipelineState.DONE)
            logger.info(f"Pipeline {run.id} - Finished successfully")
        except RunAborted as e:
            logger.warning(f"Pipeline {run.id} - Cancelled at {run.state.value}: {e}")
            self._set_state(run, PipelineState.ABORTED, str(e))
        except asyncio.CancelledError:
            logger.warning(f"Pipeline {run.id} - Task cancelled at {run.state.value}")
            self._set_state(run, PipelineState.ABORTED, f"Cancelled at {run.state.value}")
            raise
        except Exception as e:
            logger.error(f"Pipeline {run.id} - Failed at {run.state.value}: {e}")
            self._set_state(run, PipelineState.FAILED, str(e))
        finally:
            try:
                self.lease.release()
            except LeaseIntegrityError as e:
                logger.error(f"Pipeline {run.id} - {e}")
                if run.state == PipelineState.DONE:
                    run.error = str(e)
        return run

    async def purge(self, run: PipelineRun):
        try:
            await asyncio.to_thread(rotate_for_build, self.layout)
        except OSError as e:
            raise StepFailure("purge", str(e), path=str(self.layout.upcoming))

    async def checkout(self, run: PipelineRun):
        upcoming = self.layout.upcoming
        try:
            await self.vcs.checkout(run.source_ref, upcoming)
            if is_empty_dir(upcoming) or not upcoming.exists():
                logger.warning(
                    f"Pipeline {run.id} - Checkout left {upcoming} empty, retrying with a full clone"
                )
                await self.vcs.clone(run.source_ref, upcoming)
        except StepFailure:
            raise
        except Exception as e:
            raise StepFailure("checkout", str(e), path=str(upcoming))

        if not upcoming.is_dir() or is_empty_dir(upcoming):
            raise StepFailure("checkout", "no files were checked out", path=str(upcoming))

        run.commit = await self.vcs.last_commit(run.source_ref)
        if run.commit:
            logger.info(
                f"Pipeline {run.id} - Checked out {run.commit.hash[:10]}: {run.commit.message}"
            )

    async def carry_over(self, run: PipelineRun):
        if not self.config.carry_over:
            logger.info(f"Pipeline {run.id} - No carry-over paths configured")
            return
        try:
            counts = await asyncio.to_thread(
                copy_carry_over, self.layout.current, self.layout.upcoming, self.config.carry_over
            )
        except OSError as e:
            raise StepFailure("carry-over", str(e), path=str(self.layout.upcoming))
        logger.info(
            f"Pipeline {run.id} - Carry-over copied {counts['copied']} files, "
            f"skipped {counts['skipped']} identical"
        )

    async def install(self, run: PipelineRun):
        needed, reason = install_needed(self.config, self.layout.current, self.layout.upcoming)
        if not needed:
            logger.info(f"Pipeline {run.id} - Install skipped because {reason}")
            return
        command = resolve_install_command(self.config.install_command, self.layout.upcoming)
        await run_command(command, self.layout.upcoming, self.config.install_timeout, "install")

    async def build(self, run: PipelineRun):
        commands = self.config.build_commands
        if not commands:
            logger.info(f"Pipeline {run.id} - No build or test commands configured")
        for command in commands:
            self._checkpoint(run)
            await run_command(command, self.layout.upcoming, self.config.build_timeout, "build")

    async def swap(self, run: PipelineRun):
        logger.info(f"Pipeline {run.id} - Sending instance replacement request")
        await self.request_swap(self.layout.upcoming)
