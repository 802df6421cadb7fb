"""
Short-lived callers of the daemons.

Starts daemons detached from the calling process (a git hook must be able to
exit while the deployment continues), triggers pipeline runs and follows
their progress through the Processor's log file and /status.
"""

import asyncio
import json
import logging
import os
import subprocess
import sys
from pathlib import Path

from .config import Config
from .control import ControlClient, ErrorResponse, StatusResponse
from .errors import ControlPlaneUnreachable, DeploydError
from .logs import LogTail, read_tail
from .pipeline import TERMINAL_STATES, new_run_id

logger = logging.getLogger(__name__)

DAEMON_START_TIMEOUT = 10.0
TERMINAL_STATE_VALUES = {state.value for state in TERMINAL_STATES}


def spawn_detached(role: str, config: Config) -> subprocess.Popen:
    """Start `python -m deployd <role>` in its own session, without pipes."""
    env = os.environ.copy()
    env["DEPLOYD_ROOT"] = str(config.root)
    process = subprocess.Popen(
        [sys.executable, "-m", "deployd", role],
        cwd=str(config.root),
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )
    logger.info(f"Spawned {role} daemon with pid {process.pid}")
    return process


async def ensure_daemon(
    role: str, config: Config, timeout: float = DAEMON_START_TIMEOUT
) -> StatusResponse:
    """Return the daemon's status, starting it first when it is offline."""
    client = ControlClient(role, config)
    try:
        response = await client.status(retries=1)
        if isinstance(response, StatusResponse):
            return response
    except ControlPlaneUnreachable:
        logger.info(f"The {role} daemon is not running, starting it")

    tail = LogTail.from_end(config.log_path(role))
    known = tail.snapshot_pids()
    spawn_detached(role, config)
    try:
        record = await tail.wait_for_new_pid(known, timeout=timeout)
        logger.info(f"The {role} daemon started with pid {record.pid}")
    except TimeoutError:
        logger.warning(f"No output from the {role} daemon after {timeout:.0f}s")

    response = await client.status()
    if not isinstance(response, StatusResponse):
        raise DeploydError(f"The {role} daemon did not report its status: {response}")
    return response


def branch_matches(ref: str | None, branch: str | None) -> bool:
    """True when `ref` names the trigger branch, or no filter is configured."""
    if not branch or not ref:
        return True
    return ref == branch or ref.endswith(f"/{branch}")


def run_state(status: StatusResponse, run_id: str) -> str | None:
    for run in status.details.get("runs", []):
        if run.get("id") == run_id:
            return run.get("state")
    return None


async def trigger(
    config: Config,
    ref: str | None = None,
    repository_path: Path | str | None = None,
    follow: bool = True,
) -> str | None:
    """Ask the Processor to deploy `ref` and follow the run to its end.

    Returns the final run state, "queued" when not following, or None when
    the ref is filtered out by the trigger branch.
    """
    if not branch_matches(ref, config.trigger_branch):
        logger.info(f"Ignoring {ref}, only {config.trigger_branch} triggers deployments")
        return None

    await ensure_daemon("processor", config)
    client = ControlClient("processor", config)
    tail = LogTail.from_end(config.log_path("processor"))

    run_id = new_run_id()
    response = await client.deploy(
        run_id=run_id, ref=ref, repository_path=repository_path or config.repository_path
    )
    if isinstance(response, ErrorResponse):
        logger.error(f"Deployment request rejected: {response.message}")
        return "failed"
    logger.info(f"Pipeline {run_id} queued for {ref or 'HEAD'}")
    if not follow:
        return "queued"
    return await follow_run(config, client, tail, run_id)


async def follow_run(config: Config, client: ControlClient, tail: LogTail, run_id: str) -> str:
    """Echo Processor log records until the run reaches a terminal state."""
    bound = (
        config.lease_timeout
        + config.preempt_timeout
        + config.install_timeout
        + config.build_timeout * 3
        + 60
    )
    loop = asyncio.get_running_loop()
    deadline = loop.time() + bound
    while loop.time() < deadline:
        try:
            for record in await tail.wait_for_update(timeout=2.0):
                print(record.format(), end="", flush=True)
        except TimeoutError:
            pass
        try:
            status = await client.status(retries=5)
        except ControlPlaneUnreachable:
            logger.error(f"The processor went away while pipeline {run_id} was running")
            return "failed"
        if isinstance(status, StatusResponse):
            state = run_state(status, run_id)
            if state in TERMINAL_STATE_VALUES:
                logger.info(f"Pipeline {run_id} finished as {state}")
                return state
    logger.error(f"Gave up following pipeline {run_id} after {bound:.0f}s")
    return "failed"


async def collect_status(config: Config) -> dict:
    """Status of both daemons, `None` for an offline one."""
    result = {}
    for role in ("manager", "processor"):
        try:
            response = await ControlClient(role, config).status(retries=1)
            result[role] = response.model_dump()
        except ControlPlaneUnreachable:
            result[role] = None
    return result


def print_status(config: Config) -> int:
    result = asyncio.run(collect_status(config))
    print(json.dumps(result, indent=2, default=str))
    return 0 if all(result.values()) else 1


def print_logs(config: Config, lines: int = 50) -> int:
    """Print the latest records of every log file, merged by timestamp."""
    records = []
    for role in ("manager", "processor", "trigger"):
        records.extend(read_tail(config.log_path(role), window=64 * 1024))
    records.sort(key=lambda r: r.timestamp)
    for record in records[-lines:]:
        print(record.format(), end="")
    return 0
