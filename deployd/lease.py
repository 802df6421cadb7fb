"""
PID-file leases and process liveness probing.

A lease is a file holding the decimal PID of its owner. Claiming one is a
write followed by a delayed re-read: two writers racing for the same file can
both see their own PID for a moment, so ownership is only confirmed after the
verification window. Liveness is decided by a majority vote over several
probes to absorb process table flicker.
"""

import asyncio
import logging
import os
import random
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import psutil

from .errors import LeaseIntegrityError, LeaseStale, LockContention

logger = logging.getLogger(__name__)

PROBE_COUNT = 8


def probe_process(pid: int) -> bool:
    """Single non-destructive existence check. Zombies count as gone."""
    if pid <= 0:
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True


async def is_alive(pid: int | None, probes: int = PROBE_COUNT, delay: float = 0.05) -> bool:
    """Decide whether a process exists by majority vote over repeated probes."""
    if not pid or pid <= 0:
        return False
    yes = no = 0
    for i in range(probes):
        if probe_process(pid):
            yes += 1
        else:
            no += 1
        if i < probes - 1:
            await asyncio.sleep(delay)
    return yes > no


def parse_pid(content: str | None) -> int | None:
    """Return the PID stored in lease content, or None when it is not valid."""
    if not content:
        return None
    content = content.strip()
    if not content.isdigit():
        return None
    pid = int(content)
    return pid if pid > 0 else None


@dataclass
class LeaseInfo:
    """Current content of a lease file."""

    name: str
    path: Path
    pid: int
    created_at: datetime


class Lease:
    """A named PID file under a deployment root."""

    def __init__(self, name: str, directory: Path | str):
        self.name = name
        self.path = Path(directory) / f"{name}.pid"

    def __repr__(self) -> str:
        return f"Lease({self.name!r}, {str(self.path)!r})"

    def read(self) -> LeaseInfo | None:
        """Read the lease. Missing, empty or non-numeric content is absent."""
        try:
            content = self.path.read_text(encoding="utf-8")
            mtime = self.path.stat().st_mtime
        except (FileNotFoundError, NotADirectoryError):
            return None
        pid = parse_pid(content)
        if pid is None:
            return None
        return LeaseInfo(
            name=self.name,
            path=self.path,
            pid=pid,
            created_at=datetime.fromtimestamp(mtime),
        )

    def write(self, pid: int | None = None) -> int:
        """Overwrite the lease with a PID (ours by default)."""
        pid = pid or os.getpid()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(str(pid), encoding="utf-8")
        return pid

    def is_owned_by(self, pid: int | None = None) -> bool:
        info = self.read()
        return info is not None and info.pid == (pid or os.getpid())

    async def acquire(
        self,
        pid: int | None = None,
        verify_delay: tuple[float, float] = (0.1, 0.15),
    ) -> LeaseInfo:
        """Write our PID, wait a jittered moment and confirm it is still ours.

        Raises LockContention when a foreign PID is read back.
        """
        pid = self.write(pid)
        await asyncio.sleep(random.uniform(*verify_delay))
        info = self.read()
        if info is None or info.pid != pid:
            owner = info.pid if info else None
            logger.warning(
                f"Lease {self.name} at {self.path} was overwritten by pid {owner} "
                f"while pid {pid} was verifying it"
            )
            raise LockContention(self.name, owner)
        logger.debug(f"Lease {self.name} confirmed for pid {pid}")
        return info

    async def wait_and_acquire(
        self,
        pid: int | None = None,
        timeout: float = 30.0,
        poll: float = 0.5,
        verify_delay: tuple[float, float] = (0.1, 0.15),
    ) -> LeaseInfo:
        """Wait for a live owner to go away, reclaim stale leases, then acquire."""
        pid = pid or os.getpid()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            info = self.read()
            if info is None or info.pid == pid:
                break
            if not await is_alive(info.pid):
                logger.info(f"Reclaiming {self.path}: {LeaseStale(self.name, info.pid)}")
                self.path.unlink(missing_ok=True)
                break
            if loop.time() >= deadline:
                raise LockContention(
                    self.name,
                    info.pid,
                    f"Timeout after {timeout:.0f}s waiting for pid {info.pid} "
                    f"to release lease '{self.name}'",
                )
            await asyncio.sleep(poll)
        return await self.acquire(pid, verify_delay=verify_delay)

    def release(self, pid: int | None = None) -> bool:
        """Delete the lease. Only the confirmed owner may release it."""
        pid = pid or os.getpid()
        info = self.read()
        if info is None:
            self.path.unlink(missing_ok=True)
            return False
        if info.pid != pid:
            raise LeaseIntegrityError(
                f"Lease {self.name} at {self.path} is held by pid {info.pid}, "
                f"refusing release from pid {pid}"
            )
        self.path.unlink(missing_ok=True)
        logger.debug(f"Released lease {self.name}")
        return True

    async def status(self) -> tuple[int | None, bool]:
        """Return (pid, running) for status reports."""
        info = self.read()
        if info is None:
            return None, False
        return info.pid, await is_alive(info.pid)
