"""
Version-control capability used by the pipeline.

The pipeline only needs to materialize a reference into a directory and to
read the last commit of a reference. GitVersionControl provides both on top
of the git command line for a repository on the same host (usually the bare
repository the push hook runs in).
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


@dataclass
class CommitInfo:
    hash: str
    date: datetime | None
    message: str

    def to_dict(self) -> dict:
        return {
            "hash": self.hash,
            "date": self.date.isoformat() if self.date else None,
            "message": self.message,
        }


class VersionControl(Protocol):
    async def checkout(self, ref: str | None, target_dir: Path) -> None: ...

    async def clone(self, ref: str | None, target_dir: Path) -> None: ...

    async def last_commit(self, ref: str | None) -> CommitInfo | None: ...


class GitError(RuntimeError):
    def __init__(self, args: list[str], returncode: int, output: str):
        self.command = args
        self.returncode = returncode
        self.output = output
        super().__init__(f"git {' '.join(args)} exited with code {returncode}: {output.strip()}")


class GitVersionControl:
    """git-backed implementation for a local repository."""

    def __init__(self, repository: Path | str, timeout: float = 60.0):
        self.repository = Path(repository)
        self.timeout = timeout

    async def _git(self, *args: str, cwd: Path | None = None) -> str:
        process = await asyncio.create_subprocess_exec(
            "git",
            *args,
            cwd=str(cwd or self.repository),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            output, _ = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise GitError(list(args), -1, f"timeout after {self.timeout}s")
        text = output.decode("utf-8", errors="replace")
        if process.returncode != 0:
            raise GitError(list(args), process.returncode, text)
        return text

    async def checkout(self, ref: str | None, target_dir: Path) -> None:
        """Write the tree of `ref` into target_dir without moving HEAD."""
        target_dir.mkdir(parents=True, exist_ok=True)
        args = [f"--work-tree={target_dir}", "checkout", "-f", ref or "HEAD", "--", "."]
        logger.info(f"Checking out {ref or 'HEAD'} from {self.repository} into {target_dir}")
        await self._git(*args)

    async def clone(self, ref: str | None, target_dir: Path) -> None:
        """Full clone of the repository into target_dir, then check out `ref`."""
        if target_dir.exists() and any(target_dir.iterdir()):
            raise GitError(["clone"], -1, f"target {target_dir} is not empty")
        target_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Cloning {self.repository} into {target_dir}")
        await self._git("clone", str(self.repository), str(target_dir), cwd=target_dir.parent)
        if ref:
            await self._git("checkout", "-f", _short_ref(ref), cwd=target_dir)

    async def last_commit(self, ref: str | None) -> CommitInfo | None:
        args = ["log", "-1", "--format=%H%n%cI%n%s"]
        if ref:
            args.append(ref)
        try:
            text = await self._git(*args)
        except GitError as e:
            logger.warning(f"Could not read last commit of {ref or 'HEAD'}: {e}")
            return None
        lines = text.strip().split("\n", 2)
        if len(lines) < 3:
            return None
        commit_hash, date, message = lines
        try:
            parsed = datetime.fromisoformat(date.strip())
        except ValueError:
            parsed = None
        return CommitInfo(hash=commit_hash.strip(), date=parsed, message=message.strip())


def _short_ref(ref: str) -> str:
    """Turn refs/heads/main into main for use inside a clone."""
    for prefix in ("refs/heads/", "refs/"):
        if ref.startswith(prefix):
            return ref[len(prefix):]
    return ref
