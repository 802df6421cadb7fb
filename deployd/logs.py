"""
Log files as an event channel.

Every deployd process appends records to a log file under the deployment
root, one line per record:

    <ISO-8601 timestamp> - <source> - <pid> - <message>

Processes spawned detached have no pipe back to whoever started them, so
short-lived callers follow their progress by tailing these files with a
timestamp cursor. This channel is advisory: a daemon's /status is the
authority on its state.
"""

import asyncio
import logging
import os
import random
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable

logger = logging.getLogger(__name__)

SEPARATOR = " - "
TAIL_WINDOW = 4096
CONSOLE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass(frozen=True)
class LogRecord:
    """One parsed log line."""

    timestamp: datetime
    source: str
    pid: int
    message: str

    def format(self) -> str:
        return format_line(self.timestamp, self.source, self.pid, self.message)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
            "pid": self.pid,
            "message": self.message,
        }


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def format_line(moment: datetime, source: str, pid: int, message: str) -> str:
    """Format a record. Multi-line messages become one line per message line."""
    prefix = f"{format_timestamp(moment)}{SEPARATOR}{source}{SEPARATOR}{pid}{SEPARATOR}"
    lines = str(message).rstrip("\n").split("\n")
    return "".join(f"{prefix}{line.rstrip(chr(13))}\n" for line in lines)


def parse_line(line: str) -> LogRecord | None:
    """Parse a log line, returning None for anything that is not a record."""
    parts = line.rstrip("\n").split(SEPARATOR, 3)
    if len(parts) < 4:
        return None
    stamp, source, pid, message = parts
    if not pid.strip().isdigit():
        return None
    try:
        timestamp = datetime.fromisoformat(stamp.strip())
    except ValueError:
        return None
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return LogRecord(
        timestamp=timestamp,
        source=source.strip(),
        pid=int(pid.strip()),
        message=message,
    )


def read_tail(path: Path | str, window: int = TAIL_WINDOW) -> list[LogRecord]:
    """Parse the complete records found in the trailing window of a log file."""
    try:
        with open(path, "rb") as f:
            f.seek(0, os.SEEK_END)
            size = f.tell()
            start = max(0, size - window)
            f.seek(start)
            data = f.read(size - start)
    except FileNotFoundError:
        return []

    text = data.decode("utf-8", errors="replace")
    lines = text.split("\n")
    # The first line is partial unless the window reached the start of the file,
    # the last one is partial unless the file ends with a newline.
    if start > 0:
        lines = lines[1:]
    lines = lines[:-1]

    records = []
    for line in lines:
        record = parse_line(line)
        if record is not None:
            records.append(record)
    return records


class RecordFormatter(logging.Formatter):
    """Formats logging records in the log file line format.

    The source tag is the last component of the logger name unless a record
    carries a `source` extra, and the pid is the writing process unless a
    `pid` extra is given (used for output captured from a child process).
    """

    def format(self, record: logging.LogRecord) -> str:
        source = getattr(record, "source", None) or record.name.rsplit(".", 1)[-1]
        pid = getattr(record, "pid", None) or record.process
        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        moment = datetime.fromtimestamp(record.created, timezone.utc)
        return format_line(moment, source, pid, message).rstrip("\n")


def configure_logging(role: str, log_path: Path | str, level: str = "INFO", console: bool = True):
    """Configure the root logger for a deployd process.

    Records go to the role's log file in the channel line format and, for
    interactive use, to the console.
    """
    log_path = Path(log_path)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
    file_handler.setFormatter(RecordFormatter())

    handlers = [file_handler]
    if console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
        handlers.append(console_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logger.debug(f"Logging for {role} configured at {log_path}")


class LogTail:
    """Cursor-based follower of a log file."""

    def __init__(self, path: Path | str, cursor: datetime | None = None, window: int = TAIL_WINDOW):
        self.path = Path(path)
        self.cursor = cursor
        self.window = window

    @classmethod
    def from_end(cls, path: Path | str, window: int = TAIL_WINDOW) -> "LogTail":
        """Start following after the last record currently in the file."""
        records = read_tail(path, window)
        cursor = max((r.timestamp for r in records), default=None)
        return cls(path, cursor=cursor, window=window)

    def snapshot_pids(self) -> set[int]:
        """PIDs that wrote the records currently in the tail window."""
        return {r.pid for r in read_tail(self.path, self.window)}

    def poll(self) -> list[LogRecord]:
        """Return records newer than the cursor, in file order, and advance it."""
        fresh = [
            r for r in read_tail(self.path, self.window)
            if self.cursor is None or r.timestamp > self.cursor
        ]
        if fresh:
            self.cursor = max(r.timestamp for r in fresh)
        return fresh

    async def wait_for_update(self, timeout: float = 4.0, interval: float = 0.1) -> list[LogRecord]:
        """Wait for any record past the cursor."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            fresh = self.poll()
            if fresh:
                return fresh
            if loop.time() >= deadline:
                raise TimeoutError(f"Timeout waiting for {self.path} to update")
            await asyncio.sleep(interval + random.random() * interval)

    async def wait_for_new_pid(
        self,
        known_pids: Iterable[int],
        timeout: float = 10.0,
        interval: float = 0.25,
        on_record: Callable[[LogRecord], None] | None = None,
    ) -> LogRecord:
        """Wait for a record written by a pid absent from the starting snapshot."""
        known = set(known_pids)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            found = None
            for record in self.poll():
                if on_record:
                    on_record(record)
                if found is None and record.pid not in known:
                    found = record
            if found is not None:
                return found
            if loop.time() >= deadline:
                raise TimeoutError(f"No new process wrote to {self.path} within {timeout:.0f}s")
            await asyncio.sleep(interval)
