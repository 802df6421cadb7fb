"""
Instance slot layout and whole-directory operations.

Four directories hold deployed versions of the application: `old`,
`previous`, `current` (the live one) and `upcoming` (being built). Slots are
only ever moved, copied or cleared as a whole.
"""

import filecmp
import logging
import os
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .config import Config

logger = logging.getLogger(__name__)


class InstanceSlot(Enum):
    OLD = "old"
    PREVIOUS = "previous"
    CURRENT = "current"
    UPCOMING = "upcoming"


@dataclass
class SlotLayout:
    """Paths of the four instance slots."""

    old: Path
    previous: Path
    current: Path
    upcoming: Path

    @classmethod
    def from_config(cls, config: Config) -> "SlotLayout":
        return cls(
            old=config.old_path,
            previous=config.previous_path,
            current=config.current_path,
            upcoming=config.upcoming_path,
        )

    def path(self, slot: InstanceSlot) -> Path:
        return getattr(self, slot.value)

    def describe(self) -> dict:
        """Existence and file count of each slot, for status reports."""
        result = {}
        for slot in InstanceSlot:
            path = self.path(slot)
            result[slot.value] = {
                "path": str(path),
                "exists": path.is_dir(),
                "files": count_files(path) if path.is_dir() else 0,
            }
        return result


def count_files(path: Path) -> int:
    total = 0
    for _, _, filenames in os.walk(path):
        total += len(filenames)
    return total


def is_empty_dir(path: Path) -> bool:
    return path.is_dir() and not any(path.iterdir())


def remove_tree(path: Path):
    """Remove a slot directory (or stray file) if present."""
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.is_dir():
        shutil.rmtree(path)


def rotate_for_build(layout: SlotLayout):
    """Purge: drop `old`, move `previous` to `old`, copy `current` to
    `previous` and leave `upcoming` as an empty directory."""
    if layout.previous.is_dir():
        if layout.old.exists():
            logger.info(f"Removing old instance at {layout.old}")
            remove_tree(layout.old)
        logger.info(f"Moving previous instance {layout.previous} to {layout.old}")
        os.rename(layout.previous, layout.old)

    if layout.current.is_dir():
        if layout.previous.exists():
            remove_tree(layout.previous)
        logger.info(f"Copying current instance {layout.current} to {layout.previous}")
        shutil.copytree(layout.current, layout.previous, symlinks=True)

    if layout.upcoming.exists():
        logger.info(f"Clearing upcoming instance at {layout.upcoming}")
        remove_tree(layout.upcoming)
    layout.upcoming.mkdir(parents=True, exist_ok=True)

    if not is_empty_dir(layout.upcoming):
        raise OSError(f"Upcoming instance at {layout.upcoming} is not empty after purge")


def copy_carry_over(source_root: Path, target_root: Path, names: list[str]) -> dict[str, int]:
    """Copy allowlisted paths from one slot to another.

    Files that are byte-identical at the target are skipped. Returns counts of
    copied and skipped files.
    """
    counts = {"copied": 0, "skipped": 0, "missing": 0}
    if not source_root.is_dir():
        logger.info(f"Skipping carry-over copy, no instance at {source_root}")
        return counts

    for name in names:
        source = source_root / name
        target = target_root / name
        if not source.exists():
            logger.debug(f"Carry-over path not found: {name}")
            counts["missing"] += 1
            continue

        if source.is_dir() and not source.is_symlink():
            logger.info(f"Copying folder {name}")
            for dirpath, _, filenames in os.walk(source):
                relative = Path(dirpath).relative_to(source)
                (target / relative).mkdir(parents=True, exist_ok=True)
                for filename in filenames:
                    _copy_file(Path(dirpath) / filename, target / relative / filename, counts)
        else:
            logger.info(f"Copying file {name}")
            target.parent.mkdir(parents=True, exist_ok=True)
            _copy_file(source, target, counts)

    return counts


def _copy_file(source: Path, target: Path, counts: dict[str, int]):
    if source.is_symlink():
        if target.is_symlink() and os.readlink(target) == os.readlink(source):
            counts["skipped"] += 1
            return
        remove_tree(target)
        os.symlink(os.readlink(source), target)
        counts["copied"] += 1
        return
    if target.is_file() and filecmp.cmp(source, target, shallow=False):
        counts["skipped"] += 1
        return
    if target.is_dir():
        remove_tree(target)
    shutil.copy2(source, target)
    counts["copied"] += 1


def files_identical(first: Path, second: Path) -> bool:
    """True when both files exist and have the same bytes."""
    return first.is_file() and second.is_file() and filecmp.cmp(first, second, shallow=False)


def promote_upcoming(layout: SlotLayout, upcoming: Path | None = None) -> Path | None:
    """Rename `current` aside and `upcoming` into `current`.

    Returns the aside path (None when there was no current instance) so the
    caller can drop it after the new instance starts, or roll back.
    """
    upcoming = Path(upcoming) if upcoming else layout.upcoming
    if not upcoming.is_dir():
        raise FileNotFoundError(f"Upcoming instance not found at {upcoming}")

    aside = None
    if layout.current.exists():
        aside = layout.current.with_name(layout.current.name + ".replaced")
        if aside.exists():
            remove_tree(aside)
        logger.info(f"Moving current instance aside to {aside}")
        os.rename(layout.current, aside)

    logger.info(f"Moving {upcoming} into {layout.current}")
    os.rename(upcoming, layout.current)
    return aside


def rollback_promotion(layout: SlotLayout, upcoming: Path, aside: Path | None):
    """Undo promote_upcoming."""
    logger.warning(f"Rolling back instance swap, restoring {layout.current} to {upcoming}")
    os.rename(layout.current, upcoming)
    if aside is not None:
        os.rename(aside, layout.current)
