"""Tests for instance slot operations."""

import os
from pathlib import Path

import pytest

from deployd.config import Config
from deployd.slots import (
    InstanceSlot,
    SlotLayout,
    copy_carry_over,
    files_identical,
    promote_upcoming,
    rollback_promotion,
    rotate_for_build,
)


@pytest.fixture
def layout(config: Config) -> SlotLayout:
    return SlotLayout.from_config(config)


def make_slot(path: Path, version: str) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    (path / "VERSION").write_text(version)
    return path


class TestLayout:
    def test_paths_by_slot(self, layout: SlotLayout, config: Config) -> None:
        assert layout.path(InstanceSlot.CURRENT) == config.current_path
        assert layout.path(InstanceSlot.OLD) == config.old_path

    def test_describe(self, layout: SlotLayout) -> None:
        make_slot(layout.current, "v1")
        info = layout.describe()
        assert info["current"]["exists"] is True
        assert info["current"]["files"] == 1
        assert info["upcoming"]["exists"] is False


class TestRotateForBuild:
    """Tests for the purge step."""

    def test_full_rotation(self, layout: SlotLayout) -> None:
        """old <- previous, previous <- copy of current, upcoming emptied."""
        make_slot(layout.old, "v0")
        make_slot(layout.previous, "v1")
        make_slot(layout.current, "v2")
        make_slot(layout.upcoming, "stale")

        rotate_for_build(layout)

        assert (layout.old / "VERSION").read_text() == "v1"
        assert (layout.previous / "VERSION").read_text() == "v2"
        assert (layout.current / "VERSION").read_text() == "v2"
        assert layout.upcoming.is_dir()
        assert list(layout.upcoming.iterdir()) == []

    def test_first_deployment(self, layout: SlotLayout) -> None:
        """Nothing to rotate: only upcoming is created."""
        rotate_for_build(layout)
        assert layout.upcoming.is_dir()
        assert not layout.previous.exists()
        assert not layout.old.exists()

    def test_keeps_symlinks(self, layout: SlotLayout) -> None:
        make_slot(layout.current, "v2")
        os.symlink("VERSION", layout.current / "link")
        rotate_for_build(layout)
        assert (layout.previous / "link").is_symlink()


class TestCarryOver:
    """Tests for copy_carry_over."""

    def test_copies_files_and_folders(self, tmp_path: Path) -> None:
        source = tmp_path / "current"
        target = tmp_path / "upcoming"
        (source / "data" / "nested").mkdir(parents=True)
        (source / "data" / "nested" / "db.sqlite").write_text("rows")
        (source / ".env").write_text("SECRET=1")
        target.mkdir()

        counts = copy_carry_over(source, target, ["data", ".env", "node_modules"])

        assert (target / "data" / "nested" / "db.sqlite").read_text() == "rows"
        assert (target / ".env").read_text() == "SECRET=1"
        assert counts == {"copied": 2, "skipped": 0, "missing": 1}

    def test_skips_identical_files(self, tmp_path: Path) -> None:
        source = tmp_path / "current"
        target = tmp_path / "upcoming"
        source.mkdir()
        target.mkdir()
        (source / ".env").write_text("A=1")
        (target / ".env").write_text("A=1")
        counts = copy_carry_over(source, target, [".env"])
        assert counts["skipped"] == 1
        assert counts["copied"] == 0

    def test_overwrites_changed_files(self, tmp_path: Path) -> None:
        source = tmp_path / "current"
        target = tmp_path / "upcoming"
        source.mkdir()
        target.mkdir()
        (source / ".env").write_text("A=2")
        (target / ".env").write_text("A=1")
        counts = copy_carry_over(source, target, [".env"])
        assert counts["copied"] == 1
        assert (target / ".env").read_text() == "A=2"

    def test_no_source_instance(self, tmp_path: Path) -> None:
        counts = copy_carry_over(tmp_path / "missing", tmp_path, ["data"])
        assert counts == {"copied": 0, "skipped": 0, "missing": 0}


class TestFilesIdentical:
    def test_missing_is_not_identical(self, tmp_path: Path) -> None:
        (tmp_path / "a").write_text("x")
        assert not files_identical(tmp_path / "a", tmp_path / "b")

    def test_same_bytes(self, tmp_path: Path) -> None:
        (tmp_path / "a").write_text("x")
        (tmp_path / "b").write_text("x")
        assert files_identical(tmp_path / "a", tmp_path / "b")


class TestPromotion:
    """Tests for moving upcoming into current."""

    def test_promote_and_rollback(self, layout: SlotLayout) -> None:
        make_slot(layout.current, "v1")
        make_slot(layout.upcoming, "v2")

        aside = promote_upcoming(layout)
        assert (layout.current / "VERSION").read_text() == "v2"
        assert (aside / "VERSION").read_text() == "v1"
        assert not layout.upcoming.exists()

        rollback_promotion(layout, layout.upcoming, aside)
        assert (layout.current / "VERSION").read_text() == "v1"
        assert (layout.upcoming / "VERSION").read_text() == "v2"
        assert not aside.exists()

    def test_promote_without_current(self, layout: SlotLayout) -> None:
        make_slot(layout.upcoming, "v1")
        assert promote_upcoming(layout) is None
        assert (layout.current / "VERSION").read_text() == "v1"

    def test_promote_missing_upcoming(self, layout: SlotLayout) -> None:
        with pytest.raises(FileNotFoundError):
            promote_upcoming(layout)
