"""Tests for scpbridge/entry.py — PathEntry and mode handling."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from scpbridge.entry import DEFAULT_MODE, PathEntry, format_mode, parse_mode
from scpbridge.protocol import DirCreate, FileCreate, Timestamp


class TestModes:
    def test_unknown_mode_falls_back_to_default(self) -> None:
        assert format_mode(None) == DEFAULT_MODE == "0644"

    def test_file_type_bits_are_dropped(self) -> None:
        assert format_mode(0o100755) == "0755"

    def test_zero_padding(self) -> None:
        assert format_mode(0o7) == "0007"

    @pytest.mark.parametrize(
        "value, expected",
        [("0644", 0o644), ("755", 0o755), (0o600, 0o600), (None, 0o644), ("", 0o644)],
    )
    def test_parse_mode(self, value, expected: int) -> None:
        assert parse_mode(value) == expected

    @pytest.mark.parametrize("value", ["rw-r--r--", "0999", "77777"])
    def test_parse_mode_rejects_garbage(self, value: str) -> None:
        with pytest.raises(ValueError):
            parse_mode(value)


class TestPathEntry:
    def test_from_path_file(self, tmp_path: Path) -> None:
        src = tmp_path / "data.bin"
        src.write_bytes(b"x" * 10)
        os.chmod(src, 0o640)
        os.utime(src, (1600000100, 1600000000))

        entry = PathEntry.from_path(src)

        assert entry.name == "data.bin"
        assert entry.size == 10
        assert entry.mode == 0o640
        assert entry.is_directory is False
        assert entry.mtime == 1600000000
        assert entry.atime == 1600000100

    def test_from_path_directory_has_zero_size(self, tmp_path: Path) -> None:
        entry = PathEntry.from_path(tmp_path, name="renamed")
        assert entry.is_directory
        assert entry.size == 0
        assert entry.name == "renamed"
        assert isinstance(entry.create_frame(), DirCreate)

    def test_create_frame_for_file(self) -> None:
        entry = PathEntry(name="a", mode=0o600, size=3)
        assert entry.create_frame() == FileCreate(mode=0o600, size=3, name="a")

    def test_timestamp_frame(self) -> None:
        entry = PathEntry(name="a", mode=0o600, mtime=10, atime=20)
        assert entry.timestamp_frame() == Timestamp(mtime=10, atime=20)

    def test_timestamp_frame_without_times_raises(self) -> None:
        with pytest.raises(ValueError):
            PathEntry(name="a", mode=0o600).timestamp_frame()

    def test_from_frames_applies_pending_timestamp(self) -> None:
        entry = PathEntry.from_frames(FileCreate(0o600, 5, "f"), Timestamp(10, 20))
        assert (entry.mtime, entry.atime, entry.size) == (10, 20, 5)
        assert entry.has_times

    def test_from_frames_without_timestamp(self) -> None:
        entry = PathEntry.from_frames(DirCreate(0o755, "d"))
        assert entry.is_directory
        assert not entry.has_times
        assert entry.mode_string == "0755"

    def test_is_immutable(self) -> None:
        entry = PathEntry(name="a", mode=0o644)
        with pytest.raises(AttributeError):
            entry.name = "b"  # type: ignore[misc]
