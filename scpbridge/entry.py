"""In-memory description of a file or directory being transferred."""

from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass

from scpbridge.protocol import DirCreate, FileCreate, Timestamp

logger = logging.getLogger(__name__)

DEFAULT_MODE = "0644"


def format_mode(mode: int | None) -> str:
    """Render permission bits as a zero-padded octal string (``0755``).

    Falls back to :data:`DEFAULT_MODE` when *mode* is unknown.
    """
    if mode is None:
        return DEFAULT_MODE
    return f"{stat.S_IMODE(mode) & 0o777:04o}"


def parse_mode(value: str | int | None) -> int:
    """Convert a caller-supplied mode (``"0644"``, ``"755"`` or ``0o600``) to bits.

    Raises:
        ValueError: *value* is not a valid octal permission string.
    """
    if value is None or value == "":
        value = DEFAULT_MODE
    if isinstance(value, int):
        bits = value
    else:
        try:
            bits = int(value, 8)
        except ValueError:
            raise ValueError(f"Invalid permission string: {value!r}") from None
    if not 0 <= bits <= 0o7777:
        raise ValueError(f"Permission bits out of range: {value!r}")
    return bits


@dataclass(frozen=True)
class PathEntry:
    """One filesystem object about to be (or having been) transferred."""

    name: str
    mode: int
    size: int = 0
    is_directory: bool = False
    mtime: int | None = None
    atime: int | None = None

    @classmethod
    def from_stat(cls, name: str, st: os.stat_result) -> PathEntry:
        """Build an entry from a ``stat`` result, truncating times to seconds."""
        is_dir = stat.S_ISDIR(st.st_mode)
        return cls(
            name=name,
            mode=st.st_mode & 0o777,
            size=0 if is_dir else st.st_size,
            is_directory=is_dir,
            mtime=int(st.st_mtime),
            atime=int(st.st_atime),
        )

    @classmethod
    def from_path(cls, path: str | os.PathLike[str], name: str | None = None) -> PathEntry:
        """Stat *path* and describe it under *name* (default: its basename)."""
        st = os.stat(path)
        return cls.from_stat(name or os.path.basename(os.fspath(path)), st)

    @classmethod
    def from_frames(
        cls, frame: FileCreate | DirCreate, timestamp: Timestamp | None = None
    ) -> PathEntry:
        """Synthesise an entry from a parsed header and its pending timestamp."""
        is_dir = isinstance(frame, DirCreate)
        return cls(
            name=frame.name,
            mode=frame.mode,
            size=0 if is_dir else frame.size,
            is_directory=is_dir,
            mtime=timestamp.mtime if timestamp else None,
            atime=timestamp.atime if timestamp else None,
        )

    @property
    def mode_string(self) -> str:
        return format_mode(self.mode)

    @property
    def has_times(self) -> bool:
        return self.mtime is not None

    def timestamp_frame(self) -> Timestamp:
        """Return the ``T`` frame for this entry."""
        if self.mtime is None:
            raise ValueError(f"{self.name!r} has no timestamps")
        atime = self.atime if self.atime is not None else self.mtime
        return Timestamp(mtime=self.mtime, atime=atime)

    def create_frame(self) -> FileCreate | DirCreate:
        """Return the ``C`` or ``D`` header frame for this entry."""
        if self.is_directory:
            return DirCreate(mode=self.mode, name=self.name)
        return FileCreate(mode=self.mode, size=self.size, name=self.name)
