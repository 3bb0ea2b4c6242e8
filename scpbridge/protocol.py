"""Wire-level pieces of the scp protocol.

Frames are the control lines exchanged by a legacy ``scp -t`` / ``scp -f``
pair::

    T<mtime> 0 <atime> 0      timestamp, decorates the next C/D frame
    C<mode> <size> <name>     file header, followed by <size> bytes and a NUL
    D<mode> 0 <name>          enter directory
    E                         leave directory

A single NUL byte acknowledges each control line.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Union

logger = logging.getLogger(__name__)

ACK = b"\x00"
WARNING_MARKER = "\x01"
FATAL_MARKER = "\x02"

# ---------------------------------------------------------------------------
# Custom exceptions
# ---------------------------------------------------------------------------


class SCPError(Exception):
    """Base class for every error raised by the scp engine."""


class ProtocolError(SCPError):
    """Raised when the inbound byte-stream does not follow the scp grammar."""

    def __init__(self, message: str, line: str | None = None) -> None:
        """Initialise with the offending control *line*, if known."""
        if line is not None:
            message = f"{message} (line: {line!r})"
        super().__init__(message)
        self.line = line


class RemoteError(SCPError):
    """Raised when the remote scp process reports an error message."""

    def __init__(self, message: str, fatal: bool = True) -> None:
        super().__init__(message)
        self.fatal = fatal


# ---------------------------------------------------------------------------
# Frames
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Timestamp:
    """``T`` frame: modification and access time in whole seconds."""

    mtime: int
    atime: int

    def encode(self) -> bytes:
        return f"T{self.mtime} 0 {self.atime} 0\n".encode("ascii")


@dataclass(frozen=True)
class FileCreate:
    """``C`` frame: announces a file of *size* bytes."""

    mode: int
    size: int
    name: str

    def encode(self) -> bytes:
        return f"C{self.mode:04o} {self.size} {self.name}\n".encode("utf-8")


@dataclass(frozen=True)
class DirCreate:
    """``D`` frame: opens a directory."""

    mode: int
    name: str

    def encode(self) -> bytes:
        return f"D{self.mode:04o} 0 {self.name}\n".encode("utf-8")


@dataclass(frozen=True)
class DirEnd:
    """``E`` frame: closes the most recently opened directory."""

    def encode(self) -> bytes:
        return b"E\n"


Frame = Union[Timestamp, FileCreate, DirCreate, DirEnd]


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _parse_mode(token: str, kind: str, line: str) -> int:
    """Parse a ``C0644``-style token into permission bits."""
    if len(token) != 5:
        raise ProtocolError(
            f"{kind} header must be 5 characters, {token[:1]}####; got {token!r}",
            line,
        )
    try:
        return int(token[1:], 8)
    except ValueError:
        raise ProtocolError(f"Invalid {kind} mode {token[1:]!r}", line) from None


def _check_name(name: str, line: str) -> str:
    """Reject names that would escape the directory they are created in."""
    if name in (".", "..") or "/" in name:
        raise ProtocolError(f"Unsafe name {name!r}", line)
    return name


def parse_timestamp(line: str) -> Timestamp:
    """Parse a ``T<mtime> 0 <atime> 0`` line."""
    tokens = line.split()
    if len(tokens) != 4:
        raise ProtocolError(
            f"Length of timestamp line must be 4, got {len(tokens)}", line
        )
    mtime_token = tokens[0][1:]
    if not mtime_token:
        raise ProtocolError(f"Invalid mtime {tokens[0]!r}", line)
    try:
        return Timestamp(mtime=int(mtime_token), atime=int(tokens[2]))
    except ValueError:
        raise ProtocolError("Timestamp fields must be decimal seconds", line) from None


def parse_file_create(line: str) -> FileCreate:
    """Parse a ``C<mode> <size> <name>`` line."""
    tokens = line.split()
    if len(tokens) != 3:
        raise ProtocolError(f"Length of create must be 3, got {len(tokens)}", line)
    mode = _parse_mode(tokens[0], "create", line)
    try:
        size = int(tokens[1])
    except ValueError:
        raise ProtocolError(f"Invalid file size {tokens[1]!r}", line) from None
    if size < 0:
        raise ProtocolError(f"Negative file size {size}", line)
    return FileCreate(mode=mode, size=size, name=_check_name(tokens[2], line))


def parse_dir_create(line: str) -> DirCreate:
    """Parse a ``D<mode> 0 <name>`` line."""
    tokens = line.split()
    if len(tokens) != 3:
        raise ProtocolError(f"Length of directory must be 3, got {len(tokens)}", line)
    mode = _parse_mode(tokens[0], "directory", line)
    return DirCreate(mode=mode, name=_check_name(tokens[2], line))


def parse_frame(line: str) -> Frame:
    """Turn one stripped, non-empty control line into a frame.

    Raises:
        RemoteError: The line carries a ``\\x01``/``\\x02`` error message.
        ProtocolError: The line is malformed or of an unknown kind.
    """
    kind = line[0]
    if kind == "T":
        return parse_timestamp(line)
    if kind == "C":
        return parse_file_create(line)
    if kind == "D":
        return parse_dir_create(line)
    if kind == "E":
        return DirEnd()
    if kind in (WARNING_MARKER, FATAL_MARKER):
        raise RemoteError(line[1:].strip(), fatal=kind == FATAL_MARKER)
    raise ProtocolError(f"Unknown frame type {kind!r}", line)
