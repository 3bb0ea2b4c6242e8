"""Apply an inbound scp byte-stream to the local filesystem.

The decoder is the consumer half of a pull.  It speaks the sink side of the
handshake: one NUL to announce readiness, then a pair of NULs bracketing the
handling of every control line.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import BinaryIO, Callable

from scpbridge.entry import PathEntry
from scpbridge.protocol import (
    ACK,
    DirCreate,
    DirEnd,
    FileCreate,
    Frame,
    ProtocolError,
    RemoteError,
    Timestamp,
    parse_frame,
)
from scpbridge.utils.path_helpers import normalize_local_path

logger = logging.getLogger(__name__)

CHUNK_SIZE = 32 * 1024

ProgressCallback = Callable[[int], None]


# ---------------------------------------------------------------------------
# DestinationStack
# ---------------------------------------------------------------------------


class DestinationStack:
    """Where the decoder currently writes, as a stack of directories.

    The bottom of the stack is the transfer root and can never be popped.
    """

    def __init__(self, root: str | os.PathLike[str]) -> None:
        self._paths: list[Path] = [Path(root)]

    @property
    def root(self) -> Path:
        return self._paths[0]

    @property
    def current(self) -> Path:
        return self._paths[-1]

    @property
    def depth(self) -> int:
        """Number of directories entered below the root."""
        return len(self._paths) - 1

    def resolve(self, name: str) -> Path:
        """Return the path a new entry called *name* should be written to.

        Inside an existing directory the entry gets its own name; otherwise the
        current destination is used verbatim (``scp file newname``).
        """
        if self.current.is_dir():
            return self.current / name
        return self.current

    def push(self, path: Path) -> None:
        self._paths.append(path)

    def pop(self) -> Path:
        """Leave the current directory and return the new current destination."""
        if not self.depth:
            raise ProtocolError("End of directory without a matching directory", "E")
        self._paths.pop()
        return self.current


# ---------------------------------------------------------------------------
# Decoder
# ---------------------------------------------------------------------------


class Decoder:
    """Reads frames from *reader*, writes acknowledgements to *writer*."""

    def __init__(
        self,
        reader: BinaryIO,
        writer: BinaryIO,
        destination: str | os.PathLike[str],
        chunk_size: int = CHUNK_SIZE,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        """
        Args:
            reader: Stream carrying the remote ``scp -f`` stdout.
            writer: Stream to the remote stdin, used for acknowledgements only.
            destination: Local file or directory; relative paths are resolved
                against the current working directory.
            chunk_size: Bytes written to a local file per call.
            on_progress: Called with the byte count of every payload chunk.
        """
        self._reader = reader
        self._writer = writer
        self._chunk_size = chunk_size
        self.on_progress = on_progress
        self.stack = DestinationStack(normalize_local_path(destination))
        self._pending: Timestamp | None = None
        self.files_received = 0
        self.bytes_received = 0
        self.warnings: list[str] = []

    def decode(self) -> None:
        """Process the whole stream; returns cleanly at end-of-stream.

        Raises:
            ProtocolError: Malformed or unexpected frame.
            RemoteError: The remote side sent a fatal (``\\x02``) message.
                Warnings (``\\x01``) are logged, kept in :attr:`warnings` and
                skipped without an acknowledgement.
            OSError: A local filesystem operation failed.
        """
        self._ack()
        while True:
            line = self._next_line()
            if line is None:
                break
            if not line:
                continue
            try:
                frame = parse_frame(line)
            except RemoteError as exc:
                if exc.fatal:
                    raise
                logger.warning("Remote: %s", exc)
                self.warnings.append(str(exc))
                continue
            self._ack()
            self._dispatch(frame, line)
            self._ack()

        if self.stack.depth:
            logger.warning(
                "Stream ended inside %d unclosed director%s",
                self.stack.depth,
                "y" if self.stack.depth == 1 else "ies",
            )
        logger.debug(
            "Decode finished: %d file(s), %d bytes", self.files_received, self.bytes_received
        )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _dispatch(self, frame: Frame, line: str) -> None:
        if isinstance(frame, Timestamp):
            self._pending = frame
            return
        try:
            if isinstance(frame, FileCreate):
                self._receive_file(frame, line)
            elif isinstance(frame, DirCreate):
                self._enter_directory(frame)
            elif isinstance(frame, DirEnd):
                logger.debug("Leaving %s", self.stack.current)
                self.stack.pop()
        finally:
            self._pending = None

    def _receive_file(self, frame: FileCreate, line: str) -> None:
        entry = PathEntry.from_frames(frame, self._pending)
        target = self.stack.resolve(entry.name)
        logger.debug("Receiving %s (%d bytes, mode %s)", target, entry.size, entry.mode_string)

        fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, entry.mode)
        with os.fdopen(fd, "wb") as fh:
            self._copy(fh, entry.size, line)
        os.chmod(target, entry.mode)

        terminator = self._reader.read(1)
        if terminator != ACK:
            raise ProtocolError(
                f"Expected NUL after {entry.size} byte payload, got {terminator!r}", line
            )
        if entry.has_times:
            os.utime(target, (entry.atime, entry.mtime))
        self.files_received += 1

    def _enter_directory(self, frame: DirCreate) -> None:
        entry = PathEntry.from_frames(frame, self._pending)
        target = self.stack.resolve(entry.name)
        logger.debug("Entering %s (mode %s)", target, entry.mode_string)
        os.makedirs(target, mode=entry.mode, exist_ok=True)
        if entry.has_times:
            os.utime(target, (entry.atime, entry.mtime))
        self.stack.push(target)

    # ------------------------------------------------------------------
    # Stream helpers
    # ------------------------------------------------------------------

    def _ack(self) -> None:
        self._writer.write(ACK)
        self._writer.flush()

    def _next_line(self) -> str | None:
        """Return the next stripped control line, or ``None`` at end-of-stream."""
        raw = self._reader.readline()
        if not raw:
            return None
        if not raw.endswith(b"\n"):
            logger.warning("Discarding unterminated line at end of stream: %r", raw)
            return None
        return raw.decode("utf-8", errors="surrogateescape").strip()

    def _copy(self, fh: BinaryIO, size: int, line: str) -> None:
        """Copy exactly *size* payload bytes from the stream into *fh*."""
        remaining = size
        while remaining > 0:
            chunk = self._reader.read(min(self._chunk_size, remaining))
            if not chunk:
                raise ProtocolError(
                    f"Stream ended {remaining} bytes short of a {size} byte payload", line
                )
            fh.write(chunk)
            remaining -= len(chunk)
            self.bytes_received += len(chunk)
            if self.on_progress:
                try:
                    self.on_progress(len(chunk))
                except Exception:
                    logger.exception("Exception in on_progress callback")
