"""Serialise local bytes, files and directory trees into the scp byte-stream.

The encoder only ever writes: it is the producer half of a push and does not
wait for the remote side's acknowledgements.
"""

from __future__ import annotations

import logging
import os
from typing import BinaryIO, Callable

from scpbridge.entry import PathEntry, parse_mode
from scpbridge.protocol import ACK, DirEnd, FileCreate

logger = logging.getLogger(__name__)

CHUNK_SIZE = 32 * 1024

ProgressCallback = Callable[[int], None]


class Encoder:
    """Writes scp frames and payloads to an outbound binary stream."""

    def __init__(
        self,
        stream: BinaryIO,
        chunk_size: int = CHUNK_SIZE,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        """
        Args:
            stream: Writable stream connected to the remote ``scp -t`` stdin.
            chunk_size: Bytes read from a local file per write call.
            on_progress: Called with the byte count of every payload chunk.
        """
        self._stream = stream
        self._chunk_size = chunk_size
        self.on_progress = on_progress
        self.files_sent = 0
        self.bytes_sent = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def encode_bytes(self, payload: bytes, name: str, mode: str | int | None = None) -> None:
        """Send *payload* as a single file called *name*; no timestamp frame."""
        header = FileCreate(mode=parse_mode(mode), size=len(payload), name=name)
        logger.debug("Sending %d in-memory bytes as %s", len(payload), name)
        self._write(header.encode())
        if payload:
            self._write(payload)
            self._advance(len(payload))
        self._write(ACK)
        self.files_sent += 1

    def encode_file(
        self, source: str | os.PathLike[str], name: str | None = None, preserve: bool = False
    ) -> None:
        """Send the local file *source* as *name* (default: its basename)."""
        with open(source, "rb") as fh:
            entry = PathEntry.from_stat(
                name or os.path.basename(os.fspath(source)), os.fstat(fh.fileno())
            )
            if preserve:
                self._write(entry.timestamp_frame().encode())
            self._write(entry.create_frame().encode())
            sent = self._copy(fh, entry.size)
            if sent != entry.size:
                raise OSError(
                    f"{source} shrank during transfer "
                    f"(expected {entry.size} bytes, read {sent})"
                )
            self._write(ACK)
        self.files_sent += 1
        logger.debug("Sent file %s (%d bytes)", source, entry.size)

    def encode_directory(
        self, source: str | os.PathLike[str], name: str | None = None, preserve: bool = False
    ) -> None:
        """Send the directory tree rooted at *source*, depth-first.

        Any failing child aborts the whole directory; nothing is skipped.
        """
        source = os.fspath(source)
        entry = PathEntry.from_path(source, name)
        if not entry.is_directory:
            raise NotADirectoryError(f"Not a directory: {source}")

        children = sorted(os.listdir(source))
        if preserve:
            self._write(entry.timestamp_frame().encode())
        self._write(entry.create_frame().encode())
        logger.debug("Entering directory %s (%d entries)", source, len(children))

        for child in children:
            child_path = os.path.join(source, child)
            if os.path.isdir(child_path):
                self.encode_directory(child_path, child, preserve)
            else:
                self.encode_file(child_path, child, preserve)

        self._write(DirEnd().encode())

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def _write(self, data: bytes) -> None:
        self._stream.write(data)

    def _copy(self, fh: BinaryIO, size: int) -> int:
        """Stream at most *size* bytes of *fh* in chunks; return bytes copied."""
        total = 0
        while total < size:
            chunk = fh.read(min(self._chunk_size, size - total))
            if not chunk:
                break
            self._write(chunk)
            total += len(chunk)
            self._advance(len(chunk))
        return total

    def _advance(self, count: int) -> None:
        self.bytes_sent += count
        if self.on_progress:
            try:
                self.on_progress(count)
            except Exception:
                logger.exception("Exception in on_progress callback")
