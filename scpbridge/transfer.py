"""Transfer orchestration for ScpBridge.

Each call opens one remote session, runs ``scp -t`` (push) or ``scp -f``
(pull) on it, and drives the :class:`Encoder` or :class:`Decoder` from a
worker thread while the foreground thread blocks on the remote process.  The
two outcomes are joined into a single result:

- push: a non-empty diagnostic on the remote stdout beats the generic exit
  error; otherwise the encoder's error is reported.
- pull: the remote exit error is reported directly; a decode error is
  reported when the remote process succeeded.

The worker thread is always joined before returning.
"""

from __future__ import annotations

import logging
import os
import queue
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import BinaryIO, Callable

from scpbridge.decoder import Decoder
from scpbridge.encoder import Encoder
from scpbridge.entry import DEFAULT_MODE
from scpbridge.protocol import RemoteError
from scpbridge.session import RemoteCommandError, RemoteSession, SessionError
from scpbridge.utils.path_helpers import (
    quote_remote_path,
    split_remote_path,
    validate_remote_path,
)

logger = logging.getLogger(__name__)

DEFAULT_SCP_PATH = "/usr/bin/scp"
CHUNK_SIZE = 32 * 1024

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class TransferDirection(Enum):
    """Direction of a transfer."""

    PUSH = auto()
    PULL = auto()


class TransferStatus(Enum):
    """Lifecycle state of a TransferJob."""

    PENDING = auto()
    IN_PROGRESS = auto()
    COMPLETE = auto()
    FAILED = auto()


# ---------------------------------------------------------------------------
# TransferJob
# ---------------------------------------------------------------------------


@dataclass
class TransferJob:
    """Bookkeeping for one push or pull call."""

    direction: TransferDirection
    source: str
    destination: str
    preserve: bool = False
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: TransferStatus = TransferStatus.PENDING
    bytes_transferred: int = 0
    files: int = 0
    error: str | None = None
    start_time: float | None = None
    end_time: float | None = None

    @property
    def elapsed(self) -> float:
        """Seconds since the job started (or its total duration once finished)."""
        if self.start_time is None:
            return 0.0
        return (self.end_time or time.monotonic()) - self.start_time

    @property
    def speed_mbps(self) -> float:
        """Average transfer speed in MB/s, or 0 if nothing moved yet."""
        elapsed = self.elapsed
        if elapsed <= 0 or self.bytes_transferred == 0:
            return 0.0
        return (self.bytes_transferred / elapsed) / (1024 * 1024)


# ---------------------------------------------------------------------------
# SCPClient
# ---------------------------------------------------------------------------


class SCPClient:
    """Pushes and pulls files over sessions opened by *transport*.

    *transport* is anything with an ``open_session()`` method returning a
    :class:`RemoteSession` — normally an ``SSHConnection``.  A client holds no
    per-transfer state, so several transfers may run at once if the transport
    allows concurrent sessions.
    """

    def __init__(
        self,
        transport,
        scp_path: str = DEFAULT_SCP_PATH,
        chunk_size: int = CHUNK_SIZE,
        on_progress: Callable[[TransferJob], None] | None = None,
        default_mode: str = DEFAULT_MODE,
    ) -> None:
        """
        Args:
            transport: Session factory (``open_session() -> RemoteSession``).
            scp_path: Path of the scp binary on the remote host.
            chunk_size: Payload bytes moved per read/write call.
            on_progress: Called with the job after every payload chunk.
            default_mode: Permission string for :meth:`push_bytes` when none
                is given.
        """
        self._transport = transport
        self.scp_path = scp_path
        self.chunk_size = chunk_size
        self.default_mode = default_mode
        self.on_progress = on_progress

    @classmethod
    def from_config(cls, transport, config, **kwargs) -> SCPClient:
        """Build a client from the ``scp_path``, ``chunk_size`` and ``default_mode`` settings."""
        return cls(
            transport,
            scp_path=config.get("scp_path", DEFAULT_SCP_PATH),
            chunk_size=int(config.get("chunk_size", CHUNK_SIZE)),
            default_mode=config.get("default_mode", DEFAULT_MODE),
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def push_bytes(self, payload: bytes, dest: str, mode: str | None = None) -> TransferJob:
        """Write *payload* to the remote file *dest* with permission string *mode*."""
        job = TransferJob(TransferDirection.PUSH, "<memory>", dest)
        name = self._remote_name(dest)
        mode = mode or self.default_mode
        self._push(job, lambda enc: enc.encode_bytes(payload, name, mode))
        return job

    def push_file(self, source: str, dest: str, preserve: bool = False) -> TransferJob:
        """Send the local file *source* to the remote path *dest*."""
        job = TransferJob(TransferDirection.PUSH, source, dest, preserve)
        name = self._remote_name(dest)
        self._push(job, lambda enc: enc.encode_file(source, name, preserve))
        return job

    def push_dir(self, source: str, dest: str, preserve: bool = False) -> TransferJob:
        """Send the local directory tree *source* to the remote directory *dest*."""
        job = TransferJob(TransferDirection.PUSH, source, dest, preserve)
        name = self._remote_name(dest)
        self._push(job, lambda enc: enc.encode_directory(source, name, preserve))
        return job

    def push(self, source: str, dest: str, preserve: bool = False) -> TransferJob:
        """Send *source*, choosing :meth:`push_dir` or :meth:`push_file`."""
        if os.path.isdir(source):
            return self.push_dir(source, dest, preserve)
        return self.push_file(source, dest, preserve)

    def receive(self, source: str, dest: str) -> TransferJob:
        """Fetch the remote file or directory *source* into the local *dest*."""
        if not validate_remote_path(source):
            raise ValueError(f"Invalid remote source path: {source!r}")
        job = TransferJob(TransferDirection.PULL, source, dest)
        command = f"{self.scp_path} -qrf {quote_remote_path(source)}"
        self._begin(job)
        try:
            self._pull(job, command)
        except Exception as exc:
            self._fail(job, exc)
            raise
        self._finish(job)
        return job

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    def _remote_name(self, dest: str) -> str:
        if not validate_remote_path(dest):
            raise ValueError(f"Invalid remote destination path: {dest!r}")
        _, name = split_remote_path(dest)
        if not name:
            raise ValueError(f"Remote destination has no file name: {dest!r}")
        return name

    def _push(self, job: TransferJob, encode: Callable[[Encoder], None]) -> None:
        parent, _ = split_remote_path(job.destination)
        flags = "pqrt" if job.preserve else "qrt"
        command = f"{self.scp_path} -{flags} {quote_remote_path(parent)}"

        self._begin(job)
        try:
            session = self._transport.open_session()
            try:
                self._run_push(session, job, command, encode)
            finally:
                session.close()
        except Exception as exc:
            self._fail(job, exc)
            raise
        self._finish(job)

    def _run_push(
        self,
        session: RemoteSession,
        job: TransferJob,
        command: str,
        encode: Callable[[Encoder], None],
    ) -> None:
        results: queue.Queue[Exception | None] = queue.Queue(maxsize=1)

        def _produce() -> None:
            try:
                stdin = session.stdin_pipe()
                try:
                    encoder = Encoder(stdin, self.chunk_size, self._progress_hook(job))
                    encode(encoder)
                    job.files = encoder.files_sent
                finally:
                    stdin.close()
            except Exception as exc:
                results.put(exc)
            else:
                results.put(None)

        worker = threading.Thread(target=_produce, name="scp-encoder", daemon=True)
        worker.start()
        try:
            session.run(command)
        except (RemoteCommandError, SessionError) as exc:
            diagnostic = self._read_text(session.stdout_pipe)
            # Tear the session down so a producer blocked on a write gives up.
            session.close()
            worker.join()
            if diagnostic:
                raise RemoteError(diagnostic) from exc
            raise

        error = results.get()
        worker.join()
        if error is not None:
            raise error

    @staticmethod
    def _read_text(pipe: Callable[[], BinaryIO]) -> str:
        """Drain a pipe of an exited remote process and return its text.

        Acknowledgement and error-marker bytes are removed; what is left is the
        message the remote scp printed.
        """
        try:
            raw = pipe().read()
        except (OSError, SessionError) as exc:
            logger.debug("Could not read remote diagnostics: %s", exc)
            return ""
        text = raw.decode("utf-8", errors="replace")
        return text.translate({0: None, 1: None, 2: None}).strip()

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    def _pull(self, job: TransferJob, command: str) -> None:
        session = self._transport.open_session()
        try:
            results: queue.Queue[Exception | None] = queue.Queue(maxsize=1)
            remote_warnings: list[str] = []

            def _consume() -> None:
                try:
                    stdin = session.stdin_pipe()
                    try:
                        decoder = Decoder(
                            session.stdout_pipe(),
                            stdin,
                            job.destination,
                            self.chunk_size,
                            self._progress_hook(job),
                        )
                        try:
                            decoder.decode()
                        finally:
                            job.files = decoder.files_received
                            remote_warnings.extend(decoder.warnings)
                    finally:
                        stdin.close()
                except Exception as exc:
                    # Nobody reads stdout any more; tear the session down so a
                    # remote scp blocked on a full channel window exits.
                    session.close()
                    results.put(exc)
                else:
                    results.put(None)

            worker = threading.Thread(target=_consume, name="scp-decoder", daemon=True)
            worker.start()

            run_error: Exception | None = None
            try:
                session.run(command)
            except RemoteCommandError as exc:
                exc.stderr = exc.stderr or self._read_text(session.stderr_pipe)
                run_error = exc
            except SessionError as exc:
                run_error = exc

            decode_error = results.get()
            worker.join()
        finally:
            session.close()

        if run_error is not None:
            details = list(remote_warnings)
            if decode_error is not None:
                logger.warning("Decoder also failed: %s", decode_error)
                details.append(str(decode_error))
            if details:
                run_error.args = (f"{run_error}: {'; '.join(details)}",)
            if decode_error is not None:
                raise run_error from decode_error
            raise run_error
        if remote_warnings:
            logger.warning(
                "%s finished with %d remote warning(s)", job.source, len(remote_warnings)
            )
        if decode_error is not None:
            raise decode_error

    # ------------------------------------------------------------------
    # Job bookkeeping
    # ------------------------------------------------------------------

    def _progress_hook(self, job: TransferJob) -> Callable[[int], None]:
        def _on_chunk(count: int) -> None:
            job.bytes_transferred += count
            if self.on_progress:
                try:
                    self.on_progress(job)
                except Exception:
                    logger.exception("Exception in on_progress callback")

        return _on_chunk

    def _begin(self, job: TransferJob) -> None:
        job.status = TransferStatus.IN_PROGRESS
        job.start_time = time.monotonic()
        logger.info(
            "%s started: %s → %s%s",
            job.direction.name,
            job.source,
            job.destination,
            " (preserving times)" if job.preserve else "",
        )

    def _finish(self, job: TransferJob) -> None:
        job.end_time = time.monotonic()
        job.status = TransferStatus.COMPLETE
        logger.info(
            "%s complete: %s → %s (%d file(s), %d bytes)",
            job.direction.name,
            job.source,
            job.destination,
            job.files,
            job.bytes_transferred,
        )

    def _fail(self, job: TransferJob, exc: Exception) -> None:
        job.end_time = time.monotonic()
        job.status = TransferStatus.FAILED
        job.error = str(exc)
        logger.error("%s failed for %r: %s", job.direction.name, job.source, exc)
