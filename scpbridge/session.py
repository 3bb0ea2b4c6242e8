"""Remote command sessions: the transport contract the scp engine runs over.

A session runs exactly one remote command.  While :meth:`RemoteSession.run`
blocks, other threads talk to the process through its three pipes.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import BinaryIO

import paramiko

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Custom exceptions
# ---------------------------------------------------------------------------


class SessionError(Exception):
    """Raised when a session's streams cannot be acquired or its command started."""


class RemoteCommandError(Exception):
    """Raised when the remote process exits with a non-zero status."""

    def __init__(
        self,
        message: str,
        exit_status: int = -1,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.exit_status = exit_status
        self.stdout = stdout
        self.stderr = stderr


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class RemoteSession(ABC):
    """One remote process with attached stdin/stdout/stderr streams."""

    @abstractmethod
    def stdin_pipe(self) -> BinaryIO:
        """Writable stream to the process; closing it sends EOF."""

    @abstractmethod
    def stdout_pipe(self) -> BinaryIO:
        """Readable stream of the process's standard output."""

    @abstractmethod
    def stderr_pipe(self) -> BinaryIO:
        """Readable stream of the process's diagnostic output."""

    @abstractmethod
    def run(self, command: str) -> None:
        """Start *command* and block until it exits.

        Raises:
            RemoteCommandError: The process exited non-zero.
        """

    @abstractmethod
    def close(self) -> None:
        """Release the session; safe to call more than once."""

    def __enter__(self) -> RemoteSession:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


# ---------------------------------------------------------------------------
# paramiko implementation
# ---------------------------------------------------------------------------


class _ChannelWriter:
    """Binary writer over a paramiko channel; ``close()`` half-closes it."""

    def __init__(self, channel: paramiko.Channel) -> None:
        self._channel = channel
        self.closed = False

    def write(self, data: bytes) -> int:
        if self.closed:
            raise ValueError("write to closed stdin pipe")
        self._channel.sendall(data)
        return len(data)

    def flush(self) -> None:
        pass

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._channel.shutdown_write()
        except (OSError, EOFError) as exc:
            logger.debug("shutdown_write on channel %s failed: %s", self._channel, exc)

    def __enter__(self) -> _ChannelWriter:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class ParamikoSession(RemoteSession):
    """A :class:`RemoteSession` backed by one paramiko session channel.

    Pipe accessors block until :meth:`run` has issued the exec request, so a
    producer thread can be started before the command without racing it.
    """

    def __init__(self, channel: paramiko.Channel) -> None:
        self._channel = channel
        self._started = threading.Event()
        self._start_error: BaseException | None = None
        self._stdin: _ChannelWriter | None = None
        self._stdout: BinaryIO | None = None
        self._stderr: BinaryIO | None = None
        self._lock = threading.Lock()
        self._closed = False

    def _wait_started(self) -> None:
        self._started.wait()
        if self._start_error is not None:
            raise SessionError(f"Remote command did not start: {self._start_error}")

    def stdin_pipe(self) -> BinaryIO:
        self._wait_started()
        with self._lock:
            if self._stdin is None:
                self._stdin = _ChannelWriter(self._channel)
            return self._stdin  # type: ignore[return-value]

    def stdout_pipe(self) -> BinaryIO:
        self._wait_started()
        with self._lock:
            if self._stdout is None:
                self._stdout = self._channel.makefile("rb")
            return self._stdout

    def stderr_pipe(self) -> BinaryIO:
        self._wait_started()
        with self._lock:
            if self._stderr is None:
                self._stderr = self._channel.makefile_stderr("rb")
            return self._stderr

    def run(self, command: str) -> None:
        logger.debug("exec: %s", command)
        try:
            self._channel.exec_command(command)
        except paramiko.SSHException as exc:
            self._start_error = exc
            raise SessionError(f"Could not start {command!r}: {exc}") from exc
        finally:
            self._started.set()

        exit_status = self._channel.recv_exit_status()
        if exit_status != 0:
            raise RemoteCommandError(
                f"Process exited with status {exit_status}", exit_status=exit_status
            )

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        # Unblock anybody still waiting for a command that never ran.
        if not self._started.is_set():
            self._start_error = SessionError("session closed")
            self._started.set()
        self._channel.close()
