"""Shared fixtures: an in-memory stand-in for a remote command session."""

from __future__ import annotations

import io
import threading
import time

import pytest

from scpbridge.session import RemoteCommandError, RemoteSession, SessionError


class CapturePipe(io.BytesIO):
    """Writable pipe that keeps its contents after ``close()``."""

    def __init__(self) -> None:
        super().__init__()
        self.data = b""
        self.closed_event = threading.Event()

    def close(self) -> None:
        if not self.closed:
            self.data = self.getvalue()
        self.closed_event.set()
        super().close()


class FakeSession(RemoteSession):
    """Plays the remote process: serves canned stdout, records stdin.

    ``run`` waits (up to a few seconds) for stdin to be closed, the way a real
    ``scp -t`` reads until EOF, unless *wait_for_stdin* is False.  With
    *hold_until_drained* it instead behaves like an ``scp -f`` stuck on a full
    channel: it only exits once stdout has been read to the end, or with
    status -1 when the session is closed first.
    """

    def __init__(
        self,
        stdout: bytes = b"",
        stderr: bytes = b"",
        exit_status: int = 0,
        start_error: bool = False,
        wait_for_stdin: bool = True,
        hold_until_drained: bool = False,
    ) -> None:
        self.stdin = CapturePipe()
        self.stdout = io.BytesIO(stdout)
        self.stderr = io.BytesIO(stderr)
        self.exit_status = exit_status
        self.start_error = start_error
        self.wait_for_stdin = wait_for_stdin
        self.hold_until_drained = hold_until_drained
        self._stdout_size = len(stdout)
        self.commands: list[str] = []
        self.closed = False

    def stdin_pipe(self):
        if self.start_error:
            raise SessionError("not started")
        return self.stdin

    def stdout_pipe(self):
        if self.start_error:
            raise SessionError("not started")
        return self.stdout

    def stderr_pipe(self):
        if self.start_error:
            raise SessionError("not started")
        return self.stderr

    def run(self, command: str) -> None:
        self.commands.append(command)
        if self.start_error:
            raise SessionError(f"Could not start {command!r}")
        if self.hold_until_drained:
            self._hold()
        elif self.wait_for_stdin:
            self.stdin.closed_event.wait(timeout=5)
        if self.exit_status != 0:
            raise RemoteCommandError(
                f"Process exited with status {self.exit_status}",
                exit_status=self.exit_status,
            )

    def _hold(self) -> None:
        deadline = time.monotonic() + 5
        while self.stdout.tell() < self._stdout_size:
            if self.closed:
                raise RemoteCommandError("Process exited with status -1", exit_status=-1)
            if time.monotonic() > deadline:
                raise AssertionError("remote sender still blocked: stdout not drained")
            time.sleep(0.01)

    def close(self) -> None:
        self.closed = True
        self.stdin.close()


class FakeTransport:
    """Hands out prepared sessions in order."""

    def __init__(self, *sessions: FakeSession) -> None:
        self.sessions = list(sessions)
        self.opened: list[FakeSession] = []

    def open_session(self) -> FakeSession:
        session = self.sessions.pop(0) if self.sessions else FakeSession()
        self.opened.append(session)
        return session


@pytest.fixture()
def make_session():
    """Factory for :class:`FakeSession` objects."""
    return FakeSession


@pytest.fixture()
def make_transport():
    """Factory for :class:`FakeTransport` objects."""
    return FakeTransport
