"""Tests for scpbridge/connection.py — SSHConnection with paramiko mocked out."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import keyring.errors
import paramiko
import pytest

from scpbridge.connection import (
    ConnectionError,
    ConnectionState,
    SSHConnection,
    UnknownHostError,
    _CapturingPolicy,
)
from scpbridge.session import ParamikoSession, RemoteCommandError


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def ssh_client() -> MagicMock:
    """Patch paramiko.SSHClient and return the instance connect() will use."""
    with patch("scpbridge.connection.paramiko.SSHClient") as cls:
        client = cls.return_value
        client.get_transport.return_value.is_active.return_value = True
        client.get_transport.return_value.open_session.return_value.get_id.return_value = 3
        yield client


@pytest.fixture()
def no_keyring() -> MagicMock:
    with patch("scpbridge.connection.keyring") as kr:
        kr.get_password.return_value = None
        yield kr


# ---------------------------------------------------------------------------
# Connect / disconnect
# ---------------------------------------------------------------------------


class TestConnect:
    def test_password_auth(self, ssh_client: MagicMock, no_keyring: MagicMock) -> None:
        conn = SSHConnection("build01", username="deploy", password="s3cret")
        conn.connect()

        kwargs = ssh_client.connect.call_args.kwargs
        assert kwargs["hostname"] == "build01"
        assert kwargs["username"] == "deploy"
        assert kwargs["password"] == "s3cret"
        assert "key_filename" not in kwargs
        assert conn.state == ConnectionState.CONNECTED
        ssh_client.get_transport.return_value.set_keepalive.assert_called_once_with(30)

    def test_keyring_password_used(self, ssh_client: MagicMock, no_keyring: MagicMock) -> None:
        no_keyring.get_password.return_value = "from-keyring"
        SSHConnection("build01", username="deploy").connect()
        no_keyring.get_password.assert_called_once_with("ScpBridge", "deploy@build01")
        assert ssh_client.connect.call_args.kwargs["password"] == "from-keyring"

    def test_key_path_used(self, ssh_client: MagicMock, no_keyring: MagicMock) -> None:
        SSHConnection("build01", key_path="/keys/id_build").connect()
        assert ssh_client.connect.call_args.kwargs["key_filename"] == "/keys/id_build"

    def test_missing_keyring_backend_falls_back_to_key(self, ssh_client: MagicMock) -> None:
        with patch("scpbridge.connection.keyring.get_password") as get_password:
            get_password.side_effect = keyring.errors.NoKeyringError("no backend")
            conn = SSHConnection("build01", username="deploy", key_path="/keys/id_build")
            conn.connect()

        kwargs = ssh_client.connect.call_args.kwargs
        assert kwargs["key_filename"] == "/keys/id_build"
        assert "password" not in kwargs
        assert conn.state == ConnectionState.CONNECTED

    def test_keepalive_disabled(self, ssh_client: MagicMock, no_keyring: MagicMock) -> None:
        SSHConnection("build01", password="x", keepalive_interval=0).connect()
        ssh_client.get_transport.return_value.set_keepalive.assert_not_called()

    def test_unknown_host_sets_error_state(
        self, ssh_client: MagicMock, no_keyring: MagicMock
    ) -> None:
        ssh_client.connect.side_effect = UnknownHostError("unknown", hostname="build01")
        states: list[ConnectionState] = []
        conn = SSHConnection(
            "build01", password="x", on_state_change=lambda s, m: states.append(s)
        )

        with pytest.raises(UnknownHostError):
            conn.connect()

        assert conn.state == ConnectionState.ERROR
        assert states == [ConnectionState.CONNECTING, ConnectionState.ERROR]
        ssh_client.close.assert_called_once()

    def test_auth_failure_propagates(self, ssh_client: MagicMock, no_keyring: MagicMock) -> None:
        ssh_client.connect.side_effect = paramiko.AuthenticationException("denied")
        conn = SSHConnection("build01", password="wrong")
        with pytest.raises(paramiko.AuthenticationException):
            conn.connect()
        assert conn.state == ConnectionState.ERROR

    def test_context_manager_disconnects(
        self, ssh_client: MagicMock, no_keyring: MagicMock
    ) -> None:
        with SSHConnection("build01", password="x") as conn:
            assert conn.state == ConnectionState.CONNECTED
        assert conn.state == ConnectionState.DISCONNECTED
        ssh_client.close.assert_called_once()

    def test_callback_exception_is_swallowed(
        self, ssh_client: MagicMock, no_keyring: MagicMock
    ) -> None:
        def _boom(state, message) -> None:
            raise RuntimeError("callback bug")

        conn = SSHConnection("build01", password="x", on_state_change=_boom)
        conn.connect()
        assert conn.state == ConnectionState.CONNECTED


class TestHostKeyPolicy:
    def test_missing_key_raises_with_fingerprint(self) -> None:
        key = MagicMock()
        key.get_fingerprint.return_value = b"\x01\xab"
        key.get_name.return_value = "ssh-ed25519"
        with pytest.raises(UnknownHostError) as info:
            _CapturingPolicy().missing_host_key(MagicMock(), "build01", key)
        assert info.value.fingerprint == "01:ab"
        assert info.value.key_type == "ssh-ed25519"
        assert info.value.key is key


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class TestSessions:
    def test_open_session_requires_connection(self) -> None:
        with pytest.raises(ConnectionError, match="Not connected"):
            SSHConnection("build01").open_session()

    def test_open_session_wraps_channel(
        self, ssh_client: MagicMock, no_keyring: MagicMock
    ) -> None:
        conn = SSHConnection("build01", password="x")
        conn.connect()
        session = conn.open_session()
        assert isinstance(session, ParamikoSession)
        ssh_client.get_transport.return_value.open_session.assert_called_once()

    def test_inactive_transport(self, ssh_client: MagicMock, no_keyring: MagicMock) -> None:
        conn = SSHConnection("build01", password="x")
        conn.connect()
        ssh_client.get_transport.return_value.is_active.return_value = False
        with pytest.raises(ConnectionError, match="unavailable"):
            conn.open_session()

    def test_run_command_returns_output(self, make_session) -> None:
        conn = SSHConnection("build01")
        session = make_session(stdout=b"Linux\n", stderr=b"warn\n", wait_for_stdin=False)
        with patch.object(conn, "open_session", return_value=session):
            assert conn.run_command("uname") == ("Linux\n", "warn\n")
        assert session.commands == ["uname"]
        assert session.closed

    def test_run_command_failure_carries_output(self, make_session) -> None:
        conn = SSHConnection("build01")
        session = make_session(
            stdout=b"partial", stderr=b"ls: nope\n", exit_status=2, wait_for_stdin=False
        )
        with patch.object(conn, "open_session", return_value=session):
            with pytest.raises(RemoteCommandError) as info:
                conn.run_command("ls nope")
        assert info.value.exit_status == 2
        assert info.value.stdout == "partial"
        assert info.value.stderr == "ls: nope\n"


class TestCredentials:
    def test_store_password(self, no_keyring: MagicMock) -> None:
        SSHConnection("build01", username="deploy").store_password("pw")
        no_keyring.set_password.assert_called_once_with("ScpBridge", "deploy@build01", "pw")

    def test_delete_missing_password_is_quiet(self) -> None:
        with patch("scpbridge.connection.keyring.delete_password") as delete:
            delete.side_effect = keyring.errors.PasswordDeleteError()
            SSHConnection("build01").delete_password()
        delete.assert_called_once_with("ScpBridge", "root@build01")
