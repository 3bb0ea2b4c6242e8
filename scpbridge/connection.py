"""SSH connection lifecycle for ScpBridge.

Wraps a paramiko ``SSHClient`` and hands out one :class:`ParamikoSession` per
remote command.  Several sessions may be open on the same connection at once.
"""

from __future__ import annotations

import logging
import socket
import threading
from enum import Enum, auto
from pathlib import Path
from typing import Callable, Optional

import keyring
import keyring.errors
import paramiko

from scpbridge.session import ParamikoSession, RemoteCommandError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

StateChangeCallback = Callable[["ConnectionState", Optional[str]], None]

_KEYRING_SERVICE = "ScpBridge"
_DEFAULT_KEY_NAMES = ("id_rsa", "id_ed25519", "id_dsa")


# ---------------------------------------------------------------------------
# Custom exceptions
# ---------------------------------------------------------------------------


class UnknownHostError(Exception):
    """Raised when the remote host key is not in known_hosts.

    Carries the fingerprint and key so the caller can prompt the user and
    optionally save it to known_hosts via :func:`accept_host_key`.
    """

    def __init__(
        self,
        message: str,
        hostname: str = "",
        key_type: str = "",
        fingerprint: str = "",
        key: paramiko.PKey | None = None,
    ) -> None:
        """Initialise with optional host-key metadata."""
        super().__init__(message)
        self.hostname = hostname
        self.key_type = key_type
        self.fingerprint = fingerprint
        self.key = key


class ConnectionError(Exception):  # noqa: A001  (shadows built-in intentionally)
    """Raised when a session is requested from a non-connected client."""


# ---------------------------------------------------------------------------
# Host-key policy
# ---------------------------------------------------------------------------


class _CapturingPolicy(paramiko.MissingHostKeyPolicy):
    """Raises UnknownHostError with fingerprint info instead of silently rejecting."""

    def missing_host_key(
        self,
        client: paramiko.SSHClient,
        hostname: str,
        key: paramiko.PKey,
    ) -> None:
        """Capture fingerprint and raise :exc:`UnknownHostError`."""
        raw = key.get_fingerprint()
        fingerprint = ":".join(f"{b:02x}" for b in raw)
        raise UnknownHostError(
            f"Host '{hostname}' is not in known_hosts.\n"
            f"Key type: {key.get_name()}\n"
            f"Fingerprint (MD5): {fingerprint}",
            hostname=hostname,
            key_type=key.get_name(),
            fingerprint=fingerprint,
            key=key,
        )


def _close_client_safely(client: paramiko.SSHClient) -> None:
    """Close *client*, logging rather than raising cleanup noise."""
    try:
        client.close()
    except (OSError, paramiko.SSHException) as exc:
        logger.debug("Ignoring error while closing SSH client: %s", exc)


def accept_host_key(hostname: str, key: paramiko.PKey) -> None:
    """Append *key* for *hostname* to ``~/.ssh/known_hosts`` and save.

    Creates the file and ``.ssh/`` directory if they do not exist.
    """
    ssh_dir = Path.home() / ".ssh"
    ssh_dir.mkdir(mode=0o700, exist_ok=True)
    known_hosts_path = ssh_dir / "known_hosts"

    host_keys = paramiko.HostKeys(str(known_hosts_path)) if known_hosts_path.exists() else paramiko.HostKeys()
    host_keys.add(hostname, key.get_name(), key)
    host_keys.save(str(known_hosts_path))
    logger.info("Saved host key for %s to known_hosts", hostname)


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class ConnectionState(Enum):
    """States for the SSH connection lifecycle."""

    DISCONNECTED = auto()
    CONNECTING = auto()
    CONNECTED = auto()
    ERROR = auto()


# ---------------------------------------------------------------------------
# SSHConnection
# ---------------------------------------------------------------------------


class SSHConnection:
    """Manages a single authenticated SSH connection.

    Thread-safety: ``_lock`` protects all state transitions; sessions opened
    from different threads are independent channels.
    """

    def __init__(
        self,
        host: str,
        port: int = 22,
        username: str = "root",
        password: str | None = None,
        key_path: str | None = None,
        timeout: float = 15.0,
        keepalive_interval: int = 30,
        on_state_change: StateChangeCallback | None = None,
    ) -> None:
        """Initialise connection parameters (does NOT connect yet).

        Args:
            host: Hostname or IP address.
            port: SSH port (default 22).
            username: SSH username.
            password: Password; if omitted, the OS keyring is consulted for
                ``user@host`` before falling back to key authentication.
            key_path: Private key file.  Without one, ``~/.ssh/id_rsa``,
                ``id_ed25519`` and ``id_dsa`` are tried.
            timeout: Connection timeout in seconds.
            keepalive_interval: Seconds between transport keepalives (0 = off).
            on_state_change: Callback invoked on every state transition with
                ``(new_state, optional_message)``.
        """
        self.host = host
        self.port = port
        self.username = username
        self.key_path = key_path
        self.timeout = timeout
        self.keepalive_interval = keepalive_interval
        self._password = password
        self._on_state_change = on_state_change

        self._client: paramiko.SSHClient | None = None
        self._state = ConnectionState.DISCONNECTED
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # State management
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        """Current connection state (thread-safe read)."""
        with self._lock:
            return self._state

    def _set_state(self, new_state: ConnectionState, message: str | None = None) -> None:
        """Update state and fire the state-change callback (must hold lock)."""
        self._state = new_state
        logger.debug(
            "Connection state → %s%s",
            new_state.name,
            f" ({message})" if message else "",
        )
        if self._on_state_change:
            try:
                self._on_state_change(new_state, message)
            except Exception:
                logger.exception("Exception in on_state_change callback")

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """Establish the SSH connection.

        Raises:
            UnknownHostError: Host key is not in known_hosts (carries fingerprint).
            paramiko.AuthenticationException: Wrong credentials.
            socket.timeout: Connection timed out.
            OSError: Network-level failure.
        """
        with self._lock:
            if self._state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
                logger.debug("connect() called but already %s", self._state.name)
                return
            self._set_state(ConnectionState.CONNECTING)

        try:
            self._do_connect()
        except Exception as exc:
            with self._lock:
                self._set_state(ConnectionState.ERROR, str(exc))
            raise

    def _connect_kwargs(self) -> dict:
        """Build the ``SSHClient.connect`` arguments for the configured auth."""
        kwargs: dict = {
            "hostname": self.host,
            "port": self.port,
            "username": self.username,
            "timeout": self.timeout,
            "allow_agent": True,
            "look_for_keys": False,
        }
        password = self._password or self._stored_password()
        if password:
            kwargs["password"] = password
        elif self.key_path:
            kwargs["key_filename"] = self.key_path
        else:
            default_keys = [str(Path.home() / ".ssh" / name) for name in _DEFAULT_KEY_NAMES]
            kwargs["key_filename"] = [k for k in default_keys if Path(k).exists()]
        return kwargs

    def _stored_password(self) -> str | None:
        """Look up a keyring password for ``user@host``; ``None`` without a backend."""
        try:
            return keyring.get_password(_KEYRING_SERVICE, self._profile_key)
        except keyring.errors.KeyringError as exc:
            logger.debug("Keyring unavailable for %s: %s", self._profile_key, exc)
            return None

    def _do_connect(self) -> None:
        """Internal connection logic — called without holding the lock."""
        logger.info("Connecting to %s@%s:%d", self.username, self.host, self.port)

        client = paramiko.SSHClient()
        known_hosts_path = Path.home() / ".ssh" / "known_hosts"
        if known_hosts_path.exists():
            client.load_host_keys(str(known_hosts_path))
        client.set_missing_host_key_policy(_CapturingPolicy())

        try:
            client.connect(**self._connect_kwargs())
        except UnknownHostError:
            _close_client_safely(client)
            raise
        except paramiko.BadHostKeyException as exc:
            _close_client_safely(client)
            raise UnknownHostError(
                f"Host key mismatch for {self.host} — check ~/.ssh/known_hosts",
                hostname=self.host,
            ) from exc
        except (paramiko.SSHException, socket.timeout, OSError):
            _close_client_safely(client)
            raise

        transport = client.get_transport()
        if transport and self.keepalive_interval:
            transport.set_keepalive(self.keepalive_interval)

        with self._lock:
            self._client = client
            self._set_state(ConnectionState.CONNECTED)
        logger.info("Connected to %s", self.host)

    def disconnect(self) -> None:
        """Close the SSH connection; open sessions are torn down with it."""
        with self._lock:
            if self._client:
                _close_client_safely(self._client)
                self._client = None
            self._set_state(ConnectionState.DISCONNECTED)
        logger.info("Disconnected from %s", self.host)

    def __enter__(self) -> SSHConnection:
        self.connect()
        return self

    def __exit__(self, *exc_info) -> None:
        self.disconnect()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @property
    def _profile_key(self) -> str:
        """Keyring account key for this connection (user@host)."""
        return f"{self.username}@{self.host}"

    def get_transport(self) -> paramiko.Transport:
        """Return the underlying paramiko Transport.

        Raises:
            ConnectionError: If not currently connected.
        """
        with self._lock:
            if self._client is None or self._state != ConnectionState.CONNECTED:
                raise ConnectionError(
                    f"Not connected to {self.host} (state: {self._state.name})"
                )
            transport = self._client.get_transport()
            if transport is None or not transport.is_active():
                raise ConnectionError("SSH transport unavailable")
            return transport

    def open_session(self) -> ParamikoSession:
        """Open a fresh session channel for one remote command.

        Raises:
            ConnectionError: If not connected.
            paramiko.SSHException: If the server refuses the channel.
        """
        channel = self.get_transport().open_session()
        logger.debug("Opened session channel %d on %s", channel.get_id(), self.host)
        return ParamikoSession(channel)

    def run_command(self, command: str) -> tuple[str, str]:
        """Run *command* remotely and return its ``(stdout, stderr)`` text.

        Raises:
            ConnectionError: If not connected.
            RemoteCommandError: The command exited non-zero; the captured output
                is attached to the exception.
        """
        with self.open_session() as session:
            stdout = session.stdout_pipe
            stderr = session.stderr_pipe
            collected: dict[str, bytes] = {}

            def _drain(name: str, getter) -> None:
                try:
                    collected[name] = getter().read()
                except Exception as exc:
                    logger.debug("Could not read %s of %r: %s", name, command, exc)
                    collected[name] = b""

            readers = [
                threading.Thread(target=_drain, args=("stdout", stdout), daemon=True),
                threading.Thread(target=_drain, args=("stderr", stderr), daemon=True),
            ]
            for t in readers:
                t.start()
            error: RemoteCommandError | None = None
            try:
                session.run(command)
            except RemoteCommandError as exc:
                error = exc
            finally:
                for t in readers:
                    t.join()

        out = collected.get("stdout", b"").decode("utf-8", errors="replace")
        err = collected.get("stderr", b"").decode("utf-8", errors="replace")
        if error is not None:
            logger.warning("%r exited with status %d", command, error.exit_status)
            raise RemoteCommandError(
                str(error), exit_status=error.exit_status, stdout=out, stderr=err
            ) from error
        return out, err

    # ------------------------------------------------------------------
    # Credential helpers
    # ------------------------------------------------------------------

    def store_password(self, password: str) -> None:
        """Store *password* in the OS keyring for this connection."""
        keyring.set_password(_KEYRING_SERVICE, self._profile_key, password)
        logger.debug("Password stored in keyring for %s", self._profile_key)

    def delete_password(self) -> None:
        """Remove the stored password from the OS keyring."""
        try:
            keyring.delete_password(_KEYRING_SERVICE, self._profile_key)
        except keyring.errors.PasswordDeleteError:
            logger.debug("No keyring password to delete for %s", self._profile_key)
        else:
            logger.debug("Password deleted from keyring for %s", self._profile_key)
