"""ScpBridge — scp protocol engine over remote command sessions."""

from __future__ import annotations

from scpbridge.connection import SSHConnection
from scpbridge.decoder import Decoder, DestinationStack
from scpbridge.encoder import Encoder
from scpbridge.entry import DEFAULT_MODE, PathEntry
from scpbridge.protocol import ProtocolError, RemoteError, SCPError
from scpbridge.session import RemoteCommandError, RemoteSession, SessionError
from scpbridge.transfer import SCPClient, TransferDirection, TransferJob, TransferStatus

__version__ = "0.1.0"

__all__ = [
    "DEFAULT_MODE",
    "Decoder",
    "DestinationStack",
    "Encoder",
    "PathEntry",
    "ProtocolError",
    "RemoteCommandError",
    "RemoteError",
    "RemoteSession",
    "SCPClient",
    "SCPError",
    "SSHConnection",
    "SessionError",
    "TransferDirection",
    "TransferJob",
    "TransferStatus",
]
