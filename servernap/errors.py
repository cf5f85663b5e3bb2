"""Exception hierarchy shared by the ServerNap components."""

from typing import Optional


class ServerNapError(Exception):
    """Base exception for ServerNap errors."""


class ProtocolError(ServerNapError):
    """Raised when a peer sends data that violates the wire protocol."""


class TruncatedPacketError(ProtocolError):
    """Raised when the stream ends before a packet is complete."""


class MalformedPacketError(ProtocolError):
    """Raised when a packet's contents do not match its declared length or layout."""


class BindError(ServerNapError):
    """Raised when the handshake listener cannot bind its address."""


class RconError(ServerNapError):
    """Base exception for RCON errors."""


class AuthError(RconError):
    """Raised when the RCON server rejects the password."""


class UnreachableError(RconError):
    """Raised when the RCON server cannot be reached or drops the connection."""


class SpawnError(ServerNapError):
    """Raised when the server process cannot be launched."""


class ProcessExitError(ServerNapError):
    """Raised when the supervised server process exits without being asked to."""

    def __init__(self, returncode: Optional[int]):
        super().__init__(f"Server process exited unexpectedly (code {returncode})")
        self.returncode = returncode
