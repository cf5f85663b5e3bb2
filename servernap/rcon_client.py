"""Asynchronous client for the Source RCON protocol used by Minecraft servers."""

import asyncio
import itertools
import logging
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional

from .errors import AuthError, ProtocolError, RconError, UnreachableError


logger = logging.getLogger(__name__)

AUTH_FAILED_ID = -1
# Minecraft rejects client packets longer than 1460 bytes
MAX_COMMAND_LENGTH = 1446
MAX_RESPONSE_PAYLOAD = 4096
MIN_PACKET_LENGTH = 10


class PacketType(IntEnum):
    """RCON packet types."""
    RESPONSE = 0
    COMMAND = 2
    AUTH_RESPONSE = 2
    AUTH = 3


@dataclass(frozen=True)
class RconPacket:
    """
    A single RCON packet.

    Wire format: [length:i32][request_id:i32][type:i32][payload\\0\\0]
    Length covers everything after itself.
    """
    request_id: int
    packet_type: int
    payload: bytes

    @property
    def text(self) -> str:
        return self.payload.decode('utf-8', errors='replace')

    def encode(self) -> bytes:
        """Encode the packet into bytes for transmission."""
        payload_bytes = self.payload + b'\x00\x00'
        length = 4 + 4 + len(payload_bytes)
        return struct.pack('<iii', length, self.request_id, self.packet_type) + payload_bytes

    @classmethod
    def decode(cls, data: bytes) -> 'RconPacket':
        """Decode a packet body (everything after the length prefix)."""
        if len(data) < MIN_PACKET_LENGTH or data[-2:] != b'\x00\x00':
            raise ProtocolError("Malformed RCON packet body")
        request_id, packet_type = struct.unpack_from('<ii', data, 0)
        return cls(request_id, packet_type, data[8:-2])


class RconClient:
    """Manages one authenticated RCON session."""

    def __init__(self, host: str, port: int, timeout: float = 5.0):
        self.host = host
        self.port = port
        self.timeout = timeout
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._request_ids = itertools.count(1)
        self.authenticated = False

    async def __aenter__(self) -> 'RconClient':
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def connect(self) -> None:
        """Open the TCP connection, bounded by the client timeout."""
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            raise UnreachableError(f"Timed out connecting to RCON at {self.host}:{self.port}") from e
        except OSError as e:
            raise UnreachableError(f"Failed to connect to RCON at {self.host}:{self.port}: {e}") from e

        logger.debug(f"Connected to RCON at {self.host}:{self.port}")

    async def close(self) -> None:
        """Close the connection."""
        writer = self._writer
        self._reader = None
        self._writer = None
        self.authenticated = False

        if writer is None:
            return
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError):
            pass

    async def authenticate(self, password: str) -> None:
        """
        Authenticate with the RCON server.

        Raises AuthError if the server answers with request id -1.
        """
        request_id = self._next_id()
        await self._send(RconPacket(request_id, PacketType.AUTH, password.encode('utf-8')))

        while True:
            response = await self._recv()

            if response.request_id == AUTH_FAILED_ID:
                raise AuthError("Authentication failed: incorrect RCON password")
            if response.request_id != request_id:
                raise ProtocolError(
                    f"Auth response id {response.request_id} does not match request {request_id}"
                )
            # Source servers send an empty response value before the auth result
            if response.packet_type == PacketType.RESPONSE:
                continue

            self.authenticated = True
            logger.debug("RCON authentication succeeded")
            return

    async def command(self, text: str) -> str:
        """
        Send a command and return the full response text.

        A follow-up empty sentinel request is sent after the command. The
        server answers in order, so once the sentinel's reply arrives every
        fragment of the real response has been received.
        """
        if not self.authenticated:
            raise RconError("Not authenticated")
        payload = text.encode('utf-8')
        if len(payload) > MAX_COMMAND_LENGTH:
            raise RconError(f"Command longer than {MAX_COMMAND_LENGTH} bytes")

        request_id = self._next_id()
        sentinel_id = self._next_id()
        await self._send(RconPacket(request_id, PacketType.COMMAND, payload))
        await self._send(RconPacket(sentinel_id, PacketType.COMMAND, b""))

        fragments = []
        while True:
            response = await self._recv()

            if response.request_id == sentinel_id:
                break
            if response.request_id != request_id:
                raise ProtocolError(
                    f"Response id {response.request_id} does not match request {request_id}"
                )
            fragments.append(response.payload)

        # A multi-byte character may straddle two fragments
        return b"".join(fragments).decode('utf-8', errors='replace')

    async def stop_server(self) -> str:
        """
        Send the stop command.

        The server may hang up before answering, so a lost connection after
        the request has been written still counts as delivered.
        """
        if not self.authenticated:
            raise RconError("Not authenticated")

        request_id = self._next_id()
        await self._send(RconPacket(request_id, PacketType.COMMAND, b"stop"))

        try:
            response = await self._recv()
        except UnreachableError as e:
            logger.debug(f"Connection ended after stop command: {e}")
            return ""

        if response.request_id != request_id:
            raise ProtocolError(
                f"Response id {response.request_id} does not match request {request_id}"
            )
        return response.text

    def _next_id(self) -> int:
        return next(self._request_ids)

    async def _send(self, packet: RconPacket) -> None:
        if self._writer is None:
            raise UnreachableError("Not connected")
        try:
            self._writer.write(packet.encode())
            await self._writer.drain()
        except (ConnectionError, OSError) as e:
            await self.close()
            raise UnreachableError(f"Failed to send data: {e}") from e

    async def _recv(self) -> RconPacket:
        length_data = await self._recv_exact(4)
        (length,) = struct.unpack('<i', length_data)
        if length < MIN_PACKET_LENGTH or length > MAX_RESPONSE_PAYLOAD + MIN_PACKET_LENGTH:
            raise ProtocolError(f"Invalid RCON packet length {length}")
        return RconPacket.decode(await self._recv_exact(length))

    async def _recv_exact(self, num_bytes: int) -> bytes:
        if self._reader is None:
            raise UnreachableError("Not connected")
        try:
            return await asyncio.wait_for(self._reader.readexactly(num_bytes), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            await self.close()
            raise UnreachableError("Timed out waiting for RCON response") from e
        except asyncio.IncompleteReadError as e:
            await self.close()
            raise UnreachableError("Connection closed by server") from e
        except (ConnectionError, OSError) as e:
            await self.close()
            raise UnreachableError(f"Connection lost: {e}") from e


async def send_stop_command(host: str, port: int, password: str, timeout: float = 5.0) -> str:
    """Connect, authenticate and send a single stop command."""
    logger.info(f"Connecting to RCON at {host}:{port} to send stop command...")
    async with RconClient(host, port, timeout) as client:
        await client.authenticate(password)
        response = await client.stop_server()
    logger.info("Stop command sent.")
    return response
