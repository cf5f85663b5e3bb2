"""Minecraft protocol handler for status responses and login detection."""

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Any

from .config_manager import RunConfig
from .errors import BindError, ProtocolError
from .packet_codec import Packet, PacketBuffer, read_packet, write_packet


logger = logging.getLogger(__name__)

HANDSHAKE_PACKET_ID = 0x00
STATUS_REQUEST_PACKET_ID = 0x00
STATUS_RESPONSE_PACKET_ID = 0x00
PING_PACKET_ID = 0x01
PONG_PACKET_ID = 0x01
LOGIN_START_PACKET_ID = 0x00
LOGIN_DISCONNECT_PACKET_ID = 0x00

MAX_SERVER_ADDRESS_LENGTH = 255
MAX_PLAYER_NAME_LENGTH = 16


class HandshakeState(Enum):
    """Minecraft connection states."""
    AWAITING_HANDSHAKE = 0
    STATUS = 1
    LOGIN = 2
    # Newer clients use 3 when transferred from another server
    TRANSFER = 3


@dataclass(frozen=True)
class Handshake:
    """Contents of a handshake packet."""
    protocol_version: int
    server_address: str
    server_port: int
    next_state: HandshakeState


@dataclass(frozen=True)
class LoginAttempt:
    """A confirmed login intent."""
    player_name: str
    peer: str
    protocol_version: int


def parse_handshake(packet: Packet) -> Handshake:
    """Parse a handshake packet, raising ProtocolError on anything unexpected."""
    if packet.packet_id != HANDSHAKE_PACKET_ID:
        raise ProtocolError(f"Expected handshake packet (0x00), got {packet.packet_id:#04x}")

    buffer = packet.buffer()
    protocol_version = buffer.read_varint()
    server_address = buffer.read_string(MAX_SERVER_ADDRESS_LENGTH)
    server_port = buffer.read_ushort()
    next_state = buffer.read_varint()
    buffer.expect_end()

    try:
        state = HandshakeState(next_state)
    except ValueError:
        raise ProtocolError(f"Unknown next state {next_state}") from None
    if state == HandshakeState.AWAITING_HANDSHAKE:
        raise ProtocolError("Handshake requested next state 0")

    return Handshake(protocol_version, server_address, server_port, state)


def parse_login_start(packet: Packet) -> str:
    """Return the player name from a Login Start packet."""
    if packet.packet_id != LOGIN_START_PACKET_ID:
        raise ProtocolError(f"Expected login start packet (0x00), got {packet.packet_id:#04x}")

    # Trailing fields (player UUID, signature data) differ between versions
    name = packet.buffer().read_string(MAX_PLAYER_NAME_LENGTH)
    if not name:
        raise ProtocolError("Empty player name in login start")
    return name


class StatusResponse:
    """Builds the server list ping payload shown in the client's server browser."""

    def __init__(self, config: RunConfig):
        self.config = config

    def to_dict(self) -> Dict[str, Any]:
        """Create the status response object."""
        response = {
            "version": {
                "name": self.config.version_name,
                "protocol": self.config.protocol_version
            },
            "players": {
                "max": self.config.max_players_display,
                "online": 0,
                "sample": []
            },
            "description": {
                "text": self.config.motd_text,
                "color": self.config.motd_color,
                "bold": self.config.motd_bold
            }
        }

        if self.config.server_icon:
            response["favicon"] = f"data:image/png;base64,{self.config.server_icon}"

        return response

    def to_json(self) -> str:
        """Create the status response JSON string."""
        return json.dumps(self.to_dict(), separators=(',', ':'))

    def to_packet(self) -> bytes:
        """Create a status response packet."""
        buffer = PacketBuffer()
        buffer.write_string(self.to_json())
        return write_packet(STATUS_RESPONSE_PACKET_ID, buffer.to_bytes())


def create_pong_packet(payload: int) -> bytes:
    """Create a pong response packet echoing the ping payload."""
    buffer = PacketBuffer()
    buffer.write_long(payload)
    return write_packet(PONG_PACKET_ID, buffer.to_bytes())


def create_disconnect_packet(text: str, color: str, bold: bool) -> bytes:
    """Create a login disconnect packet with a styled reason."""
    reason = json.dumps({"text": text, "color": color, "bold": bold}, separators=(',', ':'))

    buffer = PacketBuffer()
    buffer.write_string(reason)
    return write_packet(LOGIN_DISCONNECT_PACKET_ID, buffer.to_bytes())


class HandshakeListener:
    """Answers status pings and waits for the first genuine login attempt."""

    def __init__(self, config: RunConfig):
        self.config = config
        self.timeout = config.handshake_timeout_secs

        # Responses never change during a run
        self.status_packet = StatusResponse(config).to_packet()
        self.disconnect_packet = create_disconnect_packet(
            config.connection_msg_text,
            config.connection_msg_color,
            config.connection_msg_bold
        )

        self.server: Optional[asyncio.Server] = None
        self._login: Optional[asyncio.Future] = None

        self.stats = {
            "connections": 0,
            "status_pings": 0,
            "login_attempts": 0,
            "dropped_connections": 0
        }

    @property
    def bound_port(self) -> Optional[int]:
        """Port the listener is actually bound to."""
        if not self.server or not self.server.sockets:
            return None
        return self.server.sockets[0].getsockname()[1]

    @property
    def is_listening(self) -> bool:
        """Whether the listening socket is open."""
        return self.server is not None and self.server.is_serving()

    async def start(self) -> None:
        """Bind the listening socket."""
        self._login = asyncio.get_running_loop().create_future()
        try:
            self.server = await asyncio.start_server(
                self.handle_connection,
                self.config.host,
                self.config.port
            )
        except OSError as e:
            raise BindError(f"Cannot listen on {self.config.host}:{self.config.port}: {e}") from e

        logger.info(f"Listening for login on {self.config.host}:{self.bound_port}")

    async def wait_for_login(self) -> LoginAttempt:
        """Suspend until the first login attempt has been seen."""
        if self._login is None:
            raise RuntimeError("Listener has not been started")
        return await asyncio.shield(self._login)

    async def close(self) -> None:
        """Stop accepting connections."""
        if self.server is None:
            return
        self.server.close()
        await self.server.wait_closed()
        logger.debug("Handshake listener closed")

    async def handle_connection(self, reader: asyncio.StreamReader,
                                writer: asyncio.StreamWriter) -> None:
        """Handle one client connection."""
        peer = writer.get_extra_info('peername')
        peer_str = f"{peer[0]}:{peer[1]}" if peer else "unknown"
        self.stats["connections"] += 1
        logger.debug(f"Minecraft connection from {peer_str}")

        try:
            handshake = parse_handshake(await self._read(reader))
            logger.debug(f"Handshake from {peer_str}: protocol={handshake.protocol_version}, "
                         f"address={handshake.server_address}, port={handshake.server_port}, "
                         f"next_state={handshake.next_state.name}")

            if handshake.next_state == HandshakeState.STATUS:
                await self._handle_status_request(reader, writer)
                self.stats["status_pings"] += 1
                logger.debug(f"Status request from {peer_str} answered")
            else:
                player_name = parse_login_start(await self._read(reader))
                self.stats["login_attempts"] += 1
                self._signal_login(LoginAttempt(player_name, peer_str, handshake.protocol_version))
                await self._handle_login_attempt(writer)

        except ProtocolError as e:
            self.stats["dropped_connections"] += 1
            logger.warning(f"Dropping connection from {peer_str}: {e}")
        except asyncio.TimeoutError:
            self.stats["dropped_connections"] += 1
            logger.debug(f"Connection from {peer_str} timed out")
        except (ConnectionError, OSError) as e:
            self.stats["dropped_connections"] += 1
            logger.debug(f"Connection from {peer_str} lost: {e}")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def _read(self, reader: asyncio.StreamReader) -> Packet:
        return await asyncio.wait_for(read_packet(reader), timeout=self.timeout)

    async def _handle_status_request(self, reader: asyncio.StreamReader,
                                     writer: asyncio.StreamWriter) -> None:
        """Handle a status request (server list ping)."""
        request = await self._read(reader)
        if request.packet_id != STATUS_REQUEST_PACKET_ID or request.payload:
            raise ProtocolError(f"Expected empty status request, got packet {request.packet_id:#04x}")

        writer.write(self.status_packet)
        await writer.drain()

        # The ping is optional; clients that only want the MOTD hang up here
        try:
            ping = await self._read(reader)
        except (asyncio.TimeoutError, ProtocolError):
            logger.debug("No ping packet received after status response")
            return

        if ping.packet_id != PING_PACKET_ID:
            raise ProtocolError(f"Expected ping packet (0x01), got {ping.packet_id:#04x}")

        buffer = ping.buffer()
        payload = buffer.read_long()
        buffer.expect_end()

        writer.write(create_pong_packet(payload))
        await writer.drain()
        logger.debug("Status request completed with ping/pong")

    async def _handle_login_attempt(self, writer: asyncio.StreamWriter) -> None:
        """Tell the joining player the server is starting."""
        writer.write(self.disconnect_packet)
        await writer.drain()
        # Give the client a moment to read the reason before the socket closes
        await asyncio.sleep(0.05)

    def _signal_login(self, attempt: LoginAttempt) -> None:
        """Resolve the activation signal; only the first login wins."""
        if self._login is None or self._login.done():
            logger.info(f"Ignoring login from {attempt.player_name} ({attempt.peer}): activation already triggered")
            return

        logger.info(f"Login attempt detected from {attempt.player_name} ({attempt.peer})")
        self._login.set_result(attempt)
        # Tear down the listening socket in the same step as the transition
        if self.server is not None:
            self.server.close()
