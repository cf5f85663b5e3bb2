"""Fakes shared by the test modules."""

import asyncio
import json
import socket
import struct
from typing import List, Optional

from servernap.packet_codec import PacketBuffer, read_packet, write_packet


def free_port() -> int:
    """Return a TCP port that was free a moment ago."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(('127.0.0.1', 0))
        return sock.getsockname()[1]


def rcon_frame(request_id: int, packet_type: int, payload) -> bytes:
    if isinstance(payload, str):
        payload = payload.encode('utf-8')
    body = struct.pack('<ii', request_id, packet_type) + payload + b'\x00\x00'
    return struct.pack('<i', len(body)) + body


class FakeRconServer:
    """In-process RCON server speaking the Minecraft flavour of the protocol."""

    def __init__(self, password: str = "secret", list_responses: Optional[List[str]] = None,
                 fragment_size: Optional[int] = None, auth_reply_id: Optional[int] = None,
                 command_reply_id: Optional[int] = None):
        self.password = password
        self.list_responses = list(list_responses or ["There are 0 of a max of 20 players online: "])
        self.fragment_size = fragment_size
        self.auth_reply_id = auth_reply_id
        self.command_reply_id = command_reply_id
        self.commands: List[str] = []
        self.connections = 0
        self.server: Optional[asyncio.Server] = None

    @property
    def port(self) -> int:
        return self.server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        self.server = await asyncio.start_server(self._handle, '127.0.0.1', 0)

    async def close(self) -> None:
        if self.server:
            self.server.close()
            await self.server.wait_closed()

    def respond(self, command: str) -> str:
        if command == "list":
            if len(self.list_responses) > 1:
                return self.list_responses.pop(0)
            return self.list_responses[0]
        if command == "stop":
            return "Stopping the server"
        return ""

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.connections += 1
        try:
            while True:
                (length,) = struct.unpack('<i', await reader.readexactly(4))
                body = await reader.readexactly(length)
                request_id, packet_type = struct.unpack_from('<ii', body)
                payload = body[8:-2].decode('utf-8')

                if packet_type == 3:
                    if self.auth_reply_id is not None:
                        reply_id = self.auth_reply_id
                    else:
                        reply_id = request_id if payload == self.password else -1
                    writer.write(rcon_frame(reply_id, 2, ""))
                elif packet_type == 2:
                    if payload:
                        self.commands.append(payload)
                    reply_id = request_id
                    if payload and self.command_reply_id is not None:
                        reply_id = self.command_reply_id
                    data = self.respond(payload).encode('utf-8')
                    # Fragments are cut by byte count
                    size = self.fragment_size or max(len(data), 1)
                    chunks = [data[i:i + size] for i in range(0, len(data), size)] or [b""]
                    for chunk in chunks:
                        writer.write(rcon_frame(reply_id, 0, chunk))
                await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()


def handshake_packet(next_state: int, protocol_version: int = 766,
                     address: str = "localhost", port: int = 25565) -> bytes:
    buffer = PacketBuffer()
    buffer.write_varint(protocol_version)
    buffer.write_string(address)
    buffer.write_ushort(port)
    buffer.write_varint(next_state)
    return write_packet(0x00, buffer.to_bytes())


def login_start_packet(name: str) -> bytes:
    buffer = PacketBuffer()
    buffer.write_string(name)
    # Player UUID sent by 1.20.2+ clients
    buffer.data += b'\x00' * 16
    return write_packet(0x00, buffer.to_bytes())


async def status_ping(port: int, ping_payload: Optional[int] = 1234) -> dict:
    """Run a server list ping and return the decoded status plus the pong payload."""
    reader, writer = await asyncio.open_connection('127.0.0.1', port)
    try:
        writer.write(handshake_packet(1) + write_packet(0x00))
        await writer.drain()

        response = await read_packet(reader)
        status = json.loads(response.buffer().read_string())

        if ping_payload is not None:
            ping = PacketBuffer()
            ping.write_long(ping_payload)
            writer.write(write_packet(0x01, ping.to_bytes()))
            await writer.drain()
            pong = await read_packet(reader)
            status["_pong"] = pong.buffer().read_long()

        return status
    finally:
        writer.close()


async def attempt_login(port: int, name: str = "Steve") -> dict:
    """Send a login handshake and return the disconnect reason."""
    reader, writer = await asyncio.open_connection('127.0.0.1', port)
    try:
        writer.write(handshake_packet(2) + login_start_packet(name))
        await writer.drain()
        disconnect = await read_packet(reader)
        return json.loads(disconnect.buffer().read_string())
    finally:
        writer.close()


async def wait_until(predicate, timeout: float = 10.0, interval: float = 0.02) -> None:
    """Poll predicate until it returns true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(interval)
