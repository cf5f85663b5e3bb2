"""Length-prefixed VarInt packet framing used by the Minecraft handshake protocol."""

import asyncio
import struct
from dataclasses import dataclass
from typing import Tuple

from .errors import MalformedPacketError, TruncatedPacketError


MAX_VARINT_BYTES = 5
MAX_VARINT_VALUE = 0xFFFFFFFF
# Largest length a 3-byte VarInt prefix can carry
MAX_PACKET_LENGTH = 2097151


def encode_varint(value: int) -> bytes:
    """Encode an unsigned 32-bit integer as a VarInt."""
    if value < 0 or value > MAX_VARINT_VALUE:
        raise ValueError(f"VarInt out of range: {value}")

    data = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value != 0:
            byte |= 0x80
        data.append(byte)
        if value == 0:
            break

    return bytes(data)


def decode_varint(data: bytes, offset: int = 0) -> Tuple[int, int]:
    """
    Decode a VarInt from data starting at offset.

    Returns:
        Tuple[int, int]: (value, bytes_consumed)
    """
    value = 0

    for index in range(MAX_VARINT_BYTES):
        if offset + index >= len(data):
            raise TruncatedPacketError("Unexpected end of data while reading VarInt")

        byte = data[offset + index]
        value |= (byte & 0x7F) << (7 * index)

        if (byte & 0x80) == 0:
            if value > MAX_VARINT_VALUE:
                raise MalformedPacketError("VarInt exceeds 32 bits")
            return value, index + 1

    raise MalformedPacketError("VarInt too long")


async def read_varint(reader: asyncio.StreamReader) -> int:
    """Read a single VarInt from a stream."""
    raw = bytearray()

    while True:
        try:
            byte = await reader.readexactly(1)
        except asyncio.IncompleteReadError as e:
            raise TruncatedPacketError("Stream closed while reading VarInt") from e

        raw += byte
        if (byte[0] & 0x80) == 0 or len(raw) >= MAX_VARINT_BYTES:
            break

    value, _ = decode_varint(bytes(raw))
    return value


@dataclass(frozen=True)
class Packet:
    """A single framed packet: id plus raw payload."""

    packet_id: int
    payload: bytes = b''

    def buffer(self) -> 'PacketBuffer':
        """Return a reader positioned at the start of the payload."""
        return PacketBuffer(self.payload)


def write_packet(packet_id: int, payload: bytes = b'') -> bytes:
    """Create a complete packet with length prefix."""
    body = encode_varint(packet_id) + payload
    return encode_varint(len(body)) + body


async def read_packet(reader: asyncio.StreamReader) -> Packet:
    """Read one length-prefixed packet from a stream."""
    length = await read_varint(reader)
    if length == 0 or length > MAX_PACKET_LENGTH:
        raise MalformedPacketError(f"Invalid packet length {length}")

    try:
        body = await reader.readexactly(length)
    except asyncio.IncompleteReadError as e:
        raise TruncatedPacketError(
            f"Stream closed after {len(e.partial)} of {length} bytes"
        ) from e

    try:
        packet_id, consumed = decode_varint(body)
    except TruncatedPacketError as e:
        # The id ran past the declared length
        raise MalformedPacketError("Packet id overruns declared length") from e

    return Packet(packet_id, body[consumed:])


class PacketBuffer:
    """Handles Minecraft packet field operations with VarInt support."""

    def __init__(self, data: bytes = b''):
        self.data = data
        self.pos = 0

    def read_varint(self) -> int:
        """Read a VarInt from the buffer."""
        try:
            value, consumed = decode_varint(self.data, self.pos)
        except TruncatedPacketError as e:
            raise MalformedPacketError(str(e)) from e
        self.pos += consumed
        return value

    def write_varint(self, value: int) -> None:
        """Write a VarInt to the buffer."""
        self.data += encode_varint(value)

    def read_string(self, max_length: int = 32767) -> str:
        """Read a UTF-8 string, rejecting strings longer than max_length characters."""
        length = self.read_varint()
        if length > max_length * 4:
            raise MalformedPacketError(f"String byte length {length} exceeds limit")
        if self.pos + length > len(self.data):
            raise MalformedPacketError("String length exceeds buffer size")

        string_data = self.data[self.pos:self.pos + length]
        self.pos += length

        try:
            value = string_data.decode('utf-8')
        except UnicodeDecodeError as e:
            raise MalformedPacketError(f"Invalid UTF-8 in string: {e}") from e

        if len(value) > max_length:
            raise MalformedPacketError(f"String exceeds {max_length} characters")
        return value

    def write_string(self, value: str) -> None:
        """Write a UTF-8 string to the buffer."""
        encoded = value.encode('utf-8')
        self.write_varint(len(encoded))
        self.data += encoded

    def read_ushort(self) -> int:
        """Read an unsigned short (2 bytes, big-endian)."""
        if self.pos + 2 > len(self.data):
            raise MalformedPacketError("Not enough data for unsigned short")

        value = struct.unpack('>H', self.data[self.pos:self.pos + 2])[0]
        self.pos += 2
        return value

    def write_ushort(self, value: int) -> None:
        """Write an unsigned short (2 bytes, big-endian)."""
        self.data += struct.pack('>H', value)

    def read_long(self) -> int:
        """Read a long (8 bytes, big-endian)."""
        if self.pos + 8 > len(self.data):
            raise MalformedPacketError("Not enough data for long")

        value = struct.unpack('>q', self.data[self.pos:self.pos + 8])[0]
        self.pos += 8
        return value

    def write_long(self, value: int) -> None:
        """Write a long (8 bytes, big-endian)."""
        self.data += struct.pack('>q', value)

    def remaining(self) -> int:
        """Get number of remaining bytes in buffer."""
        return len(self.data) - self.pos

    def expect_end(self) -> None:
        """Fail unless every byte of the buffer has been consumed."""
        if self.remaining() != 0:
            raise MalformedPacketError(
                f"{self.remaining()} unexpected trailing bytes in packet"
            )

    def to_bytes(self) -> bytes:
        """Get the complete buffer as bytes."""
        return self.data
