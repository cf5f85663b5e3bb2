#!/usr/bin/env python3
"""Tests for VarInt and packet framing."""

import asyncio
import unittest

from servernap.errors import MalformedPacketError, TruncatedPacketError
from servernap.packet_codec import (
    MAX_VARINT_VALUE, PacketBuffer, decode_varint, encode_varint, read_packet, write_packet
)


def stream_of(data: bytes, eof: bool = True) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    if eof:
        reader.feed_eof()
    return reader


class TestVarInt(unittest.TestCase):
    """Test VarInt encoding and decoding."""

    def test_known_encodings(self):
        """Test values against the encodings documented for the protocol."""
        cases = {
            0: b'\x00',
            1: b'\x01',
            127: b'\x7f',
            128: b'\x80\x01',
            255: b'\xff\x01',
            25565: b'\xdd\xc7\x01',
            2097151: b'\xff\xff\x7f',
            2147483647: b'\xff\xff\xff\xff\x07',
            MAX_VARINT_VALUE: b'\xff\xff\xff\xff\x0f',
        }
        for value, encoded in cases.items():
            self.assertEqual(encode_varint(value), encoded)
            self.assertEqual(decode_varint(encoded), (value, len(encoded)))

    def test_round_trip_boundaries(self):
        """Test every 7-bit group boundary round-trips."""
        for shift in range(0, 32, 7):
            for value in (1 << shift, (1 << shift) - 1, (1 << shift) + 1):
                if value > MAX_VARINT_VALUE:
                    continue
                decoded, _ = decode_varint(encode_varint(value))
                self.assertEqual(decoded, value)

    def test_consumes_minimal_prefix(self):
        """Test decoding stops at the first byte without continuation bit."""
        data = encode_varint(300) + b'\x05\x06'
        self.assertEqual(decode_varint(data), (300, 2))
        self.assertEqual(decode_varint(data, 2), (5, 1))

    def test_out_of_range_rejected(self):
        """Test negative and over-32-bit values cannot be encoded."""
        with self.assertRaises(ValueError):
            encode_varint(-1)
        with self.assertRaises(ValueError):
            encode_varint(MAX_VARINT_VALUE + 1)

    def test_sixth_byte_is_fatal(self):
        """Test a fifth byte with continuation bit is malformed."""
        with self.assertRaises(MalformedPacketError):
            decode_varint(b'\x80\x80\x80\x80\x80\x01')

    def test_value_over_32_bits_is_fatal(self):
        """Test a five byte VarInt carrying more than 32 bits is malformed."""
        with self.assertRaises(MalformedPacketError):
            decode_varint(b'\xff\xff\xff\xff\x7f')

    def test_truncated(self):
        """Test data ending mid-VarInt is reported as truncated."""
        with self.assertRaises(TruncatedPacketError):
            decode_varint(b'\x80\x80')
        with self.assertRaises(TruncatedPacketError):
            decode_varint(b'')


class TestPacketFraming(unittest.IsolatedAsyncioTestCase):
    """Test reading and writing length-prefixed packets."""

    async def test_round_trip(self):
        """Test read_packet returns the id and payload given to write_packet."""
        for packet_id, payload in [(0, b''), (1, b'\x00' * 8), (0x7f, b'hello'), (300, b'x' * 1000)]:
            packet = await read_packet(stream_of(write_packet(packet_id, payload)))
            self.assertEqual(packet.packet_id, packet_id)
            self.assertEqual(packet.payload, payload)

    async def test_consecutive_packets(self):
        """Test packets are read back to back from one stream."""
        reader = stream_of(write_packet(0, b'abc') + write_packet(1, b'de'))
        first = await read_packet(reader)
        second = await read_packet(reader)
        self.assertEqual((first.packet_id, first.payload), (0, b'abc'))
        self.assertEqual((second.packet_id, second.payload), (1, b'de'))

    async def test_truncated_body(self):
        """Test a stream closing before the declared length is truncated."""
        data = write_packet(0, b'0123456789')
        with self.assertRaises(TruncatedPacketError):
            await read_packet(stream_of(data[:-3]))

    async def test_truncated_length(self):
        """Test a stream closing inside the length prefix is truncated."""
        with self.assertRaises(TruncatedPacketError):
            await read_packet(stream_of(b'\x80'))
        with self.assertRaises(TruncatedPacketError):
            await read_packet(stream_of(b''))

    async def test_zero_length_is_malformed(self):
        """Test a packet without room for an id is malformed."""
        with self.assertRaises(MalformedPacketError):
            await read_packet(stream_of(b'\x00'))

    async def test_id_overrunning_length_is_malformed(self):
        """Test a packet id that runs past the declared length is malformed."""
        with self.assertRaises(MalformedPacketError):
            await read_packet(stream_of(b'\x01\x80\x01'))

    async def test_oversized_length_is_malformed(self):
        """Test lengths above the protocol maximum are rejected before reading."""
        with self.assertRaises(MalformedPacketError):
            await read_packet(stream_of(encode_varint(2097152), eof=False))


class TestMinecraftPacketBuffer(unittest.TestCase):
    """Test Minecraft packet buffer operations."""

    def test_string_operations(self):
        """Test string read/write operations."""
        test_strings = [
            "Hello World",
            "Test with unicode: §a§b§c",
            "",
            "Long string " * 100
        ]

        for test_string in test_strings:
            write_buffer = PacketBuffer()
            write_buffer.write_string(test_string)

            read_buffer = PacketBuffer(write_buffer.data)
            self.assertEqual(read_buffer.read_string(), test_string)
            read_buffer.expect_end()

    def test_string_limit(self):
        """Test strings longer than the field limit are malformed."""
        buffer = PacketBuffer()
        buffer.write_string("x" * 17)
        with self.assertRaises(MalformedPacketError):
            PacketBuffer(buffer.data).read_string(16)

    def test_string_overrunning_buffer(self):
        """Test a string length larger than the payload is malformed."""
        with self.assertRaises(MalformedPacketError):
            PacketBuffer(b'\x05abc').read_string()

    def test_ushort_and_long(self):
        """Test fixed-width fields."""
        buffer = PacketBuffer()
        buffer.write_ushort(25565)
        buffer.write_long(-42)

        reader = PacketBuffer(buffer.data)
        self.assertEqual(reader.read_ushort(), 25565)
        self.assertEqual(reader.read_long(), -42)
        self.assertEqual(reader.remaining(), 0)

    def test_short_fixed_fields(self):
        """Test fixed-width fields past the end of the payload are malformed."""
        with self.assertRaises(MalformedPacketError):
            PacketBuffer(b'\x01').read_ushort()
        with self.assertRaises(MalformedPacketError):
            PacketBuffer(b'\x01\x02\x03').read_long()

    def test_trailing_bytes(self):
        """Test unconsumed payload bytes are malformed."""
        buffer = PacketBuffer(b'\x01\x02')
        buffer.read_varint()
        with self.assertRaises(MalformedPacketError):
            buffer.expect_end()


if __name__ == '__main__':
    unittest.main()
