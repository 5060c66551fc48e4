# tests/test_framing.py
"""
Tests for framing.py.
Covers the known wire vectors, multi-byte varints, incremental decoding
and rejection of inconsistent length fields.
"""
import asyncio
import pytest

from framing import (
    decode_frame, decode_uvarint, encode_frame, encode_uvarint,
    read_frame, read_uvarint
)
from gun_common import FramingError

HELLO_FRAME = bytes.fromhex("00000000070a05") + b"hello"


class TestUvarint:
    @pytest.mark.parametrize("value, encoded", [
        (0, b"\x00"),
        (5, b"\x05"),
        (127, b"\x7f"),
        (128, b"\x80\x01"),
        (300, b"\xac\x02"),
        (16384, b"\x80\x80\x01"),
    ])
    def test_known_encodings(self, value, encoded):
        assert encode_uvarint(value) == encoded
        assert decode_uvarint(encoded) == (value, len(encoded))

    def test_negative_rejected(self):
        with pytest.raises(ValueError):
            encode_uvarint(-1)

    def test_truncated_varint_reports_zero_size(self):
        assert decode_uvarint(b"\xac") == (0, 0)

    def test_overlong_varint_reports_zero_size(self):
        assert decode_uvarint(b"\xff" * 11) == (0, 0)

    def test_decode_at_offset(self):
        assert decode_uvarint(b"\x0a\xac\x02", 1) == (300, 2)


class TestEncodeFrame:
    def test_hello_vector(self):
        assert encode_frame(b"hello") == HELLO_FRAME

    def test_empty_payload(self):
        assert encode_frame(b"") == bytes.fromhex("00000000020a00")

    def test_multi_byte_varint(self):
        payload = b"x" * 300
        frame = encode_frame(payload)
        # length = tag(1) + varint(2) + payload(300)
        assert frame[:8] == bytes.fromhex("000000012f0aac02")
        assert frame[8:] == payload
        assert len(frame) == 308


class TestDecodeFrame:
    def test_hello_vector(self):
        payload, rest = decode_frame(HELLO_FRAME)
        assert payload == b"hello"
        assert rest == b""

    def test_leaves_following_bytes(self):
        data = HELLO_FRAME + encode_frame(b"world")
        payload, rest = decode_frame(data)
        assert payload == b"hello"
        assert decode_frame(rest) == (b"world", b"")

    @pytest.mark.parametrize("cut", [0, 3, 6, 7, 11])
    def test_incomplete_buffer_needs_more(self, cut):
        payload, rest = decode_frame(HELLO_FRAME[:cut])
        assert payload is None
        assert rest == HELLO_FRAME[:cut]

    def test_incomplete_multi_byte_varint(self):
        frame = encode_frame(b"x" * 300)
        assert decode_frame(frame[:7]) == (None, frame[:7])

    def test_length_mismatch(self):
        bad = bytes.fromhex("00000000080a05") + b"hello!"
        with pytest.raises(FramingError, match="invalid length"):
            decode_frame(bad)

    def test_compressed_flag_rejected(self):
        with pytest.raises(FramingError):
            decode_frame(b"\x01" + HELLO_FRAME[1:])

    def test_wrong_tag_rejected(self):
        with pytest.raises(FramingError):
            decode_frame(HELLO_FRAME[:5] + b"\x12" + HELLO_FRAME[6:])

    def test_overlong_varint(self):
        bad = bytes.fromhex("00000000100a") + b"\xff" * 10
        with pytest.raises(FramingError):
            decode_frame(bad)


class TestReadFrame:
    @pytest.mark.asyncio
    async def test_reads_hello(self, fake_stream):
        stream = fake_stream(HELLO_FRAME)
        assert await read_frame(stream) == b"hello"
        assert await read_frame(stream) is None

    @pytest.mark.asyncio
    async def test_reads_consecutive_frames(self, fake_stream):
        big = bytes(range(256)) * 2
        stream = fake_stream(encode_frame(b"a") + encode_frame(big) + encode_frame(b""))
        assert await read_frame(stream) == b"a"
        assert await read_frame(stream) == big
        assert await read_frame(stream) == b""
        assert await read_frame(stream) is None

    @pytest.mark.asyncio
    async def test_short_frame_header_reads_varint_incrementally(self, fake_stream):
        # A 1-byte payload frame is only 8 bytes long in total; the reader must
        # never ask for more than the frame actually holds.
        stream = fake_stream(encode_frame(b"z"))
        assert await read_frame(stream) == b"z"
        assert stream.buffer == bytearray()

    @pytest.mark.asyncio
    async def test_eof_inside_frame(self, fake_stream):
        stream = fake_stream(HELLO_FRAME[:9])
        with pytest.raises(asyncio.IncompleteReadError):
            await read_frame(stream)

    @pytest.mark.asyncio
    async def test_eof_inside_header(self, fake_stream):
        stream = fake_stream(HELLO_FRAME[:3])
        with pytest.raises(asyncio.IncompleteReadError):
            await read_frame(stream)

    @pytest.mark.asyncio
    async def test_length_mismatch(self, fake_stream):
        stream = fake_stream(bytes.fromhex("00000000090a05") + b"hello")
        with pytest.raises(FramingError):
            await read_frame(stream)

    @pytest.mark.asyncio
    async def test_overlong_varint(self, fake_stream):
        stream = fake_stream(bytes.fromhex("00000000100a") + b"\x80" * 12)
        with pytest.raises(FramingError):
            await read_frame(stream)

    @pytest.mark.asyncio
    async def test_read_uvarint_returns_size(self, fake_stream):
        stream = fake_stream(b"\xac\x02rest")
        assert await read_uvarint(stream) == (300, 2)
        assert bytes(stream.buffer) == b"rest"
