#Filename: framing.py
"""
FRAME CODEC
Camouflaged framing: every write is one gRPC length-prefixed message
holding a protobuf message with a single bytes field (tag 0x0A).

    flag(1)=0x00 | length(4, big-endian) | 0x0A | uvarint(len) | payload

Pure functions plus one coroutine that decodes against a live stream.
"""

import struct
from typing import Optional, Protocol, Tuple

from gun_common import FramingError
from structures import (
    GRPC_FLAG_UNCOMPRESSED, PROTOBUF_TAG_BYTES, GRPC_HEADER_SIZE,
    MAX_GRPC_LENGTH, MAX_VARINT_SIZE
)

_GRPC_HEADER = struct.Struct(">BI")


class ByteStream(Protocol):
    async def readexactly(self, n: int) -> bytes: ...


# -- Varint (unsigned LEB128) --

def encode_uvarint(value: int) -> bytes:
    if value < 0:
        raise ValueError("uvarint cannot encode negative values")
    out = bytearray()
    while value > 0x7F:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    return bytes(out)


def decode_uvarint(buf: bytes, offset: int = 0) -> Tuple[int, int]:
    """
    Decodes a uvarint starting at `offset`.
    Returns (value, size); size is 0 if the varint is truncated or overlong.
    """
    value = 0
    for i in range(MAX_VARINT_SIZE):
        if offset + i >= len(buf):
            return 0, 0
        b = buf[offset + i]
        value |= (b & 0x7F) << (7 * i)
        if not b & 0x80:
            return value, i + 1
    return 0, 0


# -- Frames --

def encode_frame(payload: bytes) -> bytes:
    """Wraps one payload into a complete frame."""
    message = bytes([PROTOBUF_TAG_BYTES]) + encode_uvarint(len(payload))
    length = len(message) + len(payload)
    if length > MAX_GRPC_LENGTH:
        raise ValueError(f"payload too large for one frame ({len(payload)} bytes)")
    return _GRPC_HEADER.pack(GRPC_FLAG_UNCOMPRESSED, length) + message + payload


def _check_header(flag: int, tag: int) -> None:
    if flag != GRPC_FLAG_UNCOMPRESSED:
        raise FramingError(f"unsupported message flag 0x{flag:02x}")
    if tag != PROTOBUF_TAG_BYTES:
        raise FramingError(f"unexpected field tag 0x{tag:02x}")


def _check_length(grpc_length: int, payload_length: int, varint_length: int) -> None:
    if grpc_length != payload_length + varint_length + 1:
        raise FramingError(
            f"invalid length: message says {grpc_length}, "
            f"payload says {payload_length} (+{varint_length + 1})"
        )


def decode_frame(buf: bytes) -> Tuple[Optional[bytes], bytes]:
    """Parses one frame from the buffer: returns (payload_or_none, remaining_buf)."""
    if len(buf) < GRPC_HEADER_SIZE + 2:
        return None, buf
    flag, grpc_length = _GRPC_HEADER.unpack_from(buf)
    _check_header(flag, buf[GRPC_HEADER_SIZE])

    payload_length, varint_length = decode_uvarint(buf, GRPC_HEADER_SIZE + 1)
    if varint_length == 0:
        # Either more bytes are needed or the varint is overlong
        available = len(buf) - GRPC_HEADER_SIZE - 1
        if available >= MAX_VARINT_SIZE:
            raise FramingError("invalid length: malformed varint")
        return None, buf
    _check_length(grpc_length, payload_length, varint_length)

    end = GRPC_HEADER_SIZE + grpc_length
    if len(buf) < end:
        return None, buf
    start = GRPC_HEADER_SIZE + 1 + varint_length
    return bytes(buf[start:end]), buf[end:]


async def read_uvarint(stream: ByteStream) -> Tuple[int, int]:
    """Reads a uvarint from the stream one byte at a time until the continuation bit clears."""
    value = 0
    for i in range(MAX_VARINT_SIZE):
        b = (await stream.readexactly(1))[0]
        value |= (b & 0x7F) << (7 * i)
        if not b & 0x80:
            return value, i + 1
    raise FramingError("invalid length: malformed varint")


async def read_frame(stream: ByteStream) -> Optional[bytes]:
    """
    Reads and decodes exactly one frame from the stream.
    Returns None on a clean end of stream at a frame boundary; an end of stream
    inside a frame surfaces as asyncio.IncompleteReadError.
    """
    try:
        first = await stream.readexactly(1)
    except EOFError as e:
        if getattr(e, 'partial', b'') == b'':
            return None
        raise

    header = first + await stream.readexactly(GRPC_HEADER_SIZE)
    flag, grpc_length = _GRPC_HEADER.unpack_from(header)
    _check_header(flag, header[GRPC_HEADER_SIZE])

    payload_length, varint_length = await read_uvarint(stream)
    _check_length(grpc_length, payload_length, varint_length)

    if payload_length == 0:
        return b""
    return await stream.readexactly(payload_length)
