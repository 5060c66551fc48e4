# conftest.py
import sys
import os
import asyncio
import pytest

sys.path.append(os.getcwd())


class FakeStream:
    """In-memory ByteStream with asyncio.StreamReader.readexactly semantics."""

    def __init__(self, data: bytes = b""):
        self.buffer = bytearray(data)
        self.reads = 0

    async def readexactly(self, n):
        self.reads += 1
        if len(self.buffer) < n:
            partial = bytes(self.buffer)
            self.buffer.clear()
            raise asyncio.IncompleteReadError(partial, n)
        data = bytes(self.buffer[:n])
        del self.buffer[:n]
        return data


@pytest.fixture
def fake_stream():
    return FakeStream


@pytest.fixture
def sock_address():
    """'host:port' of the first listening socket of a server."""
    def _address(server):
        host, port = server.sockets[0].getsockname()[:2]
        return f"{host}:{port}"
    return _address
