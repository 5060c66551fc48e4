#Filename: pipe.py
"""
ASYNC BYTE PIPE
In-memory pipe connecting a producer (tunnel writes) to a consumer
(the HTTP/2 body pump). Each write is queued as one chunk, so a frame
written in one call is never interleaved with another.
"""

import asyncio
from collections import deque
from typing import Deque

STREAM_QUEUE_SIZE = 1024
STREAM_BUFFER_BYTES = 1024 * 1024


class Pipe:
    """
    Chunk queue bounded by chunk count and by queued bytes, with independently
    closable ends. A single chunk larger than max_bytes is still accepted once
    the queue is empty.
    Closing either end makes further writes fail with BrokenPipeError
    and wakes every blocked reader and writer.
    """
    __slots__ = (
        'maxsize', 'max_bytes', 'reader', 'writer', 'reader_closed', 'writer_closed',
        '_chunks', '_queued_bytes', '_readable', '_writable', '_finished'
    )

    def __init__(self, maxsize: int = STREAM_QUEUE_SIZE, max_bytes: int = STREAM_BUFFER_BYTES) -> None:
        if maxsize <= 0 or max_bytes <= 0:
            raise ValueError("maxsize and max_bytes must be positive")
        self.maxsize = maxsize
        self.max_bytes = max_bytes
        self._queued_bytes = 0
        self.reader_closed = False
        self.writer_closed = False
        self._chunks: Deque[bytes] = deque()
        self._readable = asyncio.Event()
        self._writable = asyncio.Event()
        self._writable.set()
        self._finished = asyncio.Event()
        self.reader = PipeReader(self)
        self.writer = PipeWriter(self)

    def _wake(self) -> None:
        self._readable.set()
        self._writable.set()

    def _has_room(self, size: int) -> bool:
        if not self._chunks:
            return True
        return len(self._chunks) < self.maxsize and self._queued_bytes + size <= self.max_bytes

    async def _write(self, data: bytes) -> int:
        while True:
            if self.reader_closed or self.writer_closed:
                raise BrokenPipeError("write on closed pipe")
            if self._has_room(len(data)):
                self._chunks.append(bytes(data))
                self._queued_bytes += len(data)
                self._readable.set()
                return len(data)
            self._writable.clear()
            await self._writable.wait()

    async def _read(self) -> bytes:
        while True:
            if self.reader_closed:
                return b""
            if self._chunks:
                chunk = self._chunks.popleft()
                self._queued_bytes -= len(chunk)
                self._writable.set()
                return chunk
            if self.writer_closed:
                return b""
            self._readable.clear()
            await self._readable.wait()

    def _close_reader(self) -> None:
        self.reader_closed = True
        self._chunks.clear()
        self._queued_bytes = 0
        self._finished.set()
        self._wake()

    def _close_writer(self) -> None:
        self.writer_closed = True
        self._wake()

    def __len__(self) -> int:
        return len(self._chunks)


class PipeReader:
    """Read end: consumed by the body pump."""
    __slots__ = ('_pipe',)

    def __init__(self, pipe: Pipe) -> None:
        self._pipe = pipe

    async def read(self) -> bytes:
        """Next queued chunk, or b'' once the pipe is finished."""
        return await self._pipe._read()  # pylint: disable=protected-access

    def close(self) -> None:
        self._pipe._close_reader()  # pylint: disable=protected-access

    @property
    def closed(self) -> bool:
        return self._pipe.reader_closed


class PipeWriter:
    """Write end: the sink of a duplex connection."""
    __slots__ = ('_pipe',)

    def __init__(self, pipe: Pipe) -> None:
        self._pipe = pipe

    async def write(self, data: bytes) -> int:
        return await self._pipe._write(data)  # pylint: disable=protected-access

    def close(self) -> None:
        self._pipe._close_writer()  # pylint: disable=protected-access

    @property
    def closed(self) -> bool:
        return self._pipe.writer_closed

    async def wait_closed(self) -> None:
        """Waits until the consumer has finished with the pipe and closed its end."""
        await self._pipe._finished.wait()  # pylint: disable=protected-access
