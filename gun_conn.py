#Filename: gun_conn.py
"""
DUPLEX CONNECTION
A generic bidirectional byte connection on top of one tunnel stream pair.
Every write becomes exactly one frame; reads decode frames and hand the
payload out in caller-sized pieces.
"""

import asyncio
from typing import Any, Optional, Protocol, Tuple

from framing import ByteStream, encode_frame, read_frame
from gun_common import ChainedCloser, ClosedConnectionError, Closable
from structures import UNSPECIFIED_ADDR


class ByteSink(Protocol):
    async def write(self, data: bytes) -> int: ...

    def close(self) -> object: ...

    async def wait_closed(self) -> None: ...


class GunConn:
    """
    Read and write may run concurrently from separate tasks: they touch
    disjoint resources and share only the close signal.
    """
    __slots__ = ('_reader', '_writer', '_closer', '_local', '_remote', '_done', '_pending')

    def __init__(
        self,
        reader: ByteStream,
        writer: ByteSink,
        closer: Closable,
        local_addr: Optional[Tuple[str, int]] = None,
        remote_addr: Optional[Tuple[str, int]] = None
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._closer = closer
        self._local: Tuple[str, int] = local_addr or UNSPECIFIED_ADDR
        self._remote: Tuple[str, int] = remote_addr or UNSPECIFIED_ADDR
        self._done = asyncio.Event()
        # Tail of a decoded payload that did not fit the caller's last read
        self._pending = b""

    @property
    def closed(self) -> bool:
        return self._done.is_set()

    async def read(self, n: int = -1) -> bytes:
        """
        Returns up to n bytes (all of the current payload if n < 0).
        b'' means end of stream.
        """
        if n == 0:
            return b""
        if not self._pending:
            if self._done.is_set():
                return b""
            while True:
                try:
                    payload = await read_frame(self._reader)
                except EOFError:
                    # close() ends the body under a pending read
                    if self._done.is_set():
                        return b""
                    raise
                if payload is None:
                    return b""
                # Empty frames carry nothing; b'' is reserved for end of stream
                if payload:
                    break
            self._pending = payload

        if n < 0 or n >= len(self._pending):
            data, self._pending = self._pending, b""
        else:
            data, self._pending = self._pending[:n], self._pending[n:]
        return data

    async def write(self, data: bytes) -> int:
        """Queues data as one frame; returns len(data)."""
        if self._done.is_set():
            raise ClosedConnectionError()
        if not data:
            return 0
        await self._writer.write(encode_frame(bytes(data)))
        return len(data)

    async def close_write(self) -> None:
        """
        Half-close: ends the outgoing stream once every queued frame has been
        handed to the transport. Reading keeps working until the peer ends too.
        """
        self._writer.close()
        await self._writer.wait_closed()

    def close(self) -> None:
        if self._done.is_set():
            return
        self._done.set()
        self._closer.close()

    @property
    def local_addr(self) -> Tuple[str, int]:
        return self._local

    @property
    def remote_addr(self) -> Tuple[str, int]:
        return self._remote

    # Deadlines are accepted and ignored: cancel the task or close() instead.

    def set_deadline(self, deadline: Any) -> None:
        pass

    def set_read_deadline(self, deadline: Any) -> None:
        pass

    def set_write_deadline(self, deadline: Any) -> None:
        pass

    async def __aenter__(self) -> "GunConn":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"<GunConn {self._local[0]}:{self._local[1]} -> {self._remote[0]}:{self._remote[1]} {state}>"


def new_gun_conn(
    reader: ByteStream,
    writer: ByteSink,
    *closables: Closable,
    local_addr: Optional[Tuple[str, int]] = None,
    remote_addr: Optional[Tuple[str, int]] = None
) -> GunConn:
    """Builds a GunConn whose close releases every given resource in order."""
    return GunConn(reader, writer, ChainedCloser(closables), local_addr, remote_addr)
