#Filename: h2_transport.py
"""
HTTP/2 TRANSPORT (RFC 9113)
Drives the h2 state machine over asyncio streams and exposes single
HTTP/2 streams as a pair of byte streams: an incoming body (StreamBody)
and an outgoing body fed from a Pipe.
Used client-side by the Tunnel Opener and server-side by the Acceptor.
"""

import asyncio
import logging
import socket
import ssl
from typing import Callable, Dict, List, Optional, Tuple

from h2.config import H2Configuration
from h2.connection import H2Connection
from h2.errors import ErrorCodes
from h2.events import (
    ConnectionTerminated, DataReceived, Event, RemoteSettingsChanged,
    RequestReceived, ResponseReceived, StreamEnded, StreamReset,
    TrailersReceived, WindowUpdated
)
from h2.exceptions import H2Error, ProtocolError
from h2.settings import SettingCodes

from gun_common import H2_ALPN
from pipe import PipeReader
from structures import DEFAULT_CONNECT_TIMEOUT, RESPONSE_CONTENT_TYPE, UNSPECIFIED_ADDR

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 65536

# Receive windows (Go HTTP/2 transport defaults). Unread data held for one
# stream never exceeds STREAM_WINDOW_SIZE.
DEFAULT_WINDOW_SIZE = 65535
STREAM_WINDOW_SIZE = 4 * 1024 * 1024
CONNECTION_WINDOW_SIZE = 1 << 30

Headers = List[Tuple[bytes, bytes]]


def _normalize_addr(raw: object) -> Tuple[str, int]:
    if isinstance(raw, tuple) and len(raw) >= 2:
        return str(raw[0]), int(raw[1])
    return UNSPECIFIED_ADDR


def header_value(headers: Headers, name: bytes) -> Optional[bytes]:
    for k, v in headers:
        if k == name:
            return v
    return None


class StreamBody:
    """
    Incoming DATA of one HTTP/2 stream, read like an asyncio.StreamReader.
    Consumed bytes are handed back to the peer as flow-control credit.
    """
    __slots__ = ('endpoint', 'stream_id', 'closed', '_buffer', '_eof', '_exception', '_event')

    def __init__(self, endpoint: "H2Endpoint", stream_id: int) -> None:
        self.endpoint = endpoint
        self.stream_id = stream_id
        self.closed = False
        self._buffer = bytearray()
        self._eof = False
        self._exception: Optional[BaseException] = None
        self._event = asyncio.Event()

    def feed_data(self, data: bytes) -> None:
        self._buffer.extend(data)
        self._event.set()

    def feed_eof(self) -> None:
        self._eof = True
        self._event.set()

    def set_exception(self, exc: BaseException) -> None:
        self._exception = exc
        self._event.set()

    def at_eof(self) -> bool:
        return self._eof and not self._buffer

    async def _wait(self) -> None:
        self._event.clear()
        await self._event.wait()

    def _consume(self, n: int) -> bytes:
        data = bytes(self._buffer[:n])
        del self._buffer[:n]
        if data:
            self.endpoint.acknowledge(self.stream_id, len(data))
        return data

    async def readexactly(self, n: int) -> bytes:
        if len(self._buffer) >= n:
            return self._consume(n)
        # A message may exceed the stream window: bytes are consumed, and
        # acknowledged, as they arrive.
        out = bytearray()
        while True:
            need = n - len(out)
            if len(self._buffer) >= need:
                out += self._consume(need)
                return bytes(out)
            if self._buffer:
                out += self._consume(len(self._buffer))
            if self._exception is not None:
                raise self._exception
            if self._eof:
                raise asyncio.IncompleteReadError(bytes(out), n)
            await self._wait()

    async def read(self, n: int = -1) -> bytes:
        while not self._buffer:
            if self._exception is not None:
                raise self._exception
            if self._eof:
                return b""
            await self._wait()
        if n < 0:
            n = len(self._buffer)
        return self._consume(n)

    def close(self) -> None:
        """Stops reading: drops buffered data and cancels the stream if the peer is still sending."""
        if self.closed:
            return
        self.closed = True
        remote_done = self._eof
        self._buffer.clear()
        self.feed_eof()
        if not remote_done:
            self.endpoint.cancel_stream(self.stream_id)


class H2Stream:
    """
    Maintains the state of a single tunnelled HTTP/2 stream.
    """
    __slots__ = (
        'stream_id', 'body', 'flow_event', 'response', 'pump_task',
        'local_ended', 'remote_ended', 'reset'
    )

    def __init__(self, stream_id: int, body: StreamBody) -> None:
        self.stream_id = stream_id
        self.body = body
        self.flow_event = asyncio.Event()
        self.flow_event.set()
        self.response: Optional["asyncio.Future[Tuple[int, Headers]]"] = None
        self.pump_task: Optional["asyncio.Task[None]"] = None
        self.local_ended = False
        self.remote_ended = False
        self.reset = False

    def fail(self, exc: BaseException, body_error: bool) -> None:
        """Wakes everything waiting on this stream after a reset or connection loss."""
        self.reset = True
        self.local_ended = self.remote_ended = True
        if self.response is not None and not self.response.done():
            self.response.set_exception(exc)
        if body_error:
            self.body.set_exception(exc)
        else:
            self.body.feed_eof()
        self.flow_event.set()


class H2Response:
    """Status, headers and streaming body of a tunnel response."""
    __slots__ = ('status', 'headers', 'body')

    def __init__(self, status: int, headers: Headers, body: StreamBody) -> None:
        self.status = status
        self.headers = headers
        self.body = body

    def __repr__(self) -> str:
        return f"<H2Response {self.status} stream={self.body.stream_id}>"


class H2Request:
    """A request received by the server side, before it is accepted or rejected."""
    __slots__ = ('stream_id', 'method', 'path', 'headers', 'body')

    def __init__(self, stream_id: int, headers: Headers, body: StreamBody) -> None:
        self.stream_id = stream_id
        self.headers = headers
        self.method = (header_value(headers, b':method') or b'').decode('latin-1')
        self.path = (header_value(headers, b':path') or b'').decode('latin-1')
        self.body = body

    def __repr__(self) -> str:
        return f"<H2Request #{self.stream_id} {self.method} {self.path}>"


class H2Endpoint:
    """
    Base class holding the connection-level logic shared by both sides:
    the read loop, event dispatch, flushing and flow-controlled sending.
    """
    client_side = True

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.reader = reader
        self.writer = writer
        self.conn = H2Connection(
            config=H2Configuration(client_side=self.client_side, header_encoding=None)
        )
        self.socket_lock = asyncio.Lock()
        self.streams: Dict[int, H2Stream] = {}
        self.closed = asyncio.Event()
        self._read_task: Optional["asyncio.Task[None]"] = None

    @property
    def local_addr(self) -> Tuple[str, int]:
        return _normalize_addr(self.writer.get_extra_info('sockname'))

    @property
    def remote_addr(self) -> Tuple[str, int]:
        return _normalize_addr(self.writer.get_extra_info('peername'))

    @property
    def is_open(self) -> bool:
        return not self.closed.is_set() and not self.writer.is_closing()

    async def start(self) -> None:
        """Sends our preface/SETTINGS, opens the receive windows and starts the read loop."""
        self.conn.initiate_connection()
        self.conn.update_settings({SettingCodes.INITIAL_WINDOW_SIZE: STREAM_WINDOW_SIZE})
        self.conn.increment_flow_control_window(CONNECTION_WINDOW_SIZE - DEFAULT_WINDOW_SIZE)
        await self.flush(drain=True)
        self._read_task = asyncio.create_task(self._read_loop())

    # -- Output --

    def _write_pending(self) -> None:
        data = self.conn.data_to_send()
        if data and not self.writer.is_closing():
            self.writer.write(data)

    async def flush(self, drain: bool = False) -> None:
        """Flushes pending data from the H2 connection to the socket."""
        self._write_pending()
        if drain and not self.writer.is_closing():
            async with self.socket_lock:
                await self.writer.drain()

    def acknowledge(self, stream_id: int, size: int) -> None:
        """Returns flow-control credit for bytes the application consumed."""
        if self.closed.is_set():
            return
        try:
            self.conn.acknowledge_received_data(size, stream_id)
        except ProtocolError as e:
            logger.debug("Ack on stream %d ignored: %s", stream_id, e)
            return
        self._write_pending()

    def cancel_stream(self, stream_id: int, code: int = ErrorCodes.CANCEL) -> None:
        """Resets the stream if it is still open and forgets it."""
        stream = self.streams.pop(stream_id, None)
        if stream is not None:
            stream.fail(ConnectionResetError(f"stream {stream_id} cancelled"), body_error=False)
            if stream.pump_task is not None and not stream.pump_task.done():
                stream.pump_task.cancel()
        if self.closed.is_set():
            return
        try:
            self.conn.reset_stream(stream_id, error_code=code)
        except H2Error:
            return
        logger.debug("Reset stream %d (error code %d)", stream_id, code)
        self._write_pending()

    async def send_data(self, stream: H2Stream, data: bytes) -> None:
        """Sends data payload respecting flow control windows and frame size."""
        view = memoryview(data)
        offset = 0
        total_len = len(data)

        while offset < total_len:
            if self.closed.is_set():
                raise ConnectionResetError("HTTP/2 connection closed")
            if stream.reset:
                raise ConnectionResetError(f"stream {stream.stream_id} reset")

            avail = min(
                self.conn.local_flow_control_window(stream.stream_id),
                self.conn.max_outbound_frame_size,
                total_len - offset
            )
            if avail <= 0:
                stream.flow_event.clear()
                await stream.flow_event.wait()
                continue

            self.conn.send_data(stream.stream_id, view[offset:offset+avail].tobytes())
            offset += avail
            await self.flush(drain=True)

    def _finish_body(self, stream: H2Stream) -> None:
        self.conn.end_stream(stream.stream_id)

    async def _pump_body(self, stream: H2Stream, source: PipeReader) -> None:
        """Copies pipe chunks into DATA frames until the pipe is finished."""
        try:
            while True:
                chunk = await source.read()
                if not chunk:
                    break
                await self.send_data(stream, chunk)
            if not stream.reset and not self.closed.is_set():
                self._finish_body(stream)
                stream.local_ended = True
                await self.flush(drain=True)
                self._maybe_forget(stream)
        except (H2Error, ConnectionError) as e:
            logger.debug("Body pump for stream %d stopped: %s", stream.stream_id, e)
            self.streams.pop(stream.stream_id, None)
        finally:
            source.close()

    def _maybe_forget(self, stream: H2Stream) -> None:
        if stream.local_ended and stream.remote_ended:
            self.streams.pop(stream.stream_id, None)

    # -- Input --

    async def _read_loop(self) -> None:
        """Continuously reads frames from the socket and dispatches events."""
        try:
            while not self.closed.is_set():
                try:
                    data = await self.reader.read(READ_CHUNK_SIZE)
                except OSError as e:
                    logger.debug("Socket error in read loop: %s", e)
                    break
                if not data:
                    break

                try:
                    events = self.conn.receive_data(data)
                except ProtocolError as e:
                    logger.warning("HTTP/2 protocol error from %s: %s", self.remote_addr, e)
                    self._terminate(ErrorCodes.PROTOCOL_ERROR)
                    break

                for event in events:
                    self._dispatch(event)
                self._write_pending()
        finally:
            self._teardown()

    def _dispatch(self, event: Event) -> None:
        """Dispatches H2 events received from the peer."""
        if isinstance(event, DataReceived):
            self._handle_data(event)
        elif isinstance(event, StreamEnded):
            stream = self.streams.get(event.stream_id)
            if stream:
                stream.remote_ended = True
                stream.body.feed_eof()
                self._maybe_forget(stream)
        elif isinstance(event, StreamReset):
            stream = self.streams.pop(event.stream_id, None)
            if stream:
                logger.debug("Stream %d reset by peer (error code %s)", event.stream_id, event.error_code)
                stream.fail(
                    ConnectionResetError(
                        f"stream {event.stream_id} reset by peer (error code {event.error_code})"
                    ),
                    body_error=True
                )
        elif isinstance(event, WindowUpdated):
            self._handle_window_updated(event.stream_id)
        elif isinstance(event, RemoteSettingsChanged):
            self._handle_window_updated(0)
        elif isinstance(event, TrailersReceived):
            logger.debug("Trailers on stream %d: %s", event.stream_id, event.headers)
        elif isinstance(event, ConnectionTerminated):
            logger.debug("Peer sent GOAWAY (error code %s)", event.error_code)
            self.closed.set()
        else:
            self.handle_event(event)

    def handle_event(self, event: Event) -> None:
        """Hook for side-specific events."""

    def _handle_data(self, event: DataReceived) -> None:
        stream = self.streams.get(event.stream_id)
        if stream is None or stream.body.closed:
            # Nobody will consume it: give the credit back at once.
            if event.flow_controlled_length:
                self.acknowledge(event.stream_id, event.flow_controlled_length)
            return
        padding = event.flow_controlled_length - len(event.data)
        if padding > 0:
            self.acknowledge(event.stream_id, padding)
        stream.body.feed_data(event.data)

    def _handle_window_updated(self, stream_id: int) -> None:
        """Handles window update events, notifying blocked streams."""
        if stream_id == 0:
            for stream in list(self.streams.values()):
                stream.flow_event.set()
        elif stream_id in self.streams:
            self.streams[stream_id].flow_event.set()

    # -- Shutdown --

    def _terminate(self, code: int) -> None:
        try:
            self.conn.close_connection(error_code=code)
        except H2Error:
            pass
        self._write_pending()
        self.closed.set()

    def _teardown(self) -> None:
        self.closed.set()
        lost = ConnectionResetError("HTTP/2 connection lost")
        for stream in list(self.streams.values()):
            stream.fail(lost, body_error=False)
        self.streams.clear()
        self.writer.close()

    async def wait_closed(self) -> None:
        if self._read_task is not None:
            await asyncio.gather(self._read_task, return_exceptions=True)

    async def close(self) -> None:
        """Sends GOAWAY, stops the read loop and closes the socket."""
        if not self.closed.is_set():
            self._terminate(ErrorCodes.NO_ERROR)
        if self._read_task is not None and not self._read_task.done():
            self._read_task.cancel()
        await self.wait_closed()
        self._teardown()
        try:
            await self.writer.wait_closed()
        except OSError:
            pass


class H2ClientConnection(H2Endpoint):
    """
    Client side: opens streaming requests and waits for their response headers.
    One connection may carry any number of concurrent tunnels.
    """
    client_side = True

    @classmethod
    async def connect(
        cls,
        host: str,
        port: int,
        ssl_context: Optional[ssl.SSLContext] = None,
        server_hostname: Optional[str] = None,
        timeout: float = DEFAULT_CONNECT_TIMEOUT
    ) -> "H2ClientConnection":
        """
        Dials host:port, over TLS when a context is given (ALPN must select h2),
        otherwise in cleartext with HTTP/2 prior knowledge.
        """
        if ssl_context is not None:
            dial = asyncio.open_connection(
                host, port, ssl=ssl_context, server_hostname=server_hostname or host
            )
        else:
            dial = asyncio.open_connection(host, port)
        reader, writer = await asyncio.wait_for(dial, timeout=timeout)

        try:
            sock = writer.get_extra_info('socket')
            if sock:
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except OSError:
            pass

        if ssl_context is not None:
            ssl_object = writer.get_extra_info('ssl_object')
            proto = ssl_object.selected_alpn_protocol() if ssl_object else None
            if proto != H2_ALPN:
                writer.close()
                raise ConnectionError(f"unexpected ALPN protocol {proto!r}; want {H2_ALPN!r}")

        endpoint = cls(reader, writer)
        await endpoint.start()
        logger.debug("HTTP/2 connection established to %s:%d", host, port)
        return endpoint

    async def open_stream(self, headers: Headers, body: PipeReader) -> H2Response:
        """
        Sends the request headers, starts streaming `body` and returns once
        the response headers arrive. The request body stays open.
        """
        if not self.is_open:
            raise ConnectionResetError("HTTP/2 connection is closed")

        stream_id = self.conn.get_next_available_stream_id()
        stream = H2Stream(stream_id, StreamBody(self, stream_id))
        stream.response = asyncio.get_running_loop().create_future()
        self.streams[stream_id] = stream

        self.conn.send_headers(stream_id, headers, end_stream=False)
        await self.flush(drain=True)
        stream.pump_task = asyncio.create_task(self._pump_body(stream, body))
        logger.debug("Opened stream %d", stream_id)

        try:
            status, response_headers = await stream.response
        except BaseException:
            self.cancel_stream(stream_id)
            raise
        return H2Response(status, response_headers, stream.body)

    def handle_event(self, event: Event) -> None:
        if isinstance(event, ResponseReceived):
            stream = self.streams.get(event.stream_id)
            if stream is None or stream.response is None or stream.response.done():
                return
            raw_status = header_value(event.headers, b':status') or b'0'
            try:
                status = int(raw_status)
            except ValueError:
                status = 0
            stream.response.set_result((status, event.headers))


RequestHandler = Callable[["H2ServerConnection", H2Request], None]


class H2ServerConnection(H2Endpoint):
    """
    Server side: every new request is offered to `on_request`, which must
    either accept() it with a response body source or reject() it.
    """
    client_side = False

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        on_request: RequestHandler
    ) -> None:
        super().__init__(reader, writer)
        self.on_request = on_request

    def handle_event(self, event: Event) -> None:
        if isinstance(event, RequestReceived):
            sid = event.stream_id
            stream = H2Stream(sid, StreamBody(self, sid))
            self.streams[sid] = stream
            if event.stream_ended:
                stream.remote_ended = True
                stream.body.feed_eof()
            self.on_request(self, H2Request(sid, event.headers, stream.body))

    def accept(self, request: H2Request, source: PipeReader) -> None:
        """Answers 200 and streams `source` as the response body."""
        stream = self.streams.get(request.stream_id)
        if stream is None:
            source.close()
            return
        self.conn.send_headers(
            request.stream_id,
            [(b':status', b'200'), (b'content-type', RESPONSE_CONTENT_TYPE.encode())],
            end_stream=False
        )
        self._write_pending()
        stream.pump_task = asyncio.create_task(self._pump_body(stream, source))

    def reject(self, request: H2Request, status: int) -> None:
        """Answers with a bodiless error status."""
        # Late DATA for the stream is acknowledged and dropped once it is forgotten.
        self.streams.pop(request.stream_id, None)
        try:
            self.conn.send_headers(
                request.stream_id, [(b':status', str(status).encode())], end_stream=True
            )
        except H2Error as e:
            logger.debug("Could not reject stream %d: %s", request.stream_id, e)
            return
        self._write_pending()

    def _finish_body(self, stream: H2Stream) -> None:
        # Close the response the way a gRPC server does: OK trailers.
        self.conn.send_headers(stream.stream_id, [(b'grpc-status', b'0')], end_stream=True)
