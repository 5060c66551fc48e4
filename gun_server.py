#Filename: gun_server.py
"""
TUNNEL ACCEPTOR
Server side of the tunnel: answers POST /<serviceName>/Tun like a gRPC
server would and hands every accepted stream to a handler as a GunConn.
"""

import asyncio
import logging
import ssl
from typing import Awaitable, Callable, List, Optional, Set

from gun_conn import GunConn, new_gun_conn
from h2_transport import H2Request, H2ServerConnection
from pipe import Pipe
from structures import DEFAULT_SERVICE_NAME, tun_path

logger = logging.getLogger(__name__)

TunnelHandler = Callable[[GunConn], Awaitable[None]]


class GunServer:
    """
    Listens for HTTP/2 connections (TLS when an ssl_context is given,
    cleartext prior-knowledge HTTP/2 otherwise). Each tunnel runs its
    handler in its own task; the GunConn is closed when the handler returns.
    """

    def __init__(
        self,
        handler: TunnelHandler,
        service_name: Optional[str] = None,
        ssl_context: Optional[ssl.SSLContext] = None
    ) -> None:
        self.handler = handler
        self.service_name = service_name or DEFAULT_SERVICE_NAME
        self.path = tun_path(self.service_name)
        self.ssl_context = ssl_context
        self.server: Optional[asyncio.AbstractServer] = None
        self.endpoints: Set[H2ServerConnection] = set()
        self.tunnel_tasks: Set["asyncio.Task[None]"] = set()

    async def start(self, host: str, port: int) -> None:
        self.server = await asyncio.start_server(
            self._handle_client, host, port, ssl=self.ssl_context
        )
        mode = "h2" if self.ssl_context else "h2c"
        for sock in self.server.sockets:
            logger.info("Tunnel acceptor (%s) listening on %s, path %s", mode, sock.getsockname(), self.path)

    @property
    def sockets(self) -> List[object]:
        return list(self.server.sockets) if self.server else []

    async def serve_forever(self) -> None:
        if self.server is None:
            raise RuntimeError("start() must be called before serve_forever()")
        try:
            await self.server.serve_forever()
        finally:
            await self.close()

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        endpoint = H2ServerConnection(reader, writer, self._on_request)
        self.endpoints.add(endpoint)
        logger.debug("HTTP/2 client connected: %s", endpoint.remote_addr)
        try:
            await endpoint.start()
            await endpoint.wait_closed()
        except OSError as e:
            logger.debug("HTTP/2 client %s dropped: %s", endpoint.remote_addr, e)
        finally:
            self.endpoints.discard(endpoint)
            await endpoint.close()

    def _on_request(self, endpoint: H2ServerConnection, request: H2Request) -> None:
        if request.method != "POST" or request.path != self.path:
            logger.warning("Rejected %s %s from %s", request.method, request.path, endpoint.remote_addr)
            endpoint.reject(request, 404)
            return

        pipe = Pipe()
        endpoint.accept(request, pipe.reader)
        conn = new_gun_conn(
            request.body, pipe.writer,
            pipe.reader, pipe.writer, request.body,
            local_addr=endpoint.local_addr, remote_addr=endpoint.remote_addr
        )
        logger.debug("Tunnel accepted on stream %d from %s", request.stream_id, endpoint.remote_addr)
        task = asyncio.create_task(self._run_tunnel(conn))
        self.tunnel_tasks.add(task)
        task.add_done_callback(self.tunnel_tasks.discard)

    async def _run_tunnel(self, conn: GunConn) -> None:
        try:
            await self.handler(conn)
        except Exception:  # pylint: disable=broad-exception-caught
            logger.exception("Tunnel handler failed for %r", conn)
        finally:
            conn.close()

    async def close(self) -> None:
        """Stops listening, then closes every live HTTP/2 connection and tunnel."""
        if self.server is not None:
            self.server.close()
        for task in list(self.tunnel_tasks):
            task.cancel()
        for endpoint in list(self.endpoints):
            await endpoint.close()
        if self.tunnel_tasks:
            await asyncio.gather(*self.tunnel_tasks, return_exceptions=True)
        if self.server is not None:
            await self.server.wait_closed()

    async def __aenter__(self) -> "GunServer":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
