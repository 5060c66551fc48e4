#Filename: gun_client.py
"""
TUNNEL OPENER
Opens one streaming HTTP/2 POST per tunnel, dressed as a gRPC
bidirectional-streaming call, and returns it as a GunConn.
"""

import asyncio
import logging
import ssl
from typing import Any, Optional

from gun_common import TunnelRefusedError, build_client_ssl_context, parse_target
from gun_conn import GunConn, new_gun_conn
from h2_transport import Headers, H2ClientConnection
from pipe import Pipe
from structures import TunnelConfig

logger = logging.getLogger(__name__)


class GunClient:
    """
    Tunnel Opener bound to one TunnelConfig.
    The underlying HTTP/2 connection is dialed lazily and shared by every
    tunnel opened through this client until it dies or close() is called.
    """

    def __init__(self, config: TunnelConfig) -> None:
        self.config = config
        self.host, self.port = parse_target(config.remote_addr)
        self.ssl_context: Optional[ssl.SSLContext] = None
        if not config.cleartext:
            self.ssl_context = build_client_ssl_context(config.verify, config.ca_file)
        self.headers = self._build_headers()
        self._h2: Optional[H2ClientConnection] = None
        self._dial_lock = asyncio.Lock()

    def _build_headers(self) -> Headers:
        """Fixed request headers; the scheme stays https even in cleartext mode."""
        return [
            (b':method', b'POST'),
            (b':scheme', b'https'),
            (b':authority', self.config.remote_addr.encode()),
            (b':path', self.config.path.encode()),
            (b'content-type', self.config.content_type.encode()),
            (b'user-agent', self.config.user_agent.encode()),
        ]

    async def _connection(self) -> H2ClientConnection:
        async with self._dial_lock:
            if self._h2 is None or not self._h2.is_open:
                self._h2 = await H2ClientConnection.connect(
                    self.host, self.port,
                    ssl_context=self.ssl_context,
                    server_hostname=self.config.server_name,
                    timeout=self.config.connect_timeout
                )
            return self._h2

    async def dial_conn(self) -> GunConn:
        """
        Opens a new tunnel. Transport errors propagate unchanged; a non-200
        answer raises TunnelRefusedError and leaves nothing open.
        """
        h2 = await self._connection()
        pipe = Pipe()
        try:
            response = await h2.open_stream(self.headers, pipe.reader)
        except BaseException:
            pipe.reader.close()
            pipe.writer.close()
            raise

        if response.status != 200:
            logger.warning("Tunnel to %s refused with status %d", self.config.url, response.status)
            pipe.reader.close()
            pipe.writer.close()
            response.body.close()
            raise TunnelRefusedError(response.status)

        logger.debug("Tunnel open on stream %d to %s", response.body.stream_id, self.config.url)
        return new_gun_conn(
            response.body, pipe.writer,
            pipe.reader, pipe.writer, response.body,
            local_addr=h2.local_addr, remote_addr=h2.remote_addr
        )

    async def close(self) -> None:
        """Closes the shared HTTP/2 connection and every tunnel still on it."""
        if self._h2 is not None:
            await self._h2.close()
            self._h2 = None

    async def __aenter__(self) -> "GunClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"<GunClient {self.config!r}>"

