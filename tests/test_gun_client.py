# tests/test_gun_client.py
"""
Tests for gun_client.py.
Refusals are exercised against a bare HTTP/2 server that answers every
request with a fixed status.
"""
import asyncio
import pytest
from unittest.mock import patch

from gun_client import GunClient
from gun_common import TunnelRefusedError
from h2_transport import H2ServerConnection, header_value
from structures import TunnelConfig


class StatusServer:
    """Answers every request with `status` and records the request headers."""

    def __init__(self, status):
        self.status = status
        self.requests = []
        self.endpoints = []
        self.server = None

    def _on_request(self, endpoint, request):
        self.requests.append(request)
        endpoint.reject(request, self.status)

    async def _handle(self, reader, writer):
        endpoint = H2ServerConnection(reader, writer, self._on_request)
        self.endpoints.append(endpoint)
        await endpoint.start()
        await endpoint.wait_closed()
        await endpoint.close()

    async def __aenter__(self):
        self.server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        host, port = self.server.sockets[0].getsockname()[:2]
        self.address = f"{host}:{port}"
        return self

    async def __aexit__(self, *exc):
        self.server.close()
        for endpoint in self.endpoints:
            await endpoint.close()
        await self.server.wait_closed()


class TestRequestHeaders:
    def test_camouflage_headers(self):
        client = GunClient(TunnelConfig("example.com:443", service_name="Foo", cleartext=True))
        headers = dict(client.headers)
        assert headers[b':method'] == b'POST'
        assert headers[b':scheme'] == b'https'
        assert headers[b':authority'] == b'example.com:443'
        assert headers[b':path'] == b'/Foo/Tun'
        assert headers[b'content-type'] == b'application/grpc+proto'
        assert headers[b'user-agent'] == b'grpc-java/1.2.3'
        assert b'accept-encoding' not in headers

    def test_cleartext_skips_tls(self):
        client = GunClient(TunnelConfig("example.com:80", cleartext=True))
        assert client.ssl_context is None
        assert (client.host, client.port) == ("example.com", 80)

    def test_tls_context_built(self):
        with patch("gun_client.build_client_ssl_context") as mock_ctx:
            client = GunClient(TunnelConfig("example.com", verify=False, ca_file="ca.pem"))
        mock_ctx.assert_called_once_with(False, "ca.pem")
        assert client.ssl_context is mock_ctx.return_value
        assert client.port == 443


@pytest.mark.asyncio
async def test_refused_tunnel_raises_with_status():
    async with StatusServer(403) as srv:
        async with GunClient(TunnelConfig(srv.address, cleartext=True)) as client:
            with pytest.raises(TunnelRefusedError) as exc_info:
                await client.dial_conn()
            assert exc_info.value.status_code == 403
            assert isinstance(exc_info.value, ConnectionRefusedError)

            # The shared connection survives a refused tunnel
            with pytest.raises(TunnelRefusedError):
                await client.dial_conn()
            assert len(srv.endpoints) == 1

        request = srv.requests[0]
        assert request.method == "POST"
        assert request.path == "/GunService/Tun"
        assert header_value(request.headers, b'content-type') == b'application/grpc+proto'
        assert header_value(request.headers, b'user-agent') == b'grpc-java/1.2.3'
        assert header_value(request.headers, b':scheme') == b'https'


@pytest.mark.asyncio
async def test_dial_failure_propagates():
    server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()

    client = GunClient(TunnelConfig(f"127.0.0.1:{port}", cleartext=True))
    with pytest.raises(OSError):
        await client.dial_conn()
    await client.close()


@pytest.mark.asyncio
async def test_redial_after_connection_loss():
    async with StatusServer(503) as srv:
        client = GunClient(TunnelConfig(srv.address, cleartext=True))
        with pytest.raises(TunnelRefusedError):
            await client.dial_conn()
        first = client._h2  # pylint: disable=protected-access

        await first.close()
        with pytest.raises(TunnelRefusedError) as exc_info:
            await client.dial_conn()
        assert exc_info.value.status_code == 503
        assert client._h2 is not first  # pylint: disable=protected-access
        await client.close()
