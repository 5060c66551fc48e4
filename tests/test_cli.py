import argparse
import asyncio
import logging
import pytest
from unittest.mock import patch

import gun
from gun_client import GunClient
from gun_server import GunServer
from structures import DEFAULT_SERVICE_NAME, TunnelConfig

def clean_run(coro):
    """
    Helper side_effect for the mocked event loop runner.
    It closes the coroutine to prevent 'coroutine never awaited' warnings.
    """
    if coro:
        coro.close()
    return None

def test_parse_client_args():
    args = gun.build_parser().parse_args([
        "client", "--listen", "127.0.0.1:1080", "--server", "example.com:443",
        "--sni", "cdn.example.com", "--insecure"
    ])
    assert args.mode == "client"
    assert args.listen == "127.0.0.1:1080"
    assert args.server == "example.com:443"
    assert args.sni == "cdn.example.com"
    assert args.insecure and not args.cleartext
    assert args.service == DEFAULT_SERVICE_NAME
    assert args.ca is None

def test_parse_server_args():
    args = gun.build_parser().parse_args([
        "-v", "server", "--listen", "0.0.0.0:8443", "--target", "127.0.0.1:22",
        "--self-signed", "tunnel.local", "--service", "Svc"
    ])
    assert args.verbose
    assert args.mode == "server"
    assert args.self_signed == "tunnel.local"
    assert args.service == "Svc"

def test_mode_is_required():
    with pytest.raises(SystemExit):
        gun.build_parser().parse_args([])

def test_main_dispatches_client():
    with patch("gun._run", side_effect=clean_run) as mock_run, \
         patch("gun.run_client") as mock_client, \
         patch("gun.run_server") as mock_server:
        assert gun.main(["client", "--listen", "127.0.0.1:0", "--server", "h:1"]) == 0
    mock_client.assert_called_once()
    mock_server.assert_not_called()
    mock_run.assert_called_once()

def test_main_exits_cleanly_on_ctrl_c():
    with patch("gun._run", side_effect=KeyboardInterrupt), \
         patch("gun.run_server"), \
         patch("logging.basicConfig") as mock_log:
        rc = gun.main(["-v", "server", "--listen", ":0", "--target", "h:1", "--cleartext"])
    assert rc == 0
    assert mock_log.call_args.kwargs["level"] == logging.DEBUG

@pytest.mark.asyncio
async def test_server_requires_tls_material():
    args = gun.build_parser().parse_args(["server", "--listen", "127.0.0.1:0", "--target", "h:1"])
    with pytest.raises(SystemExit):
        await gun.run_server(args)


async def _tunnel_echo(conn):
    while True:
        data = await conn.read(4096)
        if not data:
            break
        await conn.write(data)
    await conn.close_write()


@pytest.mark.asyncio
async def test_relay_round_trip_and_half_close(sock_address):
    tunnel_server = GunServer(_tunnel_echo)
    await tunnel_server.start("127.0.0.1", 0)
    client = GunClient(TunnelConfig(sock_address(tunnel_server), cleartext=True))
    relays = []

    async def on_tcp(reader, writer):
        conn = await client.dial_conn()
        relays.append(asyncio.current_task())
        await gun.relay(conn, reader, writer)

    front = await asyncio.start_server(on_tcp, "127.0.0.1", 0)
    try:
        port = front.sockets[0].getsockname()[1]
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        writer.write(b"ping")
        await writer.drain()
        assert await asyncio.wait_for(reader.readexactly(4), 5) == b"ping"

        # Half-close travels through the tunnel and comes back as EOF
        writer.write_eof()
        assert await asyncio.wait_for(reader.read(), 5) == b""
        writer.close()
        await asyncio.wait_for(asyncio.gather(*relays), 5)
    finally:
        front.close()
        await front.wait_closed()
        await client.close()
        await tunnel_server.close()

@pytest.mark.asyncio
async def test_relay_closes_tcp_when_tunnel_resets(sock_address):
    async def abort(conn):
        conn.close()

    tunnel_server = GunServer(abort)
    await tunnel_server.start("127.0.0.1", 0)
    client = GunClient(TunnelConfig(sock_address(tunnel_server), cleartext=True))

    async def on_tcp(reader, writer):
        conn = await client.dial_conn()
        await gun.relay(conn, reader, writer)

    front = await asyncio.start_server(on_tcp, "127.0.0.1", 0)
    try:
        port = front.sockets[0].getsockname()[1]
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        assert await asyncio.wait_for(reader.read(), 5) == b""
        writer.close()
    finally:
        front.close()
        await front.wait_closed()
        await client.close()
        await tunnel_server.close()

def test_run_client_builds_config():
    args = argparse.Namespace(
        server="example.com:8443", sni="front.example", service="Svc", cleartext=False,
        insecure=True, ca=None, connect_timeout=3.0, listen="127.0.0.1:1080"
    )
    with patch("gun.GunClient") as MockClient, \
         patch("asyncio.start_server", side_effect=OSError("bind failed")):
        MockClient.return_value.close = clean_async
        with pytest.raises(OSError):
            asyncio.run(gun.run_client(args))
    config = MockClient.call_args.args[0]
    assert config.remote_addr == "example.com:8443"
    assert config.server_name == "front.example"
    assert config.service_name == "Svc"
    assert config.verify is False
    assert config.connect_timeout == 3.0

async def clean_async():
    return None
