#Filename: gun.py
"""
Gun -- gRPC-camouflaged TCP tunnel.

MODES:
- client: listens on a local TCP port and carries every accepted
  connection over its own tunnel to the server.
- server: accepts tunnels and connects each one to a fixed TCP target.
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from certs import ensure_certificates, server_ssl_context
from gun_client import GunClient
from gun_common import GunError, format_authority, parse_target
from gun_conn import GunConn
from gun_server import GunServer
from structures import DEFAULT_CONNECT_TIMEOUT, DEFAULT_SERVICE_NAME, TunnelConfig

logger = logging.getLogger("gun")

RELAY_CHUNK_SIZE = 32 * 1024


async def relay(conn: GunConn, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    """
    Copies bytes both ways between a tunnel and a TCP stream.
    Each direction half-closes its destination at end of stream; the
    first failure cancels the other direction.
    """
    async def tcp_to_tunnel() -> None:
        while True:
            data = await reader.read(RELAY_CHUNK_SIZE)
            if not data:
                break
            await conn.write(data)
        await conn.close_write()

    async def tunnel_to_tcp() -> None:
        while True:
            data = await conn.read(RELAY_CHUNK_SIZE)
            if not data:
                break
            writer.write(data)
            await writer.drain()
        if writer.can_write_eof():
            writer.write_eof()

    tasks = [asyncio.create_task(tcp_to_tunnel()), asyncio.create_task(tunnel_to_tcp())]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            exc = task.exception()
            if exc is not None:
                logger.debug("Relay for %r ended: %r", conn, exc)
    finally:
        for task in tasks:
            task.cancel()
        conn.close()
        writer.close()


async def run_client(args: argparse.Namespace) -> None:
    config = TunnelConfig(
        args.server,
        server_name=args.sni,
        service_name=args.service,
        cleartext=args.cleartext,
        verify=not args.insecure,
        ca_file=args.ca,
        connect_timeout=args.connect_timeout,
    )
    client = GunClient(config)

    async def _handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info('peername')
        try:
            conn = await client.dial_conn()
        except (OSError, GunError, asyncio.TimeoutError) as e:
            logger.error("Tunnel for %s failed: %s", peer, e)
            writer.close()
            return
        logger.info("Tunnel open for %s", peer)
        await relay(conn, reader, writer)

    host, port = parse_target(args.listen)
    server = await asyncio.start_server(_handle, host, port)
    for sock in server.sockets:
        bound = sock.getsockname()
        logger.info("Forwarding %s -> %s", format_authority(bound[0], bound[1]), config.url)
    try:
        async with server:
            await server.serve_forever()
    finally:
        await client.close()


async def run_server(args: argparse.Namespace) -> None:
    target_host, target_port = parse_target(args.target)

    ssl_context = None
    if not args.cleartext:
        if args.cert and args.key:
            ssl_context = server_ssl_context(args.cert, args.key)
        elif args.self_signed:
            paths = ensure_certificates(args.self_signed)
            logger.info("Using generated certificate %s (clients trust %s)", paths.cert, paths.ca)
            ssl_context = server_ssl_context(paths.cert, paths.key)
        else:
            raise SystemExit("server mode needs --cert/--key, --self-signed NAME or --cleartext")

    async def _handle(conn: GunConn) -> None:
        try:
            reader, writer = await asyncio.open_connection(target_host, target_port)
        except OSError as e:
            logger.error("Target %s unreachable: %s", format_authority(target_host, target_port), e)
            return
        await relay(conn, reader, writer)

    server = GunServer(_handle, service_name=args.service, ssl_context=ssl_context)
    host, port = parse_target(args.listen)
    await server.start(host, port)
    await server.serve_forever()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Gun - TCP tunnel disguised as a gRPC stream")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="mode", required=True)

    client = sub.add_parser("client", help="Forward a local port over tunnels")
    client.add_argument("--listen", required=True, help="Local HOST:PORT to accept connections on")
    client.add_argument("--server", required=True, help="Tunnel server HOST:PORT")
    client.add_argument("--sni", default=None, help="TLS server name override")
    client.add_argument("--service", default=DEFAULT_SERVICE_NAME, help="gRPC service name")
    client.add_argument("--cleartext", action="store_true", help="HTTP/2 without TLS")
    client.add_argument("--insecure", action="store_true", help="Skip certificate verification")
    client.add_argument("--ca", default=None, help="Extra CA bundle to trust")
    client.add_argument("--connect-timeout", type=float, default=DEFAULT_CONNECT_TIMEOUT,
                        help=f"Dial timeout in seconds (default: {DEFAULT_CONNECT_TIMEOUT})")

    server = sub.add_parser("server", help="Accept tunnels and connect them to a target")
    server.add_argument("--listen", required=True, help="HOST:PORT to accept tunnels on")
    server.add_argument("--target", required=True, help="TCP HOST:PORT every tunnel connects to")
    server.add_argument("--service", default=DEFAULT_SERVICE_NAME, help="gRPC service name")
    server.add_argument("--cert", default=None, help="PEM certificate chain")
    server.add_argument("--key", default=None, help="PEM private key")
    server.add_argument("--self-signed", default=None, metavar="NAME",
                        help="Generate (or reuse) a certificate for NAME under ./certs")
    server.add_argument("--cleartext", action="store_true", help="HTTP/2 without TLS")
    return parser


def _run(coro) -> None:
    if sys.platform == "win32":
        asyncio.run(coro)
        return
    import uvloop
    uvloop.run(coro)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] [%(name)s] %(message)s",
        datefmt="%H:%M:%S"
    )
    runner = run_client if args.mode == "client" else run_server
    try:
        _run(runner(args))
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
