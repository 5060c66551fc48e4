#Filename: gun_common.py
"""
GUN COMMON DEFINITIONS
Error taxonomy, the Closer Aggregator and stateless dial helpers
shared by the client and the acceptor.
"""

import os
import ssl
from typing import Iterable, List, Optional, Protocol, Tuple

from structures import DEFAULT_TLS_PORT

H2_ALPN = "h2"


class GunError(Exception):
    """Base exception for tunnel operations."""


class FramingError(GunError):
    """Raised when a received frame is inconsistent with its length fields."""


class ClosedConnectionError(GunError, ConnectionError):
    """Raised when writing to a connection that has been closed."""

    def __init__(self, msg: str = "use of closed connection") -> None:
        super().__init__(msg)


class TunnelRefusedError(GunError, ConnectionRefusedError):
    """
    Raised when the tunnel request is answered with a non-200 status.
    Every status maps to this one error; the code is kept for diagnostics.
    """

    def __init__(self, status_code: int) -> None:
        super().__init__(f"tunnel refused by peer (HTTP status {status_code})")
        self.status_code = status_code


class Closable(Protocol):
    def close(self) -> object: ...


class ChainedCloser:
    """
    Closes an ordered collection of resources with best-effort semantics.
    A failure to close one resource never prevents releasing the others.
    """
    __slots__ = ('closables',)

    def __init__(self, closables: Iterable[Closable]) -> None:
        self.closables: List[Closable] = list(closables)

    def close(self) -> None:
        for c in self.closables:
            try:
                c.close()
            except Exception:  # pylint: disable=broad-exception-caught
                pass

    def __len__(self) -> int:
        return len(self.closables)


def parse_target(address: str, default_port: int = DEFAULT_TLS_PORT) -> Tuple[str, int]:
    """Parses 'host', 'host:port' or '[v6]:port' into (hostname, port)."""
    if not address:
        raise ValueError("empty address")
    if address.startswith('['):
        end = address.find(']')
        if end == -1:
            raise ValueError(f"unterminated IPv6 literal in {address!r}")
        host = address[1:end]
        rem = address[end+1:]
        if not rem:
            return host, default_port
        if not rem.startswith(':'):
            raise ValueError(f"unexpected text after IPv6 literal in {address!r}")
        return host, _parse_port(rem[1:], address)
    if address.count(':') == 1:
        host, port_str = address.rsplit(':', 1)
        return host, _parse_port(port_str, address)
    # Bare hostname or bare IPv6 literal
    return address, default_port


def _parse_port(port_str: str, address: str) -> int:
    try:
        port = int(port_str)
    except ValueError:
        raise ValueError(f"invalid port in {address!r}") from None
    if not 0 < port < 65536:
        raise ValueError(f"port out of range in {address!r}")
    return port


def format_authority(host: str, port: int) -> str:
    """Inverse of parse_target, bracketing IPv6 literals."""
    if ':' in host and not host.startswith('['):
        host = f"[{host}]"
    return f"{host}:{port}"


def build_client_ssl_context(verify: bool = True, ca_file: Optional[str] = None) -> ssl.SSLContext:
    """
    Client TLS context that only negotiates HTTP/2.
    Certificate checks follow `verify`; `ca_file` extends the trust store.
    """
    ctx = ssl.create_default_context()
    # OpSec: Respect SSLKEYLOGFILE for debugging if set
    keylog = os.environ.get("SSLKEYLOGFILE")
    if keylog:
        ctx.keylog_filename = keylog

    if verify:
        ctx.verify_mode = ssl.CERT_REQUIRED
        ctx.check_hostname = True
        if ca_file:
            ctx.load_verify_locations(cafile=ca_file)
    else:
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE

    ctx.set_alpn_protocols([H2_ALPN])
    return ctx
