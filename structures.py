#Filename: structures.py
"""
CORE DATA STRUCTURES
Single Source of Truth (SSOT) for tunnel parameters and wire constants.
Shared by the Tunnel Opener, the Acceptor and the CLI.
Strict type enforcement at the runtime boundary.
"""

from typing import Optional, Tuple

# -- Camouflage Defaults --

DEFAULT_SERVICE_NAME: str = "GunService"
DEFAULT_CONTENT_TYPE: str = "application/grpc+proto"
DEFAULT_USER_AGENT: str = "grpc-java/1.2.3"
RESPONSE_CONTENT_TYPE: str = "application/grpc"
TUN_METHOD_NAME: str = "Tun"

# -- Wire Constants --

GRPC_FLAG_UNCOMPRESSED: int = 0x00
PROTOBUF_TAG_BYTES: int = 0x0A           # field 1, wire type 2 (length-delimited)
GRPC_HEADER_SIZE: int = 5                # flag(1) + length(4)
MAX_GRPC_LENGTH: int = 0xFFFFFFFF
MAX_VARINT_SIZE: int = 10                # uint64

DEFAULT_TLS_PORT: int = 443
DEFAULT_CONNECT_TIMEOUT: float = 10.0

# Placeholder used when the real socket address is unknown
UNSPECIFIED_ADDR: Tuple[str, int] = ("0.0.0.0", 0)


def tun_path(service_name: Optional[str]) -> str:
    """Request path for a service: /<serviceName>/Tun."""
    return f"/{service_name or DEFAULT_SERVICE_NAME}/{TUN_METHOD_NAME}"


class TunnelConfig:
    """
    Connection Parameters for one Tunnel Opener.
    Immutable once built: every field is fixed at construction time.
    """
    __slots__ = (
        'remote_addr', 'server_name', 'service_name', 'cleartext',
        'content_type', 'user_agent', 'verify', 'ca_file', 'connect_timeout'
    )

    def __init__(
        self,
        remote_addr: str,
        server_name: Optional[str] = None,
        service_name: Optional[str] = None,
        cleartext: bool = False,
        content_type: str = DEFAULT_CONTENT_TYPE,
        user_agent: str = DEFAULT_USER_AGENT,
        verify: bool = True,
        ca_file: Optional[str] = None,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    ) -> None:
        if not isinstance(remote_addr, str) or not remote_addr:
            raise TypeError("remote_addr must be a non-empty 'host:port' string")
        if service_name is not None and '/' in service_name:
            raise ValueError(f"service_name must not contain '/': {service_name!r}")

        self.remote_addr: str = remote_addr
        self.server_name: Optional[str] = server_name or None
        self.service_name: str = service_name or DEFAULT_SERVICE_NAME
        self.cleartext: bool = bool(cleartext)
        self.content_type: str = content_type
        self.user_agent: str = user_agent
        self.verify: bool = bool(verify)
        self.ca_file: Optional[str] = ca_file
        self.connect_timeout: float = connect_timeout

    @property
    def path(self) -> str:
        return tun_path(self.service_name)

    @property
    def url(self) -> str:
        # The scheme stays https in cleartext mode; only the dial step changes.
        return f"https://{self.remote_addr}{self.path}"

    def __repr__(self) -> str:
        mode = "h2c" if self.cleartext else "h2"
        return f"<TunnelConfig {mode} {self.url}>"
