"""Hostname resolution to connectable socket addresses."""

from __future__ import annotations

import logging
import socket
from dataclasses import dataclass

from sftpkit.errors import ResolutionError

logger = logging.getLogger(__name__)

SSH_PORT = 22


@dataclass(frozen=True)
class SocketAddress:
    """One candidate address as returned by ``getaddrinfo``."""

    family: socket.AddressFamily
    sockaddr: tuple

    @property
    def host(self) -> str:
        return self.sockaddr[0]

    @property
    def is_ipv6(self) -> bool:
        return self.family == socket.AF_INET6

    def with_port(self, port: int) -> "SocketAddress":
        """Return a copy of this address targeting *port*."""
        return SocketAddress(self.family, (self.sockaddr[0], port, *self.sockaddr[2:]))

    def __str__(self) -> str:
        if self.is_ipv6:
            return f"[{self.sockaddr[0]}]:{self.sockaddr[1]}"
        return f"{self.sockaddr[0]}:{self.sockaddr[1]}"


def resolve(hostname: str, port: int = SSH_PORT) -> list[SocketAddress]:
    """Resolve *hostname* to an ordered list of IPv4/IPv6 stream addresses.

    The resolver's ordering is kept; exact duplicates are dropped.  Nothing
    is cached, so every call performs a fresh lookup.

    Raises:
        ResolutionError: If the lookup fails or yields no usable address.
    """
    if not hostname:
        raise ResolutionError("Empty hostname")

    try:
        infos = socket.getaddrinfo(hostname, port, type=socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError) as exc:
        logger.warning("Could not resolve %s: %s", hostname, exc)
        raise ResolutionError(f"Could not resolve {hostname}: {exc}") from exc

    addresses: list[SocketAddress] = []
    for family, _type, _proto, _canon, sockaddr in infos:
        if family not in (socket.AF_INET, socket.AF_INET6):
            continue
        address = SocketAddress(family, tuple(sockaddr))
        if address not in addresses:
            addresses.append(address)

    if not addresses:
        raise ResolutionError(f"No IPv4/IPv6 address found for {hostname}")

    logger.debug(
        "Resolved %s to %s", hostname, ", ".join(str(a) for a in addresses)
    )
    return addresses
