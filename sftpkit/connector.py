"""TCP connection to the first reachable resolved address."""

from __future__ import annotations

import logging
import socket
from typing import Sequence

from sftpkit.errors import ConnectError
from sftpkit.resolver import SSH_PORT, SocketAddress

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 5.0  # seconds, per address


def _close_socket_safely(sock: socket.socket) -> None:
    try:
        sock.close()
    except OSError as exc:
        logger.debug("Ignoring error while closing socket: %s", exc)


def connect_first(
    addresses: Sequence[SocketAddress],
    port: int = SSH_PORT,
    timeout: float = DEFAULT_CONNECT_TIMEOUT,
) -> socket.socket:
    """Connect to each address in order and return the first open socket.

    Each attempt is bounded by *timeout* seconds.  The returned socket is in
    blocking mode and owned by the caller.

    Raises:
        ConnectError: If *addresses* is empty or every attempt fails.
    """
    if not addresses:
        raise ConnectError("No addresses to connect to")

    attempts: list[tuple[str, Exception]] = []
    for address in addresses:
        target = address.with_port(port)
        sock: socket.socket | None = None
        try:
            # Socket creation fails too when the address family is unsupported.
            sock = socket.socket(target.family, socket.SOCK_STREAM)
            sock.settimeout(timeout)
            sock.connect(target.sockaddr)
        except OSError as exc:
            logger.debug("Connect to %s failed: %s", target, exc)
            attempts.append((str(target), exc))
            if sock is not None:
                _close_socket_safely(sock)
            continue

        sock.settimeout(None)
        logger.info("TCP connected to %s", target)
        return sock

    summary = "; ".join(f"{addr}: {exc}" for addr, exc in attempts)
    raise ConnectError(f"Could not connect to any address ({summary})", attempts=attempts)
