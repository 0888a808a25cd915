"""
StubTap Port Allocation

Pick a free TCP port and bind a listening socket to it, retrying when
another process grabs the port between the allocation and the real bind.
"""

import logging
import socket

from ..errors import PortUnavailable


logger = logging.getLogger("stubtap.ports")

DEFAULT_RETRIES = 3


def allocate_port(host: str = "127.0.0.1") -> int:
    """
    Ask the OS for a free port.

    Binds a throwaway socket to port 0, reads the assigned port back and
    closes the socket again.

    Args:
        host: Interface to allocate on

    Returns:
        Port number that was free a moment ago
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return sock.getsockname()[1]


def bind_listener(
    host: str = "127.0.0.1",
    retries: int = DEFAULT_RETRIES,
    backlog: int = 128,
    port: int = 0
) -> socket.socket:
    """
    Allocate a port and bind a listening socket on it.

    Args:
        host: Interface to bind
        retries: Number of allocate+bind attempts before giving up
        backlog: listen() backlog
        port: Fixed port to bind instead of allocating one (single attempt)

    Returns:
        Bound, listening socket (caller owns and must close it)

    Raises:
        PortUnavailable: If every attempt failed
    """
    last_error = None
    if port:
        retries = 1

    for attempt in range(1, max(retries, 1) + 1):
        try:
            port = port or allocate_port(host)
        except OSError as e:
            last_error = e
            logger.debug(f"Port allocation on {host} failed (attempt {attempt}/{retries}): {e}")
            continue

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
            sock.listen(backlog)
        except OSError as e:
            sock.close()
            last_error = e
            logger.debug(f"Port {port} was taken before bind (attempt {attempt}/{retries}): {e}")
            port = 0
            continue

        sock.setblocking(False)
        return sock

    raise PortUnavailable(
        f"Could not bind a port on {host} after {retries} attempts: {last_error}",
        attempts=retries,
        details={'host': host}
    )
