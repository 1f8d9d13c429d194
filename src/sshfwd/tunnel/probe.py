"""Local port availability checks and listener binding."""

import os
import socket

from ..utils import LOCAL_BIND_HOST


def _new_listener_socket() -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    # On Windows SO_REUSEADDR lets a second socket steal the port
    if os.name != "nt":
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    return sock


def bind_listener(port: int, host: str = LOCAL_BIND_HOST, backlog: int = 128) -> socket.socket:
    """Bind and listen on ``host:port``.

    Raises:
        OSError: If the address is taken or permission is denied
    """
    sock = _new_listener_socket()
    try:
        sock.bind((host, port))
        sock.listen(backlog)
    except OSError:
        sock.close()
        raise
    return sock


def is_port_free(port: int, host: str = LOCAL_BIND_HOST) -> bool:
    """Check whether a local port can currently be bound.

    This is advisory only: another process may take the port between this
    check and the real bind.
    """
    try:
        sock = bind_listener(port, host, backlog=1)
    except OSError:
        return False
    sock.close()
    return True
