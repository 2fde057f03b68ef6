"""Host port reservation for sandbox port bindings.

A port is "reserved" by binding a throwaway listener to port 0, reading back
the port the OS assigned, and closing it. Nothing holds the port afterwards:
another process may claim it before the container binds it. That window is
accepted.
"""

import contextlib
import socket


def allocate_ports(count: int, host: str = "0.0.0.0") -> list[int]:
    """Return ``count`` distinct free TCP ports.

    All listeners are held open until every port has been read, so the OS
    cannot hand out the same port twice within one call.
    """
    with contextlib.ExitStack() as stack:
        ports: list[int] = []
        for _ in range(count):
            sock = stack.enter_context(socket.socket(socket.AF_INET, socket.SOCK_STREAM))
            sock.bind((host, 0))
            sock.listen(1)
            ports.append(sock.getsockname()[1])
        return ports


def allocate_port(host: str = "0.0.0.0") -> int:
    return allocate_ports(1, host)[0]
