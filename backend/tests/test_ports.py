"""Tests for sandbox/ports.py -- free host port reservation."""

import socket

from sandbox.ports import allocate_port, allocate_ports


def test_allocates_distinct_ports() -> None:
    ports = allocate_ports(4)
    assert len(ports) == 4
    assert len(set(ports)) == 4
    assert all(0 < port < 65536 for port in ports)


def test_port_is_free_after_allocation() -> None:
    port = allocate_port("127.0.0.1")
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(("127.0.0.1", port))


def test_zero_count() -> None:
    assert allocate_ports(0) == []
