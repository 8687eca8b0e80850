"""Tests for reverse port forwarding bookkeeping."""

from __future__ import annotations

from pathlib import Path
import socket
import sys

import paramiko

sys.path.insert(0, str(Path(__file__).parent.parent))

from skygate.gateway.forwarding import ForwardListener, PortForwards


class RefusingTransport:
    def __init__(self) -> None:
        self.opened = []

    def open_forwarded_tcpip_channel(self, src_addr, dest_addr):
        self.opened.append((src_addr, dest_addr))
        raise paramiko.SSHException("channel refused")


def test_open_binds_ephemeral_port() -> None:
    forwards = PortForwards(RefusingTransport(), listen_host="127.0.0.1")
    try:
        port = forwards.open("0.0.0.0", 7777)
        assert port is not None and port > 0
        assert forwards.open("0.0.0.0", 7777) == port
        assert forwards.bound_port("0.0.0.0", 7777) == port
        assert forwards.bound_port("0.0.0.0", 7788) is None
        assert len(forwards) == 1

        with socket.create_connection(("127.0.0.1", port), timeout=2):
            pass
    finally:
        forwards.close_all()


def test_port_zero_request_is_found_by_bound_port() -> None:
    forwards = PortForwards(RefusingTransport(), listen_host="127.0.0.1")
    try:
        port = forwards.open("0.0.0.0", 0)
        assert forwards.bound_port("0.0.0.0", port) == port
    finally:
        forwards.close_all()


def test_cancel_and_close_all() -> None:
    forwards = PortForwards(RefusingTransport(), listen_host="127.0.0.1")
    first = forwards.open("0.0.0.0", 7777)
    forwards.open("0.0.0.0", 7788)

    forwards.cancel("0.0.0.0", 7777)
    forwards.cancel("0.0.0.0", 9999)
    assert forwards.bound_port("0.0.0.0", 7777) is None
    assert len(forwards) == 1

    forwards.close_all()
    assert len(forwards) == 0
    assert _refuses(first)


def _refuses(port: int) -> bool:
    with socket.socket() as client:
        client.settimeout(1)
        return client.connect_ex(("127.0.0.1", port)) != 0


def test_cancelled_forward_stops_listening_immediately() -> None:
    forwards = PortForwards(RefusingTransport(), listen_host="127.0.0.1")
    try:
        port = forwards.open("0.0.0.0", 7777)
        listener = forwards._listeners[("0.0.0.0", 7777)]

        forwards.cancel("0.0.0.0", 7777)

        assert _refuses(port)
        assert not listener._thread.is_alive()
    finally:
        forwards.close_all()


def test_close_before_start_does_not_block() -> None:
    listener = ForwardListener(RefusingTransport(), "0.0.0.0", 7777, listen_host="127.0.0.1")
    port = listener.bound_port
    listener.close()
    listener.close()
    assert _refuses(port)


def test_listener_echoes_requested_destination() -> None:
    listener = ForwardListener(RefusingTransport(), "0.0.0.0", 7777, listen_host="127.0.0.1")
    try:
        assert listener.destination == ("0.0.0.0", 7777)
        assert listener.bound_port > 0
    finally:
        listener.close()
