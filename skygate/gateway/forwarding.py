"""
SKYGATE — Reverse port forwarding

Workers behind NAT ask for ``tcpip-forward``; the gateway listens on an
ephemeral port and relays every inbound TCP connection back to the worker
through a ``forwarded-tcpip`` channel. Other control-plane nodes then reach
the worker at ``peer-address:<port>``.

Listeners and relays run on plain threads, next to paramiko's own transport
thread.
"""

from __future__ import annotations

import logging
import select
import socket
import threading
from typing import Protocol

import paramiko

logger = logging.getLogger("skygate.gateway.forward")

_ACCEPT_POLL_SECONDS = 0.5
_RELAY_CHUNK = 32768


class ForwardTransport(Protocol):
    def open_forwarded_tcpip_channel(
        self, src_addr: tuple[str, int], dest_addr: tuple[str, int]
    ) -> paramiko.Channel: ...


def relay(sock: socket.socket, channel: paramiko.Channel) -> None:
    """Copy bytes both ways until either side closes."""
    while True:
        readable, _, _ = select.select([sock, channel], [], [], 1.0)
        if sock in readable:
            data = sock.recv(_RELAY_CHUNK)
            if not data:
                break
            channel.sendall(data)
        if channel in readable:
            data = channel.recv(_RELAY_CHUNK)
            if not data:
                break
            sock.sendall(data)
        if channel.closed:
            break


class ForwardListener:
    """One listening socket relaying to a worker-side ``tcpip-forward``."""

    def __init__(
        self,
        transport: ForwardTransport,
        requested_address: str,
        requested_port: int,
        listen_host: str = "0.0.0.0",
    ) -> None:
        self.transport = transport
        self.requested_address = requested_address
        self.requested_port = requested_port
        self._sock = socket.create_server((listen_host, 0))
        self._sock.settimeout(_ACCEPT_POLL_SECONDS)
        self.bound_port: int = self._sock.getsockname()[1]
        self._closed = threading.Event()
        self._thread = threading.Thread(
            target=self._accept_loop,
            name=f"skygate-forward-{self.bound_port}",
            daemon=True,
        )

    @property
    def destination(self) -> tuple[str, int]:
        """Address the worker asked for; echoed back on every forwarded channel."""
        return self.requested_address, self.requested_port or self.bound_port

    def start(self) -> "ForwardListener":
        self._thread.start()
        logger.info(
            "Forwarding port %d to worker %s:%d",
            self.bound_port,
            self.requested_address,
            self.requested_port,
        )
        return self

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        # close() alone leaves the port open while accept() is blocked
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(_ACCEPT_POLL_SECONDS * 4)
        self._sock.close()
        logger.info("Stopped forwarding port %d", self.bound_port)

    def _accept_loop(self) -> None:
        while not self._closed.is_set():
            try:
                client, peer = self._sock.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            threading.Thread(
                target=self._handle,
                args=(client, peer),
                name=f"skygate-relay-{self.bound_port}",
                daemon=True,
            ).start()

    def _handle(self, client: socket.socket, peer: tuple) -> None:
        try:
            channel = self.transport.open_forwarded_tcpip_channel(
                (peer[0], peer[1]), self.destination
            )
        except (paramiko.SSHException, OSError) as exc:
            logger.warning("Could not open forwarded channel for %s: %s", peer, exc)
            client.close()
            return

        try:
            relay(client, channel)
        except OSError as exc:
            logger.debug("Relay on port %d ended: %s", self.bound_port, exc)
        finally:
            channel.close()
            client.close()


class PortForwards:
    """All reverse forwards of one SSH session."""

    def __init__(self, transport: ForwardTransport, listen_host: str = "0.0.0.0") -> None:
        self.transport = transport
        self.listen_host = listen_host
        self._listeners: dict[tuple[str, int], ForwardListener] = {}
        self._lock = threading.Lock()

    def open(self, address: str, port: int) -> int | None:
        """Start forwarding; returns the bound port or None on failure."""
        with self._lock:
            existing = self._listeners.get((address, port))
            if existing is not None:
                return existing.bound_port
            try:
                listener = ForwardListener(self.transport, address, port, self.listen_host)
            except OSError as exc:
                logger.error("Cannot open forward listener for %s:%d: %s", address, port, exc)
                return None
            self._listeners[(address, port)] = listener
        listener.start()
        return listener.bound_port

    def cancel(self, address: str, port: int) -> None:
        with self._lock:
            listener = self._listeners.pop((address, port), None)
        if listener is not None:
            listener.close()

    def bound_port(self, address: str, port: int) -> int | None:
        """Port the gateway listens on for the worker's ``address:port`` forward."""
        with self._lock:
            listener = self._listeners.get((address, port))
            if listener is None and port:
                # Requests for port 0 are keyed by the port that was assigned
                for candidate in self._listeners.values():
                    if candidate.requested_address == address and candidate.destination[1] == port:
                        listener = candidate
                        break
            return listener.bound_port if listener is not None else None

    def close_all(self) -> None:
        with self._lock:
            listeners = list(self._listeners.values())
            self._listeners.clear()
        for listener in listeners:
            listener.close()

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)
