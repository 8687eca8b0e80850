"""
SKYGATE Gateway — SSH Core

Accepts worker SSH connections, authenticates their keys, and turns each
``forward-worker`` session into a control-plane registration that lives
exactly as long as the connection.

Each connection gets its own asyncio task; paramiko runs the transport on
its own thread, so handshakes and key checks never block the accept loop or
other sessions.
"""

from __future__ import annotations

import asyncio
import logging
import socket
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable

import paramiko

from skygate.auth.authenticator import AuthDecision, Authenticator
from skygate.auth.sessions import SessionRegistry
from skygate.control_plane.client import ControlPlaneClient
from skygate.control_plane.coordinator import RegistrationCoordinator
from skygate.control_plane.endpoints import RandomEndpointPicker
from skygate.control_plane.models import WorkerRegistration
from skygate.control_plane.tokens import TokenIssuer
from skygate.gateway.commands import (
    DELETE_WORKER,
    FORWARD_WORKER,
    LAND_WORKER,
    RETIRE_WORKER,
    WorkerCommand,
    parse_command,
    read_payload,
    split_address,
    validate_payload,
)
from skygate.gateway.forwarding import PortForwards
from skygate.gateway.interface import GatewayServerInterface
from skygate.shared.errors import (
    InvariantViolation,
    RegistrationTransportError,
    UnknownCommandError,
    WorkerCommandError,
)
from skygate.shared.settings import GatewaySettings

logger = logging.getLogger("skygate.gateway")

_WATCH_POLL_SECONDS = 1.0
_HANGUP_GRACE_SECONDS = 5.0


def _resolve(future: asyncio.Future[None]) -> None:
    if not future.done():
        future.set_result(None)


class GatewayConnection:
    """State of one accepted SSH connection."""

    def __init__(self, gateway: "Gateway", sock: socket.socket, peer: tuple) -> None:
        self.gateway = gateway
        self.sock = sock
        self.peer = peer
        self.connected_at = datetime.now(timezone.utc).isoformat()
        self.transport: paramiko.Transport | None = None
        self.forwards: PortForwards | None = None
        self.channel: paramiko.Channel | None = None
        self.coordinator: RegistrationCoordinator | None = None
        self.team: str | None = None

        self._loop = asyncio.get_running_loop()
        self._commands: asyncio.Queue[tuple[paramiko.Channel, str]] = asyncio.Queue()
        self._closed = asyncio.Event()
        self._auth_lock = threading.Lock()
        self._accepted_key: bytes | None = None
        self._decision: AuthDecision | None = None

    @property
    def peer_label(self) -> str:
        return f"{self.peer[0]}:{self.peer[1]}"

    @property
    def session_id(self) -> str:
        if self.transport is None or not self.transport.session_id:
            return ""
        return self.transport.session_id.hex()

    def is_alive(self) -> bool:
        if self.transport is None or not self.transport.is_active():
            return False
        return self.channel is None or not self.channel.closed

    # ------------------------------------------------------------------
    # Called from the paramiko transport thread
    # ------------------------------------------------------------------
    def key_accepted(self, key: bytes, decision: AuthDecision) -> None:
        with self._auth_lock:
            if self._decision is None:
                self._accepted_key = key

    def complete_authentication(self) -> AuthDecision:
        """Bind the session to the verified key's team, once."""
        with self._auth_lock:
            if self._decision is not None:
                return self._decision
            if self.transport is None or not self.transport.is_authenticated():
                raise InvariantViolation("Session used before authentication completed")
            if self._accepted_key is None:
                raise InvariantViolation("Session authenticated without an accepted key")

            decision = self.gateway.authenticator.authenticate(self.session_id, self._accepted_key)
            self._decision = decision
            self.team = decision.team
            return decision

    def command_received(self, channel: paramiko.Channel, command: str) -> None:
        self._loop.call_soon_threadsafe(self._commands.put_nowait, (channel, command))

    def forward_requested(self, address: str, port: int) -> int | None:
        if self.forwards is None:
            return None
        return self.forwards.open(address, port)

    def forward_cancelled(self, address: str, port: int) -> None:
        if self.forwards is not None:
            self.forwards.cancel(address, port)

    def abort(self) -> None:
        if self.transport is not None:
            self.transport.close()

    # ------------------------------------------------------------------
    # asyncio side
    # ------------------------------------------------------------------
    async def serve(self) -> None:
        if not await self._handshake():
            return
        self._start_watcher()

        item = await self._next_command()
        if item is None:
            return
        channel, raw = item
        self.channel = channel
        await self._dispatch(channel, raw)

    def shutdown(self) -> None:
        """Ask the session to end (process shutdown)."""
        self._on_closed()
        self.abort()

    def close(self) -> None:
        self._closed.set()
        if self.forwards is not None:
            self.forwards.close_all()
        if self.transport is not None:
            self.transport.close()
        else:
            self.sock.close()
        session_id = self.session_id
        if session_id:
            self.gateway.sessions.release(session_id)

    def describe(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "session_id": self.session_id,
            "peer": self.peer_label,
            "team": self.team,
            "connected_at": self.connected_at,
            "forwards": len(self.forwards) if self.forwards is not None else 0,
        }
        if self.coordinator is not None:
            data.update(self.coordinator.to_dict())
        else:
            data["state"] = "authenticated" if self._decision is not None else "handshake"
        return data

    async def _handshake(self) -> bool:
        settings = self.gateway.settings
        transport = paramiko.Transport(self.sock)
        transport.add_server_key(self.gateway.host_key)
        transport.set_keepalive(max(1, int(settings.keepalive_interval)))
        self.transport = transport
        self.forwards = PortForwards(transport)

        interface = GatewayServerInterface(self, self.gateway.authenticator)
        negotiated = threading.Event()
        done: asyncio.Future[None] = self._loop.create_future()
        try:
            # With an event, paramiko negotiates on its own thread and returns at once
            transport.start_server(event=negotiated, server=interface)
            threading.Thread(
                target=self._signal_negotiated,
                args=(negotiated, done, settings.handshake_timeout),
                name=f"skygate-handshake-{self.peer_label}",
                daemon=True,
            ).start()
            await asyncio.wait_for(done, timeout=settings.handshake_timeout)
            if not transport.is_active():
                raise transport.get_exception() or paramiko.SSHException("Negotiation failed.")
        except (paramiko.SSHException, EOFError, OSError, asyncio.TimeoutError) as exc:
            logger.info("SSH handshake with %s failed: %r", self.peer_label, exc)
            return False
        return True

    def _signal_negotiated(
        self, negotiated: threading.Event, done: asyncio.Future[None], timeout: float
    ) -> None:
        negotiated.wait(timeout)
        try:
            self._loop.call_soon_threadsafe(_resolve, done)
        except RuntimeError:
            pass

    def _start_watcher(self) -> None:
        threading.Thread(
            target=self._watch,
            name=f"skygate-watch-{self.peer_label}",
            daemon=True,
        ).start()

    def _watch(self) -> None:
        transport = self.transport
        while transport is not None and transport.is_active():
            channel = self.channel
            if channel is not None and channel.closed:
                break
            transport.join(_WATCH_POLL_SECONDS)
        try:
            self._loop.call_soon_threadsafe(self._on_closed)
        except RuntimeError:
            # Event loop already gone (process exit)
            pass

    def _on_closed(self) -> None:
        self._closed.set()
        if self.coordinator is not None:
            self.coordinator.session_closed()

    async def _next_command(self) -> tuple[paramiko.Channel, str] | None:
        command_task = asyncio.ensure_future(self._commands.get())
        closed_task = asyncio.ensure_future(self._closed.wait())
        try:
            done, _ = await asyncio.wait(
                {command_task, closed_task},
                timeout=self.gateway.settings.handshake_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (command_task, closed_task):
                if not task.done():
                    task.cancel()

        if command_task in done:
            return command_task.result()
        if not self._closed.is_set():
            logger.info("No command from %s; closing", self.peer_label)
        return None

    async def _dispatch(self, channel: paramiko.Channel, raw: str) -> None:
        try:
            command = parse_command(raw)
            self.complete_authentication()

            channel.settimeout(self.gateway.settings.handshake_timeout)
            payload = await self._loop.run_in_executor(
                self.gateway.payload_executor, read_payload, channel.recv
            )
            channel.settimeout(None)
            worker = validate_payload(payload, self.team)

            if command.name == FORWARD_WORKER:
                await self._forward_worker(command, worker)
                return

            await self.gateway.run_lifecycle_command(command.name, self.team, worker["name"])
            self._finish(channel, 0)
        except UnknownCommandError as exc:
            logger.warning("Unknown command from %s: %s", self.peer_label, exc.command)
            self._finish(channel, 127, str(exc))
        except WorkerCommandError as exc:
            logger.warning("Rejected command from %s: %s", self.peer_label, exc)
            self._finish(channel, 1, str(exc))
        except RegistrationTransportError as exc:
            logger.error("Command %r from %s failed: %s", raw, self.peer_label, exc)
            self._finish(channel, 1, "control plane unavailable")

        await self._wait_for_hangup()

    async def _wait_for_hangup(self) -> None:
        """Give the worker time to read its exit status and disconnect."""
        try:
            await asyncio.wait_for(self._closed.wait(), timeout=_HANGUP_GRACE_SECONDS)
        except asyncio.TimeoutError:
            pass

    async def _forward_worker(self, command: WorkerCommand, worker: dict[str, Any]) -> None:
        peer_address = self.gateway.settings.peer_address

        if command.garden:
            address = f"{peer_address}:{self._forwarded_port(command.garden)}"
        else:
            address = str(worker.get("addr") or "")
            if not address:
                raise WorkerCommandError(f"{FORWARD_WORKER} needs --garden or an 'addr' in the payload")

        baggageclaim_url = None
        if command.baggageclaim:
            baggageclaim_url = f"http://{peer_address}:{self._forwarded_port(command.baggageclaim)}"

        registration = WorkerRegistration(
            session_id=self.session_id,
            team=self.team,
            forward_address=address,
            worker=worker,
            baggageclaim_url=baggageclaim_url,
        )
        self.coordinator = self.gateway.create_coordinator(registration, is_alive=self.is_alive)
        if self._closed.is_set():
            self.coordinator.session_closed()
        await self.coordinator.run()

    def _forwarded_port(self, requested: str) -> int:
        host, port = split_address(requested)
        bound = self.forwards.bound_port(host, port) if self.forwards is not None else None
        if bound is None:
            raise WorkerCommandError(f"No tcpip-forward was requested for {requested}")
        return bound

    def _finish(self, channel: paramiko.Channel, status: int, message: str | None = None) -> None:
        try:
            if message:
                channel.send_stderr((message + "\n").encode("utf-8"))
            channel.send_exit_status(status)
            channel.close()
        except (OSError, paramiko.SSHException) as exc:
            logger.debug("Could not report exit status to %s: %s", self.peer_label, exc)


class Gateway:
    """SSH listener plus the shared collaborators every session uses."""

    def __init__(
        self,
        *,
        settings: GatewaySettings,
        host_key: paramiko.PKey,
        authenticator: Authenticator,
        sessions: SessionRegistry,
        token_issuer: TokenIssuer,
        picker: RandomEndpointPicker,
        client: ControlPlaneClient,
        max_payload_readers: int = 64,
    ) -> None:
        self.settings = settings
        self.host_key = host_key
        self.authenticator = authenticator
        self.sessions = sessions
        self.token_issuer = token_issuer
        self.picker = picker
        self.client = client
        self.payload_executor = ThreadPoolExecutor(
            max_workers=max_payload_readers,
            thread_name_prefix="skygate-payload",
        )
        self._sock: socket.socket | None = None
        self._accept_task: asyncio.Task[None] | None = None
        self._connections: set[GatewayConnection] = set()
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def running(self) -> bool:
        return self._accept_task is not None and not self._accept_task.done()

    @property
    def address(self) -> tuple[str, int]:
        if self._sock is None:
            return self.settings.listen_address
        host, port = self._sock.getsockname()[:2]
        return host, port

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def start(self) -> None:
        if self.running:
            return
        sock = socket.create_server(self.settings.listen_address)
        sock.setblocking(False)
        self._sock = sock
        self._accept_task = asyncio.create_task(self._accept_loop(), name="skygate-accept")
        logger.info("SSH gateway listening on %s:%d", *self.address)

    async def stop(self) -> None:
        if self._accept_task is not None:
            self._accept_task.cancel()
            try:
                await self._accept_task
            except asyncio.CancelledError:
                pass
            self._accept_task = None
        if self._sock is not None:
            self._sock.close()
            self._sock = None

        for conn in list(self._connections):
            conn.shutdown()

        tasks = list(self._tasks)
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self.settings.shutdown_timeout)
            if pending:
                logger.warning(
                    "%d session(s) did not drain within %.1fs; cancelling.",
                    len(pending),
                    self.settings.shutdown_timeout,
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        self.payload_executor.shutdown(wait=False)
        logger.info("SSH gateway stopped.")

    async def _accept_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            try:
                client, peer = await loop.sock_accept(self._sock)
            except asyncio.CancelledError:
                raise
            except OSError as exc:
                logger.error("Accept failed: %s", exc)
                await asyncio.sleep(0.1)
                continue

            client.setblocking(True)
            conn = GatewayConnection(self, client, peer)
            task = asyncio.create_task(self._handle(conn), name=f"skygate-conn-{conn.peer_label}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _handle(self, conn: GatewayConnection) -> None:
        self._connections.add(conn)
        logger.info("Connection from %s", conn.peer_label)
        try:
            await conn.serve()
        except asyncio.CancelledError:
            raise
        except InvariantViolation as exc:
            logger.error("Aborting session from %s: %s", conn.peer_label, exc)
        except Exception:
            logger.exception("Connection handler error (%s).", conn.peer_label)
        finally:
            conn.close()
            self._connections.discard(conn)
            logger.info("Connection from %s closed", conn.peer_label)

    def create_coordinator(
        self,
        registration: WorkerRegistration,
        is_alive: Callable[[], bool] | None = None,
    ) -> RegistrationCoordinator:
        return RegistrationCoordinator(
            registration=registration,
            picker=self.picker,
            token_issuer=self.token_issuer,
            client=self.client,
            sessions=self.sessions,
            heartbeat_interval=self.settings.heartbeat_interval,
            cpr_interval=self.settings.cpr_interval,
            ttl_seconds=self.settings.registration_ttl,
            is_alive=is_alive,
        )

    async def run_lifecycle_command(self, command: str, team: str | None, worker_name: str) -> None:
        """Land, retire or delete a worker, failing over across endpoints."""
        calls = {
            LAND_WORKER: self.client.land_worker,
            RETIRE_WORKER: self.client.retire_worker,
            DELETE_WORKER: self.client.deregister_worker,
        }
        call = calls[command]

        tried: set[str] = set()
        last_error: RegistrationTransportError | None = None
        while True:
            endpoint = self.picker.pick_excluding(tried)
            if endpoint is None:
                break
            tried.add(endpoint)
            token = self.token_issuer.issue(team, worker_name=worker_name)
            try:
                await call(endpoint, token, worker_name)
            except RegistrationTransportError as exc:
                logger.warning("%s for worker %s failed: %s", command, worker_name, exc)
                last_error = exc
                continue
            logger.info("%s for worker %s succeeded via %s", command, worker_name, endpoint)
            return

        assert last_error is not None
        raise last_error

    def describe_sessions(self) -> list[dict[str, Any]]:
        return [conn.describe() for conn in list(self._connections)]
