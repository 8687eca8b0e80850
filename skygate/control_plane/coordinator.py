"""
SKYGATE registration coordinator.

Keeps one worker registered with the control plane for as long as its SSH
session lives:
- registers/heartbeats through a freshly picked endpoint on every tick
- fails over across all endpoints once per attempt
- retries on the short CPR interval while no endpoint answers
- deregisters once and releases the session when the session ends

States: idle -> registering <-> registered -> deregistering -> closed
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

from skygate.auth.sessions import SessionRegistry
from skygate.control_plane.endpoints import RandomEndpointPicker
from skygate.control_plane.models import RegistrationState, WorkerRegistration
from skygate.control_plane.tokens import TokenIssuer
from skygate.shared.errors import InvariantViolation, RegistrationTransportError

logger = logging.getLogger("skygate.control.coordinator")

_TRANSITIONS: dict[RegistrationState, set[RegistrationState]] = {
    RegistrationState.IDLE: {RegistrationState.REGISTERING, RegistrationState.DEREGISTERING},
    RegistrationState.REGISTERING: {RegistrationState.REGISTERED, RegistrationState.DEREGISTERING},
    RegistrationState.REGISTERED: {RegistrationState.REGISTERING, RegistrationState.DEREGISTERING},
    RegistrationState.DEREGISTERING: {RegistrationState.CLOSED},
    RegistrationState.CLOSED: set(),
}


class WorkerClient(Protocol):
    async def register_worker(
        self,
        endpoint: str,
        token: str,
        payload: dict[str, Any],
        ttl_seconds: float | None = None,
    ) -> None: ...

    async def deregister_worker(self, endpoint: str, token: str, worker_name: str) -> None: ...


class RegistrationCoordinator:
    """Registration state machine for a single session."""

    def __init__(
        self,
        *,
        registration: WorkerRegistration,
        picker: RandomEndpointPicker,
        token_issuer: TokenIssuer,
        client: WorkerClient,
        sessions: SessionRegistry,
        heartbeat_interval: float = 30.0,
        cpr_interval: float = 1.0,
        ttl_seconds: float | None = None,
        is_alive: Callable[[], bool] | None = None,
    ) -> None:
        self.registration = registration
        self.picker = picker
        self.token_issuer = token_issuer
        self.client = client
        self.sessions = sessions
        self.heartbeat_interval = float(heartbeat_interval)
        self.cpr_interval = float(cpr_interval)
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else self.heartbeat_interval * 2
        self._is_alive = is_alive

        self._state = RegistrationState.IDLE
        self._closed = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

        self.attempts = 0
        self.consecutive_failures = 0
        self.last_endpoint: str | None = None
        self.last_heartbeat_at: str | None = None

    @property
    def state(self) -> RegistrationState:
        return self._state

    @property
    def session_id(self) -> str:
        return self.registration.session_id

    def session_closed(self) -> None:
        """
        Signal that the SSH session ended.

        Not thread-safe: other threads must hop through
        ``loop.call_soon_threadsafe`` (the connection watcher does).
        """
        self._closed.set()

    async def run(self) -> None:
        """Register, heartbeat until the session closes, then deregister."""
        if self._state is not RegistrationState.IDLE:
            raise InvariantViolation(
                f"Coordinator for session {self.session_id[:12]} already ran ({self._state.value})"
            )

        self._transition(RegistrationState.REGISTERING)
        self._task = asyncio.create_task(
            self._heartbeat_loop(),
            name=f"skygate-heartbeat-{self.registration.name}",
        )
        logger.info(
            "Registering worker %s (team=%s addr=%s)",
            self.registration.name,
            self.registration.team or "-",
            self.registration.forward_address,
        )
        try:
            await self._closed.wait()
        finally:
            await self._shutdown()

    async def heartbeat_once(self) -> bool:
        """
        One registration attempt across the endpoint set.

        Tries untried endpoints in random order until one accepts the call.
        Returns False when every endpoint failed.
        """
        self.attempts += 1
        tried: set[str] = set()
        while True:
            endpoint = self.picker.pick_excluding(tried)
            if endpoint is None:
                break
            tried.add(endpoint)

            token = self.token_issuer.issue(self.registration.team, worker_name=self.registration.name)
            try:
                await self.client.register_worker(
                    endpoint,
                    token,
                    self.registration.to_payload(),
                    ttl_seconds=self.ttl_seconds,
                )
            except RegistrationTransportError as exc:
                logger.warning("Heartbeat for worker %s failed: %s", self.registration.name, exc)
                continue

            self.last_endpoint = endpoint
            self.last_heartbeat_at = datetime.now(timezone.utc).isoformat()
            self.consecutive_failures = 0
            return True

        self.consecutive_failures += 1
        logger.error(
            "All %d control plane endpoint(s) failed for worker %s (failures=%d); retrying in %.1fs",
            len(tried),
            self.registration.name,
            self.consecutive_failures,
            self.cpr_interval,
        )
        return False

    async def _heartbeat_loop(self) -> None:
        try:
            while not self._closed.is_set():
                if self._is_alive is not None and not self._is_alive():
                    logger.info("Session %s is no longer alive", self.session_id[:12])
                    break

                try:
                    ok = await self.heartbeat_once()
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Heartbeat loop error for worker %s.", self.registration.name)
                    ok = False

                if ok:
                    if self._state is RegistrationState.REGISTERING:
                        if self._transition(RegistrationState.REGISTERED):
                            logger.info(
                                "Worker %s registered via %s",
                                self.registration.name,
                                self.last_endpoint,
                            )
                    delay = self.heartbeat_interval
                else:
                    if self._state is RegistrationState.REGISTERED:
                        self._transition(RegistrationState.REGISTERING)
                    delay = self.cpr_interval

                if await self._wait_closed(delay):
                    break
        finally:
            self._closed.set()

    async def _wait_closed(self, delay: float) -> bool:
        try:
            await asyncio.wait_for(self._closed.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    async def _shutdown(self) -> None:
        self._transition(RegistrationState.DEREGISTERING)

        # Outstanding heartbeats are cancelled before the session is released
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        try:
            await self._deregister()
        finally:
            self.sessions.release(self.session_id)
            self._transition(RegistrationState.CLOSED)
            logger.info("Worker %s closed (session=%s)", self.registration.name, self.session_id[:12])

    async def _deregister(self) -> None:
        endpoint = self.picker.pick()
        token = self.token_issuer.issue(self.registration.team, worker_name=self.registration.name)
        try:
            await self.client.deregister_worker(endpoint, token, self.registration.name)
        except RegistrationTransportError as exc:
            logger.warning("Deregistration of worker %s failed: %s", self.registration.name, exc)
        except Exception:
            logger.exception("Deregistration of worker %s failed.", self.registration.name)
        else:
            logger.info("Worker %s deregistered via %s", self.registration.name, endpoint)

    def _transition(self, new_state: RegistrationState) -> bool:
        if new_state in _TRANSITIONS[self._state]:
            logger.debug(
                "Worker %s: %s -> %s",
                self.registration.name,
                self._state.value,
                new_state.value,
            )
            self._state = new_state
            return True
        if self._state in (RegistrationState.DEREGISTERING, RegistrationState.CLOSED):
            logger.debug(
                "Ignoring late transition to %s for worker %s (%s)",
                new_state.value,
                self.registration.name,
                self._state.value,
            )
            return False
        raise InvariantViolation(
            f"Invalid registration transition {self._state.value} -> {new_state.value}"
        )

    def to_dict(self) -> dict[str, Any]:
        data = self.registration.to_dict()
        data.update({
            "state": self._state.value,
            "attempts": self.attempts,
            "consecutive_failures": self.consecutive_failures,
            "last_endpoint": self.last_endpoint,
            "last_heartbeat_at": self.last_heartbeat_at,
        })
        return data
