"""Tests for the registration coordinator state machine."""

from __future__ import annotations

import asyncio
from pathlib import Path
import sys
import threading

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import ed25519

sys.path.insert(0, str(Path(__file__).parent.parent))

from skygate.auth.authenticator import KeyAuthenticator
from skygate.auth.sessions import SessionRegistry
from skygate.auth.trust_store import TrustStore
from skygate.control_plane.coordinator import RegistrationCoordinator
from skygate.control_plane.endpoints import RandomEndpointPicker
from skygate.control_plane.models import RegistrationState, WorkerRegistration
from skygate.control_plane.tokens import TokenIssuer
from skygate.shared.errors import InvariantViolation, RegistrationTransportError

ENDPOINTS = ("http://atc-1:8080", "http://atc-2:8080")


class StubControlPlaneClient:
    def __init__(self, failing: set[str] | None = None, fail_deregister: bool = False) -> None:
        self.failing = set(failing or ())
        self.fail_deregister = fail_deregister
        self.registrations: list[tuple[str, str, dict, float | None]] = []
        self.deregistrations: list[tuple[str, str, str]] = []

    async def register_worker(self, endpoint, token, payload, ttl_seconds=None):
        self.registrations.append((endpoint, token, payload, ttl_seconds))
        if endpoint in self.failing:
            raise RegistrationTransportError(endpoint, "connection refused")

    async def deregister_worker(self, endpoint, token, worker_name):
        self.deregistrations.append((endpoint, token, worker_name))
        if self.fail_deregister:
            raise RegistrationTransportError(endpoint, "HTTP 500", status=500)


@pytest.fixture
def signing_key():
    return ed25519.Ed25519PrivateKey.generate()


def _coordinator(
    client: StubControlPlaneClient,
    sessions: SessionRegistry,
    signing_key,
    *,
    session_id: str = "sess-1",
    team: str | None = "ops",
    heartbeat_interval: float = 60.0,
    cpr_interval: float = 0.02,
    is_alive=None,
) -> RegistrationCoordinator:
    return RegistrationCoordinator(
        registration=WorkerRegistration(
            session_id=session_id,
            team=team,
            forward_address="10.0.0.1:7777",
            worker={"name": "worker-1", "platform": "linux"},
        ),
        picker=RandomEndpointPicker(ENDPOINTS),
        token_issuer=TokenIssuer(signing_key),
        client=client,
        sessions=sessions,
        heartbeat_interval=heartbeat_interval,
        cpr_interval=cpr_interval,
        is_alive=is_alive,
    )


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.mark.asyncio
async def test_team_session_registers_with_team_token(make_key, signing_key) -> None:
    g, k = make_key(), make_key()
    sessions = SessionRegistry()
    auth = KeyAuthenticator(TrustStore([g.blob], {"ops": [k.blob]}), sessions)
    decision = auth.authenticate("sess-1", k.blob)
    assert sessions.lookup("sess-1") == "ops"

    client = StubControlPlaneClient()
    coordinator = _coordinator(client, sessions, signing_key, team=decision.team)
    run = asyncio.create_task(coordinator.run())
    await _wait_for(lambda: coordinator.state is RegistrationState.REGISTERED)

    endpoint, token, payload, ttl = client.registrations[0]
    assert endpoint in ENDPOINTS
    assert ttl == 120.0
    assert payload == {
        "name": "worker-1",
        "platform": "linux",
        "addr": "10.0.0.1:7777",
        "team": "ops",
    }
    claims = jwt.decode(token, signing_key.public_key(), algorithms=["EdDSA"])
    assert claims["team"] == "ops"
    assert claims["worker"] == "worker-1"
    assert coordinator.last_endpoint == endpoint

    coordinator.session_closed()
    await run
    assert coordinator.state is RegistrationState.CLOSED


@pytest.mark.asyncio
async def test_all_endpoints_failing_keeps_registering(signing_key) -> None:
    client = StubControlPlaneClient(failing=set(ENDPOINTS))
    sessions = SessionRegistry()
    sessions.bind("sess-1", "ops")
    coordinator = _coordinator(client, sessions, signing_key, heartbeat_interval=60.0, cpr_interval=0.02)

    run = asyncio.create_task(coordinator.run())
    await _wait_for(lambda: coordinator.attempts >= 4)

    assert coordinator.state is RegistrationState.REGISTERING
    assert coordinator.consecutive_failures >= 4
    assert not run.done()
    assert sessions.lookup("sess-1") == "ops"
    # Every attempt walks each endpoint exactly once
    first_attempt = [r[0] for r in client.registrations[:2]]
    assert sorted(first_attempt) == sorted(ENDPOINTS)

    coordinator.session_closed()
    await run
    assert coordinator.state is RegistrationState.CLOSED


@pytest.mark.asyncio
async def test_failover_to_healthy_endpoint(signing_key) -> None:
    client = StubControlPlaneClient(failing={ENDPOINTS[0]})
    coordinator = _coordinator(client, SessionRegistry(), signing_key)

    run = asyncio.create_task(coordinator.run())
    await _wait_for(lambda: coordinator.state is RegistrationState.REGISTERED)
    assert coordinator.last_endpoint == ENDPOINTS[1]
    assert coordinator.attempts == 1

    coordinator.session_closed()
    await run


@pytest.mark.asyncio
@pytest.mark.parametrize("fail_deregister", [False, True])
async def test_close_while_registered_deregisters_once(signing_key, fail_deregister) -> None:
    client = StubControlPlaneClient(fail_deregister=fail_deregister)
    sessions = SessionRegistry()
    sessions.bind("sess-1", "ops")
    coordinator = _coordinator(client, sessions, signing_key)

    run = asyncio.create_task(coordinator.run())
    await _wait_for(lambda: coordinator.state is RegistrationState.REGISTERED)

    coordinator.session_closed()
    await run

    assert len(client.deregistrations) == 1
    endpoint, _, worker_name = client.deregistrations[0]
    assert endpoint in ENDPOINTS
    assert worker_name == "worker-1"
    assert coordinator.state is RegistrationState.CLOSED
    assert sessions.lookup("sess-1") is None


@pytest.mark.asyncio
async def test_steady_state_uses_heartbeat_interval(signing_key) -> None:
    client = StubControlPlaneClient()
    coordinator = _coordinator(client, SessionRegistry(), signing_key, heartbeat_interval=0.05, cpr_interval=10.0)

    run = asyncio.create_task(coordinator.run())
    await _wait_for(lambda: coordinator.attempts >= 3)
    assert coordinator.state is RegistrationState.REGISTERED

    coordinator.session_closed()
    await run


@pytest.mark.asyncio
async def test_recovery_returns_to_registered(signing_key) -> None:
    client = StubControlPlaneClient(failing=set(ENDPOINTS))
    coordinator = _coordinator(client, SessionRegistry(), signing_key, heartbeat_interval=0.02, cpr_interval=0.02)

    run = asyncio.create_task(coordinator.run())
    await _wait_for(lambda: coordinator.attempts >= 2)
    assert coordinator.state is RegistrationState.REGISTERING

    client.failing.clear()
    await _wait_for(lambda: coordinator.state is RegistrationState.REGISTERED)
    assert coordinator.consecutive_failures == 0

    client.failing.update(ENDPOINTS)
    await _wait_for(lambda: coordinator.state is RegistrationState.REGISTERING)

    coordinator.session_closed()
    await run


@pytest.mark.asyncio
async def test_dead_session_ends_coordinator(signing_key) -> None:
    alive = {"value": True}
    client = StubControlPlaneClient()
    coordinator = _coordinator(
        client,
        SessionRegistry(),
        signing_key,
        heartbeat_interval=0.02,
        is_alive=lambda: alive["value"],
    )

    run = asyncio.create_task(coordinator.run())
    await _wait_for(lambda: coordinator.state is RegistrationState.REGISTERED)
    alive["value"] = False

    await asyncio.wait_for(run, timeout=2.0)
    assert coordinator.state is RegistrationState.CLOSED
    assert len(client.deregistrations) == 1


@pytest.mark.asyncio
async def test_cancelled_run_still_deregisters_and_releases(signing_key) -> None:
    client = StubControlPlaneClient()
    sessions = SessionRegistry()
    sessions.bind("sess-1", "ops")
    coordinator = _coordinator(client, sessions, signing_key)

    run = asyncio.create_task(coordinator.run())
    await _wait_for(lambda: coordinator.state is RegistrationState.REGISTERED)

    run.cancel()
    with pytest.raises(asyncio.CancelledError):
        await run

    assert coordinator.state is RegistrationState.CLOSED
    assert len(client.deregistrations) == 1
    assert sessions.lookup("sess-1") is None


@pytest.mark.asyncio
async def test_no_registration_after_close(signing_key) -> None:
    client = StubControlPlaneClient(failing=set(ENDPOINTS))
    coordinator = _coordinator(client, SessionRegistry(), signing_key)

    run = asyncio.create_task(coordinator.run())
    await _wait_for(lambda: coordinator.attempts >= 1)
    coordinator.session_closed()
    await run

    calls = len(client.registrations)
    await asyncio.sleep(0.1)
    assert len(client.registrations) == calls
    assert coordinator.state is RegistrationState.CLOSED


@pytest.mark.asyncio
async def test_run_twice_is_invariant_violation(signing_key) -> None:
    coordinator = _coordinator(StubControlPlaneClient(), SessionRegistry(), signing_key)
    coordinator.session_closed()
    await coordinator.run()
    assert coordinator.state is RegistrationState.CLOSED

    with pytest.raises(InvariantViolation):
        await coordinator.run()


@pytest.mark.asyncio
async def test_global_session_gets_system_token(signing_key) -> None:
    client = StubControlPlaneClient()
    coordinator = _coordinator(client, SessionRegistry(), signing_key, team=None)

    run = asyncio.create_task(coordinator.run())
    await _wait_for(lambda: coordinator.state is RegistrationState.REGISTERED)
    coordinator.session_closed()
    await run

    _, token, payload, _ = client.registrations[0]
    assert "team" not in payload
    claims = jwt.decode(token, signing_key.public_key(), algorithms=["EdDSA"])
    assert claims["system"] is True
    assert coordinator.to_dict()["state"] == "closed"


@pytest.mark.asyncio
async def test_close_signalled_from_another_thread(signing_key) -> None:
    sessions = SessionRegistry()
    client = StubControlPlaneClient()
    coordinator = _coordinator(client, sessions, signing_key)
    run = asyncio.create_task(coordinator.run())
    await _wait_for(lambda: coordinator.state is RegistrationState.REGISTERED)

    loop = asyncio.get_running_loop()
    watcher = threading.Thread(target=loop.call_soon_threadsafe, args=(coordinator.session_closed,))
    watcher.start()
    watcher.join()

    await asyncio.wait_for(run, timeout=2.0)
    assert coordinator.state is RegistrationState.CLOSED
    assert len(client.deregistrations) == 1
