"""Tests for worker command parsing and payload handling."""

from __future__ import annotations

import json
from pathlib import Path
import socket
import sys

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from skygate.gateway.commands import (
    DELETE_WORKER,
    FORWARD_WORKER,
    LAND_WORKER,
    WorkerCommand,
    parse_command,
    read_payload,
    split_address,
    validate_payload,
)
from skygate.shared.errors import UnknownCommandError, WorkerCommandError


def _chunks(*parts: bytes):
    """recv() stand-in returning the given chunks, then EOF."""
    queue = list(parts)

    def recv(size: int) -> bytes:
        return queue.pop(0) if queue else b""

    return recv


# ---------------------------------------------------------------------------
# parse_command
# ---------------------------------------------------------------------------

def test_parse_forward_worker_flags() -> None:
    assert parse_command("forward-worker --garden 0.0.0.0:7777 --baggageclaim=0.0.0.0:7788") == WorkerCommand(
        FORWARD_WORKER, garden="0.0.0.0:7777", baggageclaim="0.0.0.0:7788"
    )
    assert parse_command("forward-worker") == WorkerCommand(FORWARD_WORKER)


def test_parse_lifecycle_commands() -> None:
    assert parse_command("land-worker") == WorkerCommand(LAND_WORKER)
    assert parse_command("  delete-worker ") == WorkerCommand(DELETE_WORKER)
    with pytest.raises(WorkerCommandError):
        parse_command("land-worker --now")


def test_parse_unknown_command() -> None:
    with pytest.raises(UnknownCommandError) as exc_info:
        parse_command("rm -rf /")
    assert exc_info.value.command == "rm"


@pytest.mark.parametrize(
    "raw",
    ["", "forward-worker --garden", "forward-worker --bogus x", "forward-worker 'unterminated"],
)
def test_parse_malformed(raw: str) -> None:
    with pytest.raises(WorkerCommandError):
        parse_command(raw)


# ---------------------------------------------------------------------------
# read_payload
# ---------------------------------------------------------------------------

def test_read_payload_across_chunks() -> None:
    body = json.dumps({"name": "worker-1", "platform": "linux"}).encode()
    assert read_payload(_chunks(body[:5], body[5:12], body[12:])) == {
        "name": "worker-1",
        "platform": "linux",
    }


def test_read_payload_stops_at_first_object() -> None:
    def recv(size: int) -> bytes:
        raise AssertionError("read past the payload")

    first = _chunks(b'  {"name": "w"}\n')
    calls = {"n": 0}

    def once(size: int) -> bytes:
        calls["n"] += 1
        return first(size) if calls["n"] == 1 else recv(size)

    assert read_payload(once) == {"name": "w"}


def test_read_payload_split_utf8() -> None:
    body = json.dumps({"name": "wörker"}, ensure_ascii=False).encode("utf-8")
    split = body.index("ö".encode("utf-8")) + 1
    assert read_payload(_chunks(body[:split], body[split:]))["name"] == "wörker"


@pytest.mark.parametrize(
    "chunks",
    [
        (b"",),
        (b'{"name": ',),
        (b"[1, 2]",),
        (b"not json",),
        (b"\xff\xfe{}",),
    ],
)
def test_read_payload_rejects(chunks) -> None:
    with pytest.raises(WorkerCommandError):
        read_payload(_chunks(*chunks))


def test_read_payload_limit() -> None:
    with pytest.raises(WorkerCommandError):
        read_payload(_chunks(b'{"name": "' + b"x" * 100), limit=64)


def test_read_payload_timeout() -> None:
    def recv(size: int) -> bytes:
        raise socket.timeout()

    with pytest.raises(WorkerCommandError):
        read_payload(recv)


# ---------------------------------------------------------------------------
# validate_payload / split_address
# ---------------------------------------------------------------------------

def test_validate_requires_name() -> None:
    with pytest.raises(WorkerCommandError):
        validate_payload({"platform": "linux"}, None)
    with pytest.raises(WorkerCommandError):
        validate_payload({"name": "  "}, "ops")


def test_validate_forces_session_team() -> None:
    assert validate_payload({"name": "w"}, "ops")["team"] == "ops"
    assert validate_payload({"name": "w", "team": "ops"}, "ops")["team"] == "ops"


def test_validate_rejects_team_mismatch() -> None:
    with pytest.raises(WorkerCommandError):
        validate_payload({"name": "w", "team": "dev"}, "ops")


def test_validate_global_session_keeps_payload() -> None:
    payload = {"name": "w", "team": "dev"}
    result = validate_payload(payload, None)
    assert result == payload
    assert result is not payload


def test_split_address() -> None:
    assert split_address("0.0.0.0:7777") == ("0.0.0.0", 7777)
    assert split_address("[::1]:22") == ("::1", 22)
    with pytest.raises(WorkerCommandError):
        split_address("no-port")
    with pytest.raises(WorkerCommandError):
        split_address("host:http")
