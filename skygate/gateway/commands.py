"""
SKYGATE — Worker commands

Workers drive the gateway with exec requests on their SSH session:

    forward-worker [--garden ADDR] [--baggageclaim ADDR]
    land-worker
    retire-worker
    delete-worker

Each command is followed by the worker's metadata as one JSON object on the
channel's stdin.
"""

from __future__ import annotations

import json
import shlex
import socket
from dataclasses import dataclass
from typing import Any, Callable

from skygate.shared.errors import UnknownCommandError, WorkerCommandError

FORWARD_WORKER = "forward-worker"
LAND_WORKER = "land-worker"
RETIRE_WORKER = "retire-worker"
DELETE_WORKER = "delete-worker"

COMMANDS = (FORWARD_WORKER, LAND_WORKER, RETIRE_WORKER, DELETE_WORKER)

MAX_PAYLOAD_BYTES = 1 << 20
_RECV_CHUNK = 4096


@dataclass(frozen=True)
class WorkerCommand:
    name: str
    garden: str | None = None
    baggageclaim: str | None = None


def parse_command(raw: str) -> WorkerCommand:
    """Parse an exec request line. Raises WorkerCommandError."""
    try:
        argv = shlex.split(raw)
    except ValueError as exc:
        raise WorkerCommandError(f"Malformed command: {exc}") from exc
    if not argv:
        raise WorkerCommandError("Empty command")

    name, args = argv[0], argv[1:]
    if name not in COMMANDS:
        raise UnknownCommandError(name)
    if name != FORWARD_WORKER:
        if args:
            raise WorkerCommandError(f"{name} takes no arguments")
        return WorkerCommand(name)

    options: dict[str, str] = {}
    i = 0
    while i < len(args):
        arg = args[i]
        flag, eq, value = arg.partition("=")
        if flag not in ("--garden", "--baggageclaim"):
            raise WorkerCommandError(f"Unknown {FORWARD_WORKER} option: {arg}")
        if not eq:
            i += 1
            if i >= len(args):
                raise WorkerCommandError(f"{flag} requires an address")
            value = args[i]
        options[flag[2:]] = value
        i += 1

    return WorkerCommand(name, garden=options.get("garden"), baggageclaim=options.get("baggageclaim"))


def read_payload(recv: Callable[[int], bytes], limit: int = MAX_PAYLOAD_BYTES) -> dict[str, Any]:
    """
    Read one JSON object from a blocking ``recv``.

    Stops as soon as a complete object has arrived; the worker may keep its
    stdin open afterwards. Raises WorkerCommandError.
    """
    decoder = json.JSONDecoder()
    buffer = b""
    while True:
        try:
            chunk = recv(_RECV_CHUNK)
        except socket.timeout as exc:
            raise WorkerCommandError("Timed out waiting for worker payload") from exc
        buffer += chunk
        if len(buffer) > limit:
            raise WorkerCommandError(f"Worker payload exceeds {limit} bytes")

        try:
            text = buffer.decode("utf-8").lstrip()
        except UnicodeDecodeError as exc:
            # A multi-byte character may be split across reads
            if chunk and exc.start >= len(buffer) - 3:
                continue
            raise WorkerCommandError("Worker payload is not valid UTF-8") from exc
        if text:
            try:
                payload, _ = decoder.raw_decode(text)
            except json.JSONDecodeError as exc:
                if not chunk:
                    raise WorkerCommandError(f"Invalid worker payload: {exc}") from exc
            else:
                if not isinstance(payload, dict):
                    raise WorkerCommandError("Worker payload must be a JSON object")
                return payload

        if not chunk:
            raise WorkerCommandError("Connection closed before worker payload was received")


def validate_payload(payload: dict[str, Any], team: str | None) -> dict[str, Any]:
    """
    Check worker metadata against the session.

    Team sessions may only speak for their own team; the team field is
    forced to the session's team.
    """
    name = payload.get("name")
    if not isinstance(name, str) or not name.strip():
        raise WorkerCommandError("Worker payload requires a non-empty 'name'")

    if team is None:
        return dict(payload)

    declared = payload.get("team")
    if declared not in (None, "", team):
        raise WorkerCommandError("Worker team does not match the team of the session's key")
    return {**payload, "team": team}


def split_address(address: str) -> tuple[str, int]:
    """Split ``host:port`` (``[v6]:port`` allowed). Raises WorkerCommandError."""
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        raise WorkerCommandError(f"Invalid address: {address!r}")
    return host.strip("[]"), int(port)
