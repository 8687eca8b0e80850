"""
SKYGATE — paramiko server interface

Adapts paramiko's server callbacks to the gateway. Every callback runs on
the connection's paramiko transport thread.

paramiko asks about a public key before it has checked the client's
signature (and again for signature-less "would you accept this key" probes),
so the key check here has no side effects. The team binding is made by
``GatewayConnection.complete_authentication`` once the transport is
authenticated, using the last key that passed the check.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import paramiko

from skygate.auth.authenticator import Authenticator
from skygate.auth.keys import fingerprint
from skygate.shared.errors import SkyGateError, UntrustedKeyError

if TYPE_CHECKING:
    from skygate.gateway.server import GatewayConnection

logger = logging.getLogger("skygate.gateway.interface")


class GatewayServerInterface(paramiko.ServerInterface):
    """paramiko ServerInterface for one connection."""

    def __init__(self, connection: "GatewayConnection", authenticator: Authenticator) -> None:
        self.connection = connection
        self.authenticator = authenticator

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------
    def get_allowed_auths(self, username: str) -> str:
        return "publickey"

    def check_auth_publickey(self, username: str, key: paramiko.PKey) -> int:
        blob = key.asbytes()
        try:
            decision = self.authenticator.check(blob)
        except UntrustedKeyError:
            logger.info(
                "Rejected key %s from %s",
                fingerprint(blob),
                self.connection.peer_label,
            )
            return paramiko.AUTH_FAILED

        self.connection.key_accepted(blob, decision)
        return paramiko.AUTH_SUCCESSFUL

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------
    def check_channel_request(self, kind: str, chanid: int) -> int:
        if kind != "session":
            return paramiko.OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED
        if not self._authenticated():
            return paramiko.OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED
        return paramiko.OPEN_SUCCEEDED

    def check_channel_exec_request(self, channel: paramiko.Channel, command: bytes) -> bool:
        try:
            text = command.decode("utf-8")
        except UnicodeDecodeError:
            return False
        self.connection.command_received(channel, text)
        return True

    # ------------------------------------------------------------------
    # Reverse forwarding
    # ------------------------------------------------------------------
    def check_port_forward_request(self, address: str, port: int) -> int | bool:
        if not self._authenticated():
            return False
        bound = self.connection.forward_requested(address, port)
        return bound if bound is not None else False

    def cancel_port_forward_request(self, address: str, port: int) -> None:
        self.connection.forward_cancelled(address, port)

    def _authenticated(self) -> bool:
        try:
            self.connection.complete_authentication()
        except SkyGateError as exc:
            logger.error("Aborting session from %s: %s", self.connection.peer_label, exc)
            self.connection.abort()
            return False
        return True
