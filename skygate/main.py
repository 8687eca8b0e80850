"""
SKYGATE — Entry Point

Starts the SSH gateway and the diagnostics API in a single asyncio event
loop.

Usage:
    skygate --host-key /etc/skygate/host_key \\
            --session-signing-key /etc/skygate/session_signing_key \\
            --authorized-keys /etc/skygate/authorized_keys \\
            --team-authorized-keys main:/etc/skygate/teams/main \\
            --control-plane-url http://10.0.0.10:8080

Every flag can also be given as a SKYGATE_* environment variable (a .env
file in the working directory is loaded first). Flags win over the
environment.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import Sequence

from dotenv import load_dotenv

from skygate.api.diagnostics import start_diagnostics
from skygate.auth.authenticator import KeyAuthenticator
from skygate.auth.keys import load_host_key
from skygate.auth.sessions import SessionRegistry
from skygate.auth.trust_store import TrustStore
from skygate.control_plane.client import ControlPlaneClient
from skygate.control_plane.endpoints import RandomEndpointPicker
from skygate.control_plane.tokens import TokenIssuer
from skygate.gateway.server import Gateway
from skygate.shared.errors import ConfigurationError
from skygate.shared.logging import configure_logging, get_banner
from skygate.shared.settings import (
    VERSION,
    GatewaySettings,
    parse_duration,
    parse_team_keys,
)

logger = logging.getLogger("skygate")


def _duration(raw: str) -> float:
    try:
        return parse_duration(raw)
    except ConfigurationError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="skygate",
        description="SSH gateway that authenticates workers and registers them with the control plane.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")

    ssh = parser.add_argument_group("SSH server")
    ssh.add_argument("--bind-ip", help="IP address on which to listen for SSH.")
    ssh.add_argument("--bind-port", type=int, help="Port on which to listen for SSH.")
    ssh.add_argument("--peer-address", help="Address other nodes use to reach forwarded worker ports.")
    ssh.add_argument("--host-key", dest="host_key_path", help="Path to the private key used for SSH.")
    ssh.add_argument(
        "--authorized-keys",
        dest="authorized_keys_path",
        help="Path to keys that workers of any team may authenticate with.",
    )
    ssh.add_argument(
        "--team-authorized-keys",
        action="append",
        metavar="NAME:PATH",
        help="Team name and path to keys that workers of that team may authenticate with (repeatable).",
    )
    ssh.add_argument("--handshake-timeout", type=_duration, help="Bound on the SSH handshake.")
    ssh.add_argument("--keepalive-interval", type=_duration, help="SSH keepalive interval.")

    control = parser.add_argument_group("Control plane")
    control.add_argument(
        "--control-plane-url",
        action="append",
        dest="control_plane_urls",
        metavar="URL",
        help="Control plane endpoint (repeatable).",
    )
    control.add_argument(
        "--session-signing-key",
        dest="session_signing_key_path",
        help="Path to the private key used to sign control-plane tokens.",
    )
    control.add_argument("--heartbeat-interval", type=_duration, help="Interval between worker heartbeats.")
    control.add_argument("--cpr-interval", type=_duration, help="Retry interval while registration is failing.")
    control.add_argument("--request-timeout", type=_duration, help="Timeout for each control-plane call.")

    debug = parser.add_argument_group("Diagnostics")
    debug.add_argument("--debug-bind-ip", help="IP address for the diagnostics API.")
    debug.add_argument("--debug-bind-port", type=int, help="Port for the diagnostics API (0 disables).")

    general = parser.add_argument_group("General")
    general.add_argument("--shutdown-timeout", type=_duration, help="How long to drain sessions on shutdown.")
    general.add_argument("--log-level", help="DEBUG | INFO | WARNING | ERROR")
    general.add_argument("--cluster-name", help="Name added to every log line.")
    return parser


def load_settings(argv: Sequence[str] | None = None) -> GatewaySettings:
    """Merge .env, environment and flags. Raises ConfigurationError."""
    args = build_parser().parse_args(argv)
    load_dotenv()

    overrides = vars(args)
    team_keys = overrides.pop("team_authorized_keys")
    urls = overrides.pop("control_plane_urls")

    settings = GatewaySettings.from_env().with_overrides(
        team_authorized_keys=parse_team_keys(team_keys) if team_keys else None,
        control_plane_urls=tuple(urls) if urls else None,
        **overrides,
    )
    return settings.validate()


async def _main(settings: GatewaySettings) -> None:
    trust_store = TrustStore.load(settings.authorized_keys_path, settings.team_authorized_keys)
    if trust_store.is_empty():
        logger.warning("No authorized keys configured; every worker will be rejected.")
    else:
        logger.info("Trust store loaded: %r", trust_store)

    host_key = load_host_key(settings.host_key_path)
    token_issuer = TokenIssuer.from_pem_file(settings.session_signing_key_path)
    picker = RandomEndpointPicker(settings.control_plane_urls)
    logger.info("Signing control-plane tokens with %s", token_issuer.algorithm)

    sessions = SessionRegistry()
    gateway = Gateway(
        settings=settings,
        host_key=host_key,
        authenticator=KeyAuthenticator(trust_store, sessions),
        sessions=sessions,
        token_issuer=token_issuer,
        picker=picker,
        client=ControlPlaneClient(timeout_seconds=settings.request_timeout),
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    await gateway.start()
    diagnostics = None
    if settings.debug_address is not None:
        diagnostics = await start_diagnostics(gateway, *settings.debug_address)

    logger.info("SKYGATE ready.")
    try:
        await stop.wait()
    finally:
        logger.info("Shutting down…")
        await gateway.stop()
        if diagnostics is not None:
            await diagnostics.cleanup()
        logger.info("SKYGATE shut down.")


def main(argv: Sequence[str] | None = None) -> int:
    try:
        settings = load_settings(argv)
    except ConfigurationError as exc:
        configure_logging()
        logger.error("%s", exc)
        return 1

    configure_logging(settings.log_level, settings.cluster_name)
    debug = settings.debug_address
    print(
        get_banner(
            ssh_address="%s:%d" % settings.listen_address,
            debug_address="%s:%d" % debug if debug else "DISABLED",
            endpoints=len(settings.control_plane_urls),
        )
    )

    try:
        asyncio.run(_main(settings))
    except ConfigurationError as exc:
        logger.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
