"""
SKYGATE — Worker Trust Gateway

The SSH front door of the build-execution fleet:
- Public-key authentication against global and per-team trust lists
- Session-to-team binding for every authenticated connection
- Signed tokens that vouch for the team towards the control plane
- Worker registration and heartbeats with endpoint failover

Main Components:
- skygate.auth: Trust store, authenticator and session registry
- skygate.control_plane: Tokens, endpoint picking, HTTP client, coordinator
- skygate.gateway: SSH server, worker commands and port forwarding
- skygate.api: Diagnostics side channel
- skygate.shared: Settings, logging and errors

Usage:
    from skygate.shared.logging import get_logger

    logger = get_logger(__name__)
    logger.info("SKYGATE starting...")
"""

__version__ = "1.0.0"

from skygate.shared.logging import get_logger

from skygate.shared.errors import (
    SkyGateError,
    ConfigurationError,
    UntrustedKeyError,
    RegistrationTransportError,
    InvariantViolation,
)

__all__ = [
    "__version__",
    "get_logger",
    "SkyGateError",
    "ConfigurationError",
    "UntrustedKeyError",
    "RegistrationTransportError",
    "InvariantViolation",
]
