"""
SKYGATE — Shared Error Definitions

Common exceptions used across all SKYGATE components.
"""


class SkyGateError(Exception):
    """Base exception for all SKYGATE errors."""
    pass


# =============================================================================
# Configuration Errors
# =============================================================================
class ConfigurationError(SkyGateError):
    """Raised when required configuration is missing or invalid."""
    pass


class MissingOptionError(ConfigurationError):
    """Raised when a required option was given neither as flag nor env var."""
    def __init__(self, option: str, env_var: str):
        self.option = option
        self.env_var = env_var
        super().__init__(f"Missing required option: --{option} (or {env_var})")


class LoadError(ConfigurationError):
    """Raised when an authorized-keys file cannot be read or parsed."""
    def __init__(self, path: str, reason: str, line_number: int | None = None):
        self.path = path
        self.reason = reason
        self.line_number = line_number
        where = f"{path}:{line_number}" if line_number is not None else path
        super().__init__(f"Failed to load authorized keys from {where}: {reason}")


# =============================================================================
# Authentication Errors
# =============================================================================
class AuthenticationError(SkyGateError):
    """Base exception for authentication failures."""
    pass


class UntrustedKeyError(AuthenticationError):
    """Raised when an offered public key is in no trust list."""
    def __init__(self, fingerprint: str = ""):
        self.fingerprint = fingerprint
        super().__init__(f"Unknown public key {fingerprint}".rstrip())


# =============================================================================
# Integrity Errors
# =============================================================================
class InvariantViolation(SkyGateError):
    """Raised when internal state would become inconsistent (programming error)."""
    pass


class SessionRebindError(InvariantViolation):
    """Raised when a bound session is asked to bind to a different team."""
    def __init__(self, session_id: str, bound_team: str, requested_team: str):
        self.session_id = session_id
        self.bound_team = bound_team
        self.requested_team = requested_team
        super().__init__(
            f"Session {session_id} is bound to team {bound_team!r}, "
            f"refusing to rebind to {requested_team!r}"
        )


# =============================================================================
# Control Plane Errors
# =============================================================================
class ControlPlaneError(SkyGateError):
    """Base exception for control-plane interactions."""
    pass


class RegistrationTransportError(ControlPlaneError):
    """Raised when a registration, heartbeat or deregistration call fails."""
    def __init__(self, endpoint: str, reason: str, status: int | None = None):
        self.endpoint = endpoint
        self.reason = reason
        self.status = status
        super().__init__(f"Control plane call to {endpoint} failed: {reason}")


# =============================================================================
# Worker Command Errors
# =============================================================================
class WorkerCommandError(SkyGateError):
    """Raised when a worker sends a malformed command or payload."""
    pass


class UnknownCommandError(WorkerCommandError):
    """Raised when a worker requests a command the gateway does not offer."""
    def __init__(self, command: str):
        self.command = command
        super().__init__(f"Unknown command: {command}")
