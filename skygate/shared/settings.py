"""
SKYGATE — Shared Settings

Central configuration for the gateway process.
Values come from environment variables (optionally a .env file) and can be
overridden by command-line flags in skygate.main.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, replace
from typing import Any, Mapping

from .errors import ConfigurationError, MissingOptionError


# =============================================================================
# Project Identity
# =============================================================================
PROJECT_NAME: str = "SKYGATE"
VERSION: str = "1.0.0"
ENV_PREFIX: str = "SKYGATE_"


# =============================================================================
# Defaults
# =============================================================================
# SSH listener
DEFAULT_BIND_IP: str = "0.0.0.0"
DEFAULT_BIND_PORT: int = 2222

# Address other web nodes use to reach forwarded worker ports
DEFAULT_PEER_ADDRESS: str = "127.0.0.1"

# Diagnostics side channel
DEFAULT_DEBUG_BIND_IP: str = "127.0.0.1"
DEFAULT_DEBUG_BIND_PORT: int = 2221

# Timings (seconds)
DEFAULT_HEARTBEAT_INTERVAL: float = 30.0
DEFAULT_CPR_INTERVAL: float = 1.0
DEFAULT_REQUEST_TIMEOUT: float = 10.0
DEFAULT_SHUTDOWN_TIMEOUT: float = 10.0
DEFAULT_HANDSHAKE_TIMEOUT: float = 30.0
DEFAULT_KEEPALIVE_INTERVAL: float = 15.0

DEFAULT_LOG_LEVEL: str = "INFO"


# =============================================================================
# Parsing helpers
# =============================================================================
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(raw: str | float | int) -> float:
    """
    Parse a duration into seconds.

    Accepts bare numbers (seconds) and unit strings such as ``500ms``,
    ``30s``, ``5m``, ``1h`` or compounds like ``1m30s``.
    """
    if isinstance(raw, (int, float)):
        return float(raw)

    text = raw.strip().lower()
    if not text:
        raise ConfigurationError("Empty duration")
    try:
        return float(text)
    except ValueError:
        pass

    total = 0.0
    pos = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text) or pos == 0:
        raise ConfigurationError(f"Invalid duration: {raw!r}")
    return total


def parse_team_keys(entries: list[str] | str) -> dict[str, str]:
    """Parse ``NAME:PATH`` entries (a list, or a comma-separated string)."""
    if isinstance(entries, str):
        entries = [item for item in entries.split(",")]

    teams: dict[str, str] = {}
    for entry in entries:
        entry = entry.strip()
        if not entry:
            continue
        name, sep, path = entry.partition(":")
        name, path = name.strip(), path.strip()
        if not sep or not name or not path:
            raise ConfigurationError(
                f"Invalid team authorized keys entry {entry!r} (expected NAME:PATH)"
            )
        if name in teams:
            raise ConfigurationError(f"Team {name!r} configured more than once")
        teams[name] = path
    return teams


def parse_list(raw: str) -> list[str]:
    """Split a comma-separated value, dropping blanks."""
    return [item.strip() for item in raw.split(",") if item.strip()]


# =============================================================================
# Settings object
# =============================================================================
@dataclass(frozen=True)
class GatewaySettings:
    """Resolved gateway configuration."""

    bind_ip: str = DEFAULT_BIND_IP
    bind_port: int = DEFAULT_BIND_PORT
    peer_address: str = DEFAULT_PEER_ADDRESS
    debug_bind_ip: str = DEFAULT_DEBUG_BIND_IP
    debug_bind_port: int = DEFAULT_DEBUG_BIND_PORT
    host_key_path: str | None = None
    authorized_keys_path: str | None = None
    team_authorized_keys: dict[str, str] = field(default_factory=dict)
    control_plane_urls: tuple[str, ...] = ()
    session_signing_key_path: str | None = None
    heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL
    cpr_interval: float = DEFAULT_CPR_INTERVAL
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT
    handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT
    keepalive_interval: float = DEFAULT_KEEPALIVE_INTERVAL
    log_level: str = DEFAULT_LOG_LEVEL
    cluster_name: str = ""

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "GatewaySettings":
        """Build settings from ``SKYGATE_*`` environment variables."""
        env = os.environ if environ is None else environ

        def get(name: str, default: str = "") -> str:
            return env.get(ENV_PREFIX + name, default).strip()

        def get_int(name: str, default: int) -> int:
            raw = get(name)
            if not raw:
                return default
            try:
                return int(raw)
            except ValueError:
                raise ConfigurationError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}")

        def get_duration(name: str, default: float) -> float:
            raw = get(name)
            return parse_duration(raw) if raw else default

        return cls(
            bind_ip=get("BIND_IP", DEFAULT_BIND_IP),
            bind_port=get_int("BIND_PORT", DEFAULT_BIND_PORT),
            peer_address=get("PEER_ADDRESS", DEFAULT_PEER_ADDRESS),
            debug_bind_ip=get("DEBUG_BIND_IP", DEFAULT_DEBUG_BIND_IP),
            debug_bind_port=get_int("DEBUG_BIND_PORT", DEFAULT_DEBUG_BIND_PORT),
            host_key_path=get("HOST_KEY") or None,
            authorized_keys_path=get("AUTHORIZED_KEYS") or None,
            team_authorized_keys=parse_team_keys(get("TEAM_AUTHORIZED_KEYS")),
            control_plane_urls=tuple(parse_list(get("CONTROL_PLANE_URLS"))),
            session_signing_key_path=get("SESSION_SIGNING_KEY") or None,
            heartbeat_interval=get_duration("HEARTBEAT_INTERVAL", DEFAULT_HEARTBEAT_INTERVAL),
            cpr_interval=get_duration("CPR_INTERVAL", DEFAULT_CPR_INTERVAL),
            request_timeout=get_duration("REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT),
            shutdown_timeout=get_duration("SHUTDOWN_TIMEOUT", DEFAULT_SHUTDOWN_TIMEOUT),
            handshake_timeout=get_duration("HANDSHAKE_TIMEOUT", DEFAULT_HANDSHAKE_TIMEOUT),
            keepalive_interval=get_duration("KEEPALIVE_INTERVAL", DEFAULT_KEEPALIVE_INTERVAL),
            log_level=get("LOG_LEVEL", DEFAULT_LOG_LEVEL),
            cluster_name=get("CLUSTER_NAME"),
        )

    def with_overrides(self, **overrides: Any) -> "GatewaySettings":
        """Return a copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def validate(self) -> "GatewaySettings":
        """Check required options; raises ConfigurationError."""
        if not self.host_key_path:
            raise MissingOptionError("host-key", ENV_PREFIX + "HOST_KEY")
        if not self.session_signing_key_path:
            raise MissingOptionError("session-signing-key", ENV_PREFIX + "SESSION_SIGNING_KEY")
        if not self.control_plane_urls:
            raise MissingOptionError("control-plane-url", ENV_PREFIX + "CONTROL_PLANE_URLS")
        for url in self.control_plane_urls:
            if not url.startswith(("http://", "https://")):
                raise ConfigurationError(f"Control plane URL must be http(s): {url!r}")
        for name in ("heartbeat_interval", "cpr_interval", "request_timeout", "handshake_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")
        if not 0 < self.bind_port < 65536:
            raise ConfigurationError(f"Invalid bind port: {self.bind_port}")
        return self

    @property
    def listen_address(self) -> tuple[str, int]:
        return self.bind_ip, self.bind_port

    @property
    def debug_address(self) -> tuple[str, int] | None:
        if not self.debug_bind_port:
            return None
        return self.debug_bind_ip, self.debug_bind_port

    @property
    def registration_ttl(self) -> float:
        """How long the control plane should keep a worker without heartbeats."""
        return self.heartbeat_interval * 2
