"""
SKYGATE — Token issuer

Signs JWTs that tell the control plane which team a registration call acts
for. The control plane verifies them with the public half of the session
signing key and applies its own acceptance window based on ``iat``.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Callable

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa

from skygate.shared.errors import ConfigurationError

logger = logging.getLogger("skygate.control.tokens")

ISSUER = "skygate"

_EC_ALGORITHMS = {
    "secp256r1": "ES256",
    "secp384r1": "ES384",
    "secp521r1": "ES512",
}


def _algorithm_for(private_key: Any) -> str:
    if isinstance(private_key, rsa.RSAPrivateKey):
        if private_key.key_size < 2048:
            raise ConfigurationError(
                f"Session signing key too small ({private_key.key_size} bits, need 2048)"
            )
        return "RS256"
    if isinstance(private_key, ec.EllipticCurvePrivateKey):
        algorithm = _EC_ALGORITHMS.get(private_key.curve.name)
        if algorithm is None:
            raise ConfigurationError(f"Unsupported EC curve for signing: {private_key.curve.name}")
        return algorithm
    if isinstance(private_key, ed25519.Ed25519PrivateKey):
        return "EdDSA"
    raise ConfigurationError(f"Unsupported session signing key type: {type(private_key).__name__}")


class TokenIssuer:
    """Issues signed team assertions."""

    def __init__(self, private_key: Any, clock: Callable[[], float] = time.time) -> None:
        self._algorithm = _algorithm_for(private_key)
        self._private_key = private_key
        self._clock = clock

        # Fail at startup rather than on the first heartbeat
        try:
            jwt.encode({"iss": ISSUER}, private_key, algorithm=self._algorithm)
        except (jwt.PyJWTError, ValueError, TypeError) as exc:
            raise ConfigurationError(f"Session signing key cannot sign tokens: {exc}") from exc

    @classmethod
    def from_pem(cls, data: bytes, clock: Callable[[], float] = time.time) -> "TokenIssuer":
        try:
            private_key = serialization.load_pem_private_key(data, password=None)
        except (ValueError, TypeError) as exc:
            raise ConfigurationError(f"Invalid session signing key: {exc}") from exc
        return cls(private_key, clock=clock)

    @classmethod
    def from_pem_file(cls, path: str | Path, clock: Callable[[], float] = time.time) -> "TokenIssuer":
        try:
            data = Path(path).read_bytes()
        except OSError as exc:
            raise ConfigurationError(f"Cannot read session signing key {path}: {exc}") from exc
        issuer = cls.from_pem(data, clock=clock)
        logger.info("Loaded session signing key %s (%s)", path, issuer.algorithm)
        return issuer

    @property
    def algorithm(self) -> str:
        return self._algorithm

    def issue(self, team: str | None, worker_name: str | None = None) -> str:
        """
        Sign an assertion for ``team``.

        Sessions authenticated with a global key pass ``team=None`` and get a
        system token instead.
        """
        claims: dict[str, Any] = {
            "iss": ISSUER,
            "iat": int(self._clock()),
            "system": team is None,
        }
        if team is not None:
            claims["team"] = team
        if worker_name:
            claims["worker"] = worker_name
        return jwt.encode(claims, self._private_key, algorithm=self._algorithm)

    def public_key_pem(self) -> str:
        """PEM of the verification key, for configuring the control plane."""
        return self._private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("ascii")
