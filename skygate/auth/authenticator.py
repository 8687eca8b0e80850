"""
SKYGATE — Authenticator

Decides whether an offered public key may open a session and, for team keys,
which team the session acts for.

Decision order (first match wins):
1. global key    -> accept, no team
2. team key      -> accept, session bound to that team
3. anything else -> UntrustedKeyError
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from skygate.auth.keys import fingerprint
from skygate.auth.sessions import SessionRegistry
from skygate.auth.trust_store import TrustStore
from skygate.shared.errors import UntrustedKeyError

logger = logging.getLogger("skygate.auth")


@dataclass(frozen=True)
class AuthDecision:
    """Outcome of a successful key check."""

    accepted: bool
    team: str | None = None

    @property
    def is_team_scoped(self) -> bool:
        return self.team is not None


class Authenticator(ABC):
    """Trust decision for public keys, independent of the SSH library."""

    @abstractmethod
    def check(self, key: bytes) -> AuthDecision:
        """Evaluate ``key`` without recording anything. Raises UntrustedKeyError."""

    @abstractmethod
    def authenticate(self, session_id: str, key: bytes) -> AuthDecision:
        """Evaluate ``key`` for ``session_id`` and record any team binding."""


class KeyAuthenticator(Authenticator):
    """Authenticator backed by a TrustStore and a SessionRegistry."""

    def __init__(self, trust_store: TrustStore, sessions: SessionRegistry) -> None:
        self.trust_store = trust_store
        self.sessions = sessions

    def check(self, key: bytes) -> AuthDecision:
        if self.trust_store.is_globally_trusted(key):
            return AuthDecision(accepted=True)

        team = self.trust_store.matching_tenant(key)
        if team is not None:
            return AuthDecision(accepted=True, team=team)

        raise UntrustedKeyError(fingerprint(key))

    def authenticate(self, session_id: str, key: bytes) -> AuthDecision:
        decision = self.check(key)
        if not decision.is_team_scoped:
            logger.info("Accepted global key %s (session=%s)", fingerprint(key), session_id[:12])
            return decision

        # First team match wins; a session is never moved to another team
        bound = self.sessions.lookup(session_id)
        if bound is not None:
            return AuthDecision(accepted=True, team=bound)

        self.sessions.bind(session_id, decision.team)
        logger.info(
            "Accepted team key %s (session=%s team=%s)",
            fingerprint(key),
            session_id[:12],
            decision.team,
        )
        return decision
