"""
SKYGATE authentication primitives.

Everything needed to decide whether a key may connect and which team a
session belongs to. Nothing here touches the network.
"""

from .authenticator import AuthDecision, Authenticator, KeyAuthenticator
from .sessions import SessionRegistry
from .trust_store import TrustStore

__all__ = ["AuthDecision", "Authenticator", "KeyAuthenticator", "SessionRegistry", "TrustStore"]
