"""
SKYGATE control-plane primitives.

Everything the gateway needs to vouch for workers towards the control
plane: signed tokens, endpoint failover, the HTTP client and the per-session
registration state machine.
"""

from .client import ControlPlaneClient
from .coordinator import RegistrationCoordinator
from .endpoints import RandomEndpointPicker
from .models import RegistrationState, WorkerRegistration
from .tokens import TokenIssuer

__all__ = [
    "ControlPlaneClient",
    "RandomEndpointPicker",
    "RegistrationCoordinator",
    "RegistrationState",
    "TokenIssuer",
    "WorkerRegistration",
]
