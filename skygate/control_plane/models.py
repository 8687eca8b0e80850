"""
SKYGATE — Control-plane data models

Registration state machine states and the per-session worker record.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class RegistrationState(str, Enum):
    """Lifecycle of one session's worker registration."""
    IDLE = "idle"
    REGISTERING = "registering"
    REGISTERED = "registered"
    DEREGISTERING = "deregistering"
    CLOSED = "closed"


@dataclass
class WorkerRegistration:
    """A connected worker, alive for as long as its SSH session."""

    session_id: str
    team: str | None
    forward_address: str
    worker: dict[str, Any] = field(default_factory=dict)
    baggageclaim_url: str | None = None
    registered_at: str = field(default_factory=_utc_now)

    @property
    def name(self) -> str:
        return str(self.worker.get("name", ""))

    def to_payload(self) -> dict[str, Any]:
        """Body of the control-plane registration call."""
        payload = dict(self.worker)
        payload["addr"] = self.forward_address
        if self.baggageclaim_url:
            payload["baggageclaim_url"] = self.baggageclaim_url
        if self.team is not None:
            payload["team"] = self.team
        return payload

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "team": self.team,
            "worker": self.name,
            "forward_address": self.forward_address,
            "baggageclaim_url": self.baggageclaim_url,
            "registered_at": self.registered_at,
        }
