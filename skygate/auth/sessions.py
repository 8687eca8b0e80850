"""
SKYGATE — Session registry

Maps live SSH session ids to the team their key was trusted for.
Entries exist only between team-scoped authentication and session teardown.
"""

from __future__ import annotations

import logging
from threading import RLock

from skygate.shared.errors import SessionRebindError

logger = logging.getLogger("skygate.auth.sessions")


class SessionRegistry:
    """Thread-safe session id -> team mapping."""

    def __init__(self) -> None:
        self._teams: dict[str, str] = {}
        self._lock = RLock()

    def bind(self, session_id: str, team: str) -> None:
        """
        Bind a session to a team.

        Binding the same team again is a no-op. Binding a different team to a
        session that is still bound raises SessionRebindError.
        """
        with self._lock:
            bound = self._teams.get(session_id)
            if bound is None:
                self._teams[session_id] = team
                logger.debug("Bound session %s to team %s", session_id[:12], team)
                return
            if bound != team:
                raise SessionRebindError(session_id, bound, team)

    def lookup(self, session_id: str) -> str | None:
        with self._lock:
            return self._teams.get(session_id)

    def release(self, session_id: str) -> None:
        """Forget a session. Unknown sessions are ignored."""
        with self._lock:
            team = self._teams.pop(session_id, None)
        if team is not None:
            logger.debug("Released session %s (team %s)", session_id[:12], team)

    def snapshot(self) -> dict[str, str]:
        with self._lock:
            return dict(self._teams)

    def __len__(self) -> int:
        with self._lock:
            return len(self._teams)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._teams
