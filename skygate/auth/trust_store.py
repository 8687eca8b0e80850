"""
SKYGATE — Trust store

Global and per-team authorized keys. Loaded once at startup and never
mutated afterwards, so lookups need no locking.
"""

from __future__ import annotations

from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping

from skygate.auth.keys import load_authorized_keys


class TrustStore:
    """Immutable set of trusted public keys (raw SSH key blobs)."""

    def __init__(
        self,
        global_keys: Iterable[bytes] = (),
        team_keys: Mapping[str, Iterable[bytes]] | None = None,
    ) -> None:
        self._global_keys = frozenset(bytes(k) for k in global_keys)
        # Sorted by team name so matching_tenant is deterministic
        teams = team_keys or {}
        self._team_keys: Mapping[str, frozenset[bytes]] = MappingProxyType({
            team: frozenset(bytes(k) for k in teams[team])
            for team in sorted(teams)
        })

    @classmethod
    def load(
        cls,
        authorized_keys_path: str | Path | None = None,
        team_authorized_keys: Mapping[str, str | Path] | None = None,
    ) -> "TrustStore":
        """Load keys from authorized_keys files. Raises LoadError."""
        global_keys: list[bytes] = []
        if authorized_keys_path:
            global_keys = load_authorized_keys(authorized_keys_path)

        team_keys = {
            team: load_authorized_keys(path)
            for team, path in (team_authorized_keys or {}).items()
        }
        return cls(global_keys, team_keys)

    @property
    def global_keys(self) -> frozenset[bytes]:
        return self._global_keys

    @property
    def team_keys(self) -> Mapping[str, frozenset[bytes]]:
        return self._team_keys

    @property
    def teams(self) -> list[str]:
        return list(self._team_keys)

    def is_empty(self) -> bool:
        return not self._global_keys and not any(self._team_keys.values())

    def is_globally_trusted(self, key: bytes) -> bool:
        return key in self._global_keys

    def matching_tenant(self, key: bytes) -> str | None:
        """Return the first team whose key set contains ``key``."""
        for team, keys in self._team_keys.items():
            if key in keys:
                return team
        return None

    def __repr__(self) -> str:
        return (
            f"TrustStore(global_keys={len(self._global_keys)}, "
            f"teams={self.teams})"
        )
