"""
SKYGATE — Control-plane endpoint selection

Uniform random choice across the configured control-plane URLs, plus the
failover helper that walks every endpoint at most once per attempt.
"""

from __future__ import annotations

import random
from typing import AbstractSet, Iterable, Sequence

from skygate.shared.errors import ConfigurationError


def pick(endpoints: Sequence[str], rng: random.Random) -> str:
    return rng.choice(endpoints)


def pick_excluding(
    endpoints: Sequence[str],
    tried: AbstractSet[str],
    rng: random.Random,
) -> str | None:
    """Pick uniformly among endpoints not in ``tried``; None once all were tried."""
    remaining = [endpoint for endpoint in endpoints if endpoint not in tried]
    if not remaining:
        return None
    return rng.choice(remaining)


class RandomEndpointPicker:
    """Stateless picker over a fixed endpoint list."""

    def __init__(self, endpoints: Iterable[str], rng: random.Random | None = None) -> None:
        unique = tuple(dict.fromkeys(url.rstrip("/") for url in endpoints if url.strip()))
        if not unique:
            raise ConfigurationError("At least one control plane endpoint is required")
        self._endpoints = unique
        # SystemRandom draws from os.urandom and is safe to share across tasks
        self._rng = rng or random.SystemRandom()

    @property
    def endpoints(self) -> tuple[str, ...]:
        return self._endpoints

    def pick(self) -> str:
        return pick(self._endpoints, self._rng)

    def pick_excluding(self, tried: AbstractSet[str]) -> str | None:
        return pick_excluding(self._endpoints, tried, self._rng)

    def __len__(self) -> int:
        return len(self._endpoints)
