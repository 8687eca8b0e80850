"""Tests for control-plane endpoint picking."""

from __future__ import annotations

from collections import Counter
from pathlib import Path
import random
import sys

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from skygate.control_plane.endpoints import RandomEndpointPicker, pick_excluding
from skygate.shared.errors import ConfigurationError

ENDPOINTS = ("http://a:8080", "http://b:8080", "http://c:8080", "http://d:8080")


def test_pick_is_roughly_uniform() -> None:
    picker = RandomEndpointPicker(ENDPOINTS, rng=random.Random(1234))
    trials = 40_000
    counts = Counter(picker.pick() for _ in range(trials))

    assert set(counts) == set(ENDPOINTS)
    expected = trials / len(ENDPOINTS)
    for endpoint in ENDPOINTS:
        assert abs(counts[endpoint] - expected) < expected * 0.05


def test_pick_excluding_never_repeats_and_exhausts() -> None:
    rng = random.Random(99)
    for _ in range(200):
        tried: set[str] = set()
        order = []
        while True:
            endpoint = pick_excluding(ENDPOINTS, tried, rng)
            if endpoint is None:
                break
            assert endpoint not in tried
            tried.add(endpoint)
            order.append(endpoint)
        assert sorted(order) == sorted(ENDPOINTS)


def test_pick_excluding_with_all_tried() -> None:
    picker = RandomEndpointPicker(ENDPOINTS)
    assert picker.pick_excluding(set(ENDPOINTS)) is None
    assert picker.pick_excluding(set(ENDPOINTS[1:])) == ENDPOINTS[0]


def test_picker_normalizes_endpoints() -> None:
    picker = RandomEndpointPicker(["http://a:8080/", "http://a:8080", " ", "http://b:8080"])
    assert picker.endpoints == ("http://a:8080", "http://b:8080")
    assert len(picker) == 2


def test_picker_requires_endpoints() -> None:
    with pytest.raises(ConfigurationError):
        RandomEndpointPicker([])
