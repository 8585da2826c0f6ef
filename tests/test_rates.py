"""Tests for counter rate helpers."""

from __future__ import annotations

import pytest

from asa_ssh_fleet.rates import CounterRateCache, to_mbps


def test_first_reading_is_zero():
    cache = CounterRateCache()
    assert cache.compute("eth", 1000, 2000, now=10.0) == (0.0, 0.0)


def test_rate_between_readings():
    cache = CounterRateCache()
    cache.compute("eth", 1000, 2000, now=10.0)
    rx, tx = cache.compute("eth", 3000, 2500, now=12.0)
    assert rx == pytest.approx(1000.0)
    assert tx == pytest.approx(250.0)


def test_counter_reset_is_clamped():
    cache = CounterRateCache()
    cache.compute("eth", 5000, 5000, now=1.0)
    assert cache.compute("eth", 10, 10, now=2.0) == (0.0, 0.0)


def test_keys_are_independent_and_resettable():
    cache = CounterRateCache()
    cache.compute("a", 0, 0, now=0.0)
    cache.compute("b", 100, 100, now=0.0)
    assert cache.compute("a", 100, 0, now=1.0)[0] == pytest.approx(100.0)
    cache.reset("b")
    assert cache.compute("b", 900, 900, now=1.0) == (0.0, 0.0)


def test_to_mbps():
    assert to_mbps(125_000) == 1.0
    assert to_mbps(0) == 0.0
