"""Turn cumulative counters into per-second rates."""
from __future__ import annotations

from typing import Dict, Tuple

BITS_PER_MEGABIT = 1_000_000


class CounterRateCache:
    """Cache network RX/TX byte counters to calculate transfer rates."""

    def __init__(self) -> None:
        self._last: Dict[str, Tuple[int, int]] = {}
        self._last_ts: Dict[str, float] = {}

    def compute(self, key: str, rx: int, tx: int, now: float) -> Tuple[float, float]:
        """Update cache for *key* and return (rx, tx) in bytes/s.

        The first reading for a key yields zero. A counter that went backwards
        (interface reset, host reboot) also yields zero for that sample.
        """
        last = self._last.get(key)
        last_ts = self._last_ts.get(key)
        rx_rate = tx_rate = 0.0
        if last is not None and last_ts is not None:
            dt = max(1e-6, now - last_ts)
            rx_rate = max(0.0, (rx - last[0]) / dt)
            tx_rate = max(0.0, (tx - last[1]) / dt)
        self._last[key] = (rx, tx)
        self._last_ts[key] = now
        return rx_rate, tx_rate

    def reset(self, key: str) -> None:
        self._last.pop(key, None)
        self._last_ts.pop(key, None)


def to_mbps(bytes_per_second: float) -> float:
    return round(bytes_per_second * 8 / BITS_PER_MEGABIT, 3)
