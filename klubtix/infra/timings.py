from __future__ import annotations
import math
import time
from typing import Dict


class _Running:
    """Count, mean and sum of squared deviations (Welford)."""
    __slots__ = ("n", "mean", "m2")

    def __init__(self) -> None:
        self.n = 0
        self.mean = 0.0
        self.m2 = 0.0

    def add(self, value: float) -> None:
        self.n += 1
        delta = value - self.mean
        self.mean += delta / self.n
        self.m2 += delta * (value - self.mean)

    def std(self) -> float:
        # sample stdev
        return math.sqrt(self.m2 / (self.n - 1)) if self.n > 1 else 0.0


# ------------ hot path: O(1) per sample ------------
# one aggregate per kind; no locks, single-threaded event loop
_TIMINGS: Dict[str, _Running] = {}


def now_ts() -> float:
    # monotonic for durations
    return time.perf_counter()


def record_timing(kind: str, value: float) -> None:
    agg = _TIMINGS.get(kind)
    if agg is None:
        agg = _Running()
        _TIMINGS[kind] = agg
    agg.add(float(value))


class timeit:
    """async usage:
        async with timeit("gateway.create"):
            await fn()
    """
    __slots__ = ("_kind", "_t0")

    def __init__(self, kind: str):
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = now_ts()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        # failed steps are recorded under their own kind
        kind = self._kind if exc_type is None else f"{self._kind}.error"
        record_timing(kind, now_ts() - self._t0)


# ------------ read ------------

def snapshot() -> Dict[str, Dict[str, float]]:
    return {
        kind: {"n": agg.n, "mean": agg.mean, "std": agg.std()}
        for kind, agg in _TIMINGS.items()
    }


def reset() -> None:
    _TIMINGS.clear()
