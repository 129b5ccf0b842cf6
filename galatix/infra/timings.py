# galatix/infra/timings.py
from __future__ import annotations
import time
from collections import deque
from typing import Deque, Dict, List
import statistics

# the server runs for days between restarts; keep only the latest samples
WINDOW = 5000

# one ring buffer per kind; no locks, single-threaded event loop
_SAMPLES: Dict[str, Deque[float]] = {}
_COUNTS: Dict[str, int] = {}


def record_timing(kind: str, seconds: float) -> None:
    ring = _SAMPLES.get(kind)
    if ring is None:
        ring = _SAMPLES[kind] = deque(maxlen=WINDOW)
    ring.append(float(seconds))
    _COUNTS[kind] = _COUNTS.get(kind, 0) + 1


class timeit:
    """async usage:
        async with timeit("fulfillment"):
            await fulfill_order(db, order_id)

    Failed calls are recorded too.
    """
    __slots__ = ("_kind", "_t0")

    def __init__(self, kind: str):
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = time.perf_counter()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record_timing(self._kind, time.perf_counter() - self._t0)


def summary() -> List[Dict[str, float]]:
    """Aggregates over the current window, one row per kind.

    `n` counts the window, `total` every call since start (or `reset()`).
    """
    out = []
    for kind in sorted(_SAMPLES):
        vals = list(_SAMPLES[kind])
        std = statistics.stdev(vals) if len(vals) > 1 else 0.0
        out.append({
            "kind": kind,
            "n": len(vals),
            "total": _COUNTS.get(kind, 0),
            "mean": statistics.mean(vals) if vals else 0.0,
            "std": std,
        })
    return out


def reset() -> None:
    _SAMPLES.clear()
    _COUNTS.clear()
