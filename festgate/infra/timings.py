# festgate/infra/timings.py
from __future__ import annotations
import os
import time
from collections import deque
from typing import Deque, Dict, List
import statistics

import structlog
from fastapi import FastAPI

logger = structlog.get_logger(__name__)

# most recent samples kept per kind; older ones fall off
TIMINGS_WINDOW = int(os.environ.get("TIMINGS_WINDOW", "10000"))

# ------------ hot path: append only ------------
# one bounded deque per kind; no locks, single-threaded event loop
_TIMINGS: Dict[str, Deque[float]] = {}


def now_ts() -> float:
    # monotonic for durations
    return time.perf_counter()


def record_timing(kind: str, value: float) -> None:
    samples = _TIMINGS.get(kind)
    if samples is None:
        samples = deque(maxlen=TIMINGS_WINDOW)
        _TIMINGS[kind] = samples
    samples.append(float(value))


class timeit:
    """async usage:
        async with timeit("store.append_entry"):
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
        record_timing(self._kind, now_ts() - self._t0)


# ------------ stats only on demand ------------

def _mean_std(values: List[float]) -> tuple[float, float]:
    if not values:
        return 0.0, 0.0
    return (
        statistics.mean(values),
        statistics.stdev(values) if len(values) > 1 else 0.0
    )


def aggregates() -> List[Dict[str, float]]:
    out = []
    for kind, samples in sorted(_TIMINGS.items()):
        mean, std = _mean_std(list(samples))
        out.append({"kind": kind, "n": len(samples), "mean": mean,
                    "std": std})
    return out


def install_shutdown_log(app: FastAPI) -> None:
    @app.on_event("shutdown")
    async def _log_timings_on_shutdown():
        for rec in aggregates():
            logger.info("timing_aggregate", **rec)
