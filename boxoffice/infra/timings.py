# boxoffice/infra/timings.py
from __future__ import annotations
import statistics
import time
from collections import deque
from typing import Any, Deque, Dict, List

# kind -> most recent durations in seconds
_SAMPLES: Dict[str, Deque[float]] = {}

MAX_SAMPLES_PER_KIND = 10_000


def record_timing(kind: str, seconds: float) -> None:
    samples = _SAMPLES.get(kind)
    if samples is None:
        samples = _SAMPLES[kind] = deque(maxlen=MAX_SAMPLES_PER_KIND)
    samples.append(float(seconds))


class timeit:
    """Record how long the wrapped block took under `kind`.

        async with timeit("db.settle"):
            ...

    Failed blocks are recorded too, under `<kind>.error`.
    """
    __slots__ = ("kind", "started")

    def __init__(self, kind: str):
        self.kind = kind
        self.started = 0.0

    async def __aenter__(self):
        self.started = time.perf_counter()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        kind = self.kind if exc_type is None else f"{self.kind}.error"
        record_timing(kind, time.perf_counter() - self.started)
        return False


def _summarize(kind: str, samples: List[float]) -> Dict[str, Any]:
    if not samples:
        return {"kind": kind, "n": 0, "mean": 0.0, "p50": 0.0,
                "p95": 0.0, "max": 0.0}
    ordered = sorted(samples)
    p95 = ordered[min(len(ordered) - 1, int(len(ordered) * 0.95))]
    return {
        "kind": kind,
        "n": len(ordered),
        "mean": statistics.fmean(ordered),
        "p50": statistics.median(ordered),
        "p95": p95,
        "max": ordered[-1],
    }


def aggregates() -> List[Dict[str, Any]]:
    return [_summarize(kind, list(samples))
            for kind, samples in sorted(_SAMPLES.items())]


def reset() -> None:
    _SAMPLES.clear()
