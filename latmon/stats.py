"""Per-metric summary of a flushed batch, logged alongside the CSV."""

from __future__ import annotations

import math
from typing import Sequence

from latmon.models import LatencyStats, OutputColumns

NS_PER_MS = 1_000_000


def to_ms(values: Sequence[int]) -> list[float]:
    """Nanoseconds to milliseconds."""
    return [v / NS_PER_MS for v in values]


def percentile(ordered: Sequence[float], pct: float) -> float:
    """Linearly interpolated percentile of already-sorted *ordered*."""
    if len(ordered) == 1:
        return ordered[0]
    pos = (len(ordered) - 1) * pct / 100
    lo = math.floor(pos)
    hi = math.ceil(pos)
    if lo == hi:
        return ordered[lo]
    return ordered[lo] + (ordered[hi] - ordered[lo]) * (pos - lo)


def jitter(samples: Sequence[float]) -> float:
    """Mean absolute change between consecutive samples, in arrival order."""
    if len(samples) < 2:
        return 0.0
    return sum(abs(b - a) for a, b in zip(samples, samples[1:])) / (len(samples) - 1)


def compute_stats(samples: Sequence[float]) -> LatencyStats:
    """Summarize *samples* (milliseconds); an empty series gives an all-zero result."""
    n = len(samples)
    if n == 0:
        return LatencyStats()

    ordered = sorted(samples)
    mean = math.fsum(ordered) / n
    spread = math.sqrt(math.fsum((v - mean) ** 2 for v in ordered) / n)

    return LatencyStats(
        count=n,
        min=round(ordered[0], 3),
        max=round(ordered[-1], 3),
        avg=round(mean, 3),
        median=round(percentile(ordered, 50), 3),
        p95=round(percentile(ordered, 95), 3),
        stdev=round(spread, 3),
        jitter=round(jitter(samples), 3),
    )


def summarize(batch: OutputColumns) -> dict[str, LatencyStats]:
    """Stats for every metric of *batch*, over its aligned rows only."""
    return {name: compute_stats(to_ms(batch.column(name))) for name in batch.names}
