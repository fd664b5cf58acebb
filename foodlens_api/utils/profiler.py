"""Per-region stage timings for scan requests.

Each region gets a ``RegionTiming`` tagged with its request id and index.
When the region reaches a terminal status the timing is handed back to the
``StageProfiler``, which logs a per-region line and, every N regions, a
rolling summary of stage latencies and terminal statuses.
"""

from __future__ import annotations

from collections import Counter, deque
from contextlib import contextmanager
import time
from typing import Iterator

import numpy as np


class RegionTiming:
    def __init__(self, request_id: str, index: int):
        self.request_id = request_id
        self.index = index
        self.stages_ms: dict[str, float] = {}

    @contextmanager
    def stage(self, name: str) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            self.stages_ms[name] = self.stages_ms.get(name, 0.0) + (time.perf_counter() - start) * 1000.0

    @property
    def total_ms(self) -> float:
        return sum(self.stages_ms.values())

    @property
    def slowest_stage(self) -> str | None:
        if not self.stages_ms:
            return None
        return max(self.stages_ms, key=self.stages_ms.__getitem__)


class StageProfiler:
    def __init__(self, *, enable: bool, every_n_regions: int, logger, window: int = 200):
        self.enable = bool(enable)
        self.every_n_regions = max(1, int(every_n_regions))
        self.logger = logger
        self.window = max(1, int(window))
        self.region_count = 0
        self.stage_stats: dict[str, deque[float]] = {}
        self.status_counts: Counter[str] = Counter()

    def start(self, request_id: str, index: int) -> RegionTiming | None:
        """None when profiling is off; callers then skip timing entirely."""
        if not self.enable:
            return None
        return RegionTiming(request_id, index)

    def finish(self, timing: RegionTiming | None, status: str) -> None:
        if timing is None:
            return
        self.region_count += 1
        self.status_counts[status] += 1
        for name, ms in timing.stages_ms.items():
            self.stage_stats.setdefault(name, deque(maxlen=self.window)).append(ms)

        self.logger.debug(
            "[PROF] request=%s index=%d status=%s total_ms=%.1f slowest=%s stages=%s",
            timing.request_id,
            timing.index,
            status,
            timing.total_ms,
            timing.slowest_stage or "-",
            ",".join(f"{k}:{v:.1f}" for k, v in sorted(timing.stages_ms.items())),
        )
        if self.region_count % self.every_n_regions == 0:
            self.logger.info(
                "[PROF] regions=%d stages(avg/p95 ms)=%s statuses=%s",
                self.region_count,
                ",".join(f"{name}:{avg:.1f}/{p95:.1f}" for name, (avg, p95) in sorted(self.summary().items())),
                ",".join(f"{k}:{v}" for k, v in sorted(self.status_counts.items())),
            )

    def summary(self) -> dict[str, tuple[float, float]]:
        """``{stage: (avg_ms, p95_ms)}`` over the rolling window."""
        out: dict[str, tuple[float, float]] = {}
        for name, values in self.stage_stats.items():
            samples = np.fromiter(values, dtype=np.float64)
            out[name] = (float(samples.mean()), float(np.percentile(samples, 95)))
        return out
