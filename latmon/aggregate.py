"""Per-target sample buffers and batch-triggered flushing."""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, Optional

from latmon.models import OutputColumns, PingResult

logger = logging.getLogger(__name__)

FlushCallback = Callable[[OutputColumns], None]


class HostStats:
    """One fixed-capacity buffer per metric for a single target.

    Buffers are never grown past ``capacity``; a full batch is swapped out
    for fresh, empty buffers by :meth:`snapshot`.
    """

    def __init__(self, names: list[str], capacity: int) -> None:
        self.capacity = capacity
        self.names = list(names)
        self.start = datetime.now()
        self.columns: dict[str, list[int]] = {n: [] for n in self.names}

    def __len__(self) -> int:
        return min((len(c) for c in self.columns.values()), default=0)

    def add_metric(self, name: str) -> list[int]:
        self.names.append(name)
        col = self.columns[name] = []
        return col

    def snapshot(self, target: str) -> OutputColumns:
        """Hand out the current buffers and start a new batch in their place."""
        batch = OutputColumns(
            name=target,
            start=self.start,
            names=list(self.names),
            columns=[self.columns[n] for n in self.names],
        )
        self.columns = {n: [] for n in self.names}
        self.start = datetime.now()
        return batch


class Aggregator:
    """Collects results for one target and emits a batch every *batch_size* samples.

    ``append`` may be called from any thread.  The lock covers only buffer
    mutation and the snapshot swap; ``on_flush`` runs after it is released.
    """

    def __init__(
        self,
        name: str,
        batch_size: int,
        on_flush: Optional[FlushCallback] = None,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.name = name
        self.batch_size = batch_size
        self.on_flush = on_flush
        self.samples = 0
        self.flushes = 0
        self._stats: Optional[HostStats] = None
        self._lock = threading.Lock()

    @property
    def stats(self) -> Optional[HostStats]:
        return self._stats

    def append(self, result: PingResult) -> Optional[OutputColumns]:
        """Record every metric of *result*; return the batch it completed, if any.

        The sample that fills the primary metric's buffer is the last sample
        of its batch.
        """
        metrics = result.metrics()
        batch: Optional[OutputColumns] = None

        with self._lock:
            st = self._stats
            if st is None:
                st = self._stats = HostStats(list(metrics), self.batch_size)

            for name, value in metrics.items():
                col = st.columns.get(name)
                if col is None:
                    col = st.add_metric(name)
                col.append(value)
            self.samples += 1

            if len(st.columns[result.primary]) >= st.capacity:
                batch = st.snapshot(self.name)
                self.flushes += 1

        if batch is not None:
            logger.info("%s: batch of %d samples complete", self.name, batch.minlen)
            if self.on_flush is not None:
                self.on_flush(batch)
        return batch
