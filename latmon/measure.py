"""Measurement orchestration: pingers -> workers -> aggregators -> flusher.

Each target gets a pinger and a worker task.  The worker drains the
pinger's result queue into that target's :class:`Aggregator` until the
pinger signals the end of its results.  Completed batches are persisted by
detached background tasks that ``stop()`` does not wait for.

Public API:
    Measurer  -- owns every pinger/aggregator pair for a run
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from latmon.aggregate import Aggregator
from latmon.export import Flusher
from latmon.models import MonitorConfig, OutputColumns, Target
from latmon.pinger import Pinger, make_pinger

logger = logging.getLogger(__name__)


class Measurer:
    """Runs every registered pinger and funnels its results into batches."""

    def __init__(self, config: MonitorConfig, flusher: Optional[Flusher] = None) -> None:
        self.config = config
        self.flusher = flusher or Flusher(config.output_dir)
        self._pingers: dict[str, Pinger] = {}
        self._aggregators: dict[str, Aggregator] = {}
        self._workers: dict[str, asyncio.Task] = {}
        self._flushes: set[asyncio.Task] = set()

    @property
    def pingers(self) -> list[Pinger]:
        return list(self._pingers.values())

    def aggregator(self, name: str) -> Aggregator:
        return self._aggregators[name]

    def add(self, pinger: Pinger) -> Aggregator:
        """Register *pinger*; its target name must be unique."""
        name = pinger.name
        if name in self._pingers:
            raise ValueError(f"{name}: duplicate target")

        agg = Aggregator(name, self.config.batch_size, on_flush=self._schedule_flush)
        self._pingers[name] = pinger
        self._aggregators[name] = agg
        return agg

    def add_target(self, target: Target) -> Pinger:
        pinger = make_pinger(target, self.config.max_failures)
        self.add(pinger)
        return pinger

    def start(self) -> None:
        """Start every pinger and its worker."""
        for name, pinger in self._pingers.items():
            if name in self._workers:
                continue
            pinger.start()
            self._workers[name] = asyncio.create_task(
                self._worker(pinger, self._aggregators[name]),
                name=f"worker {name}",
            )
        logger.info(
            "measuring %d targets; batch size %d, output to %s",
            len(self._pingers), self.config.batch_size, self.flusher.output_dir,
        )

    async def wait(self) -> None:
        """Return once every pinger has exited, or raise the first pinger failure."""
        tasks = [p.task for p in self._pingers.values() if p.task is not None]
        if not tasks:
            return

        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()

    async def stop(self) -> None:
        """Stop all pingers, then wait for every worker to drain its queue."""
        await asyncio.gather(*(p.stop() for p in self._pingers.values()))
        await asyncio.gather(*self._workers.values())
        if self._flushes:
            logger.info("%d flushes still in progress at shutdown", len(self._flushes))
        logger.info("stopped measuring %d targets", len(self._pingers))

    async def _worker(self, pinger: Pinger, agg: Aggregator) -> None:
        while True:
            result = await pinger.results.get()
            if result is None:
                break
            # the pinger blocks until its queue is drained
            try:
                agg.append(result)
            except Exception:
                logger.exception("%s: dropping sample %s", agg.name, result)
        logger.debug("%s: worker done after %d samples", agg.name, agg.samples)

    def _schedule_flush(self, batch: OutputColumns) -> None:
        task = asyncio.create_task(
            asyncio.to_thread(self.flusher.flush, batch),
            name=f"flush {batch.name}",
        )
        self._flushes.add(task)
        task.add_done_callback(self._flush_done)

    def _flush_done(self, task: asyncio.Task) -> None:
        self._flushes.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("%s failed: %s", task.get_name(), task.exception())
