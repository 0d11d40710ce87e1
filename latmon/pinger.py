"""Pingers: one loop per target, one result per tick.

A pinger ticks every ``target.interval`` seconds (first tick immediately),
runs one complete attempt per tick, and hands the result to a depth-1
queue.  A full queue blocks the pinger until the consumer catches up.  When
the loop exits for any reason it puts ``None`` on the queue so the consumer
knows no more results will follow.

Failed attempts are retried on the next tick.  More than ``max_failures``
failures in a row end the loop with :class:`TargetUnreachableError`; what
to do about that is left to whoever awaits the loop task.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from typing import Optional

from icmplib import async_ping
from icmplib.exceptions import ICMPLibError

from latmon.config import MAX_CONSECUTIVE_FAILURES, PING_METHOD, USER_AGENT
from latmon.errors import (
    PingCancelled,
    ProtocolError,
    TargetUnreachableError,
    TransportError,
)
from latmon.models import HttpsResult, IcmpResult, PingResult, PingState, Target
from latmon.nhttp import Client, Request

logger = logging.getLogger(__name__)


class Pinger(abc.ABC):
    """Base class that each kind of pinger must implement."""

    def __init__(self, target: Target, max_failures: int = MAX_CONSECUTIVE_FAILURES) -> None:
        self.target = target
        self.max_failures = max_failures
        self.state = PingState.IDLE
        self.failures = 0
        self.results: asyncio.Queue[Optional[PingResult]] = asyncio.Queue(maxsize=1)
        self.task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()

    @property
    def name(self) -> str:
        return self.target.name

    @abc.abstractmethod
    async def ping(self) -> PingResult:
        """Run one attempt and return its measurements.

        Implementations call :meth:`check` right before every blocking
        network call and raise :class:`TransportError` or
        :class:`ProtocolError` on failure.
        """

    def check(self, state: PingState) -> None:
        """Move to *state*, or abort the attempt if a stop was requested."""
        if self._stop.is_set():
            raise PingCancelled(self.name)
        self.state = state

    def start(self) -> asyncio.Task:
        if self.task is None:
            logger.info(
                "starting %s pinger: %s, every %ss, timeout %ss",
                self.target.scheme, self.name, self.target.interval, self.target.timeout,
            )
            self.task = asyncio.create_task(self.run(), name=f"ping {self.name}")
        return self.task

    async def stop(self) -> None:
        """Ask the loop to stop and wait until it has exited."""
        self._stop.set()
        if self.task is not None:
            await asyncio.wait([self.task])
        logger.info("stopped %s pinger: %s", self.target.scheme, self.name)

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        try:
            while not self._stop.is_set():
                self.state = PingState.IDLE
                logger.debug("ping %s ..", self.name)
                try:
                    result = await self.ping()
                except PingCancelled:
                    break
                except (TransportError, ProtocolError) as exc:
                    self.failures += 1
                    if self.failures > self.max_failures:
                        logger.warning("%s: %s; too many errors. Bailing ..", self.name, exc)
                        raise TargetUnreachableError(self.name, self.failures, exc) from exc
                    logger.warning("%s: %s (%d consecutive)", self.name, exc, self.failures)
                else:
                    self.failures = 0
                    self.state = PingState.MEASURING
                    logger.debug("%s: %s", self.name, result)
                    await self.results.put(result)

                # a late attempt delays the next tick; it never drops one
                self.state = PingState.SLEEPING
                next_tick += self.target.interval
                now = loop.time()
                if next_tick < now:
                    next_tick = now
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=next_tick - now)
                except asyncio.TimeoutError:
                    pass
        finally:
            self.state = PingState.STOPPED
            await self.results.put(None)


class HttpPinger(Pinger):
    """Times a ``HEAD`` request over a fresh connection on every tick."""

    def __init__(
        self,
        target: Target,
        max_failures: int = MAX_CONSECUTIVE_FAILURES,
        client: Optional[Client] = None,
    ) -> None:
        super().__init__(target, max_failures)
        self.client = client or Client(target.timeout)

    async def ping(self) -> HttpsResult:
        req = Request(PING_METHOD, self.target.url)
        req.headers.add("User-Agent", USER_AGENT)
        req.headers.add("Connection", "close")

        resp = await self.client.do(req, check=self.check)

        # the body is never read; only the headers are timed
        resp.close()
        return HttpsResult(
            dns=resp.dns,
            tcp=resp.tcp,
            tls=resp.tls,
            http=resp.http,
            e2e=resp.e2e,
            encrypted=self.target.encrypted,
        )


class IcmpPinger(Pinger):
    """Sends a single unprivileged ICMP echo on every tick, via icmplib."""

    async def ping(self) -> IcmpResult:
        self.check(PingState.AWAITING_RESPONSE)
        try:
            host = await async_ping(
                self.target.host,
                count=1,
                timeout=self.target.timeout,
                privileged=False,
            )
        except (ICMPLibError, OSError) as exc:
            raise TransportError(f"icmp: {self.target.host}: {exc}") from exc

        if not host.is_alive:
            raise TransportError(
                f"icmp: {self.target.host}: no reply within {self.target.timeout}s"
            )
        return IcmpResult(rtt=int(host.avg_rtt * 1_000_000))


def make_pinger(target: Target, max_failures: int = MAX_CONSECUTIVE_FAILURES) -> Pinger:
    """Instantiate the pinger matching *target*'s scheme."""
    if target.scheme == "icmp":
        return IcmpPinger(target, max_failures)
    return HttpPinger(target, max_failures)
