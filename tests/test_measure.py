"""Tests for the pinger -> worker -> aggregator -> flusher pipeline."""

import asyncio
import threading

import pytest

from latmon.errors import TargetUnreachableError, TransportError
from latmon.export import Flusher
from latmon.measure import Measurer
from latmon.models import IcmpResult, MonitorConfig, PingState, Target
from latmon.pinger import HttpPinger, IcmpPinger, Pinger


class CountingPinger(Pinger):
    """Returns rtt=1, 2, 3, ... one per tick."""

    def __init__(self, host, interval=0.005):
        super().__init__(Target(host=host, scheme="icmp", interval=interval))
        self.n = 0

    async def ping(self):
        self.check(PingState.AWAITING_RESPONSE)
        self.n += 1
        return IcmpResult(rtt=self.n)


class DeadPinger(Pinger):
    def __init__(self, host, max_failures=1):
        super().__init__(Target(host=host, scheme="icmp", interval=0.005), max_failures)

    async def ping(self):
        raise TransportError("unreachable")


class RecordingFlusher(Flusher):
    def __init__(self):
        super().__init__(".")
        self.batches = []
        self.lock = threading.Lock()

    def flush(self, batch):
        with self.lock:
            self.batches.append(batch)
        return None, None


async def wait_until(cond, timeout=5.0):
    async def poll():
        while not cond():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout)


@pytest.fixture
def config():
    return MonitorConfig(interval=0.005, timeout=1, batch_size=3)


class TestPipeline:
    @pytest.mark.asyncio
    async def test_full_batches_reach_flusher_in_order(self, config):
        flusher = RecordingFlusher()
        m = Measurer(config, flusher=flusher)
        agg = m.add(CountingPinger("a"))

        m.start()
        await wait_until(lambda: agg.flushes >= 2)
        await m.stop()
        await wait_until(lambda: len(flusher.batches) >= 2)

        batches = sorted(flusher.batches, key=lambda b: b.column("rtt")[0])
        assert batches[0].column("rtt") == [1, 2, 3]
        assert batches[1].column("rtt") == [4, 5, 6]
        assert all(b.name == "icmp:a" for b in batches)

    @pytest.mark.asyncio
    async def test_no_appends_after_stop(self, config):
        m = Measurer(config, flusher=RecordingFlusher())
        pingers = [CountingPinger("a"), CountingPinger("b")]
        for p in pingers:
            m.add(p)

        m.start()
        await wait_until(lambda: all(p.n >= 2 for p in pingers))
        await m.stop()

        counts = {p.name: m.aggregator(p.name).samples for p in pingers}
        await asyncio.sleep(0.05)

        for p in pingers:
            assert p.state is PingState.STOPPED
            # every produced result was consumed, none after stop
            assert m.aggregator(p.name).samples == counts[p.name] == p.n

    @pytest.mark.asyncio
    async def test_unreachable_target_fails_wait(self, config):
        m = Measurer(config, flusher=RecordingFlusher())
        m.add(CountingPinger("healthy"))
        m.add(DeadPinger("dead"))

        m.start()
        with pytest.raises(TargetUnreachableError) as ei:
            await asyncio.wait_for(m.wait(), timeout=5)
        assert ei.value.target == "icmp:dead"

        await asyncio.wait_for(m.stop(), timeout=5)

    @pytest.mark.asyncio
    async def test_flush_errors_are_logged_not_raised(self, config, caplog):
        class BrokenFlusher(RecordingFlusher):
            def flush(self, batch):
                super().flush(batch)
                raise RuntimeError("boom")

        flusher = BrokenFlusher()
        m = Measurer(config, flusher=flusher)
        agg = m.add(CountingPinger("a"))

        m.start()
        await wait_until(lambda: agg.flushes >= 1)
        await wait_until(lambda: not m._flushes)
        await m.stop()

        assert "boom" in caplog.text

    @pytest.mark.asyncio
    async def test_unrecordable_sample_is_dropped_not_fatal(self, config, caplog):
        m = Measurer(config, flusher=RecordingFlusher())
        pinger = CountingPinger("a")
        agg = m.add(pinger)
        append = agg.append
        rejected = []

        def flaky_append(result):
            if not rejected:
                rejected.append(result)
                raise ValueError("bad sample")
            return append(result)

        agg.append = flaky_append

        m.start()
        await wait_until(lambda: agg.samples >= 3)
        await asyncio.wait_for(m.stop(), timeout=5)

        assert rejected == [IcmpResult(rtt=1)]
        assert agg.samples == pinger.n - 1
        assert "dropping sample" in caplog.text


class TestRegistration:
    def test_duplicate_target_rejected(self, config):
        m = Measurer(config, flusher=RecordingFlusher())
        m.add_target(Target.parse("https:example.com"))

        with pytest.raises(ValueError, match="duplicate"):
            m.add_target(Target.parse("https:example.com:443"))

    def test_add_target_picks_pinger(self, config):
        m = Measurer(config, flusher=RecordingFlusher())

        assert isinstance(m.add_target(Target.parse("icmp:192.0.2.1")), IcmpPinger)
        assert isinstance(m.add_target(Target.parse("http:example.com")), HttpPinger)
        assert [p.name for p in m.pingers] == ["icmp:192.0.2.1", "http:example.com:80"]
        assert m.aggregator("icmp:192.0.2.1").batch_size == 3

    def test_default_flusher_uses_output_dir(self, tmp_path):
        m = Measurer(MonitorConfig(output_dir=str(tmp_path)))
        assert m.flusher.output_dir == tmp_path

    @pytest.mark.asyncio
    async def test_wait_without_pingers(self, config):
        await Measurer(config, flusher=RecordingFlusher()).wait()
