"""Tests for per-target buffering and batch flushing."""

import threading

import pytest

from latmon.aggregate import Aggregator, HostStats
from latmon.models import HttpsResult, IcmpResult


def https(n):
    return HttpsResult(dns=n, tcp=n + 1, tls=n + 2, http=n + 3, e2e=n + 4)


@pytest.fixture
def flushed():
    return []


class TestBatchBoundary:
    def test_exactly_batch_size_appends_flush_once(self, flushed):
        agg = Aggregator("https:example.com:443", 3, on_flush=flushed.append)

        for i in range(3):
            agg.append(https(i * 10))

        assert len(flushed) == 1
        assert agg.flushes == 1
        assert agg.samples == 3
        assert len(agg.stats) == 0
        assert agg.stats.capacity == 3

        batch = flushed[0]
        assert batch.name == "https:example.com:443"
        assert batch.names == ["dns", "tcp", "tls", "http", "e2e"]
        assert batch.column("e2e") == [4, 14, 24]
        assert list(batch.rows())[1] == [10, 11, 12, 13, 14]

    def test_filling_sample_belongs_to_the_batch(self, flushed):
        agg = Aggregator("icmp:h", 2, on_flush=flushed.append)

        assert agg.append(IcmpResult(rtt=1)) is None
        batch = agg.append(IcmpResult(rtt=2))
        assert batch is flushed[0]
        assert batch.column("rtt") == [1, 2]

        assert agg.append(IcmpResult(rtt=3)) is None
        assert agg.stats.columns["rtt"] == [3]

    def test_two_full_batches_and_a_remainder(self, flushed):
        agg = Aggregator("icmp:h", 4, on_flush=flushed.append)

        for i in range(9):
            agg.append(IcmpResult(rtt=i))

        assert [b.column("rtt") for b in flushed] == [[0, 1, 2, 3], [4, 5, 6, 7]]
        assert agg.stats.columns["rtt"] == [8]

    def test_batch_size_one(self, flushed):
        agg = Aggregator("icmp:h", 1, on_flush=flushed.append)

        agg.append(IcmpResult(rtt=5))
        agg.append(IcmpResult(rtt=6))

        assert [b.column("rtt") for b in flushed] == [[5], [6]]

    def test_flushed_buffers_are_not_reused(self, flushed):
        agg = Aggregator("icmp:h", 2, on_flush=flushed.append)
        for i in range(4):
            agg.append(IcmpResult(rtt=i))

        first, second = flushed
        assert first.columns[0] is not second.columns[0]
        assert first.column("rtt") == [0, 1]

    def test_batch_start_is_reset_on_flush(self, flushed):
        agg = Aggregator("icmp:h", 1, on_flush=flushed.append)
        agg.append(IcmpResult(rtt=1))
        agg.append(IcmpResult(rtt=2))

        assert flushed[0].start <= flushed[1].start
        assert agg.stats.start >= flushed[1].start

    def test_invalid_batch_size(self):
        with pytest.raises(ValueError):
            Aggregator("icmp:h", 0)

    def test_no_callback(self):
        agg = Aggregator("icmp:h", 1)
        assert agg.append(IcmpResult(rtt=1)).column("rtt") == [1]


class TestMetrics:
    def test_plain_http_has_no_tls_column(self, flushed):
        agg = Aggregator("http:h:80", 1, on_flush=flushed.append)
        agg.append(HttpsResult(dns=1, tcp=2, http=3, e2e=4, encrypted=False))

        assert flushed[0].names == ["dns", "tcp", "http", "e2e"]

    def test_late_metric_gets_its_own_column(self):
        st = HostStats(["rtt"], 10)
        col = st.add_metric("extra")
        col.append(1)

        assert st.names == ["rtt", "extra"]
        # alignment length is that of the shortest column
        assert len(st) == 0

    def test_snapshot_swaps_in_empty_buffers(self):
        st = HostStats(["a", "b"], 10)
        st.columns["a"].extend([1, 2])
        st.columns["b"].extend([3])

        batch = st.snapshot("t")

        assert batch.minlen == 1
        assert list(batch.rows()) == [[1, 3]]
        assert st.columns == {"a": [], "b": []}


class TestConcurrency:
    def test_concurrent_appends_lose_and_duplicate_nothing(self, flushed):
        threads, per_thread, batch_size = 8, 1000, 100
        agg = Aggregator("icmp:h", batch_size, on_flush=flushed.append)

        def producer(base):
            for i in range(per_thread):
                agg.append(IcmpResult(rtt=base + i))

        workers = [threading.Thread(target=producer, args=(t * per_thread,)) for t in range(threads)]
        for w in workers:
            w.start()
        for w in workers:
            w.join()

        total = threads * per_thread
        assert agg.samples == total
        assert len(flushed) == total // batch_size
        assert all(len(b.column("rtt")) == batch_size for b in flushed)

        seen = [v for b in flushed for v in b.column("rtt")]
        assert sorted(seen) == list(range(total))
        assert len(agg.stats) == 0
