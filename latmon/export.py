"""CSV and chart persistence of flushed batches, and CSV merging."""

from __future__ import annotations

import csv
import logging
import os
from pathlib import Path
from typing import Iterable, Optional, TextIO

from latmon.chart import plot_chart
from latmon.config import BATCH_TIME_FORMAT, CHARTS_DIR, STATS_DIR
from latmon.errors import PersistenceError
from latmon.models import OutputColumns, safe_name
from latmon.stats import summarize

logger = logging.getLogger(__name__)


def write_csv(batch: OutputColumns, path: Path) -> int:
    """Write the aligned rows of *batch* to a new file at *path*.

    The header row holds the metric names; every following row holds one
    integer nanosecond value per metric.  Fails if *path* already exists.
    Returns the number of data rows written.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    rows = 0
    with open(path, "x", newline="") as f:
        writer = csv.writer(f, lineterminator="\n")
        writer.writerow(batch.names)
        for row in batch.rows():
            writer.writerow(row)
            rows += 1
    return rows


class Flusher:
    """Persists batches under ``<output_dir>/<target>/{stats,charts}/``.

    The CSV is written first and independently of the chart.  Failures are
    logged, never raised.
    """

    def __init__(self, output_dir: str | os.PathLike[str]) -> None:
        self.output_dir = Path(output_dir)

    def paths(self, batch: OutputColumns) -> tuple[Path, Path]:
        base = self.output_dir / safe_name(batch.name)
        stamp = batch.start.strftime(BATCH_TIME_FORMAT)
        return base / STATS_DIR / f"{stamp}.csv", base / CHARTS_DIR / f"{stamp}.html"

    def flush(self, batch: OutputColumns) -> tuple[Optional[Path], Optional[Path]]:
        """Write *batch*; return the paths actually written (``None`` for failures)."""
        csv_path, chart_path = self.paths(batch)
        wrote_csv: Optional[Path] = None
        wrote_chart: Optional[Path] = None

        try:
            rows = write_csv(batch, csv_path)
            wrote_csv = csv_path
            logger.info("%s: wrote %d rows to %s", batch.name, rows, csv_path)
        except OSError as exc:
            err = PersistenceError(f"{batch.name}: csv {csv_path}: {exc}")
            logger.error("%s; batch data lost", err)

        try:
            plot_chart(batch, chart_path)
            wrote_chart = chart_path
            logger.info("%s: wrote chart %s", batch.name, chart_path)
        except (OSError, ValueError) as exc:
            err = PersistenceError(f"{batch.name}: chart {chart_path}: {exc}")
            logger.error("%s; chart lost", err)

        self._log_summary(batch)
        return wrote_csv, wrote_chart

    @staticmethod
    def _log_summary(batch: OutputColumns) -> None:
        for name, st in summarize(batch).items():
            logger.info(
                "%s: %s n=%d min=%.3fms avg=%.3fms p95=%.3fms max=%.3fms jitter=%.3fms",
                batch.name, name, st.count, st.min, st.avg, st.p95, st.max, st.jitter,
            )


# ---------------------------------------------------------------------------
# Merging
# ---------------------------------------------------------------------------

def sort_by_mtime(paths: Iterable[str | os.PathLike[str]]) -> list[Path]:
    """Oldest file first."""
    return sorted((Path(p) for p in paths), key=lambda p: p.stat().st_mtime)


def merge_csv(paths: Iterable[Path], out: TextIO, progress=None) -> int:
    """Concatenate CSV files into *out*, keeping only the first file's header.

    *progress*, if given, is called with each path before it is merged.
    Returns the number of data rows written.
    """
    writer = csv.writer(out, lineterminator="\n")
    header: Optional[list[str]] = None
    rows = 0

    for path in paths:
        if progress is not None:
            progress(path)
        with open(path, newline="") as f:
            reader = csv.reader(f, skipinitialspace=True)
            first = next(reader, None)
            if first is None:
                continue

            if header is None:
                header = first
                writer.writerow(header)
            elif first != header:
                logger.warning("%s: header %s differs from %s", path, first, header)

            for row in reader:
                writer.writerow(row)
                rows += 1
    return rows
