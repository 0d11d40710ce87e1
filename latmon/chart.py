"""Interactive HTML line chart of one batch, rendered with pyecharts.

One smoothed series per metric in milliseconds, each with Max and Avg mark
lines, and a slider to zoom into a range of samples.
"""

from __future__ import annotations

from pathlib import Path

from pyecharts import options as opts
from pyecharts.charts import Line
from pyecharts.globals import ThemeType

from latmon.config import METRIC_LABELS
from latmon.models import OutputColumns
from latmon.stats import to_ms


def chart_series(batch: OutputColumns) -> list[tuple[str, list[float]]]:
    """(legend label, values in ms) for every metric of *batch*, over its aligned rows."""
    return [
        (METRIC_LABELS.get(name, name.upper()), [round(v, 3) for v in to_ms(batch.column(name))])
        for name in batch.names
    ]


def build_chart(batch: OutputColumns) -> Line:
    title = f"RTT for {batch.name}"
    line = Line(init_opts=opts.InitOpts(
        theme=ThemeType.WESTEROS,
        page_title=title,
        width="100%",
        height="70vh",
    ))
    line.add_xaxis([str(i) for i in range(batch.minlen)])

    for label, values in chart_series(batch):
        line.add_yaxis(
            label,
            values,
            is_smooth=True,
            symbol="diamond",
            symbol_size=5,
            label_opts=opts.LabelOpts(is_show=False),
            markline_opts=opts.MarkLineOpts(data=[
                opts.MarkLineItem(type_="max", name="Max"),
                opts.MarkLineItem(type_="average", name="Avg"),
            ]),
        )

    line.set_global_opts(
        title_opts=opts.TitleOpts(
            title=title,
            subtitle=f"Various protocol latencies, {batch.minlen} samples from "
                     f"{batch.start:%Y-%m-%d %H:%M:%S}",
        ),
        tooltip_opts=opts.TooltipOpts(trigger="item"),
        yaxis_opts=opts.AxisOpts(name="ms"),
        datazoom_opts=[opts.DataZoomOpts(type_="slider", range_start=0, range_end=100)],
    )
    return line


def plot_chart(batch: OutputColumns, path: Path) -> None:
    """Render *batch* as an HTML page at *path*; fails if *path* already exists."""
    page = build_chart(batch).render_embed()

    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "x", encoding="utf-8") as f:
        f.write(page)
