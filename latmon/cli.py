"""CLI entry points for latmon."""

from __future__ import annotations

import asyncio
import csv
import logging
import logging.handlers
import os
import signal
import sys

import click

from latmon import __version__
from latmon.config import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_INTERVAL,
    DEFAULT_OUTPUT_DIR,
    DEFAULT_TIMEOUT,
    LOG_STDERR,
    LOG_SYSLOG,
)
from latmon.models import MonitorConfig, Target

logger = logging.getLogger("latmon")

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


@click.command()
@click.argument("targets", nargs=-1, required=True, metavar="PROTO:HOST[:PORT]...")
@click.option("-i", "--every", "interval", default=DEFAULT_INTERVAL, type=float,
              help="Send pings every I seconds", show_default=True)
@click.option("-t", "--timeout", default=DEFAULT_TIMEOUT, type=float,
              help="Per-phase deadline in seconds", show_default=True)
@click.option("-b", "--batch-size", default=DEFAULT_BATCH_SIZE, type=int,
              help="Collect B samples per measurement run", show_default=True)
@click.option("-d", "--output-dir", default=DEFAULT_OUTPUT_DIR,
              help="Put stats and charts in directory D", show_default=True)
@click.option("-L", "--log", "log_dest", default=LOG_STDERR,
              help=f"Send logs to destination L ({LOG_STDERR} for stderr, {LOG_SYSLOG}, or a file)",
              show_default=True)
@click.option("--log-level", default="INFO", type=click.Choice(LOG_LEVELS, case_sensitive=False),
              help="Log at priority P", show_default=True)
@click.version_option(version=__version__)
def main(
    targets: tuple[str, ...],
    interval: float,
    timeout: float,
    batch_size: int,
    output_dir: str,
    log_dest: str,
    log_level: str,
) -> None:
    """Per-phase network latency monitor.

    Pings every TARGET (http:HOST[:PORT], https:HOST[:PORT] or icmp:HOST)
    on a fixed cadence, timing DNS, TCP, TLS and HTTP separately, and writes
    each batch of samples as a CSV file and an HTML chart.
    """
    from latmon.display import render_error, render_targets, render_warning

    try:
        config = MonitorConfig(
            interval=interval,
            timeout=timeout,
            batch_size=batch_size,
            output_dir=output_dir,
        )
    except ValueError as exc:
        render_error(str(exc))
        sys.exit(1)

    try:
        setup_logging(log_dest, log_level)
    except OSError as exc:
        render_error(f"can't create logger: {exc}")
        sys.exit(1)

    parsed: list[Target] = []
    seen: set[str] = set()
    for spec in targets:
        try:
            target = config.target(spec)
        except ValueError as exc:
            render_error(str(exc))
            sys.exit(1)
        if target.name in seen:
            render_warning(f"{target.name} - duplicate; skipping ..")
            continue
        seen.add(target.name)
        parsed.append(target)

    render_targets(parsed, config)
    logger.info(
        "Starting latency monitor [%s]; batchsize=%d interval=%ss timeout=%ss",
        __version__, config.batch_size, config.interval, config.timeout,
    )

    try:
        rc = asyncio.run(_run(config, parsed))
    except KeyboardInterrupt:
        from latmon.display import err_console
        err_console.print("\n[yellow]Interrupted.[/yellow]")
        sys.exit(130)

    sys.exit(rc)


async def _run(config: MonitorConfig, targets: list[Target]) -> int:
    """Run until a signal arrives or a target becomes unreachable; return the exit status."""
    from latmon.errors import TargetUnreachableError
    from latmon.measure import Measurer

    m = Measurer(config)
    for t in targets:
        m.add_target(t)

    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for name in ("SIGTERM", "SIGINT", "SIGHUP"):
        sig = getattr(signal, name, None)
        if sig is not None:
            loop.add_signal_handler(sig, stop.set)

    m.start()
    waiter = asyncio.create_task(m.wait())
    stopper = asyncio.create_task(stop.wait())

    rc = 0
    try:
        await asyncio.wait({waiter, stopper}, return_when=asyncio.FIRST_COMPLETED)
        if waiter.done():
            try:
                waiter.result()
            except TargetUnreachableError as exc:
                logger.critical("%s. Exiting!", exc)
                rc = 1
            except Exception:
                logger.exception("Pinger died unexpectedly. Exiting!")
                rc = 1
        else:
            logger.info("Caught signal; Terminating ..")
    finally:
        waiter.cancel()
        stopper.cancel()
        await m.stop()
    return rc


def setup_logging(dest: str, level: str) -> None:
    """Route the root logger to stderr, syslog or a file."""
    handler: logging.Handler
    if dest == LOG_STDERR:
        handler = logging.StreamHandler()
    elif dest.upper() == LOG_SYSLOG:
        address = "/dev/log" if os.path.exists("/dev/log") else ("localhost", 514)
        handler = logging.handlers.SysLogHandler(address=address)
    else:
        handler = logging.FileHandler(dest, encoding="utf-8")

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[handler],
    )


@click.command()
@click.argument("files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option("-o", "--output", default="-", help="Write output to file F", show_default=True)
@click.version_option(version=__version__)
def merge_main(files: tuple[str, ...], output: str) -> None:
    """Merge one or more latmon CSV files, oldest first."""
    from latmon.display import err_console, render_error
    from latmon.export import merge_csv, sort_by_mtime

    def progress(path) -> None:
        err_console.print(f"+ {path} ..")

    paths = sort_by_mtime(files)
    try:
        if output == "-":
            merge_csv(paths, sys.stdout, progress)
        else:
            with open(output, "x", newline="") as out:
                merge_csv(paths, out, progress)
    except (OSError, csv.Error) as exc:
        render_error(str(exc))
        sys.exit(1)


if __name__ == "__main__":
    main()
