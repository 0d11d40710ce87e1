"""Rich terminal output for latmon."""

from __future__ import annotations

from rich.console import Console
from rich.table import Table

from latmon.models import MonitorConfig, Target

err_console = Console(stderr=True)


def render_targets(targets: list[Target], config: MonitorConfig) -> None:
    """Show what is about to be measured."""
    table = Table(show_header=True, expand=False, border_style="dim")
    table.add_column("Target", style="bold")
    table.add_column("Proto")
    table.add_column("Port", justify="right")
    table.add_column("Every", justify="right")
    table.add_column("Timeout", justify="right")

    for t in targets:
        port = "-" if t.scheme == "icmp" else str(t.port)
        table.add_row(t.host, t.scheme, port, f"{t.interval:g}s", f"{t.timeout:g}s")

    err_console.print(table)
    err_console.print(
        f"[dim]batch size {config.batch_size}, output to {config.output_dir}[/dim]"
    )


def render_error(message: str) -> None:
    err_console.print(f"[bold red]Error:[/bold red] {message}")


def render_warning(message: str) -> None:
    err_console.print(f"[yellow]Warning:[/yellow] {message}")
