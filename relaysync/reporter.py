from __future__ import annotations

from typing import Optional

from rich import box
from rich.console import Console
from rich.table import Table

from relaysync.synchronizer import SyncReport, SyncState


def _format_bytes(value: Optional[int]) -> str:
    if value is None:
        return "N/A"
    if value >= 1024 * 1024:
        return f"{value / (1024 * 1024):.2f} MB"
    if value >= 1024:
        return f"{value / 1024:.1f} KB"
    return f"{value} B"


def print_report(report: SyncReport, console: Optional[Console] = None) -> None:
    """
    Render a sync report as a rich table, one row per emitted file.
    """
    console = console or Console()

    if not report.results:
        console.print(f"[yellow]No files written ({report.state.value}).[/yellow]")
        if report.error is not None:
            console.print(f"[red]{report.error}[/red]")
        return

    status_style = "bold green" if report.state is SyncState.COMPLETED else "bold red"
    title = f"relaysync [{status_style}]{report.state.value.upper()}[/{status_style}]"
    caption_parts = [f"{report.duration_seconds:.2f}s"]
    if report.profile is not None:
        caption_parts.append(f"peak RSS {_format_bytes(report.profile.peak_rss_bytes)}")
    table = Table(title=title, box=box.ROUNDED, caption=" │ ".join(caption_parts))

    table.add_column("Emitter", style="cyan", no_wrap=True)
    table.add_column("Path", style="magenta")
    table.add_column("Lines", justify="right", style="green")
    table.add_column("Size", justify="right", style="yellow")
    table.add_column("Duration (s)", justify="right", style="blue")
    table.add_column("Status", justify="left")

    for res in report.results:
        error = res.get("error")
        table.add_row(
            res.get("emitter", "Unknown"),
            res.get("path", ""),
            f"{res.get('lines', 0):,}" if not error else "-",
            _format_bytes(res.get("bytes")) if not error else "-",
            f"{res.get('duration_seconds', 0.0):.3f}" if not error else "-",
            f"[red]{error}[/red]" if error else "[green]ok[/green]",
        )

    console.print(table)
