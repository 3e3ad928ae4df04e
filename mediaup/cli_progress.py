"""Console rendering and progress helpers for the mediaup CLI."""
from __future__ import annotations

from typing import Any, Dict, Iterable, Optional

from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)
from rich.table import Table

from .models import ProgressEvent, UploadResult, UploadStatus

console = Console()


def _human_size(value: int) -> str:
    size = float(max(value, 0))
    units = ["B", "KB", "MB", "GB", "TB"]
    unit_idx = 0
    while size >= 1024.0 and unit_idx < len(units) - 1:
        size /= 1024.0
        unit_idx += 1
    if unit_idx == 0:
        return f"{int(size)} {units[unit_idx]}"
    return f"{size:.2f} {units[unit_idx]}"


def render_configuration_summary(config: Dict[str, Any]) -> None:
    """Render startup configuration summary."""
    table = Table.grid(padding=(0, 2))
    table.add_column(style="bold cyan", justify="right")
    table.add_column(style="white")

    for key, value in config.items():
        rendered = "-" if value is None else str(value)
        table.add_row(key, rendered)

    panel = Panel(
        table,
        title="[bold green]mediaup[/bold green]",
        subtitle="[dim]media upload CLI[/dim]",
        border_style="blue",
    )
    console.print(panel)


class UploadProgressDisplay:
    """
    Event-based console display for one or more uploads.

    Wire it to an orchestrator:
        display = UploadProgressDisplay()
        orchestrator.on("progress", display.on_progress)
        orchestrator.on("retry", display.on_retry)
        orchestrator.on("fallback", display.on_fallback)
    """

    def __init__(self, live: bool = True):
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold cyan]{task.fields[filename]}", justify="left"),
            BarColumn(bar_width=42),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            DownloadColumn(),
            TransferSpeedColumn(),
            TimeRemainingColumn(),
            expand=False,
            console=console,
        )
        self._use_live = live
        self._live: Optional[Live] = None
        self._tasks: Dict[str, TaskID] = {}

    def start(self) -> None:
        if not self._use_live or self._live is not None:
            return
        self._live = Live(
            self._progress,
            console=console,
            refresh_per_second=8,
            vertical_overflow="visible",
        )
        self._live.start()

    def stop(self) -> None:
        if self._live is None:
            return
        self._live.stop()
        self._live = None

    def _task_for(self, filename: str, total: int) -> TaskID:
        task_id = self._tasks.get(filename)
        if task_id is None:
            task_id = self._progress.add_task(
                "upload", filename=filename[:60], total=max(total, 1)
            )
            self._tasks[filename] = task_id
        return task_id

    def on_progress(self, filename: str, event: ProgressEvent) -> None:
        task_id = self._task_for(filename, event.bytes_total)
        self._progress.update(task_id, completed=event.bytes_sent, total=max(event.bytes_total, 1))

    def on_retry(self, filename: str, attempt: int, error: Exception) -> None:
        console.print(f"[yellow]Retrying:[/yellow] {filename} (attempt {attempt} failed: {error})")

    def on_fallback(self, filename: str, error: Exception) -> None:
        console.print(f"[yellow]Fallback:[/yellow] {filename} via server upload ({error})")

    def on_result(self, result: UploadResult) -> None:
        task_id = self._tasks.pop(result.filename, None)
        if task_id is not None:
            self._progress.remove_task(task_id)

        if result.status == UploadStatus.SUCCESS:
            via = " [dim](fallback)[/dim]" if result.via_fallback else ""
            console.print(f"[green]Uploaded:[/green] {result.filename} -> {result.public_url}{via}")
            if result.thumbnail_url:
                console.print(f"  [dim]thumbnail:[/dim] {result.thumbnail_url}")
        elif result.status == UploadStatus.PARTIAL:
            console.print(
                f"[yellow]Uploaded without thumbnail:[/yellow] {result.filename} -> "
                f"{result.public_url} ({result.error})"
            )
        else:
            console.print(f"[red]Failed:[/red] {result.filename} - {result.error_kind}: {result.error}")

    def on_finish(self, results: Iterable[UploadResult]) -> None:
        self.stop()
        results = list(results)
        uploaded = sum(1 for r in results if r.status == UploadStatus.SUCCESS)
        partial = sum(1 for r in results if r.status == UploadStatus.PARTIAL)
        failed = sum(1 for r in results if r.status == UploadStatus.FAILED)
        console.print(
            f"[bold]Finished[/bold] uploaded={uploaded} partial={partial} failed={failed} total={len(results)}"
        )


def render_probe(filename: str, metadata: Any) -> None:
    table = Table(title=filename, show_header=False, border_style="blue")
    for key, value in metadata.as_dict().items():
        table.add_row(key, str(value))
    console.print(table)
