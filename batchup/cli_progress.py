"""Console rendering and progress helpers for the batchup CLI."""
from __future__ import annotations

import time
from typing import Any, Dict, Optional

from rich.console import Console, Group
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

from .models import BatchPhase, BatchResult, ProgressSnapshot, UploadTask
from .utils.validation import format_bytes

console = Console()


def render_configuration_summary(config: Dict[str, Any], out: Optional[Console] = None) -> None:
    """Render startup configuration summary."""
    out = out or console
    table = Table.grid(padding=(0, 2))
    table.add_column(style="bold cyan", justify="right")
    table.add_column(style="white")

    for key, value in config.items():
        rendered = "-" if value is None else str(value)
        table.add_row(key, rendered)

    panel = Panel(
        table,
        title="[bold green]batchup[/bold green]",
        subtitle="[dim]batch uploader CLI[/dim]",
        border_style="blue",
    )
    out.print(panel)


class BatchProgressDisplay:
    """Event-based console display for a batch upload process."""

    def __init__(self, out: Optional[Console] = None):
        self._console = out or console
        self._active_tasks: Dict[str, TaskID] = {}
        self._overall_task_id: Optional[TaskID] = None
        self._phase: Optional[BatchPhase] = None
        self._live: Optional[Live] = None

        self._meta_progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold cyan]{task.fields[label]}", justify="left"),
            BarColumn(bar_width=28),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TextColumn("[dim]{task.fields[detail]}", justify="left"),
            expand=False,
            console=self._console,
        )
        self._file_progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold green]{task.fields[label]}", justify="left"),
            BarColumn(bar_width=42),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            DownloadColumn(),
            TransferSpeedColumn(),
            TimeRemainingColumn(),
            expand=False,
            console=self._console,
        )

    def _emit_timeline(
        self,
        status: str,
        kind: str,
        name: str,
        size_bytes: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        stamp = time.strftime("%H:%M:%S")
        size_label = f" {format_bytes(size_bytes)}" if size_bytes and size_bytes > 0 else ""
        error_label = f" cause={error}" if error else ""
        palette = {
            "DONE": "green",
            "FAIL": "red",
            "INFO": "blue",
        }
        color = palette.get(status, "white")
        self._console.print(
            f"[dim]{stamp}[/dim] [{color}]{status:<4}[/{color}] "
            f"{kind}: {name}{size_label}{error_label}"
        )

    def _start_live(self) -> None:
        if self._live is not None:
            return

        self._live = Live(
            Group(self._meta_progress, self._file_progress),
            console=self._console,
            refresh_per_second=8,
            vertical_overflow="visible",
        )
        self._live.start()
        self._overall_task_id = self._meta_progress.add_task(
            "overall",
            label="Overall",
            total=1,
            completed=0,
            detail="waiting...",
        )

    def _stop_live(self) -> None:
        if self._live is None:
            return
        self._live.stop()
        self._live = None

    def _remove_file_task(self, task: UploadTask) -> None:
        task_id = self._active_tasks.pop(task.logical_path, None)
        if task_id is not None:
            self._file_progress.remove_task(task_id)

    def on_phase(self, phase: BatchPhase) -> None:
        self._phase = phase
        if phase == BatchPhase.UPLOADING:
            self._start_live()
        elif phase in (BatchPhase.COMPLETE, BatchPhase.FAILED):
            self._stop_live()
        self._emit_timeline("INFO", "phase", phase.value)

    def on_file_start(self, task: UploadTask) -> None:
        self._start_live()
        self._active_tasks[task.logical_path] = self._file_progress.add_task(
            "upload",
            label=task.file_name[:60],
            total=max(task.size, 1),
        )

    def on_file_progress(self, task: UploadTask, size: int) -> None:
        task_id = self._active_tasks.get(task.logical_path)
        if task_id is not None:
            self._file_progress.update(task_id, completed=task.bytes_uploaded)

    def on_file_complete(self, task: UploadTask) -> None:
        self._remove_file_task(task)
        self._emit_timeline("DONE", "file", task.logical_path, size_bytes=task.size)

    def on_file_fail(self, task: UploadTask) -> None:
        self._remove_file_task(task)
        self._emit_timeline("FAIL", "file", task.logical_path, size_bytes=task.size, error=task.error)

    def on_progress(self, snapshot: ProgressSnapshot) -> None:
        if self._overall_task_id is None:
            return
        self._meta_progress.update(
            self._overall_task_id,
            completed=snapshot.bytes_uploaded,
            total=max(snapshot.bytes_total, 1),
            detail=(
                f"files {snapshot.files_completed}/{snapshot.files_total} "
                f"failed={snapshot.files_failed}"
            ),
        )

    def on_error(self, error: BaseException) -> None:
        self._stop_live()
        self._emit_timeline("FAIL", "batch", "upload", error=str(error))
        failures = getattr(error, "failures", None) or []
        for failure in failures:
            self._console.print(f"  [red]-[/red] {failure.logical_path}: {failure.error}")

    def on_finish(self, result: BatchResult) -> None:
        self._stop_live()
        if result.dry_run:
            self._console.print(
                f"[bold]Dry run[/bold] files={result.files_total} size={format_bytes(result.total_bytes)}"
            )
            return
        self._console.print(
            f"[bold]Finished[/bold] batch={result.batch_id} uploaded={result.files_uploaded} "
            f"total={result.files_total} failed={result.files_failed} "
            f"enqueued={result.files_enqueued} size={format_bytes(result.bytes_uploaded)} "
            f"in {result.duration:.1f}s"
        )
        if result.failures:
            self._console.print(f"[yellow]Warning:[/yellow] {result.files_failed} file(s) failed:")
            for failure in result.failures:
                self._console.print(f"  [yellow]-[/yellow] {failure.logical_path}: {failure.error}")
