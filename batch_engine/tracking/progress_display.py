"""
Batch Progress Display - Live terminal view of a running batch

Subscribes to the engine's progress channel and renders each snapshot:
- rich progress bar with elapsed/remaining time
- success/failure statistics and throughput
- running cost (when a cost ledger is attached)

Falls back to one plain text line per snapshot when rich output is
disabled (e.g. when stdout is not a terminal).
"""
from __future__ import annotations

import time
from datetime import timedelta
from typing import Optional

from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
)
from rich.table import Table

from batch_engine.core.events import ProgressObserver
from batch_engine.models.task import ProgressSnapshot
from batch_engine.tracking.cost_ledger import CostLedger


class BatchProgressDisplay(ProgressObserver):
    """
    Renders progress snapshots for one batch

    Usage:
        display = BatchProgressDisplay(total=len(tasks), name="annotate")
        display.start()
        await engine.process_batch(tasks, work_fn, observers=[display])
        display.stop()
    """

    def __init__(
        self,
        total: int,
        name: str = "batch",
        ledger: Optional[CostLedger] = None,
        use_rich: bool = True,
        console: Optional[Console] = None,
    ):
        """
        Initialize progress display

        Args:
            total: Number of tasks in the batch
            name: Label shown next to the progress bar
            ledger: Cost ledger to read the running cost from
            use_rich: Render with rich (plain text lines otherwise)
            console: Console to render on
        """
        self.total = total
        self.name = name
        self.ledger = ledger
        self.use_rich = use_rich
        self.console = console or Console()

        self.last_snapshot: Optional[ProgressSnapshot] = None
        self.start_time: Optional[float] = None
        self.progress: Optional[Progress] = None
        self.progress_task = None
        self.live: Optional[Live] = None

    def start(self) -> None:
        """Start the live display"""
        self.start_time = time.monotonic()

        if not self.use_rich:
            self.console.print(f"Batch: {self.name} ({self.total} tasks)", markup=False, highlight=False)
            return

        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TextColumn("•"),
            TextColumn("{task.completed}/{task.total} tasks"),
            TimeElapsedColumn(),
            TextColumn("•"),
            TimeRemainingColumn(),
        )
        self.progress_task = self.progress.add_task(f"[cyan]{self.name}", total=self.total)

        self.live = Live(self._generate_display(), refresh_per_second=4, console=self.console)
        self.live.start()

    def stop(self) -> None:
        """Stop the live display and print a summary"""
        if self.live is not None:
            self.live.stop()
            self.live = None
        self._print_summary()

    def on_progress(self, snapshot: ProgressSnapshot) -> None:
        self.last_snapshot = snapshot

        if self.use_rich and self.progress is not None:
            self.progress.update(self.progress_task, completed=snapshot.completed)
            if self.live is not None:
                self.live.update(self._generate_display())
            return

        self.console.print(
            f"[{snapshot.completed}/{snapshot.total}] "
            f"{snapshot.percentage:.1f}% done, {snapshot.failed} failed, "
            f"{snapshot.throughput_per_sec:.2f} tasks/s{self._cost_suffix()}",
            markup=False,
            highlight=False,
        )

    def _cost_suffix(self) -> str:
        if self.ledger is None:
            return ""
        return f", cost {CostLedger.format_cost(self.ledger.get_cumulative_cost())}"

    def _stats_table(self) -> Table:
        snapshot = self.last_snapshot
        table = Table(show_header=False, box=None, padding=(0, 2))
        table.add_column("Label", style="cyan")
        table.add_column("Value", style="bold")

        if snapshot is None:
            table.add_row("Waiting:", "no task finished yet")
            return table

        table.add_row("✓ Succeeded:", str(snapshot.succeeded))
        table.add_row("❌ Failed:", str(snapshot.failed))
        table.add_row("📊 Success Rate:", f"{snapshot.success_rate * 100:.1f}%")
        table.add_row("🔁 Retries/Task:", f"{snapshot.retry_rate:.2f}")
        table.add_row("⚡ Throughput:", f"{snapshot.throughput_per_sec:.2f} tasks/s")
        table.add_row("⏱ Avg Duration:", f"{snapshot.average_duration_ms:.0f}ms")
        if self.ledger is not None:
            table.add_row("💰 Cost:", CostLedger.format_cost(self.ledger.get_cumulative_cost()))
        return table

    def _generate_display(self) -> Layout:
        layout = Layout()
        layout.split_column(
            Layout(name="progress", size=3),
            Layout(name="stats", size=10),
        )
        layout["progress"].update(self.progress)
        layout["stats"].update(Panel(self._stats_table(), title="Statistics", border_style="green"))
        return layout

    def _print_summary(self) -> None:
        if self.start_time is None:
            return

        duration = timedelta(seconds=int(time.monotonic() - self.start_time))
        snapshot = self.last_snapshot

        summary = Table(title="Batch Execution Summary", show_header=False, box=None)
        summary.add_column("Label", style="cyan")
        summary.add_column("Value", style="bold")
        summary.add_row("Total Tasks:", str(self.total))
        if snapshot is not None:
            summary.add_row("Succeeded:", str(snapshot.succeeded))
            summary.add_row("Failed:", str(snapshot.failed))
            summary.add_row("Not Run:", str(snapshot.remaining))
            summary.add_row("Success Rate:", f"{snapshot.success_rate * 100:.1f}%")
        if self.ledger is not None:
            summary.add_row("Total Cost:", CostLedger.format_cost(self.ledger.get_cumulative_cost()))
        summary.add_row("Duration:", str(duration))

        self.console.print()
        self.console.print(summary)
