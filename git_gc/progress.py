"""Progress reporting for a git gc run."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from rich.console import Console
from rich.markup import escape
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn
from rich.text import Text

from git_gc.worker import CompletionEvent, WorkItem

if TYPE_CHECKING:
    from git_gc.scheduler import SchedulerState

log = logging.getLogger(__name__)

CHECKMARK = "✓"
CROSS = "✗"


@dataclass(frozen=True)
class ProgressSnapshot:
    completed: int
    total: int
    fraction: float
    newly_completed: tuple[WorkItem, ...] = ()


class ProgressReporter:
    """Track completed units and render them.

    One line is printed per completion, in the order completions arrive,
    above a live spinner and progress bar. Once every unit is complete the
    reporter is finished and ignores further updates.
    """

    def __init__(self, total: int, console: Console | None = None, live: bool = True):
        if total < 0:
            raise ValueError(f"total must be >= 0, got {total}")
        self.total = total
        self.completed = 0
        self.fraction = 0.0
        self.done = False
        self.marked: list[WorkItem] = []
        self._since_snapshot: list[WorkItem] = []

        self.console = console or Console()
        self._progress = Progress(
            SpinnerColumn(style="blue"),
            TextColumn("{task.description}"),
            BarColumn(bar_width=40),
            MofNCompleteColumn(),
            console=self.console,
            transient=True,
            disable=not live,
        )
        self._task_id = self._progress.add_task(self._describe(), total=total)

    def __enter__(self) -> ProgressReporter:
        self._progress.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._progress.stop()

    def _describe(self) -> str:
        return f"Cleaning repos... {self.completed}/{self.total} complete"

    def update(self, completed: int) -> float:
        """Record the completed count and return the fraction done."""
        if self.done:
            log.debug("Ignoring progress update after completion (%d)", completed)
            return self.fraction

        completed = max(self.completed, min(completed, self.total))
        self.completed = completed
        self.fraction = 1.0 if self.total == 0 else completed / self.total
        self._progress.update(self._task_id, completed=completed, description=self._describe())

        if completed == self.total:
            self.done = True
        return self.fraction

    def mark_complete(self, event: CompletionEvent) -> None:
        """Print one line for a finished unit."""
        if self.done:
            log.debug("Ignoring completion of %s after the run finished", event.item)
            return
        self.marked.append(event.item)
        self._since_snapshot.append(event.item)

        if event.succeeded:
            line = Text.assemble((CHECKMARK, "green"), " ", event.item)
        else:
            reason = event.error or "failed"
            line = Text.assemble((CROSS, "red"), " ", event.item, (f" ({reason})", "dim"))
        self.console.print(line)

    def snapshot(self) -> ProgressSnapshot:
        snap = ProgressSnapshot(
            completed=self.completed,
            total=self.total,
            fraction=self.fraction,
            newly_completed=tuple(self._since_snapshot),
        )
        self._since_snapshot.clear()
        return snap

    def print_summary(self, state: SchedulerState, events: list[CompletionEvent]) -> None:
        failures = [e for e in events if not e.succeeded]
        self.console.print()
        if state.cancel_requested and state.completed < state.total:
            self.console.print(
                f"[bold red]Interrupted![/bold red] Ran garbage collection on "
                f"{state.completed} of {state.total} repos."
            )
        else:
            self.console.print(f"  Done! Ran garbage collection on {state.total} repos.")

        if failures:
            self.console.print(f"\n[red]Failed ({len(failures)}):[/red]")
            for event in failures:
                self.console.print(f"  {escape(event.item)}: {escape(event.error or 'failed')}")
        self.console.print()
