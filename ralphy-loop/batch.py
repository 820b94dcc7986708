"""Run a queue of issues one at a time, with optional prioritization."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from rich.console import Console
from rich.table import Table

from loop_runner import IterationRunner, RunResult, RunStatus, format_duration
from prioritizer import CompletedTaskContext, Prioritizer, format_prioritization_decision
from stop_control import StopController
from tickets import Issue

log = logging.getLogger(__name__)

Notifier = Callable[[str, str, int, "str | None"], None]


@dataclass
class BatchSummary:
    results: list[RunResult] = field(default_factory=list)
    skipped: list[Issue] = field(default_factory=list)
    stopped_early: bool = False
    duration_ms: int = 0

    def count(self, status: RunStatus) -> int:
        return sum(1 for r in self.results if r.status is status)

    @property
    def completed(self) -> int:
        return self.count(RunStatus.COMPLETED)

    @property
    def max_iterations(self) -> int:
        return self.count(RunStatus.MAX_ITERATIONS)

    @property
    def errors(self) -> int:
        return self.count(RunStatus.ERROR)

    @property
    def total_iterations(self) -> int:
        return sum(r.iterations for r in self.results)

    @property
    def exit_code(self) -> int:
        return 1 if self.errors > 0 else 0


def _error_result(issue: Issue, exc: Exception) -> RunResult:
    return RunResult(issue=issue, status=RunStatus.ERROR, error=f"Unexpected error: {exc}")


class BatchScheduler:
    """Select, run and remove issues until the queue is empty or a stop is requested.

    Prioritization is consulted only when enabled and more than one issue
    remains; otherwise issues run in the order given.  One issue's failure
    never aborts the rest of the queue.
    """

    def __init__(
        self,
        runner: IterationRunner,
        stop: StopController,
        prioritizer: Prioritizer | None = None,
        use_prioritization: bool = True,
        notifier: Notifier | None = None,
        max_iterations: int = 20,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.runner = runner
        self.stop = stop
        self.prioritizer = prioritizer
        self.use_prioritization = use_prioritization and prioritizer is not None
        self.notifier = notifier
        self.max_iterations = max_iterations
        self._clock = clock

    def select_next(self, remaining: list[Issue], last_completed: CompletedTaskContext | None) -> Issue:
        if not self.use_prioritization or len(remaining) <= 1:
            return remaining[0]
        outcome = self.prioritizer.select_next(remaining, last_completed)
        if outcome.success:
            log.info("%s", format_prioritization_decision(outcome.decision))
        else:
            log.warning("Prioritization failed: %s", outcome.error)
            log.info("Falling back to first issue: %s", outcome.issue.identifier)
        return outcome.issue

    def run(
        self,
        issues: list[Issue],
        on_result: Callable[[RunResult], None] | None = None,
        reset_stop: bool = True,
    ) -> BatchSummary:
        """Process *issues*. The stop controller is reset afterwards unless *reset_stop* is False."""
        summary = BatchSummary()
        remaining = list(issues)
        last_completed: CompletedTaskContext | None = None
        total = len(issues)
        started = self._clock()

        try:
            while remaining:
                if self.stop.is_stop_requested():
                    log.warning("Emergency stop: skipping remaining %d issue(s).", len(remaining))
                    break

                issue = self.select_next(remaining, last_completed)
                # Ctrl+C while the prioritizer was thinking.
                if self.stop.is_stop_requested():
                    log.warning("Emergency stop: skipping remaining %d issue(s).", len(remaining))
                    break
                log.info("# Issue %d of %d: %s", total - len(remaining) + 1, total, issue.identifier)

                self.stop.begin_processing()
                try:
                    result = self.runner.run(issue)
                except Exception as exc:
                    log.error("Failed to process %s: %s", issue.identifier, exc)
                    result = _error_result(issue, exc)
                finally:
                    self.stop.end_processing()

                remaining = [i for i in remaining if i.id != issue.id]
                last_completed = CompletedTaskContext(
                    identifier=issue.identifier,
                    title=issue.title,
                    status=result.status.value,
                    duration_ms=result.total_duration_ms,
                    iterations=result.iterations,
                )
                summary.results.append(result)
                self._notify(result)
                if on_result is not None:
                    on_result(result)
        finally:
            summary.skipped = remaining
            summary.stopped_early = self.stop.is_stop_requested()
            summary.duration_ms = int((self._clock() - started) * 1000)
            if reset_stop:
                self.stop.reset()

        return summary

    def _notify(self, result: RunResult) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier(result.issue.identifier, result.status.value, self.max_iterations, result.error)
        except Exception as exc:  # pragma: no cover
            log.warning("Notification failed for %s: %s", result.issue.identifier, exc)


# ---------------------------------------------------------------------------
# Rich display
# ---------------------------------------------------------------------------

_STATUS_STYLE = {
    RunStatus.COMPLETED: "[green]completed[/green]",
    RunStatus.MAX_ITERATIONS: "[yellow]max_iterations[/yellow]",
    RunStatus.ERROR: "[red]error[/red]",
}


def build_summary_table(summary: BatchSummary) -> Table:
    title = "Ralph Wiggum Batch Summary"
    if summary.stopped_early:
        title += " (Emergency Stop)"
    table = Table(title=title, expand=True)
    table.add_column("Issue", style="cyan", no_wrap=True)
    table.add_column("Title", style="white")
    table.add_column("Status", justify="center")
    table.add_column("Iterations", justify="right")
    table.add_column("Duration", justify="right")

    for r in summary.results:
        table.add_row(
            r.issue.identifier,
            r.issue.title,
            _STATUS_STYLE[r.status],
            str(r.iterations),
            format_duration(r.total_duration_ms),
        )
    for issue in summary.skipped:
        table.add_row(issue.identifier, issue.title, "[dim]skipped[/dim]", "", "")

    table.caption = (
        f"Processed: {len(summary.results)}  "
        f"Completed: {summary.completed}  "
        f"Max iterations: {summary.max_iterations}  "
        f"Errors: {summary.errors}  "
        f"Skipped (emergency stop): {len(summary.skipped)}  "
        f"| Duration: {format_duration(summary.duration_ms)}  "
        f"Iterations: {summary.total_iterations}"
    )
    return table


def render_batch_summary(summary: BatchSummary, console: Console) -> None:
    console.print()
    console.print(build_summary_table(summary))
