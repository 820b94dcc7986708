"""Watch mode: poll the tracker forever and run new ready issues as they appear."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from rich.console import Console

from batch import BatchScheduler
from loop_runner import RunResult, RunStatus, format_duration
from stop_control import StopController
from tickets import Issue, is_issue_actionable

log = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 120
MAX_BACKOFF_SECONDS = 600
MAX_CONSECUTIVE_FAILURES = 3


@dataclass
class WatchStats:
    start_time: float = field(default_factory=time.monotonic)
    processed: int = 0
    completed: int = 0
    max_iterations: int = 0
    errors: int = 0
    api_errors: int = 0

    def record(self, result: RunResult) -> None:
        self.processed += 1
        if result.status is RunStatus.COMPLETED:
            self.completed += 1
        elif result.status is RunStatus.MAX_ITERATIONS:
            self.max_iterations += 1
        else:
            self.errors += 1


def should_process_issue(issue: Issue, processed_ids: set[str]) -> bool:
    if issue.id in processed_ids:
        return False
    return is_issue_actionable(issue)


def next_wait_seconds(consecutive_failures: int, interval: int) -> int:
    """Seconds to wait after a fetch; backs off once failures reach the threshold."""
    if consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
        return min(interval * 2, MAX_BACKOFF_SECONDS)
    return interval


class WatchPoller:
    """Poll ``fetch_issues`` every *interval* seconds until a stop is requested.

    ``fetch_issues`` returns the ready issues, or None when the tracker call
    failed.  ``scheduler_factory(prioritize)`` builds the BatchScheduler used
    for each batch of new issues.  Tracker failures never end the loop.
    """

    def __init__(
        self,
        fetch_issues: Callable[[], list[Issue] | None],
        scheduler_factory: Callable[[bool], BatchScheduler],
        stop: StopController,
        interval: int = DEFAULT_INTERVAL_SECONDS,
        use_fifo: bool = False,
        dry_run: bool = False,
        console: Console | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.fetch_issues = fetch_issues
        self.scheduler_factory = scheduler_factory
        self.stop = stop
        self.interval = interval
        self.use_fifo = use_fifo
        self.dry_run = dry_run
        self.console = console or Console()
        self._sleep = sleep
        self.processed_ids: set[str] = set()
        self.consecutive_failures = 0

    def run(self) -> WatchStats:
        stats = WatchStats()
        try:
            while not self.stop.is_stop_requested():
                self.poll_once(stats)
        finally:
            self.stop.reset()
        return stats

    def poll_once(self, stats: WatchStats) -> None:
        try:
            issues = self.fetch_issues()
        except Exception as exc:
            log.warning("Fetching issues raised: %s", exc)
            issues = None

        if issues is None:
            self.consecutive_failures += 1
            stats.api_errors += 1
            wait = next_wait_seconds(self.consecutive_failures, self.interval)
            if self.consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
                log.warning(
                    "%d consecutive API errors. Applying %ds backoff.",
                    self.consecutive_failures, wait,
                )
            else:
                log.warning("API error fetching issues. Will retry on next poll.")
            self.sleep_interruptibly(wait)
            return

        self.consecutive_failures = 0
        new_issues = [i for i in issues if should_process_issue(i, self.processed_ids)]
        if not new_issues:
            self.idle_countdown(self.interval)
            return

        self.console.print(f"\n[{_timestamp()}] Found {len(new_issues)} new issue(s)")
        if self.dry_run:
            for issue in new_issues:
                self.console.print(
                    f"  Would process: {issue.identifier} - {issue.title} "
                    f"(state: {issue.state.name}, priority: {issue.priority.value})"
                )
                self.processed_ids.add(issue.id)
                stats.processed += 1
            return

        self.run_batch(new_issues, stats)

    def run_batch(self, issues: list[Issue], stats: WatchStats) -> None:
        prioritize = len(issues) > 1 and not self.use_fifo
        if prioritize:
            log.info("Using intelligent prioritization. Use --fifo to process in order.")
        scheduler = self.scheduler_factory(prioritize)

        def _on_result(result: RunResult) -> None:
            self.processed_ids.add(result.issue.id)
            stats.record(result)
            self.console.print(
                f"{result.issue.identifier} {result.status.value} in "
                f"{format_duration(result.total_duration_ms)} ({result.iterations} iterations)"
            )

        try:
            scheduler.run(issues, on_result=_on_result, reset_stop=False)
        except Exception as exc:
            log.error("Batch failed: %s", exc)
            for issue in issues:
                if issue.id not in self.processed_ids:
                    self.processed_ids.add(issue.id)
                    stats.processed += 1
                    stats.errors += 1

    # ------------------------------------------------------------------
    # Waiting
    # ------------------------------------------------------------------

    def sleep_interruptibly(self, seconds: int) -> None:
        for _ in range(seconds):
            if self.stop.is_stop_requested():
                return
            self._sleep(1)

    def idle_countdown(self, seconds: int) -> None:
        with self.console.status("") as status:
            for remaining in range(seconds, 0, -1):
                if self.stop.is_stop_requested():
                    return
                status.update(f"[{_timestamp()}] Watching... next poll in {remaining}s")
                self._sleep(1)


def _timestamp() -> str:
    return datetime.now().strftime("%H:%M:%S")


def render_watch_summary(stats: WatchStats, console: Console) -> None:
    duration_ms = int((time.monotonic() - stats.start_time) * 1000)
    console.print()
    console.print("[bold]Watch Session Summary[/bold]")
    console.print("---------------------")
    console.print(f"Duration: {format_duration(duration_ms)}")
    console.print(
        f"Processed: {stats.processed} ({stats.completed} completed, "
        f"{stats.max_iterations} max-iter, {stats.errors} errors)"
    )
    if stats.api_errors > 0:
        console.print(f"API errors encountered: {stats.api_errors}")
