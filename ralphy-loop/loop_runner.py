"""The per-issue iteration loop ("Ralph Wiggum loop").

Each iteration sends the same task prompt to claude, then reads the output
for the completion sentinel.  Rate-limited iterations are waited out and
retried without consuming budget.  The loop ends on completion, on an
executor failure, or when the iteration budget is exhausted.  Whatever the
outcome, the run is recorded, committed and reported.
"""

import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from completion import OutputAnalysis, analyze_output
from executor import ExecuteResult, execute_claude
from git_ops import build_commit_message, commit_all
from history import HistoryEntry, HistoryStore
from prompt_builder import (
    build_completion_comment,
    build_initial_progress_content,
    build_prompt,
    build_start_comment,
)
from rate_limiter import DEFAULT_RATE_LIMIT_WAIT_MS, handle_rate_limit
from stop_control import StopController
from stream_parser import format_stats, format_tool_activity
from tickets import Issue, TicketService

logger = logging.getLogger(__name__)
console = Console()

PROGRESS_FILE = "progress.md"
RATE_LIMIT_WARN_EVERY = 5


class RunStatus(str, Enum):
    COMPLETED = "completed"
    MAX_ITERATIONS = "max_iterations"
    ERROR = "error"


@dataclass
class IterationOutcome:
    output: str
    exit_code: int
    duration_ms: int
    analysis: OutputAnalysis


@dataclass
class RunResult:
    issue: Issue
    status: RunStatus = RunStatus.MAX_ITERATIONS
    iterations: int = 0
    total_duration_ms: int = 0
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    output: str = ""
    rate_limit_retries: int = 0

    def to_history_entry(self) -> HistoryEntry:
        return HistoryEntry(
            identifier=self.issue.identifier,
            started_at=self.started_at.isoformat() if self.started_at else "",
            completed_at=self.completed_at.isoformat() if self.completed_at else None,
            status=self.status.value,
            iterations=self.iterations,
            total_duration_ms=self.total_duration_ms,
            error=self.error,
        )


@dataclass
class RunnerSettings:
    max_iterations: int = 20
    model: str = "sonnet"
    timeout: float = 300
    repo_path: Path = field(default_factory=lambda: Path("."))
    context_dir: Path = field(default_factory=lambda: Path(".ralphy/context"))
    add_comments: bool = True
    auto_commit: bool = True
    review_state: str = "In Review"
    max_rate_limit_retries: int | None = None
    default_rate_limit_wait_ms: int = DEFAULT_RATE_LIMIT_WAIT_MS
    # Show tool activity and per-iteration stats instead of raw output.
    verbose: bool = False


def format_duration(ms: int) -> str:
    """Format milliseconds as 'Xh Ym Zs', 'Ym Zs' or 'Zs'."""
    seconds = int(ms // 1000)
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    if hours > 0:
        return f"{hours}h {minutes}m {secs}s"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


Executor = Callable[..., ExecuteResult]
RateLimitWait = Callable[..., bool]


class IterationRunner:
    """Drive one issue through the loop. :meth:`run` always returns a RunResult."""

    def __init__(
        self,
        settings: RunnerSettings,
        ticket_service: TicketService | None = None,
        history: HistoryStore | None = None,
        stop: StopController | None = None,
        execute: Executor = execute_claude,
        wait_rate_limit: RateLimitWait = handle_rate_limit,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.ticket_service = ticket_service
        self.history = history
        self.stop = stop
        self._execute = execute
        self._wait_rate_limit = wait_rate_limit
        self._clock = clock

    def run(self, issue: Issue) -> RunResult:
        s = self.settings
        result = RunResult(issue=issue, started_at=datetime.now(timezone.utc))
        started = self._clock()

        logger.info("=" * 60)
        logger.info("Processing: %s - %s", issue.identifier, issue.title)
        logger.info("=" * 60)

        if s.add_comments:
            self._tracker_call(
                "add start comment",
                lambda svc: svc.add_comment(issue.identifier, build_start_comment(s.max_iterations)),
            )

        progress_path = self._write_progress_file(issue)
        logger.info("Max iterations: %d", s.max_iterations)

        iteration = 0
        log_parts: list[str] = []
        while iteration < s.max_iterations:
            iteration += 1
            logger.info("--- Iteration %d of %d ---", iteration, s.max_iterations)
            prompt = build_prompt(issue, iteration, s.max_iterations, progress_path)

            executed = self._run_agent(issue, prompt, iteration)
            if not executed.success:
                result.status = RunStatus.ERROR
                result.error = executed.error
                logger.error("Iteration %d failed: %s", iteration, executed.error)
                break

            outcome = IterationOutcome(
                output=executed.output,
                exit_code=executed.exit_code or 0,
                duration_ms=executed.duration_ms,
                analysis=analyze_output(executed.output),
            )
            log_parts.append(f"\n\n--- Iteration {iteration} ---\n{outcome.output}")
            logger.info(
                "Iteration %d completed in %ds (exit code: %d)",
                iteration, round(outcome.duration_ms / 1000), outcome.exit_code,
            )

            if outcome.analysis.is_complete:
                result.status = RunStatus.COMPLETED
                logger.info("Task completed! Claude signaled completion.")
                break

            if outcome.analysis.is_rate_limited:
                # Retry the same iteration index.
                iteration -= 1
                result.rate_limit_retries += 1
                if not self._handle_rate_limit(result, outcome.output):
                    break
                continue

            if outcome.exit_code != 0:
                logger.warning("Claude exited with code %d", outcome.exit_code)

        result.iterations = iteration
        result.output = "".join(log_parts)
        result.completed_at = datetime.now(timezone.utc)
        result.total_duration_ms = int((self._clock() - started) * 1000)

        logger.info(
            "Issue %s summary: status=%s iterations=%d duration=%s",
            issue.identifier, result.status.value, result.iterations,
            format_duration(result.total_duration_ms),
        )
        self._finalize(result)
        return result

    # ------------------------------------------------------------------
    # Loop steps
    # ------------------------------------------------------------------

    def _write_progress_file(self, issue: Issue) -> str:
        s = self.settings
        progress_file = Path(s.context_dir) / PROGRESS_FILE
        try:
            progress_file.parent.mkdir(parents=True, exist_ok=True)
            progress_file.write_text(build_initial_progress_content(issue))
        except OSError as exc:
            logger.warning("Failed to write progress file %s: %s", progress_file, exc)
        try:
            return os.path.relpath(progress_file, s.repo_path)
        except ValueError:
            return str(progress_file)

    def _run_agent(self, issue: Issue, prompt: str, iteration: int) -> ExecuteResult:
        s = self.settings
        label = f"Claude working on {issue.identifier} (iteration {iteration}/{s.max_iterations})"
        try:
            with Progress(
                SpinnerColumn(),
                TextColumn("{task.description}"),
                TimeElapsedColumn(),
                console=console,
                transient=True,
            ) as progress:
                progress.add_task(label, total=None)
                out = progress.console
                if s.verbose:
                    stream = dict(on_tool_activity=lambda a: out.print(format_tool_activity(a), markup=False))
                else:
                    stream = dict(on_output=lambda line: out.print(line, end="", markup=False, highlight=False))
                executed = self._execute(
                    prompt, model=s.model, timeout=s.timeout, auto_accept=True, cwd=str(s.repo_path), **stream
                )
        except Exception as exc:
            return ExecuteResult(success=False, error=f"Claude execution failed: {exc}")
        if executed.success and executed.stats is not None:
            logger.info("Iteration %d stats: %s", iteration, format_stats(executed.stats))
        return executed

    def _handle_rate_limit(self, result: RunResult, output: str) -> bool:
        """Wait out a rate limit. Returns False if the run must end instead."""
        s = self.settings
        retries = result.rate_limit_retries
        if s.max_rate_limit_retries is not None and retries > s.max_rate_limit_retries:
            result.status = RunStatus.ERROR
            result.error = f"Rate limit retries exhausted ({s.max_rate_limit_retries})"
            logger.error("%s for %s", result.error, result.issue.identifier)
            return False
        if s.max_rate_limit_retries is None and retries % RATE_LIMIT_WARN_EVERY == 0:
            logger.warning(
                "%s has been rate limited %d times; retries are unbounded",
                result.issue.identifier, retries,
            )

        logger.warning("Rate limit detected.")
        should_stop = self.stop.is_stop_requested if self.stop is not None else None
        completed = self._wait_rate_limit(
            output, should_stop=should_stop, default_wait_ms=s.default_rate_limit_wait_ms
        )
        if not completed:
            # A graceful stop is not a failure; the issue keeps its budget outcome.
            logger.warning(
                "Stopped while waiting for rate limit; ending %s without another iteration",
                result.issue.identifier,
            )
            return False
        return True

    # ------------------------------------------------------------------
    # Best-effort finalisation
    # ------------------------------------------------------------------

    def _finalize(self, result: RunResult) -> None:
        s = self.settings
        issue = result.issue

        if self.history is not None:
            try:
                run_dir = self.history.save(result.to_history_entry(), result.output)
                logger.info("History: %s", run_dir)
            except OSError as exc:
                logger.warning("Failed to save history: %s", exc)

        if s.auto_commit:
            logger.info("Committing changes to git...")
            commit_all(s.repo_path, build_commit_message(issue.identifier, issue.title))

        if s.add_comments:
            comment = build_completion_comment(
                result.status.value,
                result.iterations,
                format_duration(result.total_duration_ms),
                error=result.error,
                execution_log=result.output,
            )
            self._tracker_call(
                "add completion comment", lambda svc: svc.add_comment(issue.identifier, comment)
            )

        if result.status is RunStatus.COMPLETED:
            logger.info('Moving issue to "%s" status...', s.review_state)
            self._tracker_call(
                "update issue state",
                lambda svc: svc.update_issue_state(issue.identifier, s.review_state),
            )

    def _tracker_call(self, action: str, call: Callable[[TicketService], object]) -> None:
        if self.ticket_service is None:
            return
        try:
            outcome = call(self.ticket_service)
        except Exception as exc:
            logger.warning("Failed to %s: %s", action, exc)
            return
        if not getattr(outcome, "success", False):
            logger.warning("Failed to %s: %s", action, getattr(outcome, "error", "unknown error"))
