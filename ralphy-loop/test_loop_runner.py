"""Tests for the per-issue iteration loop."""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from batch import BatchScheduler
from completion import COMPLETION_MARKER
from executor import ExecuteResult
from history import HistoryStore
from loop_runner import IterationRunner, RunnerSettings, RunStatus, format_duration
from rate_limiter import handle_rate_limit
from stop_control import StopController
from stream_parser import ExecutionStats
from tickets import Issue, ServiceResult


def make_issue(identifier: str = "PROJ-1") -> Issue:
    return Issue(id=f"id-{identifier}", identifier=identifier, title="Add caching", description="Cache it")


def make_settings(tmp_path: Path, **kwargs) -> RunnerSettings:
    defaults = dict(
        max_iterations=3,
        repo_path=tmp_path,
        context_dir=tmp_path / ".ralphy" / "context",
        add_comments=False,
        auto_commit=False,
    )
    defaults.update(kwargs)
    return RunnerSettings(**defaults)


def ok(output: str, exit_code: int = 0) -> ExecuteResult:
    return ExecuteResult(success=True, output=output, exit_code=exit_code, duration_ms=1000)


def make_runner(tmp_path: Path, outputs: list[ExecuteResult], **kwargs) -> tuple[IterationRunner, MagicMock]:
    execute = MagicMock(side_effect=outputs)
    runner = IterationRunner(
        settings=kwargs.pop("settings", make_settings(tmp_path)),
        execute=execute,
        wait_rate_limit=kwargs.pop("wait_rate_limit", MagicMock(return_value=True)),
        **kwargs,
    )
    return runner, execute


# ---------------------------------------------------------------------------
# Loop outcomes
# ---------------------------------------------------------------------------


def test_completes_when_marker_emitted(tmp_path: Path) -> None:
    runner, execute = make_runner(tmp_path, [ok("working"), ok(f"all done {COMPLETION_MARKER}")])
    result = runner.run(make_issue())
    assert result.status is RunStatus.COMPLETED
    assert result.iterations == 2
    assert execute.call_count == 2
    assert "--- Iteration 1 ---\nworking" in result.output
    assert "--- Iteration 2 ---" in result.output


def test_exhausts_budget_without_marker(tmp_path: Path) -> None:
    runner, execute = make_runner(tmp_path, [ok("still going")] * 3)
    result = runner.run(make_issue())
    assert result.status is RunStatus.MAX_ITERATIONS
    assert result.iterations == 3
    assert execute.call_count == 3


def test_rate_limited_iterations_do_not_consume_budget(tmp_path: Path) -> None:
    rate_limited = ok("429 Too Many Requests, try again in 5 seconds")
    wait = MagicMock(return_value=True)
    runner, execute = make_runner(
        tmp_path,
        [ok("one"), rate_limited, rate_limited, rate_limited, ok("two"), ok("three")],
        wait_rate_limit=wait,
    )
    result = runner.run(make_issue())
    assert result.status is RunStatus.MAX_ITERATIONS
    assert result.iterations == 3
    assert result.rate_limit_retries == 3
    assert execute.call_count == 6
    assert wait.call_count == 3
    # The retried iteration reuses the same prompt.
    prompts = [c.args[0] for c in execute.call_args_list]
    assert "**Iteration 2 of 3**" in prompts[1]
    assert "**Iteration 2 of 3**" in prompts[4]


def test_executor_failure_ends_with_error(tmp_path: Path) -> None:
    failure = ExecuteResult(success=False, error="Claude execution timed out after 300s")
    runner, execute = make_runner(tmp_path, [ok("one"), failure])
    result = runner.run(make_issue())
    assert result.status is RunStatus.ERROR
    assert result.error == "Claude execution timed out after 300s"
    assert result.iterations == 2
    assert execute.call_count == 2


def test_executor_exception_becomes_error(tmp_path: Path) -> None:
    runner, _ = make_runner(tmp_path, [RuntimeError("spawn exploded")])
    result = runner.run(make_issue())
    assert result.status is RunStatus.ERROR
    assert "spawn exploded" in result.error


def test_nonzero_exit_code_continues(tmp_path: Path) -> None:
    runner, execute = make_runner(tmp_path, [ok("oops", exit_code=1), ok(COMPLETION_MARKER)])
    result = runner.run(make_issue())
    assert result.status is RunStatus.COMPLETED
    assert execute.call_count == 2


def test_rate_limit_retry_cap(tmp_path: Path) -> None:
    rate_limited = ok("rate limit exceeded")
    settings = make_settings(tmp_path, max_rate_limit_retries=2)
    runner, execute = make_runner(tmp_path, [rate_limited] * 5, settings=settings)
    result = runner.run(make_issue())
    assert result.status is RunStatus.ERROR
    assert result.error == "Rate limit retries exhausted (2)"
    assert result.iterations == 0
    assert execute.call_count == 3


def test_rate_limit_wait_interrupted_by_stop(tmp_path: Path) -> None:
    stop = StopController(exit_func=MagicMock())
    wait = MagicMock(return_value=False)
    runner, execute = make_runner(tmp_path, [ok("rate limit")], wait_rate_limit=wait, stop=stop)
    result = runner.run(make_issue())
    assert result.status is RunStatus.MAX_ITERATIONS
    assert result.error is None
    assert execute.call_count == 1
    assert wait.call_args.kwargs["should_stop"] == stop.is_stop_requested


def test_graceful_stop_during_rate_limit_keeps_batch_exit_code_zero(tmp_path: Path) -> None:
    stop = StopController(exit_func=MagicMock())

    def _execute(prompt, **kwargs):
        stop.request_stop()
        return ok("429 rate limit, try again in 3 seconds")

    runner = IterationRunner(
        settings=make_settings(tmp_path),
        stop=stop,
        execute=MagicMock(side_effect=_execute),
        wait_rate_limit=lambda output, **kw: handle_rate_limit(output, sleep=lambda s: None, **kw),
    )
    summary = BatchScheduler(runner, stop, use_prioritization=False).run(
        [make_issue("PROJ-1"), make_issue("PROJ-2")]
    )
    assert [r.status for r in summary.results] == [RunStatus.MAX_ITERATIONS]
    assert summary.results[0].iterations == 0
    assert [i.identifier for i in summary.skipped] == ["PROJ-2"]
    assert summary.exit_code == 0


# ---------------------------------------------------------------------------
# Live output
# ---------------------------------------------------------------------------


def test_streams_raw_output_by_default(tmp_path: Path) -> None:
    runner, execute = make_runner(tmp_path, [ok(COMPLETION_MARKER)])
    runner.run(make_issue())
    kwargs = execute.call_args.kwargs
    assert callable(kwargs["on_output"])
    assert "on_tool_activity" not in kwargs


def test_verbose_streams_tool_activity(tmp_path: Path) -> None:
    settings = make_settings(tmp_path, verbose=True)
    stats = ExecutionStats(cost_usd=0.01, duration_ms=2000, num_turns=3)
    done = ExecuteResult(success=True, output=COMPLETION_MARKER, exit_code=0, duration_ms=2000, stats=stats)
    runner, execute = make_runner(tmp_path, [done], settings=settings)
    with patch("loop_runner.logger") as mock_logger:
        result = runner.run(make_issue())
    assert result.status is RunStatus.COMPLETED
    kwargs = execute.call_args.kwargs
    assert callable(kwargs["on_tool_activity"])
    assert "on_output" not in kwargs
    logged = [c.args for c in mock_logger.info.call_args_list]
    assert ("Iteration %d stats: %s", 1, "2s, $0.010, 3 turns") in logged


# ---------------------------------------------------------------------------
# Artifacts and tracker updates
# ---------------------------------------------------------------------------


def test_writes_progress_file_and_relative_prompt_path(tmp_path: Path) -> None:
    runner, execute = make_runner(tmp_path, [ok(COMPLETION_MARKER)])
    runner.run(make_issue())
    progress = tmp_path / ".ralphy" / "context" / "progress.md"
    assert progress.read_text().startswith("# Progress: PROJ-1")
    assert "Read and update: @.ralphy/context/progress.md" in execute.call_args.args[0]


def test_history_saved(tmp_path: Path) -> None:
    store = HistoryStore(tmp_path / "history")
    runner, _ = make_runner(tmp_path, [ok("a"), ok(COMPLETION_MARKER)], history=store)
    runner.run(make_issue())
    entry = store.load("PROJ-1")
    assert entry.status == "completed"
    assert entry.iterations == 2
    assert "--- Iteration 2 ---" in store.load_output("PROJ-1")


def test_history_failure_does_not_change_status(tmp_path: Path) -> None:
    store = MagicMock()
    store.save.side_effect = OSError("disk full")
    runner, _ = make_runner(tmp_path, [ok(COMPLETION_MARKER)], history=store)
    assert runner.run(make_issue()).status is RunStatus.COMPLETED


def test_completed_run_comments_and_moves_to_review(tmp_path: Path) -> None:
    service = MagicMock()
    service.add_comment.return_value = ServiceResult.ok()
    service.update_issue_state.return_value = ServiceResult.ok()
    settings = make_settings(tmp_path, add_comments=True)
    runner, _ = make_runner(tmp_path, [ok(COMPLETION_MARKER)], settings=settings, ticket_service=service)
    runner.run(make_issue())
    assert service.add_comment.call_count == 2
    assert "Ralphy Starting Work" in service.add_comment.call_args_list[0].args[1]
    assert "Ralphy Work Completed" in service.add_comment.call_args_list[1].args[1]
    service.update_issue_state.assert_called_once_with("PROJ-1", "In Review")


def test_incomplete_run_does_not_change_state(tmp_path: Path) -> None:
    service = MagicMock()
    service.add_comment.return_value = ServiceResult.ok()
    settings = make_settings(tmp_path, add_comments=True, max_iterations=1)
    runner, _ = make_runner(tmp_path, [ok("nope")], settings=settings, ticket_service=service)
    runner.run(make_issue())
    service.update_issue_state.assert_not_called()


def test_tracker_failures_are_advisory(tmp_path: Path) -> None:
    service = MagicMock()
    service.add_comment.return_value = ServiceResult.fail("HTTP 500")
    service.update_issue_state.side_effect = RuntimeError("network down")
    settings = make_settings(tmp_path, add_comments=True)
    runner, _ = make_runner(tmp_path, [ok(COMPLETION_MARKER)], settings=settings, ticket_service=service)
    assert runner.run(make_issue()).status is RunStatus.COMPLETED


@patch("loop_runner.commit_all")
def test_auto_commit_uses_issue_message(mock_commit: MagicMock, tmp_path: Path) -> None:
    settings = make_settings(tmp_path, auto_commit=True)
    runner, _ = make_runner(tmp_path, [ok(COMPLETION_MARKER)], settings=settings)
    runner.run(make_issue())
    repo, message = mock_commit.call_args.args
    assert repo == tmp_path
    assert message.startswith("feat(PROJ-1): Add caching")


def test_duration_measured_with_clock(tmp_path: Path) -> None:
    clock = MagicMock(side_effect=[100.0, 102.5])
    runner, _ = make_runner(tmp_path, [ok(COMPLETION_MARKER)], clock=clock)
    assert runner.run(make_issue()).total_duration_ms == 2500


# ---------------------------------------------------------------------------
# format_duration
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("ms,expected", [
    (0, "0s"),
    (45_000, "45s"),
    (65_000, "1m 5s"),
    (3_725_000, "1h 2m 5s"),
])
def test_format_duration(ms: int, expected: str) -> None:
    assert format_duration(ms) == expected
