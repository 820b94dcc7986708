"""Tests for prompt, progress file and comment builders."""

from completion import COMPLETION_MARKER
from prompt_builder import (
    MAX_LOG_LENGTH,
    build_completion_comment,
    build_initial_progress_content,
    build_prompt,
    build_start_comment,
    truncate_log,
)
from tickets import Issue


def make_issue(description: str | None = "Add a --json flag to the status command") -> Issue:
    return Issue(id="uuid-7", identifier="PROJ-7", title="JSON status output", description=description)


def test_prompt_contains_task_iteration_and_progress_path() -> None:
    prompt = build_prompt(make_issue(), 2, 10, ".ralphy/context/progress.md")
    assert prompt.startswith("# Task: PROJ-7 - JSON status output")
    assert "**Iteration 2 of 10**" in prompt
    assert "Read and update: @.ralphy/context/progress.md" in prompt
    assert "Add a --json flag" in prompt
    assert prompt.count(COMPLETION_MARKER) == 2


def test_prompt_without_description() -> None:
    prompt = build_prompt(make_issue(description=None), 1, 1, "p.md")
    assert "No description provided." in prompt


def test_initial_progress_content() -> None:
    content = build_initial_progress_content(make_issue(), started_at="2026-01-01T00:00:00+00:00")
    assert content.startswith("# Progress: PROJ-7\n")
    assert "Started: 2026-01-01T00:00:00+00:00" in content
    assert "## Notes" in content


def test_start_comment() -> None:
    comment = build_start_comment(20, started_at="T0")
    assert "## Ralphy Starting Work" in comment
    assert "**Max iterations:** 20" in comment
    assert "**Started at:** T0" in comment


def test_truncate_log_short_unchanged() -> None:
    assert truncate_log("abc") == "abc"


def test_truncate_log_keeps_tail_within_limit() -> None:
    log = "x" * 100 + "TAIL"
    truncated = truncate_log(log, max_length=80)
    assert len(truncated) == 80
    assert truncated.endswith("TAIL")
    assert "Log truncated" in truncated


def test_completion_comment_completed() -> None:
    comment = build_completion_comment("completed", 3, "1m 5s", execution_log="output")
    assert comment.startswith("## Ralphy Work Completed")
    assert "Completed successfully" in comment
    assert "**Iterations:** 3" in comment
    assert "<details>" in comment


def test_completion_comment_error_and_truncation() -> None:
    comment = build_completion_comment(
        "error", 1, "4s", error="Claude execution timed out after 300s",
        execution_log="y" * (MAX_LOG_LENGTH + 10),
    )
    assert comment.startswith("## Ralphy Work Stopped")
    assert "Failed: Claude execution timed out after 300s" in comment
    assert "Log truncated" in comment


def test_completion_comment_max_iterations_without_log() -> None:
    comment = build_completion_comment("max_iterations", 20, "10m 0s")
    assert "Stopped at max iterations" in comment
    assert "<details>" not in comment
