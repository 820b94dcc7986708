"""Prompts, progress files and tracker comments for the iteration loop."""

from datetime import datetime, timezone

from completion import COMPLETION_MARKER
from tickets import Issue

MAX_LOG_LENGTH = 50_000

_FOOTER = "---\n_Automated by Ralphy CLI_"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_initial_progress_content(issue: Issue, started_at: str | None = None) -> str:
    return "\n".join([
        f"# Progress: {issue.identifier}",
        "",
        f"Started: {started_at or _now_iso()}",
        "",
        "## Notes",
        "",
        "Add your progress notes below this line.",
        "",
        "---",
        "",
    ])


def build_prompt(issue: Issue, iteration: int, max_iterations: int, progress_file_path: str) -> str:
    """Build the prompt for one iteration of the loop."""
    return "\n".join([
        f"# Task: {issue.identifier} - {issue.title}",
        "",
        f"**Iteration {iteration} of {max_iterations}**",
        "",
        "## Progress Notes",
        f"Read and update: @{progress_file_path}",
        "",
        "## Description",
        issue.description or "No description provided.",
        "",
        "## Instructions",
        "",
        "1. Read the task details and progress notes from the context files above.",
        "2. Work on this task following the project's coding standards.",
        "3. Run the project's tests and checks to verify your changes.",
        "4. After completing work, append your notes to the progress file.",
        f"5. When the task is fully complete, output: {COMPLETION_MARKER}",
        "",
        "## Important",
        "",
        f"- Output {COMPLETION_MARKER} ONLY when the task is fully complete",
        "- If blocked or need clarification, describe the issue clearly in the progress file",
        "- Do not skip tests or type checking",
        "",
    ])


# ---------------------------------------------------------------------------
# Tracker comments
# ---------------------------------------------------------------------------

def build_start_comment(max_iterations: int, started_at: str | None = None) -> str:
    return (
        "## Ralphy Starting Work\n\n"
        f"**Started at:** {started_at or _now_iso()}\n"
        f"**Max iterations:** {max_iterations}\n\n"
        "The Ralph Wiggum loop is now processing this issue. Progress will be "
        "tracked in git history and reported back here upon completion.\n\n"
        f"{_FOOTER}"
    )


def truncate_log(log: str, max_length: int = MAX_LOG_LENGTH) -> str:
    """Keep the tail of *log* so the result is at most *max_length* chars."""
    if len(log) <= max_length:
        return log
    note = f"\n\n... [Log truncated - showing last {max_length} characters] ...\n\n"
    return note + log[-(max_length - len(note)):]


_STATUS_TEXT = {
    "completed": "Completed successfully",
    "max_iterations": "Stopped at max iterations (may need manual review)",
}

_STATUS_MESSAGE = {
    "completed": "Changes have been committed to git. Please review and merge.",
    "max_iterations": (
        "The task may not be fully complete. Please review the current state "
        "and re-run if needed."
    ),
    "error": "Please check the error and retry.",
}


def build_completion_comment(
    status: str,
    iterations: int,
    duration: str,
    error: str | None = None,
    execution_log: str | None = None,
    finished_at: str | None = None,
) -> str:
    """Build the comment posted on the issue once the loop exits.

    *status* is one of ``completed``, ``max_iterations`` or ``error``;
    *duration* is already formatted.
    """
    status_text = _STATUS_TEXT.get(status) or f"Failed: {error or 'Unknown error'}"
    heading = "Completed" if status == "completed" else "Stopped"
    log_section = ""
    if execution_log:
        log_section = (
            "\n<details>\n<summary>Execution Log (click to expand)</summary>\n\n"
            f"```\n{truncate_log(execution_log)}\n```\n\n</details>\n"
        )
    return (
        f"## Ralphy Work {heading}\n\n"
        f"**Status:** {status_text}\n"
        f"**Iterations:** {iterations}\n"
        f"**Duration:** {duration}\n"
        f"**Finished at:** {finished_at or _now_iso()}\n\n"
        f"{_STATUS_MESSAGE[status]}\n"
        f"{log_section}\n"
        f"{_FOOTER}"
    )
