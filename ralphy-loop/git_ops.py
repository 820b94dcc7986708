"""Best-effort git operations for committing the agent's work."""

import logging
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)


def _run_git(repo_path: str | Path, args: list[str], timeout: int = 60) -> subprocess.CompletedProcess:
    """Run a git subcommand, raising RuntimeError on failure or timeout."""
    cmd = ["git"] + args
    try:
        result = subprocess.run(
            cmd,
            cwd=repo_path,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        raise RuntimeError(f"git command timed out after {timeout}s: {' '.join(cmd)}") from exc
    except OSError as exc:
        raise RuntimeError(f"git command failed to start: {exc}") from exc
    if result.returncode != 0:
        raise RuntimeError(
            f"git command failed ({result.returncode}): {' '.join(cmd)}\n{result.stderr.strip()}"
        )
    return result


def has_changes(repo_path: str | Path = ".") -> bool:
    """Return True if the working tree has uncommitted changes."""
    try:
        result = _run_git(repo_path, ["status", "--porcelain"])
    except RuntimeError as exc:
        logger.warning("Could not read git status: %s", exc)
        return False
    return bool(result.stdout.strip())


def commit_all(repo_path: str | Path, message: str) -> bool:
    """Stage and commit everything. Returns False when nothing was committed."""
    if not has_changes(repo_path):
        logger.info("No changes to commit.")
        return False
    try:
        _run_git(repo_path, ["add", "-A"])
        _run_git(repo_path, ["commit", "-m", message])
    except RuntimeError as exc:
        logger.warning("Failed to commit: %s", exc)
        return False
    logger.info("Changes committed: %s", message.splitlines()[0])
    return True


def build_commit_message(identifier: str, title: str) -> str:
    return f"feat({identifier}): {title}\n\nAutomated changes by Ralphy (Ralph Wiggum loop)."
