"""Desktop notifications. Fire-and-forget: failures fall back to a log line."""

import logging
import subprocess
import sys

logger = logging.getLogger(__name__)


def _escape_applescript(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"')


def notify(title: str, message: str) -> None:
    if sys.platform == "darwin":
        script = (
            f'display notification "{_escape_applescript(message)}" '
            f'with title "{_escape_applescript(title)}" sound name "default"'
        )
        cmd = ["osascript", "-e", script]
    elif sys.platform.startswith("linux"):
        cmd = ["notify-send", title, message]
    else:
        logger.info("[Notification] %s: %s", title, message)
        return

    try:
        subprocess.run(cmd, check=False, capture_output=True, timeout=5)
    except (OSError, subprocess.TimeoutExpired):
        logger.info("[Notification] %s: %s", title, message)


def notify_success(identifier: str, message: str | None = None) -> None:
    notify(f"Ralphy: {identifier} Complete", message or "Task completed successfully!")


def notify_failure(identifier: str, error: str | None = None) -> None:
    notify(f"Ralphy: {identifier} Failed", error or "Task failed. Check logs for details.")


def notify_warning(identifier: str, message: str) -> None:
    notify(f"Ralphy: {identifier} Warning", message)


def notify_result(identifier: str, status: str, max_iterations: int, error: str | None = None) -> None:
    """Send the notification matching a run's final status."""
    if status == "completed":
        notify_success(identifier)
    elif status == "max_iterations":
        notify_warning(identifier, f"Stopped after {max_iterations} iterations")
    else:
        notify_failure(identifier, error)
