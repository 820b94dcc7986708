"""Rate-limit handling: extract the suggested wait and count it down."""

import logging
import math
import re
import time
from collections.abc import Callable

from rich.console import Console

logger = logging.getLogger(__name__)
console = Console()

DEFAULT_RATE_LIMIT_WAIT_MS = 5 * 60 * 1000

_WAIT_PATTERNS = [
    re.compile(r"try again in (\d+)\s*seconds?", re.IGNORECASE),
    re.compile(r"wait (\d+)\s*seconds?", re.IGNORECASE),
    re.compile(r"(\d+)\s*seconds? remaining", re.IGNORECASE),
    re.compile(r"retry after (\d+)", re.IGNORECASE),
]


def extract_wait_ms(output: str) -> int | None:
    """Return the wait suggested by *output* in milliseconds, or None."""
    for pattern in _WAIT_PATTERNS:
        match = pattern.search(output)
        if match:
            seconds = int(match.group(1))
            if seconds > 0:
                return seconds * 1000
    return None


def format_wait_time(ms: int) -> str:
    """Format *ms* as 'Xm Ys', 'Xm' or 'Ys'."""
    seconds = math.ceil(ms / 1000)
    minutes, secs = divmod(seconds, 60)
    if minutes > 0:
        return f"{minutes}m {secs}s" if secs > 0 else f"{minutes}m"
    return f"{secs}s"


def wait_with_countdown(
    ms: int,
    on_tick: Callable[[int], None],
    should_stop: Callable[[], bool] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Block for *ms*, calling ``on_tick(remaining_seconds)`` once per second.

    ``on_tick`` fires immediately with the full count, then after every
    second down to 0.  *should_stop* is checked before each sleep; when it
    returns True the wait ends early and False is returned.  Returns True
    when the full wait elapsed.
    """
    remaining = max(0, math.ceil(ms / 1000))
    on_tick(remaining)
    while remaining > 0:
        if should_stop is not None and should_stop():
            return False
        sleep(1)
        remaining -= 1
        on_tick(remaining)
    return True


def handle_rate_limit(
    output: str,
    should_stop: Callable[[], bool] | None = None,
    default_wait_ms: int = DEFAULT_RATE_LIMIT_WAIT_MS,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Wait out a rate limit reported in *output*. Returns False if interrupted."""
    wait_ms = extract_wait_ms(output) or default_wait_ms
    logger.warning("Rate limited. Waiting %s before retrying", format_wait_time(wait_ms))

    with console.status("") as status:
        def _tick(remaining: int) -> None:
            status.update(
                f"[yellow]Rate limited.[/yellow] Waiting {format_wait_time(remaining * 1000)}..."
            )

        completed = wait_with_countdown(wait_ms, _tick, should_stop=should_stop, sleep=sleep)

    if completed:
        logger.info("Rate limit wait complete, resuming")
    else:
        logger.warning("Rate limit wait interrupted by stop request")
    return completed
