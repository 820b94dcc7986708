"""Classify raw agent output: completion sentinel, rate limiting, errors."""

import re
from dataclasses import dataclass

COMPLETION_MARKER = "<promise>DONE</promise>"

_RATE_LIMIT_PATTERNS = [
    re.compile(r"rate.?limit", re.IGNORECASE),
    re.compile(r"too many requests", re.IGNORECASE),
    re.compile(r"429"),
    re.compile(r"quota exceeded", re.IGNORECASE),
    re.compile(r"capacity", re.IGNORECASE),
]

_ERROR_PATTERNS = [
    re.compile(r"error:", re.IGNORECASE),
    re.compile(r"failed to", re.IGNORECASE),
    re.compile(r"cannot", re.IGNORECASE),
    re.compile(r"exception", re.IGNORECASE),
]


@dataclass(frozen=True)
class OutputAnalysis:
    is_complete: bool = False
    is_rate_limited: bool = False
    has_error: bool = False


def is_complete(output: str) -> bool:
    return COMPLETION_MARKER.lower() in output.lower()


def is_rate_limited(output: str) -> bool:
    return any(p.search(output) for p in _RATE_LIMIT_PATTERNS)


def has_error(output: str) -> bool:
    return any(p.search(output) for p in _ERROR_PATTERNS)


def analyze_output(output: str | None) -> OutputAnalysis:
    """Return the completion/rate-limit/error flags for *output*.

    Never raises. A rate-limit match suppresses the error flag, since
    rate-limit messages usually contain words like "error" or "cannot".
    """
    if not isinstance(output, str) or not output:
        return OutputAnalysis()
    rate_limited = is_rate_limited(output)
    return OutputAnalysis(
        is_complete=is_complete(output),
        is_rate_limited=rate_limited,
        has_error=has_error(output) and not rate_limited,
    )
