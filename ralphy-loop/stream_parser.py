"""Parse ``claude --output-format stream-json`` events for live display.

Each stdout line is one JSON event.  ``assistant`` events carry text and
tool_use blocks, ``result`` closes the run with cost, duration and turn
count.  Lines that are not JSON events (plain error text, blank lines)
parse to None and are kept verbatim by :class:`StreamCollector`.
"""

import json
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Any
from urllib.parse import urlparse

TOOL_ICONS = {
    "Bash": "💻",
    "Read": "📂",
    "Edit": "✏️ ",
    "Write": "📝",
    "Grep": "🔍",
    "Glob": "📁",
    "Task": "🤖",
    "WebFetch": "🌐",
    "WebSearch": "🔎",
    "TodoWrite": "📋",
}
DEFAULT_TOOL_ICON = "🔧"

_EVENT_TYPES = {"assistant", "user", "result", "system"}


@dataclass
class ToolActivity:
    tool: str
    description: str = ""


@dataclass
class ExecutionStats:
    cost_usd: float | None = None
    duration_ms: int | None = None
    num_turns: int | None = None


def parse_stream_line(line: str) -> dict[str, Any] | None:
    """Return the event on *line*, or None if it is not a known event."""
    text = line.strip()
    if not text:
        return None
    try:
        event = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(event, dict) or event.get("type") not in _EVENT_TYPES:
        return None
    return event


def _content_blocks(event: dict[str, Any]) -> list[dict[str, Any]]:
    if event.get("type") != "assistant":
        return []
    message = event.get("message") or {}
    content = message.get("content") or []
    return [block for block in content if isinstance(block, dict)]


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[: limit - 3] + "..."


def _describe_tool(tool: str, tool_input: dict[str, Any] | None) -> str:
    if not tool_input:
        return tool

    def _str(key: str) -> str | None:
        value = tool_input.get(key)
        return value if isinstance(value, str) else None

    if tool == "Bash" and _str("command"):
        return _truncate(_str("command"), 60)
    if tool in ("Read", "Edit", "Write") and _str("file_path"):
        return PurePosixPath(_str("file_path")).name
    if tool in ("Grep", "WebSearch"):
        key = "pattern" if tool == "Grep" else "query"
        if _str(key):
            return f'"{_truncate(_str(key), 40)}"'
    if tool == "Glob" and _str("pattern"):
        return _str("pattern")
    if tool == "Task" and _str("description"):
        return _str("description")
    if tool == "WebFetch" and _str("url"):
        return urlparse(_str("url")).hostname or _str("url")[:40]
    return ""


def extract_tool_activities(event: dict[str, Any]) -> list[ToolActivity]:
    return [
        ToolActivity(tool=block.get("name", "?"), description=_describe_tool(block.get("name", ""), block.get("input")))
        for block in _content_blocks(event)
        if block.get("type") == "tool_use"
    ]


def extract_text(event: dict[str, Any]) -> str:
    """Concatenated text blocks of an assistant event."""
    return "".join(
        block.get("text", "") for block in _content_blocks(event) if block.get("type") == "text"
    )


def extract_stats(event: dict[str, Any]) -> ExecutionStats | None:
    if event.get("type") != "result":
        return None
    return ExecutionStats(
        cost_usd=event.get("total_cost_usd"),
        duration_ms=event.get("duration_ms"),
        num_turns=event.get("num_turns"),
    )


def format_tool_activity(activity: ToolActivity) -> str:
    icon = TOOL_ICONS.get(activity.tool, DEFAULT_TOOL_ICON)
    suffix = f": {activity.description}" if activity.description else ""
    return f"{icon} {activity.tool}{suffix}"


def format_stats(stats: ExecutionStats) -> str:
    parts = []
    if stats.duration_ms is not None:
        parts.append(f"{round(stats.duration_ms / 1000)}s")
    if stats.cost_usd is not None:
        parts.append(f"${stats.cost_usd:.3f}")
    if stats.num_turns is not None:
        parts.append(f"{stats.num_turns} turns")
    return ", ".join(parts)


class StreamCollector:
    """Feed stream-json lines in, get the plain-text transcript out.

    The transcript is what completion and rate-limit detection read: the
    assistant's text blocks, or the final ``result`` text when no text block
    arrived, plus any non-event lines verbatim.
    """

    def __init__(
        self,
        on_tool_activity: Callable[[ToolActivity], None] | None = None,
        on_stats: Callable[[ExecutionStats], None] | None = None,
    ) -> None:
        self.on_tool_activity = on_tool_activity
        self.on_stats = on_stats
        self.stats: ExecutionStats | None = None
        self._texts: list[str] = []
        self._raw: list[str] = []
        self._result_text = ""

    def feed(self, line: str) -> None:
        event = parse_stream_line(line)
        if event is None:
            if line.strip():
                self._raw.append(line)
            return

        text = extract_text(event)
        if text:
            self._texts.append(text)
        if self.on_tool_activity is not None:
            for activity in extract_tool_activities(event):
                self.on_tool_activity(activity)

        stats = extract_stats(event)
        if stats is not None:
            self.stats = stats
            result_text = event.get("result")
            if isinstance(result_text, str):
                self._result_text = result_text
            if self.on_stats is not None:
                self.on_stats(stats)

    @property
    def output(self) -> str:
        body = "\n".join(self._texts) if self._texts else self._result_text
        raw = "".join(self._raw)
        if raw:
            return f"{body}\n{raw}" if body else raw
        return body
