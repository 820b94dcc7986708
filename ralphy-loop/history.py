"""Durable run history under ``.ralphy/history/<identifier>/``.

Each run writes ``run.json`` (the record) and ``output.log`` (every
iteration's output).  A directory holds the most recent run of its issue.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)

RUN_FILE = "run.json"
OUTPUT_FILE = "output.log"


@dataclass(frozen=True)
class HistoryEntry:
    identifier: str
    started_at: str
    completed_at: str | None
    status: str
    iterations: int
    total_duration_ms: int
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "identifier": self.identifier,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "status": self.status,
            "iterations": self.iterations,
            "totalDurationMs": self.total_duration_ms,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict) -> HistoryEntry:
        """Build an entry from a decoded run.json; raises ValueError if malformed."""
        try:
            return cls(
                identifier=str(data["identifier"]),
                started_at=str(data["startedAt"]),
                completed_at=data.get("completedAt"),
                status=str(data["status"]),
                iterations=int(data["iterations"]),
                total_duration_ms=int(data["totalDurationMs"]),
                error=data.get("error"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Invalid history run format: {exc}") from exc


@dataclass
class HistorySummary:
    total_runs: int = 0
    completed_runs: int = 0
    max_iteration_runs: int = 0
    error_runs: int = 0
    completion_rate: float = 0.0
    recent_runs: list[HistoryEntry] = field(default_factory=list)


class HistoryStore:
    def __init__(self, history_dir: str | Path) -> None:
        self.history_dir = Path(history_dir)

    def run_dir(self, identifier: str) -> Path:
        return self.history_dir / identifier

    def save(self, entry: HistoryEntry, output: str) -> Path:
        """Write the record and output log for one run; returns the directory."""
        run_dir = self.run_dir(entry.identifier)
        run_dir.mkdir(parents=True, exist_ok=True)
        (run_dir / RUN_FILE).write_text(json.dumps(entry.to_dict(), indent=2) + "\n")
        (run_dir / OUTPUT_FILE).write_text(output)
        return run_dir

    def load(self, identifier: str) -> HistoryEntry:
        data = json.loads((self.run_dir(identifier) / RUN_FILE).read_text())
        return HistoryEntry.from_dict(data)

    def load_output(self, identifier: str) -> str:
        return (self.run_dir(identifier) / OUTPUT_FILE).read_text()

    def load_all(self) -> list[HistoryEntry]:
        """Return every readable run record; malformed ones are skipped with a warning."""
        if not self.history_dir.is_dir():
            return []
        entries: list[HistoryEntry] = []
        for run_file in sorted(self.history_dir.glob(f"*/{RUN_FILE}")):
            try:
                entries.append(HistoryEntry.from_dict(json.loads(run_file.read_text())))
            except (OSError, ValueError) as exc:
                logger.warning("Skipping unreadable history record %s: %s", run_file, exc)
        return entries


def _started_key(entry: HistoryEntry) -> float:
    try:
        return datetime.fromisoformat(entry.started_at).timestamp()
    except ValueError:
        return float("-inf")


def summarize_history(entries: list[HistoryEntry], limit: int = 5) -> HistorySummary:
    total = len(entries)
    completed = sum(1 for e in entries if e.status == "completed")
    recent = sorted(entries, key=_started_key, reverse=True)[:limit]
    return HistorySummary(
        total_runs=total,
        completed_runs=completed,
        max_iteration_runs=sum(1 for e in entries if e.status == "max_iterations"),
        error_runs=sum(1 for e in entries if e.status == "error"),
        completion_rate=(completed / total * 100) if total else 0.0,
        recent_runs=recent,
    )
