"""Ticket-tracker data model and the service contract the orchestrator consumes.

Every tracker (Linear, GitHub) is normalised to :class:`Issue`.  Services
return :class:`ServiceResult` values instead of raising across the boundary,
so callers can treat tracker failures as advisory.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol


class Priority(str, Enum):
    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"

    @property
    def label(self) -> str:
        return PRIORITY_LABELS[self]


PRIORITY_LABELS: dict[Priority, str] = {
    Priority.URGENT: "Urgent",
    Priority.HIGH: "High",
    Priority.MEDIUM: "Medium",
    Priority.LOW: "Low",
    Priority.NONE: "No priority",
}

_LINEAR_PRIORITIES = {
    0: Priority.NONE,
    1: Priority.URGENT,
    2: Priority.HIGH,
    3: Priority.MEDIUM,
    4: Priority.LOW,
}


def priority_from_linear(value: int | None) -> Priority:
    """Map Linear's integer priority (0 = none, 1 = urgent .. 4 = low)."""
    return _LINEAR_PRIORITIES.get(value, Priority.NONE)


def parse_priority(value: str) -> Priority:
    """Parse a priority name such as ``high`` (case-insensitive)."""
    try:
        return Priority(value.strip().lower())
    except ValueError as exc:
        choices = ", ".join(p.value for p in Priority)
        raise ValueError(f"Unknown priority {value!r} (expected one of: {choices})") from exc


@dataclass(frozen=True)
class IssueState:
    id: str
    name: str
    type: str = "unknown"


@dataclass(frozen=True)
class Label:
    id: str
    name: str


@dataclass(frozen=True)
class Issue:
    id: str
    identifier: str
    title: str
    description: str | None = None
    priority: Priority = Priority.NONE
    state: IssueState = field(default_factory=lambda: IssueState(id="", name="Unknown"))
    labels: tuple[Label, ...] = ()
    url: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def label_names(self) -> list[str]:
        return [lbl.name for lbl in self.labels]

    def has_label(self, name: str) -> bool:
        return any(lbl.name == name for lbl in self.labels)


@dataclass
class ServiceResult:
    success: bool
    data: Any = None
    error: str | None = None

    @classmethod
    def ok(cls, data: Any = None) -> ServiceResult:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str) -> ServiceResult:
        return cls(success=False, error=error)


@dataclass
class SwapResult:
    removed: str | None
    added: str | None
    already_had_target: bool = False


class TicketServiceError(Exception):
    """Raised inside a ticket service when a tracker call fails."""


class TicketService(Protocol):
    provider: str

    def validate_connection(self) -> ServiceResult: ...

    def fetch_issues_by_label(
        self, team_id: str, label_name: str, project_id: str | None = None
    ) -> ServiceResult: ...

    def fetch_issue_by_id(self, issue_id: str) -> ServiceResult: ...

    def add_comment(self, issue_id: str, body: str) -> ServiceResult: ...

    def update_issue_state(self, issue_id: str, state_name: str) -> ServiceResult: ...

    def add_label(self, issue_id: str, label_name: str) -> ServiceResult: ...

    def remove_label(self, issue_id: str, label_name: str) -> ServiceResult: ...

    def swap_labels(self, issue_id: str, remove: str, add: str) -> ServiceResult: ...


# ---------------------------------------------------------------------------
# Actionability filter
# ---------------------------------------------------------------------------

SKIP_STATE_TYPES = ("completed", "canceled")
SKIP_STATE_NAMES = ("done", "in review", "review", "cancelled", "canceled")


def is_issue_actionable(issue: Issue) -> bool:
    """Return False for issues that are done, cancelled or already in review."""
    state_type = issue.state.type.lower()
    state_name = issue.state.name.lower()
    if state_type in SKIP_STATE_TYPES:
        return False
    return not any(name in state_name for name in SKIP_STATE_NAMES)


def filter_actionable(issues: list[Issue]) -> tuple[list[Issue], list[Issue]]:
    """Split *issues* into (actionable, skipped), preserving order."""
    actionable: list[Issue] = []
    skipped: list[Issue] = []
    for issue in issues:
        (actionable if is_issue_actionable(issue) else skipped).append(issue)
    return actionable, skipped


# ---------------------------------------------------------------------------
# Provider tagged union
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LinearProvider:
    team_id: str
    api_key: str = ""
    project_id: str | None = None
    project_name: str | None = None
    type: str = field(default="linear", init=False)


@dataclass(frozen=True)
class GitHubProvider:
    repo: str
    repo_path: str = "."
    project_name: str | None = None
    type: str = field(default="github", init=False)


TicketProvider = LinearProvider | GitHubProvider


@dataclass(frozen=True)
class TeamScope:
    team_id: str
    project_id: str | None = None


def resolve_team_scope(provider: TicketProvider) -> TeamScope:
    """Return the (team, project) scope used when fetching issues."""
    if isinstance(provider, LinearProvider):
        return TeamScope(team_id=provider.team_id, project_id=provider.project_id)
    if isinstance(provider, GitHubProvider):
        return TeamScope(team_id=provider.repo)
    raise TypeError(f"Unsupported ticket provider: {provider!r}")
