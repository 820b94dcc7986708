"""GitHub Issues ticket service, driven through the ``gh`` CLI.

GitHub has no workflow states, so they are mapped onto labels and the
open/closed flag:

* open issues are ``unstarted``, closed issues are ``completed``;
* moving an issue to "In Review" adds the ``in-review`` label, and an
  open issue carrying that label reports the state "In Review";
* done/closed/cancelled states close the issue, todo/open states reopen it.

Labels of the form ``priority:<name>`` (e.g. ``priority:high``) set the
issue priority.
"""

from __future__ import annotations

import json
import logging
import re
import subprocess
from datetime import datetime
from pathlib import Path

from tickets import (
    Issue,
    IssueState,
    Label,
    Priority,
    ServiceResult,
    SwapResult,
    TicketServiceError,
    parse_priority,
)

log = logging.getLogger(__name__)

IN_REVIEW_LABEL = "in-review"
ISSUE_FIELDS = "number,title,body,labels,state,url,createdAt,updatedAt"
LIST_LIMIT = 200

_PRIORITY_LABEL = re.compile(r"^priority:(\w+)$", re.IGNORECASE)
_ISSUE_NUMBER = re.compile(r"^#?(\d+)$")

_CLOSE_STATES = ("done", "closed", "completed", "canceled", "cancelled")
_REVIEW_STATES = ("in review", "review")
_OPEN_STATES = ("todo", "open", "backlog", "in progress")
_KNOWN_STATES = "Todo, In Progress, In Review, Done, Closed"


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _parse_priority(labels: list[dict]) -> Priority:
    for lbl in labels:
        m = _PRIORITY_LABEL.match(lbl.get("name", ""))
        if m:
            try:
                return parse_priority(m.group(1))
            except ValueError:
                continue
    return Priority.NONE


def _issue_state(raw_state: str, label_names: list[str]) -> IssueState:
    if raw_state.upper() == "CLOSED":
        return IssueState(id="closed", name="Closed", type="completed")
    if IN_REVIEW_LABEL in label_names:
        return IssueState(id="in-review", name="In Review", type="started")
    return IssueState(id="open", name="Open", type="unstarted")


def issue_from_gh(data: dict) -> Issue:
    """Normalise ``gh issue ... --json`` output into an :class:`Issue`."""
    number: int = data["number"]
    labels: list[dict] = data.get("labels") or []
    label_names = [lbl.get("name", "") for lbl in labels]
    return Issue(
        id=str(number),
        identifier=f"#{number}",
        title=data["title"],
        description=data.get("body") or None,
        priority=_parse_priority(labels),
        state=_issue_state(data.get("state", "OPEN"), label_names),
        labels=tuple(Label(id=lbl.get("id") or lbl["name"], name=lbl["name"]) for lbl in labels),
        url=data.get("url"),
        created_at=_parse_timestamp(data.get("createdAt")),
        updated_at=_parse_timestamp(data.get("updatedAt")),
    )


def issue_number(issue_id: str) -> int:
    """Extract the issue number from ``#42`` or ``42``."""
    m = _ISSUE_NUMBER.match(issue_id.strip())
    if not m:
        raise ValueError(f"Invalid GitHub issue id: {issue_id!r}")
    return int(m.group(1))


class GitHubTicketService:
    """TicketService implementation for GitHub Issues.

    Parameters
    ----------
    repo:
        ``owner/name`` of the repository.
    repo_path:
        Local checkout used as cwd for ``gh`` calls.
    """

    provider = "github"

    def __init__(self, repo: str, repo_path: str | Path = ".") -> None:
        self.repo = repo
        self.repo_path = Path(repo_path).resolve()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def validate_connection(self) -> ServiceResult:
        try:
            self._gh(["repo", "view", self.repo, "--json", "name"])
        except TicketServiceError as exc:
            return ServiceResult.fail(f"Failed to validate connection: {exc}")
        return ServiceResult.ok(True)

    def fetch_issues_by_label(
        self, team_id: str, label_name: str, project_id: str | None = None
    ) -> ServiceResult:
        try:
            result = self._gh([
                "issue", "list",
                "--repo", team_id or self.repo,
                "--label", label_name,
                "--state", "open",
                "--limit", str(LIST_LIMIT),
                "--json", ISSUE_FIELDS,
            ])
            issues = [issue_from_gh(item) for item in json.loads(result.stdout)]
        except (TicketServiceError, json.JSONDecodeError, KeyError) as exc:
            return ServiceResult.fail(f"Failed to fetch issues: {exc}")
        log.debug("Fetched %d GitHub issue(s) labelled %r", len(issues), label_name)
        return ServiceResult.ok(issues)

    def fetch_issue_by_id(self, issue_id: str) -> ServiceResult:
        try:
            return ServiceResult.ok(self._view(issue_id))
        except (TicketServiceError, ValueError, KeyError) as exc:
            return ServiceResult.fail(f"Failed to fetch issue: {exc}")

    def add_comment(self, issue_id: str, body: str) -> ServiceResult:
        try:
            number = issue_number(issue_id)
            self._gh(["issue", "comment", str(number), "--repo", self.repo, "--body", body], timeout=120)
        except (TicketServiceError, ValueError) as exc:
            return ServiceResult.fail(f"Failed to add comment: {exc}")
        return ServiceResult.ok()

    def update_issue_state(self, issue_id: str, state_name: str) -> ServiceResult:
        wanted = state_name.strip().lower()
        try:
            number = str(issue_number(issue_id))
            if wanted in _CLOSE_STATES:
                self._gh(["issue", "close", number, "--repo", self.repo], timeout=120)
            elif wanted in _REVIEW_STATES:
                self._edit(number, add=[IN_REVIEW_LABEL])
            elif wanted in _OPEN_STATES:
                issue = self._view(issue_id)
                if issue.state.type == "completed":
                    self._gh(["issue", "reopen", number, "--repo", self.repo], timeout=120)
                if issue.has_label(IN_REVIEW_LABEL):
                    self._edit(number, remove=[IN_REVIEW_LABEL])
            else:
                return ServiceResult.fail(
                    f'State "{state_name}" not found. Available states: {_KNOWN_STATES}'
                )
        except (TicketServiceError, ValueError, KeyError) as exc:
            return ServiceResult.fail(f"Failed to update issue state: {exc}")
        return ServiceResult.ok()

    def add_label(self, issue_id: str, label_name: str) -> ServiceResult:
        try:
            self._edit(str(issue_number(issue_id)), add=[label_name])
        except (TicketServiceError, ValueError) as exc:
            return ServiceResult.fail(f"Failed to add label: {exc}")
        return ServiceResult.ok()

    def remove_label(self, issue_id: str, label_name: str) -> ServiceResult:
        try:
            issue = self._view(issue_id)
            if not issue.has_label(label_name):
                return ServiceResult.ok()
            self._edit(issue.id, remove=[label_name])
        except (TicketServiceError, ValueError, KeyError) as exc:
            return ServiceResult.fail(f"Failed to remove label: {exc}")
        return ServiceResult.ok()

    def swap_labels(self, issue_id: str, remove: str, add: str) -> ServiceResult:
        try:
            issue = self._view(issue_id)
            has_remove = issue.has_label(remove)
            has_add = issue.has_label(add)
            if not has_remove and has_add:
                return ServiceResult.ok(SwapResult(removed=None, added=None, already_had_target=True))
            self._edit(
                issue.id,
                add=[] if has_add else [add],
                remove=[remove] if has_remove else [],
            )
        except (TicketServiceError, ValueError, KeyError) as exc:
            return ServiceResult.fail(f"Failed to swap labels: {exc}")
        return ServiceResult.ok(SwapResult(
            removed=remove if has_remove else None,
            added=add if not has_add else None,
        ))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _gh(self, args: list[str], timeout: int = 60) -> subprocess.CompletedProcess:
        """Run a ``gh`` subcommand, raising TicketServiceError on failure."""
        cmd = ["gh"] + args
        try:
            result = subprocess.run(
                cmd,
                cwd=self.repo_path,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise TicketServiceError(
                f"gh command timed out after {timeout}s: {' '.join(cmd[:3])}"
            ) from exc
        except OSError as exc:
            raise TicketServiceError(f"gh command could not be started: {exc}") from exc
        if result.returncode != 0:
            raise TicketServiceError(
                f"gh command failed ({result.returncode}): "
                f"{' '.join(cmd[:3])}\n{result.stderr.strip()}"
            )
        return result

    def _view(self, issue_id: str) -> Issue:
        number = issue_number(issue_id)
        result = self._gh(["issue", "view", str(number), "--repo", self.repo, "--json", ISSUE_FIELDS])
        try:
            return issue_from_gh(json.loads(result.stdout))
        except json.JSONDecodeError as exc:
            raise TicketServiceError("gh returned invalid JSON") from exc

    def _edit(self, number: str, add: list[str] | None = None, remove: list[str] | None = None) -> None:
        args = ["issue", "edit", number, "--repo", self.repo]
        for name in add or []:
            args += ["--add-label", name]
        for name in remove or []:
            args += ["--remove-label", name]
        self._gh(args, timeout=120)
