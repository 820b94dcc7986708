"""Linear ticket service over the GraphQL API.

All tracker calls go through :meth:`LinearTicketService._graphql`, which
raises :class:`~tickets.TicketServiceError`.  The public methods catch it
and return a :class:`~tickets.ServiceResult`, so nothing raises across the
service boundary.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

import requests

from tickets import (
    Issue,
    IssueState,
    Label,
    ServiceResult,
    SwapResult,
    TicketServiceError,
    priority_from_linear,
)

log = logging.getLogger(__name__)

LINEAR_API_URL = "https://api.linear.app/graphql"
REQUEST_TIMEOUT = 30
PAGE_SIZE = 100

_ISSUE_FIELDS = """
    id
    identifier
    title
    description
    priority
    url
    createdAt
    updatedAt
    team { id }
    state { id name type }
    labels { nodes { id name } }
"""

_ISSUES_BY_LABEL_QUERY = """
query($filter: IssueFilter, $first: Int!, $after: String) {
    issues(filter: $filter, first: $first, after: $after, orderBy: updatedAt) {
        pageInfo { hasNextPage endCursor }
        nodes { %s }
    }
}
""" % _ISSUE_FIELDS

_ISSUE_QUERY = """
query($id: String!) {
    issue(id: $id) { %s }
}
""" % _ISSUE_FIELDS

_VIEWER_QUERY = "query { viewer { id name } }"

_TEAM_STATES_QUERY = """
query($teamId: String!) {
    team(id: $teamId) { states { nodes { id name type } } }
}
"""

_LABEL_BY_NAME_QUERY = """
query($name: String!, $teamId: ID!) {
    issueLabels(filter: { name: { eq: $name }, team: { id: { eq: $teamId } } }) {
        nodes { id name }
    }
}
"""

_COMMENT_MUTATION = """
mutation($issueId: String!, $body: String!) {
    commentCreate(input: { issueId: $issueId, body: $body }) { success }
}
"""

_ISSUE_UPDATE_MUTATION = """
mutation($id: String!, $input: IssueUpdateInput!) {
    issueUpdate(id: $id, input: $input) { success }
}
"""


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def issue_from_node(node: dict) -> Issue:
    """Normalise a Linear issue node into an :class:`Issue`."""
    state = node.get("state")
    labels = (node.get("labels") or {}).get("nodes") or []
    return Issue(
        id=node["id"],
        identifier=node["identifier"],
        title=node["title"],
        description=node.get("description"),
        priority=priority_from_linear(node.get("priority")),
        state=(
            IssueState(id=state["id"], name=state["name"], type=state.get("type") or "unknown")
            if state
            else IssueState(id="", name="Unknown")
        ),
        labels=tuple(Label(id=lbl["id"], name=lbl["name"]) for lbl in labels),
        url=node.get("url"),
        created_at=_parse_timestamp(node.get("createdAt")),
        updated_at=_parse_timestamp(node.get("updatedAt")),
    )


def compute_label_swap(current_ids: list[str], remove_id: str, add_id: str) -> list[str]:
    ids = [i for i in current_ids if i != remove_id]
    if add_id not in ids:
        ids.append(add_id)
    return ids


class LinearTicketService:
    """TicketService implementation for Linear."""

    provider = "linear"

    def __init__(self, api_key: str, timeout: int = REQUEST_TIMEOUT) -> None:
        self.api_key = api_key
        self.timeout = timeout

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def validate_connection(self) -> ServiceResult:
        try:
            data = self._graphql(_VIEWER_QUERY)
        except TicketServiceError as exc:
            return ServiceResult.fail(f"Failed to validate connection: {exc}")
        return ServiceResult.ok((data.get("viewer") or {}).get("id") is not None)

    def fetch_issues_by_label(
        self, team_id: str, label_name: str, project_id: str | None = None
    ) -> ServiceResult:
        issue_filter: dict[str, Any] = {
            "team": {"id": {"eq": team_id}},
            "labels": {"name": {"eq": label_name}},
        }
        if project_id:
            issue_filter["project"] = {"id": {"eq": project_id}}

        issues: list[Issue] = []
        cursor: str | None = None
        try:
            while True:
                data = self._graphql(
                    _ISSUES_BY_LABEL_QUERY,
                    {"filter": issue_filter, "first": PAGE_SIZE, "after": cursor},
                )
                page = data["issues"]
                issues.extend(issue_from_node(node) for node in page["nodes"])
                if not page["pageInfo"]["hasNextPage"]:
                    break
                cursor = page["pageInfo"]["endCursor"]
        except (TicketServiceError, KeyError, TypeError) as exc:
            return ServiceResult.fail(f"Failed to fetch issues: {exc}")
        log.debug("Fetched %d Linear issue(s) labelled %r", len(issues), label_name)
        return ServiceResult.ok(issues)

    def fetch_issue_by_id(self, issue_id: str) -> ServiceResult:
        try:
            return ServiceResult.ok(issue_from_node(self._issue_node(issue_id)))
        except (TicketServiceError, KeyError, TypeError) as exc:
            return ServiceResult.fail(f"Failed to fetch issue: {exc}")

    def add_comment(self, issue_id: str, body: str) -> ServiceResult:
        try:
            node = self._issue_node(issue_id)
            data = self._graphql(_COMMENT_MUTATION, {"issueId": node["id"], "body": body})
            if not (data.get("commentCreate") or {}).get("success"):
                raise TicketServiceError("commentCreate returned success=false")
        except (TicketServiceError, KeyError, TypeError) as exc:
            return ServiceResult.fail(f"Failed to add comment: {exc}")
        return ServiceResult.ok()

    def update_issue_state(self, issue_id: str, state_name: str) -> ServiceResult:
        try:
            node = self._issue_node(issue_id)
            team_id = self._team_id(node)
            data = self._graphql(_TEAM_STATES_QUERY, {"teamId": team_id})
            states = ((data.get("team") or {}).get("states") or {}).get("nodes") or []
            wanted = state_name.lower()
            match = next((s for s in states if s["name"].lower() == wanted), None)
            if match is None:
                available = ", ".join(s["name"] for s in states)
                return ServiceResult.fail(
                    f'State "{state_name}" not found. Available states: {available}'
                )
            self._update_issue(node["id"], {"stateId": match["id"]})
        except (TicketServiceError, KeyError, TypeError) as exc:
            return ServiceResult.fail(f"Failed to update issue state: {exc}")
        return ServiceResult.ok()

    def add_label(self, issue_id: str, label_name: str) -> ServiceResult:
        try:
            node = self._issue_node(issue_id)
            issue = issue_from_node(node)
            if issue.has_label(label_name):
                return ServiceResult.ok()
            label_id = self._label_id(label_name, self._team_id(node))
            self._update_issue(issue.id, {"labelIds": [lbl.id for lbl in issue.labels] + [label_id]})
        except (TicketServiceError, KeyError, TypeError) as exc:
            return ServiceResult.fail(f"Failed to add label: {exc}")
        return ServiceResult.ok()

    def remove_label(self, issue_id: str, label_name: str) -> ServiceResult:
        try:
            issue = issue_from_node(self._issue_node(issue_id))
            target = next((lbl for lbl in issue.labels if lbl.name == label_name), None)
            if target is None:
                return ServiceResult.ok()
            remaining = [lbl.id for lbl in issue.labels if lbl.id != target.id]
            self._update_issue(issue.id, {"labelIds": remaining})
        except (TicketServiceError, KeyError, TypeError) as exc:
            return ServiceResult.fail(f"Failed to remove label: {exc}")
        return ServiceResult.ok()

    def swap_labels(self, issue_id: str, remove: str, add: str) -> ServiceResult:
        try:
            node = self._issue_node(issue_id)
            issue = issue_from_node(node)
            has_remove = issue.has_label(remove)
            has_add = issue.has_label(add)
            if not has_remove and has_add:
                return ServiceResult.ok(SwapResult(removed=None, added=None, already_had_target=True))

            team_id = self._team_id(node)
            remove_id = self._label_id(remove, team_id)
            add_id = self._label_id(add, team_id)
            label_ids = compute_label_swap([lbl.id for lbl in issue.labels], remove_id, add_id)
            self._update_issue(issue.id, {"labelIds": label_ids})
        except (TicketServiceError, KeyError, TypeError) as exc:
            return ServiceResult.fail(f"Failed to swap labels: {exc}")
        return ServiceResult.ok(SwapResult(
            removed=remove if has_remove else None,
            added=add if not has_add else None,
        ))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _graphql(self, query: str, variables: dict | None = None) -> dict:
        """POST a GraphQL document and return its ``data`` payload."""
        headers = {"Authorization": self.api_key, "Content-Type": "application/json"}
        try:
            resp = requests.post(
                LINEAR_API_URL,
                json={"query": query, "variables": variables or {}},
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise TicketServiceError(str(exc)) from exc
        if resp.status_code != 200:
            raise TicketServiceError(f"Linear API returned {resp.status_code}: {resp.text[:500]}")
        try:
            payload = resp.json()
        except ValueError as exc:
            raise TicketServiceError("Linear API returned invalid JSON") from exc
        if payload.get("errors"):
            messages = "; ".join(e.get("message", str(e)) for e in payload["errors"])
            raise TicketServiceError(messages)
        return payload.get("data") or {}

    def _issue_node(self, issue_id: str) -> dict:
        node = self._graphql(_ISSUE_QUERY, {"id": issue_id}).get("issue")
        if not node:
            raise TicketServiceError(f"Issue {issue_id} not found")
        return node

    @staticmethod
    def _team_id(node: dict) -> str:
        team = node.get("team")
        if not team:
            raise TicketServiceError("Could not determine team for issue")
        return team["id"]

    def _label_id(self, label_name: str, team_id: str) -> str:
        data = self._graphql(_LABEL_BY_NAME_QUERY, {"name": label_name, "teamId": team_id})
        nodes = (data.get("issueLabels") or {}).get("nodes") or []
        if not nodes:
            raise TicketServiceError(f'Label "{label_name}" not found for this team')
        return nodes[0]["id"]

    def _update_issue(self, issue_id: str, update: dict) -> None:
        data = self._graphql(_ISSUE_UPDATE_MUTATION, {"id": issue_id, "input": update})
        if not (data.get("issueUpdate") or {}).get("success"):
            raise TicketServiceError("issueUpdate returned success=false")
