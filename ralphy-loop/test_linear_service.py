"""Tests for the Linear GraphQL ticket service."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from linear_service import (
    LINEAR_API_URL,
    PAGE_SIZE,
    LinearTicketService,
    compute_label_swap,
    issue_from_node,
)
from tickets import Priority, SwapResult


def make_response(data: dict | None = None, status: int = 200, errors: list | None = None) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.text = "server said no"
    payload: dict = {"data": data}
    if errors:
        payload["errors"] = errors
    resp.json.return_value = payload
    return resp


def make_node(n: int = 1, labels: list[tuple[str, str]] | None = None, state: str = "Todo") -> dict:
    return {
        "id": f"uuid-{n}",
        "identifier": f"ENG-{n}",
        "title": f"Issue {n}",
        "description": "Body",
        "priority": 2,
        "url": f"https://linear.app/acme/issue/ENG-{n}",
        "createdAt": "2026-01-02T03:04:05.000Z",
        "updatedAt": "2026-01-03T03:04:05.000Z",
        "team": {"id": "team-1"},
        "state": {"id": "state-1", "name": state, "type": "unstarted"},
        "labels": {"nodes": [{"id": i, "name": name} for i, name in (labels or [])]},
    }


def make_page(nodes: list[dict], has_next: bool = False, cursor: str | None = None) -> MagicMock:
    return make_response({
        "issues": {"pageInfo": {"hasNextPage": has_next, "endCursor": cursor}, "nodes": nodes}
    })


def sent_variables(mock_post: MagicMock, call_index: int = -1) -> dict:
    return mock_post.call_args_list[call_index].kwargs["json"]["variables"]


# ---------------------------------------------------------------------------
# Normalisation
# ---------------------------------------------------------------------------


def test_issue_from_node_normalises_fields() -> None:
    issue = issue_from_node(make_node(7, labels=[("l1", "ralph-ready")]))
    assert issue.identifier == "ENG-7"
    assert issue.priority is Priority.HIGH
    assert issue.state.type == "unstarted"
    assert issue.label_names == ["ralph-ready"]
    assert issue.created_at.year == 2026
    assert issue.created_at.tzinfo is not None


def test_issue_from_node_without_state() -> None:
    node = make_node()
    node["state"] = None
    node["priority"] = None
    issue = issue_from_node(node)
    assert issue.state.name == "Unknown"
    assert issue.priority is Priority.NONE


def test_compute_label_swap() -> None:
    assert compute_label_swap(["a", "old", "b"], "old", "new") == ["a", "b", "new"]
    assert compute_label_swap(["a", "new"], "old", "new") == ["a", "new"]


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


@patch("linear_service.requests.post")
def test_requests_are_authorised(mock_post: MagicMock) -> None:
    mock_post.return_value = make_response({"viewer": {"id": "me"}})
    result = LinearTicketService("lin_api_key").validate_connection()
    assert result.success and result.data is True
    args, kwargs = mock_post.call_args
    assert args[0] == LINEAR_API_URL
    assert kwargs["headers"]["Authorization"] == "lin_api_key"
    assert kwargs["timeout"] == 30


@patch("linear_service.requests.post")
def test_http_error_becomes_failure(mock_post: MagicMock) -> None:
    mock_post.return_value = make_response(status=500)
    result = LinearTicketService("k").fetch_issues_by_label("team-1", "ralph-ready")
    assert not result.success
    assert "Failed to fetch issues" in result.error
    assert "500" in result.error


@patch("linear_service.requests.post")
def test_graphql_errors_become_failure(mock_post: MagicMock) -> None:
    mock_post.return_value = make_response(errors=[{"message": "Entity not found"}])
    result = LinearTicketService("k").fetch_issue_by_id("ENG-404")
    assert not result.success
    assert "Entity not found" in result.error


@patch("linear_service.requests.post")
def test_network_error_becomes_failure(mock_post: MagicMock) -> None:
    mock_post.side_effect = requests.ConnectionError("dns failure")
    result = LinearTicketService("k").add_comment("ENG-1", "hi")
    assert not result.success
    assert "dns failure" in result.error


# ---------------------------------------------------------------------------
# Fetching
# ---------------------------------------------------------------------------


@patch("linear_service.requests.post")
def test_fetch_issues_paginates(mock_post: MagicMock) -> None:
    mock_post.side_effect = [
        make_page([make_node(1), make_node(2)], has_next=True, cursor="c1"),
        make_page([make_node(3)]),
    ]
    result = LinearTicketService("k").fetch_issues_by_label("team-1", "ralph-ready", project_id="proj-1")
    assert result.success
    assert [i.identifier for i in result.data] == ["ENG-1", "ENG-2", "ENG-3"]
    first = sent_variables(mock_post, 0)
    assert first["first"] == PAGE_SIZE
    assert first["after"] is None
    assert first["filter"]["team"] == {"id": {"eq": "team-1"}}
    assert first["filter"]["labels"] == {"name": {"eq": "ralph-ready"}}
    assert first["filter"]["project"] == {"id": {"eq": "proj-1"}}
    assert sent_variables(mock_post, 1)["after"] == "c1"


@patch("linear_service.requests.post")
def test_fetch_issues_without_project_filter(mock_post: MagicMock) -> None:
    mock_post.return_value = make_page([])
    LinearTicketService("k").fetch_issues_by_label("team-1", "ralph-ready")
    assert "project" not in sent_variables(mock_post)["filter"]


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


@patch("linear_service.requests.post")
def test_add_comment(mock_post: MagicMock) -> None:
    mock_post.side_effect = [
        make_response({"issue": make_node()}),
        make_response({"commentCreate": {"success": True}}),
    ]
    assert LinearTicketService("k").add_comment("ENG-1", "Starting").success
    assert sent_variables(mock_post, 0) == {"id": "ENG-1"}
    assert sent_variables(mock_post) == {"issueId": "uuid-1", "body": "Starting"}


@patch("linear_service.requests.post")
def test_update_state_matches_case_insensitively(mock_post: MagicMock) -> None:
    mock_post.side_effect = [
        make_response({"issue": make_node()}),
        make_response({"team": {"states": {"nodes": [
            {"id": "s-todo", "name": "Todo", "type": "unstarted"},
            {"id": "s-review", "name": "In Review", "type": "started"},
        ]}}}),
        make_response({"issueUpdate": {"success": True}}),
    ]
    result = LinearTicketService("k").update_issue_state("ENG-1", "in review")
    assert result.success
    assert sent_variables(mock_post) == {"id": "uuid-1", "input": {"stateId": "s-review"}}


@patch("linear_service.requests.post")
def test_update_state_unknown_lists_available(mock_post: MagicMock) -> None:
    mock_post.side_effect = [
        make_response({"issue": make_node()}),
        make_response({"team": {"states": {"nodes": [
            {"id": "s-todo", "name": "Todo"},
            {"id": "s-done", "name": "Done"},
        ]}}}),
    ]
    result = LinearTicketService("k").update_issue_state("ENG-1", "In Review")
    assert not result.success
    assert result.error == 'State "In Review" not found. Available states: Todo, Done'
    assert mock_post.call_count == 2


@patch("linear_service.requests.post")
def test_add_label_is_idempotent(mock_post: MagicMock) -> None:
    mock_post.return_value = make_response({"issue": make_node(labels=[("l1", "ralph-ready")])})
    assert LinearTicketService("k").add_label("ENG-1", "ralph-ready").success
    assert mock_post.call_count == 1


@patch("linear_service.requests.post")
def test_add_label_appends_team_label(mock_post: MagicMock) -> None:
    mock_post.side_effect = [
        make_response({"issue": make_node(labels=[("l1", "bug")])}),
        make_response({"issueLabels": {"nodes": [{"id": "l2", "name": "ralph-ready"}]}}),
        make_response({"issueUpdate": {"success": True}}),
    ]
    assert LinearTicketService("k").add_label("ENG-1", "ralph-ready").success
    assert sent_variables(mock_post, 1) == {"name": "ralph-ready", "teamId": "team-1"}
    assert sent_variables(mock_post)["input"] == {"labelIds": ["l1", "l2"]}


@patch("linear_service.requests.post")
def test_add_unknown_label_fails(mock_post: MagicMock) -> None:
    mock_post.side_effect = [
        make_response({"issue": make_node()}),
        make_response({"issueLabels": {"nodes": []}}),
    ]
    result = LinearTicketService("k").add_label("ENG-1", "nope")
    assert not result.success
    assert 'Label "nope" not found for this team' in result.error


@patch("linear_service.requests.post")
def test_remove_label(mock_post: MagicMock) -> None:
    mock_post.side_effect = [
        make_response({"issue": make_node(labels=[("l1", "bug"), ("l2", "ralph-ready")])}),
        make_response({"issueUpdate": {"success": True}}),
    ]
    assert LinearTicketService("k").remove_label("ENG-1", "ralph-ready").success
    assert sent_variables(mock_post)["input"] == {"labelIds": ["l1"]}


@patch("linear_service.requests.post")
def test_remove_missing_label_is_noop(mock_post: MagicMock) -> None:
    mock_post.return_value = make_response({"issue": make_node(labels=[("l1", "bug")])})
    assert LinearTicketService("k").remove_label("ENG-1", "ralph-ready").success
    assert mock_post.call_count == 1


@patch("linear_service.requests.post")
def test_swap_labels_already_in_target_state(mock_post: MagicMock) -> None:
    mock_post.return_value = make_response({"issue": make_node(labels=[("l2", "ralph-enriched")])})
    result = LinearTicketService("k").swap_labels("ENG-1", "ralph-candidate", "ralph-enriched")
    assert result.success
    assert result.data == SwapResult(removed=None, added=None, already_had_target=True)


@patch("linear_service.requests.post")
def test_swap_labels(mock_post: MagicMock) -> None:
    mock_post.side_effect = [
        make_response({"issue": make_node(labels=[("l0", "bug"), ("l1", "ralph-candidate")])}),
        make_response({"issueLabels": {"nodes": [{"id": "l1", "name": "ralph-candidate"}]}}),
        make_response({"issueLabels": {"nodes": [{"id": "l2", "name": "ralph-enriched"}]}}),
        make_response({"issueUpdate": {"success": True}}),
    ]
    result = LinearTicketService("k").swap_labels("ENG-1", "ralph-candidate", "ralph-enriched")
    assert result.success
    assert result.data == SwapResult(removed="ralph-candidate", added="ralph-enriched")
    assert sent_variables(mock_post)["input"] == {"labelIds": ["l0", "l2"]}


@pytest.mark.parametrize("method,args", [
    ("add_comment", ("ENG-1", "x")),
    ("update_issue_state", ("ENG-1", "Done")),
    ("add_label", ("ENG-1", "x")),
    ("swap_labels", ("ENG-1", "a", "b")),
])
@patch("linear_service.requests.post")
def test_mutations_never_raise(mock_post: MagicMock, method: str, args: tuple) -> None:
    mock_post.side_effect = requests.Timeout("slow")
    result = getattr(LinearTicketService("k"), method)(*args)
    assert not result.success


@pytest.mark.parametrize("method,args", [
    ("add_comment", ("ENG-1", "x")),
    ("update_issue_state", ("ENG-1", "Done")),
    ("add_label", ("ENG-1", "x")),
    ("remove_label", ("ENG-1", "x")),
    ("swap_labels", ("ENG-1", "a", "b")),
])
@patch("linear_service.requests.post")
def test_malformed_issue_node_is_a_failure(mock_post: MagicMock, method: str, args: tuple) -> None:
    node = make_node()
    del node["id"]
    mock_post.return_value = make_response({"issue": node, "team": {"states": {"nodes": [{"name": "Done"}]}}})
    result = getattr(LinearTicketService("k"), method)(*args)
    assert not result.success
    assert result.error.startswith("Failed to")
