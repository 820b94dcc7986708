"""Pick the next issue to work on by asking a fast auxiliary model.

The model's free-text answer is never trusted directly: it goes through a
parse-then-validate pipeline and the selected identifier must belong to the
candidate set.  Any failure falls back to the first candidate (FIFO), so
prioritization can never block a batch.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass

import anthropic

from executor import execute_claude
from tickets import Issue

log = logging.getLogger(__name__)

PRIORITIZATION_COMPLETE_MARKER = "<prioritization>COMPLETE</prioritization>"
VALID_CONFIDENCE = ("high", "medium", "low")

DEFAULT_TIMEOUT_SECONDS = 30
DEFAULT_MODEL = "haiku"
DEFAULT_API_MODEL = "claude-haiku-4-5"

_DESCRIPTION_PREVIEW = 200
_FENCED_JSON = re.compile(r"```json\s*([\s\S]*?)```")
_RAW_DECISION_JSON = re.compile(r"\{[\s\S]*\"decision\"[\s\S]*\}")


@dataclass(frozen=True)
class CompletedTaskContext:
    identifier: str
    title: str
    status: str
    duration_ms: int
    iterations: int


@dataclass(frozen=True)
class PrioritizationDecision:
    selected_issue_id: str
    reasoning: str
    confidence: str


@dataclass
class PrioritizationResult:
    """Outcome of :meth:`Prioritizer.select_next`.

    On success ``issue`` is the model's pick and ``decision`` is set.  On
    failure ``issue`` is the FIFO fallback and ``error`` explains why.
    """

    success: bool
    issue: Issue
    decision: PrioritizationDecision | None = None
    error: str | None = None


@dataclass(frozen=True)
class ParseOk:
    decision: PrioritizationDecision


@dataclass(frozen=True)
class ParseFail:
    reason: str


ParseResult = ParseOk | ParseFail


@dataclass
class AdvisorReply:
    success: bool
    output: str = ""
    error: str | None = None


Advisor = Callable[[str], AdvisorReply]


# ---------------------------------------------------------------------------
# Prompt building
# ---------------------------------------------------------------------------

def format_issue_for_prompt(issue: Issue) -> str:
    lines = [
        f"- **{issue.identifier}**: {issue.title}",
        f"  - Priority: {issue.priority.label}",
        f"  - State: {issue.state.name}",
        f"  - Labels: {', '.join(issue.label_names) or 'None'}",
    ]
    if issue.description:
        preview = issue.description[:_DESCRIPTION_PREVIEW].replace("\n", " ")
        ellipsis = "..." if len(issue.description) > _DESCRIPTION_PREVIEW else ""
        lines.append(f"  - Description: {preview}{ellipsis}")
    return "\n".join(lines)


_RESPONSE_FORMAT = f"""\
## Response Format

Respond with ONLY a JSON object in this exact format:
```json
{{
  "decision": {{
    "selectedIssueId": "<identifier like PROJ-42>",
    "reasoning": "<brief 1-2 sentence explanation>",
    "confidence": "high|medium|low"
  }}
}}
```

After the JSON, output: {PRIORITIZATION_COMPLETE_MARKER}
"""


def build_initial_prioritization_prompt(issues: list[Issue]) -> str:
    issues_list = "\n\n".join(format_issue_for_prompt(i) for i in issues)
    return f"""\
# Task: Select Next Issue to Process

You are helping prioritize which issue to tackle next from a queue of ready tasks.
Your goal is to select the SINGLE most valuable issue to work on now.

## Available Issues

{issues_list}

## Selection Criteria

Consider these factors when selecting:
1. **Priority level** - Urgent/High priority issues may need immediate attention
2. **Dependencies** - Some tasks may be prerequisites for others
3. **Complexity** - Balance quick wins with larger tasks
4. **Relatedness** - Group related work for efficiency

{_RESPONSE_FORMAT}
IMPORTANT:
- The selectedIssueId MUST be one of the identifiers listed above
- Keep reasoning concise but informative
- Use "high" confidence when the choice is clear, "low" when multiple options are equally valid
"""


_COMPLETED_STATUS_TEXT = {
    "completed": "completed successfully",
    "max_iterations": "stopped at max iterations",
}


def build_reprioritization_prompt(remaining: list[Issue], completed: CompletedTaskContext) -> str:
    issues_list = "\n\n".join(format_issue_for_prompt(i) for i in remaining)
    status_text = _COMPLETED_STATUS_TEXT.get(completed.status, "encountered an error")
    return f"""\
# Task: Select Next Issue (Re-prioritization)

You just finished working on a task. Now select the next issue to tackle.

## Just Completed

- **{completed.identifier}**: {completed.title}
- Status: {status_text}
- Duration: {round(completed.duration_ms / 1000)}s ({completed.iterations} iterations)

## Remaining Issues

{issues_list}

## Selection Criteria

Consider:
1. **Relatedness to completed task** - Is there follow-up work or related tasks?
2. **Priority level** - Should urgent items take precedence?
3. **Workflow efficiency** - Group similar work together
4. **Complexity balance** - After a complex task, maybe pick something simpler (or vice versa)

{_RESPONSE_FORMAT}
IMPORTANT:
- The selectedIssueId MUST be one of the remaining issue identifiers listed above
- Keep reasoning concise but informative
"""


# ---------------------------------------------------------------------------
# Parse-then-validate
# ---------------------------------------------------------------------------

def validate_decision(data: object) -> ParseResult:
    """Check the decoded JSON against the expected decision schema."""
    if not isinstance(data, dict) or not isinstance(data.get("decision"), dict):
        return ParseFail("Response is missing a 'decision' object")
    decision = data["decision"]

    selected = decision.get("selectedIssueId")
    if not isinstance(selected, str) or not selected.strip():
        return ParseFail("selectedIssueId must be a non-empty string")
    reasoning = decision.get("reasoning")
    if not isinstance(reasoning, str) or not reasoning.strip():
        return ParseFail("reasoning must be a non-empty string")
    confidence = decision.get("confidence")
    if confidence not in VALID_CONFIDENCE:
        return ParseFail(f"confidence must be one of {', '.join(VALID_CONFIDENCE)}; got {confidence!r}")

    return ParseOk(PrioritizationDecision(
        selected_issue_id=selected.strip(),
        reasoning=reasoning.strip(),
        confidence=confidence,
    ))


def parse_prioritization_response(output: str) -> ParseResult:
    """Extract and validate the decision JSON from the model's answer."""
    fenced = _FENCED_JSON.search(output)
    if fenced and fenced.group(1).strip():
        json_str = fenced.group(1).strip()
    else:
        raw = _RAW_DECISION_JSON.search(output)
        if not raw:
            return ParseFail("No JSON found in response")
        json_str = raw.group(0)

    try:
        data = json.loads(json_str)
    except json.JSONDecodeError as exc:
        return ParseFail(f"Failed to parse JSON: {exc}")
    return validate_decision(data)


def find_selected_issue(selected_id: str, candidates: list[Issue]) -> Issue | None:
    return next((i for i in candidates if i.identifier == selected_id), None)


def format_prioritization_decision(decision: PrioritizationDecision) -> str:
    marker = {"high": "++", "medium": "+"}.get(decision.confidence, "?")
    return (
        f"Selected: {decision.selected_issue_id} [{marker}{decision.confidence}]\n"
        f"  Reason: {decision.reasoning}"
    )


# ---------------------------------------------------------------------------
# Advisors
# ---------------------------------------------------------------------------

class ClaudeCliAdvisor:
    """Ask the claude CLI, without file-system permissions."""

    def __init__(self, model: str = DEFAULT_MODEL, timeout: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self.model = model
        self.timeout = timeout

    def __call__(self, prompt: str) -> AdvisorReply:
        result = execute_claude(prompt, model=self.model, timeout=self.timeout, auto_accept=False)
        if not result.success:
            return AdvisorReply(success=False, error=result.error)
        return AdvisorReply(success=True, output=result.output)


class AnthropicAdvisor:
    """Ask the Messages API directly via the anthropic SDK."""

    def __init__(
        self,
        model: str = DEFAULT_API_MODEL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        client: anthropic.Anthropic | None = None,
    ) -> None:
        self.model = model
        self.timeout = timeout
        self._client = client or anthropic.Anthropic(timeout=timeout)

    def __call__(self, prompt: str) -> AdvisorReply:
        try:
            with self._client.messages.stream(
                model=self.model,
                max_tokens=1024,
                messages=[{"role": "user", "content": prompt}],
            ) as stream:
                response = stream.get_final_message()
        except anthropic.APIError as exc:
            return AdvisorReply(success=False, error=f"Anthropic API error: {exc}")

        text_block = next((b for b in response.content if b.type == "text"), None)
        if text_block is None:
            return AdvisorReply(success=False, error="Claude response contained no text block")
        return AdvisorReply(success=True, output=text_block.text)


# ---------------------------------------------------------------------------
# Prioritizer
# ---------------------------------------------------------------------------

class Prioritizer:
    def __init__(self, advisor: Advisor | None = None) -> None:
        self.advisor = advisor or ClaudeCliAdvisor()

    def select_next(
        self,
        candidates: list[Issue],
        last_completed: CompletedTaskContext | None = None,
    ) -> PrioritizationResult:
        """Return the issue to run next.

        A single candidate is returned without consulting the advisor.  On
        any advisor, parse or membership failure the first candidate is
        returned with ``success=False`` and a diagnostic ``error``.
        """
        if not candidates:
            raise ValueError("select_next() requires at least one candidate")

        if len(candidates) == 1:
            issue = candidates[0]
            return PrioritizationResult(
                success=True,
                issue=issue,
                decision=PrioritizationDecision(
                    selected_issue_id=issue.identifier,
                    reasoning="Only one issue available",
                    confidence="high",
                ),
            )

        fallback = candidates[0]
        if last_completed is not None:
            prompt = build_reprioritization_prompt(candidates, last_completed)
        else:
            prompt = build_initial_prioritization_prompt(candidates)

        try:
            reply = self.advisor(prompt)
        except Exception as exc:
            reply = AdvisorReply(success=False, error=f"Advisor raised: {exc}")
        if not reply.success:
            error = reply.error or "Unknown advisor error"
            log.warning("Prioritization failed: %s. Falling back to FIFO.", error)
            return PrioritizationResult(success=False, issue=fallback, error=error)

        parsed = parse_prioritization_response(reply.output)
        if isinstance(parsed, ParseFail):
            log.warning(
                "Failed to parse prioritization response: %s. Falling back to FIFO.", parsed.reason
            )
            return PrioritizationResult(success=False, issue=fallback, error=parsed.reason)

        decision = parsed.decision
        selected = find_selected_issue(decision.selected_issue_id, candidates)
        if selected is None:
            log.warning(
                "Selected issue %s not found in queue. Falling back to FIFO.",
                decision.selected_issue_id,
            )
            return PrioritizationResult(
                success=False,
                issue=fallback,
                error=f"Selected issue {decision.selected_issue_id} not found in available issues",
            )

        return PrioritizationResult(success=True, issue=selected, decision=decision)
