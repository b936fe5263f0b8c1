"""Triage status comments on GitHub issues.

This module renders the status comments posted on triaged issues, reads
them back for deployments without a workflow store, and posts them:
- format_in_progress_comment: Posted when a triage task starts
- format_assessment_comment: Posted when a triage result is first observed
- parse_triage_comments: Best-effort scan of an issue's comments
- StatusCommentPoster: Posts comments, logging instead of raising
"""

import logging
import re
from typing import Any, Dict, Iterable, Optional

from pydantic import BaseModel

from autotriage.github.client import GitHubAPIError, GitHubClient
from autotriage.state.models import Level, TriageResult


logger = logging.getLogger(__name__)


IN_PROGRESS_MARKER = "Triage In Progress"
ASSESSMENT_MARKER = "Triage Assessment"

CONFIDENCE_EMOJI = {
    Level.LOW: "🔴",
    Level.MEDIUM: "🟡",
    Level.HIGH: "🟢",
}

# Low complexity is good news, so the scale is inverted
COMPLEXITY_EMOJI = {
    Level.LOW: "🟢",
    Level.MEDIUM: "🟡",
    Level.HIGH: "🔴",
}

_CONFIDENCE_PATTERN = re.compile(
    r"\*\*Agent Confidence\*\*\s*\|\s*(🔴|🟡|🟢)\s*(low|medium|high)",
    re.IGNORECASE,
)
_TASK_LINK_PATTERN = re.compile(r"\[View [^\]]*\]\((https?://[^\s)]+)\)")


def _task_link(task_url: str) -> str:
    return f"[View Agent Task]({task_url})"


def format_in_progress_comment(task_url: str) -> str:
    """Comment posted when a triage task has been created."""
    return (
        f"## 🤖 Agent {IN_PROGRESS_MARKER}\n\n"
        "The agent is analyzing this issue. "
        "Results will be posted here once complete.\n\n"
        f"{_task_link(task_url)}"
    )


def format_assessment_comment(result: TriageResult, task_url: str) -> str:
    """Render a triage result as a GitHub markdown comment.

    Example:
        >>> print(format_assessment_comment(result, "https://agent/t/1"))
        ## 🤖 Agent Triage Assessment
        ...
        | **Agent Confidence** | 🟢 high |
        ...
    """
    sections = [
        f"## 🤖 Agent {ASSESSMENT_MARKER}",
        f"### Summary\n{result.scope}",
        "\n".join(
            [
                "### Assessment",
                "| Metric | Value |",
                "|--------|-------|",
                f"| **Complexity** | {COMPLEXITY_EMOJI[result.complexity]} "
                f"{result.complexity.value} |",
                f"| **Estimated Effort** | {_table_cell(result.estimated_effort)} |",
                f"| **Agent Confidence** | {CONFIDENCE_EMOJI[result.confidence_score]} "
                f"{result.confidence_score.value} |",
                f"| **Requires Human Input** | "
                f"{'Yes' if result.requires_human_input else 'No'} |",
            ]
        ),
        f"### Confidence Reasoning\n{result.confidence_reasoning}",
        f"### Suggested Approach\n{result.suggested_approach}",
    ]
    if result.blockers:
        blockers = "\n".join(f"- {blocker}" for blocker in result.blockers)
        sections.append(f"### Potential Blockers\n{blockers}")
    sections.append(f"---\n{_task_link(task_url)}")
    return "\n\n".join(sections)


def is_status_comment(body: Optional[str]) -> bool:
    """True if the comment is one this service posted.

    Only the heading is checked; agent-written sections of an assessment
    can contain any text.
    """
    lines = (body or "").strip().splitlines()
    if not lines:
        return False
    return lines[0].strip() in (
        f"## 🤖 Agent {IN_PROGRESS_MARKER}",
        f"## 🤖 Agent {ASSESSMENT_MARKER}",
    )


def _table_cell(value: str) -> str:
    return value.replace("|", "\\|").replace("\n", " ").strip()


class CommentTriageInfo(BaseModel):
    """Triage information recovered from an issue's comments."""

    completed: bool
    confidence: Optional[Level] = None
    task_url: Optional[str] = None


def parse_triage_comment(body: str) -> Optional[CommentTriageInfo]:
    """Parse a single comment body, or return None if it is not ours."""
    if ASSESSMENT_MARKER in body:
        completed = True
    elif IN_PROGRESS_MARKER in body:
        completed = False
    else:
        return None

    confidence = None
    match = _CONFIDENCE_PATTERN.search(body)
    if match:
        confidence = Level(match.group(2).lower())

    link = _TASK_LINK_PATTERN.search(body)
    return CommentTriageInfo(
        completed=completed,
        confidence=confidence,
        task_url=link.group(1) if link else None,
    )


def parse_triage_comments(
    comments: Iterable[Dict[str, Any]],
) -> Optional[CommentTriageInfo]:
    """Find the newest triage status comment.

    Args:
        comments: GitHub comment objects, oldest first as the API returns
            them.

    Returns:
        Triage info from the newest recognizable comment, or None when no
        comment carries a marker. Malformed comments are skipped.
    """
    for comment in reversed(list(comments)):
        body = comment.get("body") if isinstance(comment, dict) else None
        if not isinstance(body, str):
            continue
        info = parse_triage_comment(body)
        if info is not None:
            return info
    return None


class StatusCommentPoster:
    """Posts triage status comments.

    Posting is best-effort: failures are logged and reported through the
    return value, never raised.
    """

    def __init__(self, github_client: GitHubClient):
        self.github_client = github_client

    async def _post(self, owner: str, repo: str, item_number: int, body: str) -> bool:
        try:
            await self.github_client.create_comment(owner, repo, item_number, body)
            return True
        except GitHubAPIError as e:
            logger.warning(
                "Failed to post status comment",
                extra={
                    "issue_id": f"{owner}/{repo}#{item_number}",
                    "status_code": e.status_code,
                    "error": e.message,
                },
            )
            return False

    async def post_in_progress(
        self, owner: str, repo: str, item_number: int, task_url: str
    ) -> bool:
        return await self._post(
            owner, repo, item_number, format_in_progress_comment(task_url)
        )

    async def post_assessment(
        self,
        owner: str,
        repo: str,
        item_number: int,
        result: TriageResult,
        task_url: str,
    ) -> bool:
        return await self._post(
            owner, repo, item_number, format_assessment_comment(result, task_url)
        )
