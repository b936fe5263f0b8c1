"""Triage status readers.

Both readers answer the same question for a batch of issues: what is known
about their triage and workflow?

- StoreStatusReader: Authoritative; two batch queries against the store
- CommentStatusReader: Fallback for deployments without a store; scans the
  status comments on each issue and degrades to "no triage info"

The reader is chosen by ``triage_status_source``. The comment reader is
never consulted when the store reader is configured.
"""

import logging
from typing import Dict, Iterable, Optional, Protocol, runtime_checkable

from pydantic import BaseModel

from autotriage.config import AutotriageSettings, ConfigurationError
from autotriage.github.client import GitHubAPIError, GitHubClient
from autotriage.github.comments import parse_triage_comments
from autotriage.state.models import (
    Level,
    TriageResult,
    TriageSessionStatus,
    WorkflowStatus,
)
from autotriage.state.store import WorkflowStore


logger = logging.getLogger(__name__)


class TriageInfo(BaseModel):
    """Triage and workflow view of one issue.

    Attributes:
        item_number: The issue number.
        triage_status: Status of the latest triage, if any is known.
        confidence: Confidence of the latest completed triage.
        task_url: Link to the latest triage task.
        triage_result: Full assessment; only the store knows it.
        workflow_status: Current workflow status; only the store knows it.
        pr_url: Link to the pull request; only the store knows it.
    """

    item_number: int
    triage_status: Optional[TriageSessionStatus] = None
    confidence: Optional[Level] = None
    task_url: Optional[str] = None
    triage_result: Optional[TriageResult] = None
    workflow_status: Optional[WorkflowStatus] = None
    pr_url: Optional[str] = None


@runtime_checkable
class TriageStatusReader(Protocol):
    """Read-only triage status lookup for a batch of issues."""

    async def read(
        self, owner: str, repo: str, item_numbers: Iterable[int]
    ) -> Dict[int, TriageInfo]:
        """Triage info per issue number; issues with nothing known map to an
        empty TriageInfo."""
        ...


class StoreStatusReader:
    """Reads triage status from the workflow store."""

    def __init__(self, store: WorkflowStore):
        self.store = store

    async def read(
        self, owner: str, repo: str, item_numbers: Iterable[int]
    ) -> Dict[int, TriageInfo]:
        numbers = sorted(set(item_numbers))
        sessions = await self.store.get_latest_triage_sessions_batch(owner, repo, numbers)
        workflows = await self.store.get_workflows_batch(owner, repo, numbers)

        result: Dict[int, TriageInfo] = {}
        for number in numbers:
            session = sessions.get(number)
            workflow = workflows.get(number)
            info = TriageInfo(item_number=number)
            if session is not None:
                info.triage_status = session.status
                info.task_url = session.task_url or None
                info.triage_result = session.structured_result
                if session.structured_result is not None:
                    info.confidence = session.structured_result.confidence_score
            if workflow is not None:
                info.workflow_status = workflow.workflow_status
                info.pr_url = workflow.pr_url
            result[number] = info
        return result


class CommentStatusReader:
    """Reads triage status from the status comments on each issue.

    Lower fidelity than the store: only "in progress" versus "completed",
    the confidence, and the task link can be recovered. A comment fetch
    that fails is logged and reported as no triage info.
    """

    def __init__(self, github_client: GitHubClient):
        self.github_client = github_client

    async def read(
        self, owner: str, repo: str, item_numbers: Iterable[int]
    ) -> Dict[int, TriageInfo]:
        result: Dict[int, TriageInfo] = {}
        for number in sorted(set(item_numbers)):
            result[number] = await self._read_one(owner, repo, number)
        return result

    async def _read_one(self, owner: str, repo: str, item_number: int) -> TriageInfo:
        try:
            comments = await self.github_client.list_comments(owner, repo, item_number)
        except GitHubAPIError as e:
            logger.warning(
                "Could not read issue comments",
                extra={
                    "issue_id": f"{owner}/{repo}#{item_number}",
                    "status_code": e.status_code,
                },
            )
            return TriageInfo(item_number=item_number)

        scraped = parse_triage_comments(comments)
        if scraped is None:
            return TriageInfo(item_number=item_number)

        return TriageInfo(
            item_number=item_number,
            triage_status=(
                TriageSessionStatus.COMPLETED
                if scraped.completed
                else TriageSessionStatus.IN_PROGRESS
            ),
            confidence=scraped.confidence,
            task_url=scraped.task_url,
        )


def create_status_reader(
    settings: AutotriageSettings,
    store: WorkflowStore,
    github_client: Optional[GitHubClient] = None,
) -> TriageStatusReader:
    """Build the reader selected by ``triage_status_source``.

    Raises:
        ConfigurationError: If comment scraping is selected without a
            GitHub client (no ``github_token``).
    """
    if settings.triage_status_source == "comments":
        if github_client is None:
            raise ConfigurationError(
                "github_token",
                "github_token is required when triage_status_source is 'comments'",
            )
        return CommentStatusReader(github_client)
    return StoreStatusReader(store)
