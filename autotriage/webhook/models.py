"""GitHub webhook event models.

This module defines the webhook payloads that can trigger a triage:
- IssueAction / CommentAction: Actions that are acted upon
- GitHubIssueEvent: ``issues`` delivery
- GitHubIssueCommentEvent: ``issue_comment`` delivery
- WebhookOutcome: What the ingestor did with a delivery

Issue and repository objects reuse the agent models, which accept GitHub's
raw shapes (label objects, owner objects, null bodies).
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator

from autotriage.agent.models import IssueItem, RepositoryRef


class IssueAction(str, Enum):
    """Issue event actions that trigger a triage.

    Attributes:
        OPENED: A new issue was created.
        EDITED: An existing issue was modified; its assessment may be stale.
    """

    OPENED = "opened"
    EDITED = "edited"


class CommentAction(str, Enum):
    """Comment event actions that are inspected for a re-triage phrase."""

    CREATED = "created"


class GitHubComment(BaseModel):
    body: str = Field(default="")
    author: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _from_github_shape(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if data.get("body") is None:
            data["body"] = ""
        user = data.get("user")
        if "author" not in data and isinstance(user, dict):
            data["author"] = user.get("login")
        return data


class GitHubIssueEvent(BaseModel):
    """Parsed ``issues`` webhook delivery.

    Attributes:
        action: The raw action string (opened, edited, closed, ...).
        issue: The issue the event is about.
        repository: The repository holding the issue.
    """

    action: str = Field(..., min_length=1)
    issue: IssueItem
    repository: RepositoryRef

    @property
    def issue_id(self) -> str:
        return f"{self.repository.full_name}#{self.issue.number}"

    @property
    def triggers_triage(self) -> bool:
        return self.action in {a.value for a in IssueAction}


class GitHubIssueCommentEvent(BaseModel):
    """Parsed ``issue_comment`` webhook delivery."""

    action: str = Field(..., min_length=1)
    issue: IssueItem
    comment: GitHubComment
    repository: RepositoryRef

    @property
    def issue_id(self) -> str:
        return f"{self.repository.full_name}#{self.issue.number}"


class WebhookOutcome(BaseModel):
    """Result of handling a verified webhook delivery.

    Attributes:
        message: Short human-readable status returned to GitHub.
        triggered: Whether a triage was started (or an active one reused).
        task_id: The triage task, when triggered.
        task_url: Link to the triage task, when triggered.
    """

    message: str
    triggered: bool = False
    task_id: Optional[str] = None
    task_url: Optional[str] = None
