"""Agent task service models.

This module defines the request and response shapes exchanged with the
external agent task service:
- IssueItem / RepositoryRef: The issue a task works on
- TaskHandle: Identifier and link of a created task
- ExternalTaskStatus: Status vocabulary reported by the service
- TaskStatus: Parsed task status with optional result and PR link

IssueItem and RepositoryRef accept both the compact shapes sent by the
dashboard and the raw shapes found in GitHub webhook payloads.
"""

import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, model_validator

from autotriage.state.models import TriageResult


logger = logging.getLogger(__name__)


class IssueItem(BaseModel):
    """An issue a triage or PR task works on.

    Attributes:
        number: The issue number within the repository.
        title: The issue title.
        body: The issue description; may be empty.
        labels: Label names attached to the issue.
        author: Login of the issue author, if known.
        created_at: Creation timestamp as reported by GitHub.
    """

    number: int = Field(..., gt=0)
    title: str = Field(default="")
    body: str = Field(default="")
    labels: List[str] = Field(default_factory=list)
    author: Optional[str] = None
    created_at: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _from_github_shape(cls, data: Any) -> Any:
        """Normalize GitHub issue objects.

        GitHub sends ``labels`` as ``[{"name": ...}]``, ``body`` as null for
        empty issues, and the author as ``user.login``.
        """
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if data.get("body") is None:
            data["body"] = ""
        if data.get("title") is None:
            data["title"] = ""
        labels = data.get("labels") or []
        if isinstance(labels, list):
            names = []
            for label in labels:
                if isinstance(label, dict):
                    name = label.get("name")
                    if isinstance(name, str) and name.strip():
                        names.append(name.strip())
                elif isinstance(label, str) and label.strip():
                    names.append(label.strip())
            data["labels"] = names
        if "author" not in data:
            user = data.get("user")
            if isinstance(user, dict) and isinstance(user.get("login"), str):
                data["author"] = user["login"]
        return data


class RepositoryRef(BaseModel):
    """Reference to a GitHub repository."""

    owner: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)

    @model_validator(mode="before")
    @classmethod
    def _from_github_shape(cls, data: Any) -> Any:
        """Accept ``owner`` as a user object or derive it from ``full_name``."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        owner = data.get("owner")
        if isinstance(owner, dict):
            data["owner"] = owner.get("login")
        full_name = data.get("full_name")
        if isinstance(full_name, str) and "/" in full_name:
            full_owner, _, full_repo = full_name.partition("/")
            data.setdefault("name", full_repo)
            if not data.get("owner"):
                data["owner"] = full_owner
        return data

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


class TaskHandle(BaseModel):
    """A created agent task."""

    task_id: str = Field(..., min_length=1)
    url: str = Field(default="")

    @classmethod
    def from_api_response(cls, data: Dict[str, Any]) -> "TaskHandle":
        return cls(
            task_id=data.get("session_id") or data.get("task_id") or "",
            url=data.get("url") or "",
        )


class ExternalTaskStatus(str, Enum):
    """Status vocabulary of the agent task service.

    Attributes:
        RUNNING: The agent is working.
        BLOCKED: The agent stopped and waits for instructions.
        STOPPED: The task ended.
        ERROR: The task ended in error.
    """

    RUNNING = "running"
    BLOCKED = "blocked"
    STOPPED = "stopped"
    ERROR = "error"


# Alternate spellings reported by the service
_STATUS_ALIASES: Dict[str, ExternalTaskStatus] = {
    "working": ExternalTaskStatus.RUNNING,
    "resumed": ExternalTaskStatus.RUNNING,
    "finished": ExternalTaskStatus.STOPPED,
    "expired": ExternalTaskStatus.STOPPED,
    "suspended": ExternalTaskStatus.STOPPED,
}


def parse_external_status(value: Any) -> ExternalTaskStatus:
    """Map a raw status string to ExternalTaskStatus.

    Unknown or missing values are treated as RUNNING so that polling
    continues rather than ending the workflow on an unrecognised state.
    """
    if not isinstance(value, str):
        return ExternalTaskStatus.RUNNING
    normalized = value.strip().lower()
    try:
        return ExternalTaskStatus(normalized)
    except ValueError:
        pass
    if normalized in _STATUS_ALIASES:
        return _STATUS_ALIASES[normalized]
    logger.debug("Unrecognised task status %r treated as running", value)
    return ExternalTaskStatus.RUNNING


class TaskStatus(BaseModel):
    """Current status of an agent task."""

    task_id: str
    status: ExternalTaskStatus
    structured_result: Optional[TriageResult] = None
    pr_url: Optional[str] = None

    @classmethod
    def from_api_response(cls, task_id: str, data: Dict[str, Any]) -> "TaskStatus":
        """Parse a task details response.

        The structured output is filled in progressively by the agent, so a
        partial or malformed object is treated as no result yet.
        """
        raw_status = data.get("status_enum") or data.get("status")

        structured_result = None
        raw_output = data.get("structured_output")
        if isinstance(raw_output, dict) and raw_output:
            try:
                structured_result = TriageResult.model_validate(raw_output)
            except ValidationError as e:
                logger.debug(
                    "Ignoring incomplete structured output",
                    extra={"task_id": task_id, "error": str(e)},
                )

        pr_url = None
        pull_request = data.get("pull_request")
        if isinstance(pull_request, dict) and pull_request.get("url"):
            pr_url = pull_request["url"]

        return cls(
            task_id=data.get("session_id") or task_id,
            status=parse_external_status(raw_status),
            structured_result=structured_result,
            pr_url=pr_url,
        )
