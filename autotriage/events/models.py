"""Workflow event models for observability.

This module defines the data models for workflow events:
- EventType: Enum of all event types emitted by the orchestrator
- WorkflowEvent: Structured event with issue identity and details

Events are emitted for monitoring, alerting, and debugging purposes.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, Field

from autotriage.state.models import utc_now


class EventType(str, Enum):
    """Types of events emitted by the workflow orchestrator.

    Attributes:
        STATE_TRANSITION: An issue's workflow status changed.
        TASK_CREATED: A triage or PR task was created on the agent service.
        ERROR: An external call failed while handling an issue.
        COMPLETION: A pull request was observed for an issue.
    """

    STATE_TRANSITION = "state_transition"
    TASK_CREATED = "task_created"
    ERROR = "error"
    COMPLETION = "completion"


class WorkflowEvent(BaseModel):
    """Structured event emitted by the workflow orchestrator.

    Details Field Conventions:
        For STATE_TRANSITION events:
            - from_status: Previous workflow status
            - to_status: New workflow status

        For TASK_CREATED events:
            - kind: "triage" or "pr"
            - task_id: External task identifier
            - task_url: Link to the external task

        For ERROR events:
            - error_message: Human-readable error description
            - error_type: Exception class name
            - stage: Operation that failed (start_triage, reconcile_pr, ...)

        For COMPLETION events:
            - pr_url: URL to the pull request
    """

    event_type: EventType = Field(
        ...,
        description="The category of event being emitted",
    )

    issue_id: str = Field(
        ...,
        min_length=1,
        description='Canonical issue identifier in format "{owner}/{repo}#{number}"',
    )

    repository: str = Field(
        ...,
        min_length=1,
        description='Full repository path in format "{owner}/{repo}"',
    )

    timestamp: datetime = Field(
        default_factory=utc_now,
        description="When the event occurred (UTC timezone)",
    )

    details: Dict[str, Any] = Field(
        default_factory=dict,
        description="Additional context specific to the event type",
    )

    def to_log_dict(self) -> Dict[str, Any]:
        """Flatten the event into a dictionary for structured logging."""
        return {
            "event_type": self.event_type.value,
            "issue_id": self.issue_id,
            "repository": self.repository,
            "timestamp": self.timestamp.isoformat(),
            **self.details,
        }
