"""Workflow state models.

This module defines the persisted records of the triage workflow:
- Level: Shared low/medium/high scale for confidence and complexity
- TriageResult: Structured assessment produced by a triage task
- TriageSession: One record per triage task ever created for an issue
- IssueWorkflow: The single canonical lifecycle record per issue
- UserAutomationSettings: Per-user automation preferences
- VALID_TRANSITIONS: Map defining allowed workflow status transitions

Two entities describe a triage outcome on purpose. TriageSession keeps the
full history of attempts (the most recently created one wins), while
IssueWorkflow exposes one current status per issue.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Level(str, Enum):
    """Ordinal low/medium/high scale.

    Used for both ``confidence_score`` and ``complexity`` in triage results
    and for the user's PR confidence threshold.
    """

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def ordinal(self) -> int:
        return LEVEL_ORDINALS[self]


LEVEL_ORDINALS: Dict[Level, int] = {
    Level.LOW: 1,
    Level.MEDIUM: 2,
    Level.HIGH: 3,
}


class TriageSessionStatus(str, Enum):
    """Status of a single triage task as recorded in the store.

    Attributes:
        PENDING: Requested but not yet acknowledged by the task service.
        IN_PROGRESS: The task service is analysing the issue.
        COMPLETED: A structured result was observed.
        FAILED: The task ended in error or without a result.
    """

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_TRIAGE_STATUSES = frozenset(
    {TriageSessionStatus.PENDING, TriageSessionStatus.IN_PROGRESS}
)


class WorkflowStatus(str, Enum):
    """Lifecycle status of an issue.

    Status Flow:
        new → triaged → processing → [awaiting_instructions ↔ processing] → pr

    ``new`` with a completed triage is transient: the confidence gate moves
    it to ``processing`` or ``triaged`` in the same reconciliation pass.
    ``failed`` is reachable from every non-terminal status. ``pr`` is
    terminal for automated transitions; only a manual re-triage leaves it.
    """

    NEW = "new"
    TRIAGED = "triaged"
    PROCESSING = "processing"
    AWAITING_INSTRUCTIONS = "awaiting_instructions"
    PR = "pr"
    FAILED = "failed"


class TriageResult(BaseModel):
    """Structured assessment produced by a triage task."""

    scope: str = Field(
        ...,
        description="Brief description of what needs to be done",
    )

    complexity: Level = Field(
        ...,
        description="Estimated complexity of the change",
    )

    estimated_effort: str = Field(
        ...,
        description='Free-text effort estimate, e.g. "2-4 hours"',
    )

    confidence_score: Level = Field(
        ...,
        description="How confident the agent is that it can resolve the issue",
    )

    confidence_reasoning: str = Field(
        default="",
        description="Why the agent can or cannot handle the issue",
    )

    suggested_approach: str = Field(
        default="",
        description="How the agent would solve the issue",
    )

    blockers: List[str] = Field(
        default_factory=list,
        description="Potential blockers or missing information, in order",
    )

    requires_human_input: bool = Field(
        default=False,
        description="Whether a human must answer questions before work starts",
    )


class TriageSession(BaseModel):
    """One triage task created for an issue.

    Several sessions may exist for the same (owner, repo, item_number); the
    one with the greatest ``created_at`` is authoritative. ``task_id`` is
    globally unique. Sessions are never deleted.
    """

    owner: str = Field(..., min_length=1)
    repo: str = Field(..., min_length=1)
    item_number: int = Field(..., gt=0)

    task_id: str = Field(
        ...,
        min_length=1,
        description="Identifier of the external triage task (globally unique)",
    )

    task_url: str = Field(
        default="",
        description="Link to the external task",
    )

    status: TriageSessionStatus = Field(default=TriageSessionStatus.PENDING)

    structured_result: Optional[TriageResult] = Field(default=None)

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def item_key(self) -> Tuple[str, str, int]:
        return (self.owner, self.repo, self.item_number)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_TRIAGE_STATUSES


class TriageSessionPatch(BaseModel):
    """Partial update for a TriageSession. Only explicitly set fields apply."""

    status: Optional[TriageSessionStatus] = None
    structured_result: Optional[TriageResult] = None
    task_url: Optional[str] = None


class IssueWorkflow(BaseModel):
    """Canonical lifecycle record; exactly one per (owner, repo, item_number)."""

    owner: str = Field(..., min_length=1)
    repo: str = Field(..., min_length=1)
    item_number: int = Field(..., gt=0)

    workflow_status: WorkflowStatus = Field(default=WorkflowStatus.NEW)

    triage_task_id: Optional[str] = None
    triage_task_url: Optional[str] = None
    pr_task_id: Optional[str] = None
    pr_task_url: Optional[str] = None
    pr_url: Optional[str] = None

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def item_key(self) -> Tuple[str, str, int]:
        return (self.owner, self.repo, self.item_number)

    @property
    def item_id(self) -> str:
        return f"{self.owner}/{self.repo}#{self.item_number}"


class WorkflowPatch(BaseModel):
    """Partial update for an IssueWorkflow. Only explicitly set fields apply,
    so ``pr_url=None`` clears the column while an omitted field is kept."""

    workflow_status: Optional[WorkflowStatus] = None
    triage_task_id: Optional[str] = None
    triage_task_url: Optional[str] = None
    pr_task_id: Optional[str] = None
    pr_task_url: Optional[str] = None
    pr_url: Optional[str] = None


class UserAutomationSettings(BaseModel):
    """Automation preferences of one user.

    Owned by the user-preferences collaborator; read-only here. Defaults
    apply to users that never saved preferences.
    """

    user_id: str = Field(default="anonymous")
    auto_triage_enabled: bool = True
    auto_pr_enabled: bool = True
    pr_confidence_threshold: Level = Level.HIGH


# Valid workflow status transitions.
#
# - FAILED is reachable from every non-terminal status
# - PR only leaves through a manual re-triage (back to NEW)
# - FAILED may re-enter through re-triage (NEW) or a PR retry (PROCESSING)
# - NEW → NEW resets an existing row when a new triage starts
# - TRIAGED → TRIAGED is a repeated triage completion passing through the
#   transient NEW status
VALID_TRANSITIONS: Dict[WorkflowStatus, List[WorkflowStatus]] = {
    WorkflowStatus.NEW: [
        WorkflowStatus.NEW,
        WorkflowStatus.TRIAGED,
        WorkflowStatus.PROCESSING,
        WorkflowStatus.FAILED,
    ],
    WorkflowStatus.TRIAGED: [
        WorkflowStatus.NEW,
        WorkflowStatus.TRIAGED,
        WorkflowStatus.PROCESSING,
        WorkflowStatus.FAILED,
    ],
    WorkflowStatus.PROCESSING: [
        WorkflowStatus.NEW,
        WorkflowStatus.AWAITING_INSTRUCTIONS,
        WorkflowStatus.PR,
        WorkflowStatus.FAILED,
    ],
    WorkflowStatus.AWAITING_INSTRUCTIONS: [
        WorkflowStatus.NEW,
        WorkflowStatus.PROCESSING,
        WorkflowStatus.PR,
        WorkflowStatus.FAILED,
    ],
    WorkflowStatus.FAILED: [
        WorkflowStatus.NEW,
        WorkflowStatus.PROCESSING,
        WorkflowStatus.FAILED,
    ],
    WorkflowStatus.PR: [
        WorkflowStatus.NEW,
    ],
}


def is_valid_transition(from_status: WorkflowStatus, to_status: WorkflowStatus) -> bool:
    """Check if a workflow status transition is allowed.

    Example:
        >>> is_valid_transition(WorkflowStatus.TRIAGED, WorkflowStatus.PROCESSING)
        True
        >>> is_valid_transition(WorkflowStatus.PR, WorkflowStatus.FAILED)
        False
    """
    return to_status in VALID_TRANSITIONS.get(from_status, [])


def is_terminal_status(status: WorkflowStatus) -> bool:
    """Check if no automated transition leaves the status."""
    return status == WorkflowStatus.PR
