"""Workflow state machine.

This module owns the status rules of an issue workflow:
- classify_triage_status: Map an observed triage task to a session status
- derive_pr_workflow_status: Map an observed PR task to a workflow status
- WorkflowStateMachine: Validated, persisted workflow transitions

The state machine validates every transition against VALID_TRANSITIONS
before writing. Persistence goes through the WorkflowStore protocol, and an
issue without a workflow row is treated as ``new``.
"""

import logging
from typing import Any, Optional

from autotriage.agent.models import ExternalTaskStatus, TaskStatus
from autotriage.state.models import (
    IssueWorkflow,
    TriageSessionStatus,
    WorkflowStatus,
    is_valid_transition,
)
from autotriage.state.store import WorkflowStore


logger = logging.getLogger(__name__)


class InvalidTransitionError(Exception):
    """Raised when an invalid workflow transition is attempted.

    Attributes:
        from_status: The current status.
        to_status: The attempted target status.
        message: Human-readable error message.
    """

    def __init__(
        self,
        from_status: WorkflowStatus,
        to_status: WorkflowStatus,
        message: Optional[str] = None,
    ):
        self.from_status = from_status
        self.to_status = to_status
        self.message = message or (
            f"Invalid transition from {from_status.value} to {to_status.value}"
        )
        super().__init__(self.message)


class TriageNotReadyError(Exception):
    """Raised when PR generation is requested before a triage result exists.

    Attributes:
        item_id: The issue identifier in "{owner}/{repo}#{number}" form.
    """

    def __init__(self, owner: str, repo: str, item_number: int):
        self.item_id = f"{owner}/{repo}#{item_number}"
        super().__init__(f"No completed triage result for issue: {self.item_id}")


def classify_triage_status(task: TaskStatus) -> TriageSessionStatus:
    """Classify an observed triage task.

    A triage is complete once the agent has stopped working (blocked or
    stopped) and left a structured result behind. A task that ends without
    a result, or in error, has failed. Anything else is still running.
    """
    if task.status == ExternalTaskStatus.ERROR:
        return TriageSessionStatus.FAILED
    if task.status in (ExternalTaskStatus.BLOCKED, ExternalTaskStatus.STOPPED):
        if task.structured_result is not None:
            return TriageSessionStatus.COMPLETED
        if task.status == ExternalTaskStatus.STOPPED:
            return TriageSessionStatus.FAILED
    return TriageSessionStatus.IN_PROGRESS


def derive_pr_workflow_status(task: TaskStatus) -> WorkflowStatus:
    """Derive the workflow status from an observed PR-generation task.

    A PR link wins over every task status.
    """
    if task.pr_url:
        return WorkflowStatus.PR
    if task.status == ExternalTaskStatus.BLOCKED:
        return WorkflowStatus.AWAITING_INSTRUCTIONS
    if task.status in (ExternalTaskStatus.STOPPED, ExternalTaskStatus.ERROR):
        return WorkflowStatus.FAILED
    return WorkflowStatus.PROCESSING


def is_pr_complete(status: WorkflowStatus) -> bool:
    """Whether polling a PR task can stop."""
    return status in (WorkflowStatus.PR, WorkflowStatus.FAILED)


class WorkflowStateMachine:
    """Validated transitions of issue workflows.

    Example:
        >>> machine = WorkflowStateMachine(store)
        >>> workflow = await machine.transition(
        ...     "acme", "widgets", 42,
        ...     WorkflowStatus.PROCESSING,
        ...     pr_task_id="task-123",
        ... )
    """

    def __init__(self, store: WorkflowStore):
        self.store = store

    async def get(
        self, owner: str, repo: str, item_number: int
    ) -> Optional[IssueWorkflow]:
        return await self.store.get_workflow(owner, repo, item_number)

    async def current_status(
        self, owner: str, repo: str, item_number: int
    ) -> WorkflowStatus:
        """Current workflow status; an issue without a row is ``new``."""
        workflow = await self.store.get_workflow(owner, repo, item_number)
        if workflow is None:
            return WorkflowStatus.NEW
        return workflow.workflow_status

    def check(self, from_status: WorkflowStatus, to_status: WorkflowStatus) -> None:
        """Raise InvalidTransitionError unless the transition is allowed."""
        if not is_valid_transition(from_status, to_status):
            raise InvalidTransitionError(from_status, to_status)

    async def transition(
        self,
        owner: str,
        repo: str,
        item_number: int,
        to_status: WorkflowStatus,
        *,
        force: bool = False,
        **fields: Any,
    ) -> IssueWorkflow:
        """Move an issue's workflow to ``to_status`` and upsert the row.

        Args:
            owner: Repository owner.
            repo: Repository name.
            item_number: Issue number.
            to_status: The target status.
            force: Skip transition validation. Used for best-effort failure
                writes and for recording a status observed on a task this
                service has no row for.
            **fields: Other IssueWorkflow columns to set (for example
                ``pr_task_id``). Unmentioned columns keep their values.

        Returns:
            The stored workflow.

        Raises:
            InvalidTransitionError: If the transition is not allowed.
            StoreError: If the store read or write fails.
        """
        current = await self.store.get_workflow(owner, repo, item_number)
        from_status = current.workflow_status if current else WorkflowStatus.NEW

        if not force and not is_valid_transition(from_status, to_status):
            logger.warning(
                "Invalid workflow transition attempted",
                extra={
                    "issue_id": f"{owner}/{repo}#{item_number}",
                    "from_status": from_status.value,
                    "to_status": to_status.value,
                },
            )
            raise InvalidTransitionError(from_status, to_status)

        if current is not None:
            workflow = current.model_copy(
                update={"workflow_status": to_status, **fields}
            )
        else:
            workflow = IssueWorkflow(
                owner=owner,
                repo=repo,
                item_number=item_number,
                workflow_status=to_status,
                **fields,
            )

        logger.info(
            "Transitioning workflow",
            extra={
                "issue_id": workflow.item_id,
                "from_status": from_status.value,
                "to_status": to_status.value,
                "forced": force,
            },
        )
        return await self.store.upsert_workflow(workflow)
