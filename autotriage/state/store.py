"""Workflow store interface.

The WorkflowStore protocol is the contract for persisting triage sessions,
issue workflows and (read-only) user automation settings. Two
implementations exist: InMemoryWorkflowStore (memory.py) and
PostgresWorkflowStore (repository.py).

Contract:
- A lookup that finds nothing returns None (or omits the key in batch
  lookups). It is never an error.
- Connectivity and constraint failures raise StoreError.
- upsert_workflow is atomic from the caller's point of view and keyed by
  (owner, repo, item_number): a second upsert replaces the first.
- "Latest" triage session means greatest created_at, ties broken by
  insertion order.
"""

from typing import Dict, Iterable, Optional, Protocol, runtime_checkable

from autotriage.state.models import (
    IssueWorkflow,
    TriageSession,
    TriageSessionPatch,
    UserAutomationSettings,
    WorkflowPatch,
)


class StoreError(Exception):
    """Raised when a store operation fails.

    Attributes:
        message: Human-readable error description.
        original_error: The underlying exception, if any.
    """

    def __init__(
        self,
        message: str,
        original_error: Optional[Exception] = None,
    ):
        self.message = message
        self.original_error = original_error
        super().__init__(message)


@runtime_checkable
class WorkflowStore(Protocol):
    """Persistence for triage sessions and issue workflows."""

    async def create_triage_session(self, session: TriageSession) -> TriageSession:
        """Insert a new triage session.

        The store assigns ``created_at`` and ``updated_at``.

        Raises:
            StoreError: If the task id already exists or the insert fails.
        """
        ...

    async def update_triage_session(
        self, task_id: str, patch: TriageSessionPatch
    ) -> Optional[TriageSession]:
        """Apply a partial update to the session with ``task_id``.

        Returns:
            The updated session, or None if no session has that task id.
        """
        ...

    async def get_triage_session(self, task_id: str) -> Optional[TriageSession]:
        """Get a triage session by its task id."""
        ...

    async def get_latest_triage_session(
        self, owner: str, repo: str, item_number: int
    ) -> Optional[TriageSession]:
        """Get the most recently created session of an issue."""
        ...

    async def get_latest_triage_sessions_batch(
        self, owner: str, repo: str, item_numbers: Iterable[int]
    ) -> Dict[int, TriageSession]:
        """Latest session per issue number, omitting issues without one."""
        ...

    async def upsert_workflow(self, workflow: IssueWorkflow) -> IssueWorkflow:
        """Insert or replace the workflow keyed by (owner, repo, item_number).

        The original ``created_at`` is kept when a row is replaced.
        """
        ...

    async def update_workflow(
        self, owner: str, repo: str, item_number: int, patch: WorkflowPatch
    ) -> Optional[IssueWorkflow]:
        """Apply a partial update to an existing workflow.

        Returns:
            The updated workflow, or None if the issue has no workflow row.
        """
        ...

    async def get_workflow(
        self, owner: str, repo: str, item_number: int
    ) -> Optional[IssueWorkflow]:
        """Get the workflow of an issue."""
        ...

    async def get_workflows_batch(
        self, owner: str, repo: str, item_numbers: Iterable[int]
    ) -> Dict[int, IssueWorkflow]:
        """Workflow per issue number, omitting issues without one."""
        ...

    async def get_user_settings(self, user_id: str) -> Optional[UserAutomationSettings]:
        """Get a user's automation settings, or None if never saved."""
        ...

    async def health_check(self) -> bool:
        """Return True if the store is reachable."""
        ...
