"""In-memory workflow store.

Used for local development when no database is configured, and in tests.
A single asyncio lock serialises writes so that upserts are atomic for
concurrent handlers running on the same event loop.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from autotriage.state.models import (
    IssueWorkflow,
    TriageSession,
    TriageSessionPatch,
    UserAutomationSettings,
    WorkflowPatch,
    utc_now,
)
from autotriage.state.store import StoreError


logger = logging.getLogger(__name__)

ItemKey = Tuple[str, str, int]


class InMemoryWorkflowStore:
    """In-memory implementation of the WorkflowStore protocol.

    Args:
        clock: Source of store-assigned timestamps. Defaults to UTC now.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or utc_now
        self._lock = asyncio.Lock()
        # Insertion order doubles as the tie-breaker for equal timestamps
        self._sessions: List[TriageSession] = []
        self._workflows: Dict[ItemKey, IssueWorkflow] = {}
        self._user_settings: Dict[str, UserAutomationSettings] = {}

    async def create_triage_session(self, session: TriageSession) -> TriageSession:
        async with self._lock:
            if any(s.task_id == session.task_id for s in self._sessions):
                raise StoreError(
                    f"Triage session already exists for task: {session.task_id}"
                )
            now = self._clock()
            stored = session.model_copy(update={"created_at": now, "updated_at": now})
            self._sessions.append(stored)
            logger.info(
                "Saved triage session",
                extra={"task_id": stored.task_id, "status": stored.status.value},
            )
            return stored

    async def update_triage_session(
        self, task_id: str, patch: TriageSessionPatch
    ) -> Optional[TriageSession]:
        async with self._lock:
            for index, session in enumerate(self._sessions):
                if session.task_id == task_id:
                    changes = patch.model_dump(exclude_unset=True)
                    for field in ("status", "task_url"):
                        if changes.get(field) is None:
                            changes.pop(field, None)
                    if "structured_result" in changes:
                        changes["structured_result"] = patch.structured_result
                    changes["updated_at"] = self._clock()
                    updated = session.model_copy(update=changes)
                    self._sessions[index] = updated
                    return updated
            return None

    async def get_triage_session(self, task_id: str) -> Optional[TriageSession]:
        for session in self._sessions:
            if session.task_id == task_id:
                return session
        return None

    def _latest_by_item(self, owner: str, repo: str) -> Dict[int, TriageSession]:
        latest: Dict[int, Tuple[datetime, int, TriageSession]] = {}
        for seq, session in enumerate(self._sessions):
            if session.owner != owner or session.repo != repo:
                continue
            current = latest.get(session.item_number)
            if current is None or (session.created_at, seq) >= current[:2]:
                latest[session.item_number] = (session.created_at, seq, session)
        return {number: entry[2] for number, entry in latest.items()}

    async def get_latest_triage_session(
        self, owner: str, repo: str, item_number: int
    ) -> Optional[TriageSession]:
        return self._latest_by_item(owner, repo).get(item_number)

    async def get_latest_triage_sessions_batch(
        self, owner: str, repo: str, item_numbers: Iterable[int]
    ) -> Dict[int, TriageSession]:
        wanted = set(item_numbers)
        if not wanted:
            return {}
        return {
            number: session
            for number, session in self._latest_by_item(owner, repo).items()
            if number in wanted
        }

    async def upsert_workflow(self, workflow: IssueWorkflow) -> IssueWorkflow:
        async with self._lock:
            now = self._clock()
            existing = self._workflows.get(workflow.item_key)
            created_at = existing.created_at if existing is not None else now
            stored = workflow.model_copy(
                update={"created_at": created_at, "updated_at": now}
            )
            self._workflows[workflow.item_key] = stored
            return stored

    async def update_workflow(
        self, owner: str, repo: str, item_number: int, patch: WorkflowPatch
    ) -> Optional[IssueWorkflow]:
        async with self._lock:
            key = (owner, repo, item_number)
            existing = self._workflows.get(key)
            if existing is None:
                return None
            changes = patch.model_dump(exclude_unset=True)
            if changes.get("workflow_status") is None:
                changes.pop("workflow_status", None)
            changes["updated_at"] = self._clock()
            updated = existing.model_copy(update=changes)
            self._workflows[key] = updated
            return updated

    async def get_workflow(
        self, owner: str, repo: str, item_number: int
    ) -> Optional[IssueWorkflow]:
        return self._workflows.get((owner, repo, item_number))

    async def get_workflows_batch(
        self, owner: str, repo: str, item_numbers: Iterable[int]
    ) -> Dict[int, IssueWorkflow]:
        result: Dict[int, IssueWorkflow] = {}
        for number in set(item_numbers):
            workflow = self._workflows.get((owner, repo, number))
            if workflow is not None:
                result[number] = workflow
        return result

    async def get_user_settings(self, user_id: str) -> Optional[UserAutomationSettings]:
        return self._user_settings.get(user_id)

    def put_user_settings(self, settings: UserAutomationSettings) -> None:
        """Seed a user's settings; the preferences collaborator owns writes."""
        self._user_settings[settings.user_id] = settings

    async def health_check(self) -> bool:
        return True

    def count_workflows(self) -> int:
        return len(self._workflows)

    def list_triage_sessions(self, owner: str, repo: str, item_number: int) -> List[TriageSession]:
        """Every session of an item, oldest first."""
        return [s for s in self._sessions if s.item_key == (owner, repo, item_number)]
