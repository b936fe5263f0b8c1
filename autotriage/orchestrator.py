"""Workflow orchestrator driving issues from triage to pull request.

Receives triggers from the webhook ingestor, from manual API calls, and
from pollers, and moves each issue through its workflow:
start triage → reconcile triage → confidence gate → PR task → reconcile PR.

The orchestrator owns no state between calls. Everything it knows is read
from the workflow store on each call, and every decision is written back
before returning. Each external failure is recorded as a best-effort
``failed`` transition and then re-raised to the caller.

Deduplication:
- start_triage returns the active triage session instead of creating a
  second task, unless forced (manual re-triage). Unforced starts also keep
  the latest session while PR generation owns the workflow.
- reconcile_triage on a session that is already terminal, or that is no
  longer the issue's latest session, has no side effects.
- start_pr returns the workflow unchanged while a PR task is running.
- reconcile_pr on a task that is no longer the issue's PR task, or on an
  issue that already has a PR, has no side effects.

Two pollers reconciling the same completed triage at the same time can both
pass the gate and both create a PR task; the workflow row ends up pointing
at whichever wrote last.
"""

import logging
from typing import Any, Optional

from pydantic import BaseModel

from autotriage.agent.client import AgentTaskClient, TaskServiceUnavailableError
from autotriage.agent.models import ExternalTaskStatus, IssueItem, RepositoryRef
from autotriage.events.emitter import EventEmitter
from autotriage.events.models import EventType, WorkflowEvent
from autotriage.gate import should_auto_advance
from autotriage.github.comments import StatusCommentPoster
from autotriage.state.machine import (
    TriageNotReadyError,
    WorkflowStateMachine,
    classify_triage_status,
    derive_pr_workflow_status,
    is_pr_complete,
)
from autotriage.state.models import (
    IssueWorkflow,
    TriageResult,
    TriageSession,
    TriageSessionPatch,
    TriageSessionStatus,
    UserAutomationSettings,
    WorkflowStatus,
    is_terminal_status,
    is_valid_transition,
)
from autotriage.state.store import StoreError, WorkflowStore


logger = logging.getLogger(__name__)

# Statuses in which a triage outcome still decides the workflow status
_TRIAGE_OWNED_STATUSES = (WorkflowStatus.NEW, WorkflowStatus.TRIAGED)

# Statuses only a forced re-triage may reset
_PR_OWNED_STATUSES = (
    WorkflowStatus.PROCESSING,
    WorkflowStatus.AWAITING_INSTRUCTIONS,
    WorkflowStatus.PR,
)


class TriageReconciliation(BaseModel):
    """Outcome of reconciling a triage task."""

    task_id: str
    status: ExternalTaskStatus
    session_status: TriageSessionStatus
    triage_result: Optional[TriageResult] = None
    workflow_status: WorkflowStatus
    is_complete: bool
    pr_task_id: Optional[str] = None
    pr_task_url: Optional[str] = None


class TriageStart(BaseModel):
    """Outcome of a start-triage request."""

    session: TriageSession
    created: bool


class PRReconciliation(BaseModel):
    """Outcome of reconciling a PR-generation task."""

    task_id: str
    status: ExternalTaskStatus
    workflow_status: WorkflowStatus
    pr_url: Optional[str] = None
    is_complete: bool


def _item_id(owner: str, repo: str, item_number: int) -> str:
    return f"{owner}/{repo}#{item_number}"


class WorkflowOrchestrator:
    """Orchestrates triage and PR generation for issues.

    Attributes:
        store: Persistence for triage sessions and workflows.
        task_client: Client of the external agent task service.
        event_emitter: Emits workflow events for observability.
        comment_poster: Posts status comments; None disables them.
        state_machine: Validates and persists workflow transitions.
    """

    def __init__(
        self,
        store: WorkflowStore,
        task_client: AgentTaskClient,
        event_emitter: EventEmitter,
        comment_poster: Optional[StatusCommentPoster] = None,
        state_machine: Optional[WorkflowStateMachine] = None,
    ):
        self.store = store
        self.task_client = task_client
        self.event_emitter = event_emitter
        self.comment_poster = comment_poster
        self.state_machine = state_machine or WorkflowStateMachine(store)

    async def get_user_settings(self, user_id: str) -> UserAutomationSettings:
        """A user's automation settings, or the defaults if none were saved."""
        settings = await self.store.get_user_settings(user_id)
        if settings is None:
            return UserAutomationSettings(user_id=user_id)
        return settings

    # ------------------------------------------------------------------
    # Triage
    # ------------------------------------------------------------------

    async def start_triage(
        self,
        item: IssueItem,
        repo: RepositoryRef,
        force: bool = False,
    ) -> TriageStart:
        """Create a triage task for an issue.

        Args:
            item: The issue to triage.
            repo: The repository holding the issue.
            force: Create a new task even if a triage is already running.
                Manual re-triage passes True; the previous task is abandoned,
                not cancelled.

        Returns:
            The new triage session, or the running one (with
            ``created=False``) when deduplicated.

        Raises:
            ConfigurationError: If the agent service key is missing.
            TaskServiceUnavailableError: If the task cannot be created.
            StoreError: If the session cannot be recorded.
        """
        owner, name, number = repo.owner, repo.name, item.number
        issue_id = _item_id(owner, name, number)

        try:
            workflow = await self.store.get_workflow(owner, name, number)
            pr_owned = (
                workflow is not None and workflow.workflow_status in _PR_OWNED_STATUSES
            )
            if not force:
                latest = await self.store.get_latest_triage_session(owner, name, number)
                if latest is not None and latest.is_active:
                    logger.info(
                        "Triage already running, not creating another task",
                        extra={"issue_id": issue_id, "task_id": latest.task_id},
                    )
                    return TriageStart(session=latest, created=False)
                if latest is not None and pr_owned:
                    logger.info(
                        "PR generation under way, keeping the existing triage",
                        extra={
                            "issue_id": issue_id,
                            "workflow_status": workflow.workflow_status.value,
                        },
                    )
                    return TriageStart(session=latest, created=False)

            handle = await self.task_client.create_triage_task(item, repo)
            session = await self.store.create_triage_session(
                TriageSession(
                    owner=owner,
                    repo=name,
                    item_number=number,
                    task_id=handle.task_id,
                    task_url=handle.url,
                    status=TriageSessionStatus.IN_PROGRESS,
                )
            )
            await self._emit_task_created(
                owner, name, number, "triage", handle.task_id, handle.url
            )

            # An existing row restarts from new; an issue without one stays
            # row-less until the triage outcome is known. An unforced start
            # never resets a row owned by PR generation.
            if workflow is not None and (force or not pr_owned):
                await self._transition(
                    owner,
                    name,
                    number,
                    WorkflowStatus.NEW,
                    triage_task_id=handle.task_id,
                    triage_task_url=handle.url,
                    pr_task_id=None,
                    pr_task_url=None,
                    pr_url=None,
                )
        except (TaskServiceUnavailableError, StoreError) as exc:
            await self._fail(owner, name, number, "start_triage", exc)
            raise

        logger.info(
            "Triage started",
            extra={"issue_id": issue_id, "task_id": session.task_id, "forced": force},
        )
        return TriageStart(session=session, created=True)

    async def reconcile_triage(
        self,
        task_id: str,
        owner: str,
        repo: str,
        item_number: int,
        settings: Optional[UserAutomationSettings] = None,
        item: Optional[IssueItem] = None,
    ) -> TriageReconciliation:
        """Poll a triage task and apply its outcome.

        On the first observation of a completed triage the result is stored,
        the assessment comment is posted, and the confidence gate either
        starts a PR task (workflow ``processing``) or parks the issue at
        ``triaged``. A failed triage moves the workflow to ``failed``.

        Args:
            task_id: The triage task to reconcile.
            owner: Repository owner.
            repo: Repository name.
            item_number: Issue number.
            settings: Automation settings of the caller. Defaults apply when
                omitted.
            item: Issue details for the PR prompt, if the caller has them.

        Raises:
            TaskServiceUnavailableError: If the task service fails.
            StoreError: If the store fails.
        """
        settings = settings or UserAutomationSettings()
        issue_id = _item_id(owner, repo, item_number)
        is_current = False

        try:
            session = await self.store.get_triage_session(task_id)
            latest = await self.store.get_latest_triage_session(owner, repo, item_number)

            if session is None and latest is None:
                # Task created outside this service; adopt it as the issue's
                # first session
                session = await self.store.create_triage_session(
                    TriageSession(
                        owner=owner,
                        repo=repo,
                        item_number=item_number,
                        task_id=task_id,
                        status=TriageSessionStatus.IN_PROGRESS,
                    )
                )
                latest = session

            is_current = (
                session is not None
                and session.is_active
                and latest is not None
                and latest.task_id == task_id
            )

            task = await self.task_client.get_task_status(task_id)

            if not is_current:
                logger.info(
                    "Triage task already reconciled or superseded",
                    extra={"issue_id": issue_id, "task_id": task_id},
                )
                workflow = await self.store.get_workflow(owner, repo, item_number)
                session_status = (
                    session.status if session is not None else classify_triage_status(task)
                )
                return TriageReconciliation(
                    task_id=task_id,
                    status=task.status,
                    session_status=session_status,
                    triage_result=(
                        session.structured_result if session is not None else None
                    ),
                    workflow_status=(
                        workflow.workflow_status if workflow else WorkflowStatus.NEW
                    ),
                    is_complete=True,
                    pr_task_id=workflow.pr_task_id if workflow else None,
                    pr_task_url=workflow.pr_task_url if workflow else None,
                )

            outcome = classify_triage_status(task)

            if outcome == TriageSessionStatus.IN_PROGRESS:
                workflow = await self.store.get_workflow(owner, repo, item_number)
                return TriageReconciliation(
                    task_id=task_id,
                    status=task.status,
                    session_status=TriageSessionStatus.IN_PROGRESS,
                    workflow_status=(
                        workflow.workflow_status if workflow else WorkflowStatus.NEW
                    ),
                    is_complete=False,
                )

            if outcome == TriageSessionStatus.FAILED:
                await self.store.update_triage_session(
                    task_id, TriageSessionPatch(status=TriageSessionStatus.FAILED)
                )
                workflow = await self._apply_triage_status(
                    session, WorkflowStatus.FAILED
                )
                await self._emit_error_event(
                    owner,
                    repo,
                    item_number,
                    "triage",
                    f"Triage task ended with status {task.status.value}",
                    "TriageFailed",
                )
                return TriageReconciliation(
                    task_id=task_id,
                    status=task.status,
                    session_status=TriageSessionStatus.FAILED,
                    workflow_status=workflow.workflow_status,
                    is_complete=True,
                )

            result = task.structured_result
            await self.store.update_triage_session(
                task_id,
                TriageSessionPatch(
                    status=TriageSessionStatus.COMPLETED,
                    structured_result=result,
                ),
            )
            await self._post_assessment(session, result)

            workflow = await self._run_gate(session, result, settings, item)
        except (TaskServiceUnavailableError, StoreError) as exc:
            if is_current:
                await self._fail(owner, repo, item_number, "reconcile_triage", exc)
            raise

        return TriageReconciliation(
            task_id=task_id,
            status=task.status,
            session_status=TriageSessionStatus.COMPLETED,
            triage_result=result,
            workflow_status=workflow.workflow_status,
            is_complete=True,
            pr_task_id=workflow.pr_task_id,
            pr_task_url=workflow.pr_task_url,
        )

    async def _apply_triage_status(
        self, session: TriageSession, to_status: WorkflowStatus, **fields: Any
    ) -> IssueWorkflow:
        """Record a triage outcome unless the workflow has moved past triage."""
        owner, repo, number = session.item_key
        workflow = await self.store.get_workflow(owner, repo, number)
        if workflow is not None and workflow.workflow_status not in _TRIAGE_OWNED_STATUSES:
            logger.info(
                "Workflow moved past triage, keeping its status",
                extra={
                    "issue_id": workflow.item_id,
                    "workflow_status": workflow.workflow_status.value,
                    "triage_outcome": to_status.value,
                },
            )
            return workflow

        return await self._transition(
            owner,
            repo,
            number,
            to_status,
            triage_task_id=session.task_id,
            triage_task_url=session.task_url or None,
            **fields,
        )

    async def _run_gate(
        self,
        session: TriageSession,
        result: TriageResult,
        settings: UserAutomationSettings,
        item: Optional[IssueItem],
    ) -> IssueWorkflow:
        """Decide between auto-starting PR generation and parking at triaged."""
        owner, repo, number = session.item_key
        workflow = await self.store.get_workflow(owner, repo, number)
        if workflow is not None and workflow.workflow_status not in _TRIAGE_OWNED_STATUSES:
            return await self._apply_triage_status(session, WorkflowStatus.TRIAGED)

        if not should_auto_advance(settings, result):
            logger.info(
                "Confidence gate not passed",
                extra={
                    "issue_id": _item_id(owner, repo, number),
                    "confidence": result.confidence_score.value,
                    "threshold": settings.pr_confidence_threshold.value,
                    "auto_pr_enabled": settings.auto_pr_enabled,
                    "requires_human_input": result.requires_human_input,
                },
            )
            return await self._apply_triage_status(session, WorkflowStatus.TRIAGED)

        pr_item = item or IssueItem(number=number)
        handle = await self.task_client.create_pr_task(
            pr_item, RepositoryRef(owner=owner, name=repo), result
        )
        await self._emit_task_created(owner, repo, number, "pr", handle.task_id, handle.url)
        return await self._apply_triage_status(
            session,
            WorkflowStatus.PROCESSING,
            pr_task_id=handle.task_id,
            pr_task_url=handle.url,
            pr_url=None,
        )

    # ------------------------------------------------------------------
    # Pull requests
    # ------------------------------------------------------------------

    async def start_pr(
        self,
        item: IssueItem,
        repo: RepositoryRef,
        triage_result: Optional[TriageResult] = None,
    ) -> IssueWorkflow:
        """Manually start PR generation for a triaged issue.

        Args:
            item: The issue to resolve.
            repo: The repository holding the issue.
            triage_result: Assessment to build the PR prompt from. Defaults
                to the result of the issue's latest triage session.

        Returns:
            The workflow in ``processing``, or unchanged if a PR task is
            already running.

        Raises:
            TriageNotReadyError: If no triage result is available.
            InvalidTransitionError: If the workflow cannot enter processing.
            TaskServiceUnavailableError: If the task cannot be created.
            StoreError: If the store fails.
        """
        owner, name, number = repo.owner, repo.name, item.number
        issue_id = _item_id(owner, name, number)

        try:
            latest = await self.store.get_latest_triage_session(owner, name, number)
            result = triage_result
            if result is None:
                if latest is None or latest.structured_result is None:
                    raise TriageNotReadyError(owner, name, number)
                result = latest.structured_result

            workflow = await self.store.get_workflow(owner, name, number)
            current = workflow.workflow_status if workflow else WorkflowStatus.NEW
            if workflow is not None and workflow.pr_task_id and current in (
                WorkflowStatus.PROCESSING,
                WorkflowStatus.AWAITING_INSTRUCTIONS,
            ):
                logger.info(
                    "PR task already running, not creating another",
                    extra={"issue_id": issue_id, "task_id": workflow.pr_task_id},
                )
                return workflow

            self.state_machine.check(current, WorkflowStatus.PROCESSING)

            handle = await self.task_client.create_pr_task(item, repo, result)
            await self._emit_task_created(owner, name, number, "pr", handle.task_id, handle.url)

            triage_fields = {}
            if workflow is None and latest is not None:
                triage_fields = {
                    "triage_task_id": latest.task_id,
                    "triage_task_url": latest.task_url or None,
                }
            workflow = await self._transition(
                owner,
                name,
                number,
                WorkflowStatus.PROCESSING,
                pr_task_id=handle.task_id,
                pr_task_url=handle.url,
                pr_url=None,
                **triage_fields,
            )
        except (TaskServiceUnavailableError, StoreError) as exc:
            await self._fail(owner, name, number, "start_pr", exc)
            raise

        logger.info(
            "PR generation started",
            extra={"issue_id": issue_id, "task_id": workflow.pr_task_id},
        )
        return workflow

    async def reconcile_pr(
        self,
        task_id: str,
        owner: str,
        repo: str,
        item_number: int,
    ) -> PRReconciliation:
        """Poll a PR-generation task and record the derived workflow status.

        Writes happen only when the derived status or PR link changed. A
        task that is no longer the issue's PR task, or an issue that already
        has a PR, is reported as complete without writes.

        Raises:
            TaskServiceUnavailableError: If the task service fails.
            StoreError: If the store fails.
        """
        issue_id = _item_id(owner, repo, item_number)
        is_current = False

        try:
            workflow = await self.store.get_workflow(owner, repo, item_number)
            is_current = workflow is None or (
                not is_terminal_status(workflow.workflow_status)
                and workflow.pr_task_id in (None, task_id)
            )

            task = await self.task_client.get_task_status(task_id)

            if not is_current:
                logger.info(
                    "PR task superseded or issue already has a PR",
                    extra={"issue_id": issue_id, "task_id": task_id},
                )
                return PRReconciliation(
                    task_id=task_id,
                    status=task.status,
                    workflow_status=workflow.workflow_status,
                    pr_url=workflow.pr_url,
                    is_complete=True,
                )

            derived = derive_pr_workflow_status(task)
            current = workflow.workflow_status if workflow else None

            if workflow is not None and derived == current and task.pr_url == workflow.pr_url:
                return PRReconciliation(
                    task_id=task_id,
                    status=task.status,
                    workflow_status=current,
                    pr_url=workflow.pr_url,
                    is_complete=is_pr_complete(current),
                )

            if workflow is not None and not is_valid_transition(current, derived):
                logger.warning(
                    "Ignoring PR task status that cannot be applied",
                    extra={
                        "issue_id": issue_id,
                        "task_id": task_id,
                        "workflow_status": current.value,
                        "derived_status": derived.value,
                    },
                )
                return PRReconciliation(
                    task_id=task_id,
                    status=task.status,
                    workflow_status=current,
                    pr_url=workflow.pr_url,
                    is_complete=is_pr_complete(current),
                )

            workflow = await self._transition(
                owner,
                repo,
                item_number,
                derived,
                force=workflow is None,
                pr_task_id=task_id,
                pr_url=task.pr_url,
            )
        except (TaskServiceUnavailableError, StoreError) as exc:
            if is_current:
                await self._fail(owner, repo, item_number, "reconcile_pr", exc)
            raise

        if derived == WorkflowStatus.PR:
            await self._emit_completion_event(owner, repo, item_number, task.pr_url)
        elif derived == WorkflowStatus.FAILED:
            await self._emit_error_event(
                owner,
                repo,
                item_number,
                "pr",
                f"PR task ended with status {task.status.value}",
                "PRTaskFailed",
            )

        return PRReconciliation(
            task_id=task_id,
            status=task.status,
            workflow_status=workflow.workflow_status,
            pr_url=workflow.pr_url,
            is_complete=is_pr_complete(workflow.workflow_status),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _transition(
        self,
        owner: str,
        repo: str,
        item_number: int,
        to_status: WorkflowStatus,
        force: bool = False,
        **fields: Any,
    ) -> IssueWorkflow:
        """Transition the workflow and emit a state-transition event."""
        from_status = await self.state_machine.current_status(owner, repo, item_number)
        workflow = await self.state_machine.transition(
            owner, repo, item_number, to_status, force=force, **fields
        )
        await self._safe_emit(
            WorkflowEvent(
                event_type=EventType.STATE_TRANSITION,
                issue_id=workflow.item_id,
                repository=f"{owner}/{repo}",
                details={
                    "from_status": from_status.value,
                    "to_status": to_status.value,
                },
            )
        )
        return workflow

    async def _fail(
        self,
        owner: str,
        repo: str,
        item_number: int,
        stage: str,
        exc: Exception,
    ) -> None:
        """Best-effort transition to FAILED and emit an error event."""
        logger.exception(
            "Workflow operation failed",
            extra={"issue_id": _item_id(owner, repo, item_number), "stage": stage},
        )

        try:
            await self._transition(owner, repo, item_number, WorkflowStatus.FAILED)
        except Exception:
            logger.exception(
                "Failed to transition to FAILED state",
                extra={"issue_id": _item_id(owner, repo, item_number)},
            )

        await self._emit_error_event(
            owner, repo, item_number, stage, str(exc), type(exc).__name__
        )

    async def _post_assessment(self, session: TriageSession, result: TriageResult) -> None:
        if self.comment_poster is None:
            return
        owner, repo, number = session.item_key
        try:
            await self.comment_poster.post_assessment(
                owner, repo, number, result, session.task_url
            )
        except Exception:
            logger.exception(
                "Failed to post triage assessment",
                extra={"issue_id": _item_id(owner, repo, number)},
            )

    async def _emit_task_created(
        self,
        owner: str,
        repo: str,
        item_number: int,
        kind: str,
        task_id: str,
        task_url: str,
    ) -> None:
        await self._safe_emit(
            WorkflowEvent(
                event_type=EventType.TASK_CREATED,
                issue_id=_item_id(owner, repo, item_number),
                repository=f"{owner}/{repo}",
                details={"kind": kind, "task_id": task_id, "task_url": task_url},
            )
        )

    async def _emit_error_event(
        self,
        owner: str,
        repo: str,
        item_number: int,
        stage: str,
        error_message: str,
        error_type: str,
    ) -> None:
        await self._safe_emit(
            WorkflowEvent(
                event_type=EventType.ERROR,
                issue_id=_item_id(owner, repo, item_number),
                repository=f"{owner}/{repo}",
                details={
                    "stage": stage,
                    "error_message": error_message,
                    "error_type": error_type,
                },
            )
        )

    async def _emit_completion_event(
        self, owner: str, repo: str, item_number: int, pr_url: Optional[str]
    ) -> None:
        await self._safe_emit(
            WorkflowEvent(
                event_type=EventType.COMPLETION,
                issue_id=_item_id(owner, repo, item_number),
                repository=f"{owner}/{repo}",
                details={"pr_url": pr_url},
            )
        )

    async def _safe_emit(self, event: WorkflowEvent) -> None:
        """Emit an event, swallowing exceptions so workflow handling continues."""
        try:
            await self.event_emitter.emit(event)
        except Exception:
            logger.exception(
                "Failed to emit workflow event",
                extra={
                    "event_type": event.event_type.value,
                    "issue_id": event.issue_id,
                },
            )
