"""Unit tests for the WorkflowOrchestrator.

The orchestrator runs against a real in-memory store so that the persisted
workflow and session rows can be asserted directly. The agent task client
and comment poster are mocked.
"""

from typing import List
from unittest.mock import AsyncMock

import pytest

from autotriage.agent.client import TaskServiceUnavailableError
from autotriage.agent.models import ExternalTaskStatus
from autotriage.events.emitter import EventEmitter
from autotriage.events.models import EventType, WorkflowEvent
from autotriage.orchestrator import WorkflowOrchestrator
from autotriage.state.machine import InvalidTransitionError, TriageNotReadyError
from autotriage.state.memory import InMemoryWorkflowStore
from autotriage.state.models import (
    IssueWorkflow,
    Level,
    TriageSession,
    TriageSessionStatus,
    UserAutomationSettings,
    WorkflowPatch,
    WorkflowStatus,
)

from factories import (
    OWNER,
    REPO,
    make_handle,
    make_item,
    make_repo,
    make_result,
    make_settings,
    make_task,
    run_async,
)


PR_URL = "https://github.com/acme/widgets/pull/99"


class RecordingEmitter(EventEmitter):
    def __init__(self):
        self.events: List[WorkflowEvent] = []

    async def emit(self, event: WorkflowEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: EventType) -> List[WorkflowEvent]:
        return [e for e in self.events if e.event_type == event_type]


@pytest.fixture
def store():
    return InMemoryWorkflowStore()


@pytest.fixture
def task_client():
    client = AsyncMock()
    client.create_triage_task.side_effect = [make_handle(f"t-{i}") for i in range(1, 6)]
    client.create_pr_task.side_effect = [make_handle(f"pr-{i}") for i in range(1, 6)]
    return client


@pytest.fixture
def emitter():
    return RecordingEmitter()


@pytest.fixture
def poster():
    return AsyncMock()


@pytest.fixture
def orchestrator(store, task_client, emitter, poster):
    return WorkflowOrchestrator(
        store=store,
        task_client=task_client,
        event_emitter=emitter,
        comment_poster=poster,
    )


def _workflow(store) -> IssueWorkflow:
    return run_async(store.get_workflow(OWNER, REPO, 42))


def _start(orchestrator, force: bool = False):
    return run_async(orchestrator.start_triage(make_item(), make_repo(), force=force))


def _reconcile(orchestrator, task_id: str, settings_=None):
    return run_async(
        orchestrator.reconcile_triage(task_id, OWNER, REPO, 42, settings=settings_)
    )


# ---------------------------------------------------------------------------
# start_triage
# ---------------------------------------------------------------------------


def test_start_triage_records_in_progress_session(orchestrator, store, emitter):
    started = _start(orchestrator)

    assert started.created is True
    assert started.session.task_id == "t-1"
    assert started.session.status == TriageSessionStatus.IN_PROGRESS
    assert started.session.task_url == "https://agent.example/sessions/t-1"
    # No workflow row until the triage outcome is known
    assert _workflow(store) is None

    created = emitter.of_type(EventType.TASK_CREATED)
    assert len(created) == 1
    assert created[0].details["kind"] == "triage"
    assert created[0].issue_id == "acme/widgets#42"


def test_start_triage_deduplicates_active_session(orchestrator, task_client):
    first = _start(orchestrator)
    second = _start(orchestrator)

    assert second.created is False
    assert second.session.task_id == first.session.task_id
    task_client.create_triage_task.assert_called_once()


def test_forced_start_creates_new_task(orchestrator, store, task_client):
    _start(orchestrator)
    forced = _start(orchestrator, force=True)

    assert forced.created is True
    assert forced.session.task_id == "t-2"
    assert task_client.create_triage_task.call_count == 2
    latest = run_async(store.get_latest_triage_session(OWNER, REPO, 42))
    assert latest.task_id == "t-2"
    history = store.list_triage_sessions(OWNER, REPO, 42)
    assert [s.task_id for s in history] == ["t-1", "t-2"]


def test_start_after_completed_triage_creates_new_task(orchestrator, task_client):
    _start(orchestrator)
    task_client.get_task_status.return_value = make_task(
        "t-1", ExternalTaskStatus.BLOCKED, result=make_result(confidence=Level.LOW)
    )
    _reconcile(orchestrator, "t-1")

    again = _start(orchestrator)
    assert again.created is True
    assert again.session.task_id == "t-2"


def test_retriage_resets_existing_workflow(orchestrator, store):
    run_async(
        store.upsert_workflow(
            IssueWorkflow(
                owner=OWNER,
                repo=REPO,
                item_number=42,
                workflow_status=WorkflowStatus.PR,
                pr_task_id="pr-old",
                pr_url=PR_URL,
            )
        )
    )

    _start(orchestrator, force=True)

    workflow = _workflow(store)
    assert workflow.workflow_status == WorkflowStatus.NEW
    assert workflow.triage_task_id == "t-1"
    assert workflow.pr_task_id is None
    assert workflow.pr_url is None


def test_unforced_start_keeps_issue_with_pr(orchestrator, store, task_client):
    """An edited issue that already has a PR is not triaged again."""
    _start(orchestrator)
    task_client.get_task_status.return_value = make_task(
        "t-1", ExternalTaskStatus.BLOCKED, result=make_result(confidence=Level.HIGH)
    )
    _reconcile(orchestrator, "t-1", make_settings(threshold=Level.HIGH))
    task_client.get_task_status.return_value = make_task(
        "pr-1", ExternalTaskStatus.BLOCKED, pr_url=PR_URL
    )
    run_async(orchestrator.reconcile_pr("pr-1", OWNER, REPO, 42))
    assert _workflow(store).workflow_status == WorkflowStatus.PR

    again = _start(orchestrator)

    assert again.created is False
    assert again.session.task_id == "t-1"
    task_client.create_triage_task.assert_called_once()
    workflow = _workflow(store)
    assert workflow.workflow_status == WorkflowStatus.PR
    assert workflow.pr_url == PR_URL
    assert workflow.pr_task_id == "pr-1"


@pytest.mark.parametrize(
    "status", [WorkflowStatus.PROCESSING, WorkflowStatus.AWAITING_INSTRUCTIONS]
)
def test_unforced_start_keeps_running_pr_task(orchestrator, store, task_client, status):
    _start(orchestrator)
    task_client.get_task_status.return_value = make_task(
        "t-1", ExternalTaskStatus.BLOCKED, result=make_result(confidence=Level.HIGH)
    )
    _reconcile(orchestrator, "t-1", make_settings(threshold=Level.MEDIUM))
    run_async(store.update_workflow(OWNER, REPO, 42, WorkflowPatch(workflow_status=status)))

    again = _start(orchestrator)

    assert again.created is False
    workflow = _workflow(store)
    assert workflow.workflow_status == status
    assert workflow.pr_task_id == "pr-1"


def test_unforced_start_without_session_leaves_pr_row(orchestrator, store, task_client):
    run_async(
        store.upsert_workflow(
            IssueWorkflow(
                owner=OWNER,
                repo=REPO,
                item_number=42,
                workflow_status=WorkflowStatus.PR,
                pr_task_id="pr-ext",
                pr_url=PR_URL,
            )
        )
    )

    started = _start(orchestrator)

    assert started.created is True
    workflow = _workflow(store)
    assert workflow.workflow_status == WorkflowStatus.PR
    assert workflow.pr_url == PR_URL
    assert workflow.triage_task_id is None


def test_start_triage_failure_marks_failed_and_reraises(
    orchestrator, store, task_client, emitter
):
    task_client.create_triage_task.side_effect = TaskServiceUnavailableError("down")

    with pytest.raises(TaskServiceUnavailableError):
        _start(orchestrator)

    assert _workflow(store).workflow_status == WorkflowStatus.FAILED
    errors = emitter.of_type(EventType.ERROR)
    assert errors[-1].details["stage"] == "start_triage"
    assert errors[-1].details["error_type"] == "TaskServiceUnavailableError"


# ---------------------------------------------------------------------------
# reconcile_triage
# ---------------------------------------------------------------------------


def test_confident_triage_auto_starts_pr(orchestrator, store, task_client, emitter, poster):
    """Opened issue, high confidence, medium threshold: new → processing."""
    _start(orchestrator)
    result = make_result(confidence=Level.HIGH)
    task_client.get_task_status.return_value = make_task(
        "t-1", ExternalTaskStatus.BLOCKED, result=result
    )

    outcome = _reconcile(orchestrator, "t-1", make_settings(threshold=Level.MEDIUM))

    assert outcome.is_complete is True
    assert outcome.session_status == TriageSessionStatus.COMPLETED
    assert outcome.workflow_status == WorkflowStatus.PROCESSING
    assert outcome.pr_task_id == "pr-1"
    task_client.create_pr_task.assert_called_once()

    workflow = _workflow(store)
    assert workflow.workflow_status == WorkflowStatus.PROCESSING
    assert workflow.pr_task_id == "pr-1"
    assert workflow.triage_task_id == "t-1"

    session = run_async(store.get_triage_session("t-1"))
    assert session.status == TriageSessionStatus.COMPLETED
    assert session.structured_result == result

    transitions = emitter.of_type(EventType.STATE_TRANSITION)
    assert transitions[-1].details == {"from_status": "new", "to_status": "processing"}
    poster.post_assessment.assert_called_once_with(
        OWNER, REPO, 42, result, "https://agent.example/sessions/t-1"
    )


def test_unconfident_triage_parks_at_triaged(orchestrator, store, task_client):
    _start(orchestrator)
    task_client.get_task_status.return_value = make_task(
        "t-1", ExternalTaskStatus.BLOCKED, result=make_result(confidence=Level.MEDIUM)
    )

    outcome = _reconcile(orchestrator, "t-1", make_settings(threshold=Level.HIGH))

    assert outcome.workflow_status == WorkflowStatus.TRIAGED
    assert outcome.pr_task_id is None
    task_client.create_pr_task.assert_not_called()
    assert _workflow(store).workflow_status == WorkflowStatus.TRIAGED


def test_human_input_parks_at_triaged(orchestrator, task_client):
    _start(orchestrator)
    task_client.get_task_status.return_value = make_task(
        "t-1",
        ExternalTaskStatus.STOPPED,
        result=make_result(confidence=Level.HIGH, requires_human_input=True),
    )

    outcome = _reconcile(orchestrator, "t-1", make_settings(threshold=Level.LOW))

    assert outcome.workflow_status == WorkflowStatus.TRIAGED
    task_client.create_pr_task.assert_not_called()


def test_errored_triage_fails_session_and_workflow(orchestrator, store, task_client, emitter):
    _start(orchestrator)
    task_client.get_task_status.return_value = make_task("t-1", ExternalTaskStatus.ERROR)

    outcome = _reconcile(orchestrator, "t-1")

    assert outcome.is_complete is True
    assert outcome.session_status == TriageSessionStatus.FAILED
    assert outcome.workflow_status == WorkflowStatus.FAILED
    assert run_async(store.get_triage_session("t-1")).status == TriageSessionStatus.FAILED
    assert _workflow(store).workflow_status == WorkflowStatus.FAILED
    assert emitter.of_type(EventType.ERROR)[-1].details["stage"] == "triage"


def test_running_triage_changes_nothing(orchestrator, store, task_client, poster):
    _start(orchestrator)
    task_client.get_task_status.return_value = make_task("t-1", ExternalTaskStatus.RUNNING)

    outcome = _reconcile(orchestrator, "t-1")

    assert outcome.is_complete is False
    assert outcome.session_status == TriageSessionStatus.IN_PROGRESS
    assert outcome.workflow_status == WorkflowStatus.NEW
    assert _workflow(store) is None
    poster.post_assessment.assert_not_called()


def test_repeated_reconcile_creates_one_pr_task(orchestrator, task_client, poster):
    _start(orchestrator)
    task_client.get_task_status.return_value = make_task(
        "t-1", ExternalTaskStatus.BLOCKED, result=make_result(confidence=Level.HIGH)
    )
    settings_ = make_settings(threshold=Level.MEDIUM)

    first = _reconcile(orchestrator, "t-1", settings_)
    second = _reconcile(orchestrator, "t-1", settings_)

    assert first.pr_task_id == second.pr_task_id == "pr-1"
    assert second.workflow_status == WorkflowStatus.PROCESSING
    assert second.is_complete is True
    task_client.create_pr_task.assert_called_once()
    poster.post_assessment.assert_called_once()


def test_superseded_triage_has_no_side_effects(orchestrator, store, task_client):
    _start(orchestrator)
    _start(orchestrator, force=True)
    task_client.get_task_status.return_value = make_task(
        "t-1", ExternalTaskStatus.BLOCKED, result=make_result(confidence=Level.HIGH)
    )

    outcome = _reconcile(orchestrator, "t-1", make_settings(threshold=Level.LOW))

    assert outcome.session_status == TriageSessionStatus.IN_PROGRESS
    assert outcome.is_complete is True
    session = run_async(store.get_triage_session("t-1"))
    assert session.status == TriageSessionStatus.IN_PROGRESS
    assert _workflow(store) is None
    task_client.create_pr_task.assert_not_called()


def test_unknown_task_is_adopted_for_issue_without_history(orchestrator, store, task_client):
    task_client.get_task_status.return_value = make_task(
        "ext-9", ExternalTaskStatus.BLOCKED, result=make_result(confidence=Level.LOW)
    )

    outcome = _reconcile(orchestrator, "ext-9")

    assert outcome.session_status == TriageSessionStatus.COMPLETED
    assert outcome.workflow_status == WorkflowStatus.TRIAGED
    assert run_async(store.get_triage_session("ext-9")) is not None


def test_triage_outcome_does_not_override_pr_workflow(orchestrator, store, task_client):
    _start(orchestrator)
    # PR generation was started manually while the triage was still running
    run_async(
        store.upsert_workflow(
            IssueWorkflow(
                owner=OWNER,
                repo=REPO,
                item_number=42,
                workflow_status=WorkflowStatus.PROCESSING,
                pr_task_id="pr-manual",
            )
        )
    )
    task_client.get_task_status.return_value = make_task("t-1", ExternalTaskStatus.ERROR)

    outcome = _reconcile(orchestrator, "t-1")

    assert outcome.session_status == TriageSessionStatus.FAILED
    assert outcome.workflow_status == WorkflowStatus.PROCESSING
    assert _workflow(store).pr_task_id == "pr-manual"


def test_poll_failure_marks_failed_and_reraises(orchestrator, store, task_client, emitter):
    _start(orchestrator)
    task_client.get_task_status.side_effect = TaskServiceUnavailableError("timeout")

    with pytest.raises(TaskServiceUnavailableError):
        _reconcile(orchestrator, "t-1")

    assert _workflow(store).workflow_status == WorkflowStatus.FAILED
    assert emitter.of_type(EventType.ERROR)[-1].details["stage"] == "reconcile_triage"


def test_pr_creation_failure_during_gate_marks_failed(orchestrator, store, task_client):
    _start(orchestrator)
    task_client.get_task_status.return_value = make_task(
        "t-1", ExternalTaskStatus.BLOCKED, result=make_result(confidence=Level.HIGH)
    )
    task_client.create_pr_task.side_effect = TaskServiceUnavailableError("rejected")

    with pytest.raises(TaskServiceUnavailableError):
        _reconcile(orchestrator, "t-1", make_settings(threshold=Level.LOW))

    assert _workflow(store).workflow_status == WorkflowStatus.FAILED
    session = run_async(store.get_triage_session("t-1"))
    assert session.status == TriageSessionStatus.COMPLETED


def test_comment_failure_does_not_block_gate(orchestrator, task_client, poster):
    poster.post_assessment.side_effect = RuntimeError("comment service down")
    _start(orchestrator)
    task_client.get_task_status.return_value = make_task(
        "t-1", ExternalTaskStatus.BLOCKED, result=make_result(confidence=Level.HIGH)
    )

    outcome = _reconcile(orchestrator, "t-1", make_settings(threshold=Level.MEDIUM))

    assert outcome.workflow_status == WorkflowStatus.PROCESSING


def test_emitter_failure_does_not_block_workflow(store, task_client):
    emitter = AsyncMock()
    emitter.emit.side_effect = RuntimeError("sink down")
    orchestrator = WorkflowOrchestrator(store, task_client, emitter)

    started = _start(orchestrator)

    assert started.created is True


# ---------------------------------------------------------------------------
# start_pr
# ---------------------------------------------------------------------------


def _seed_completed_triage(store, confidence: Level = Level.MEDIUM):
    async def seed():
        await store.create_triage_session(
            TriageSession(
                owner=OWNER,
                repo=REPO,
                item_number=42,
                task_id="t-1",
                task_url="https://agent.example/sessions/t-1",
                status=TriageSessionStatus.COMPLETED,
                structured_result=make_result(confidence=confidence),
            )
        )
        await store.upsert_workflow(
            IssueWorkflow(
                owner=OWNER,
                repo=REPO,
                item_number=42,
                workflow_status=WorkflowStatus.TRIAGED,
                triage_task_id="t-1",
            )
        )

    run_async(seed())


def test_start_pr_from_triaged(orchestrator, store, task_client, emitter):
    _seed_completed_triage(store)

    workflow = run_async(orchestrator.start_pr(make_item(), make_repo()))

    assert workflow.workflow_status == WorkflowStatus.PROCESSING
    assert workflow.pr_task_id == "pr-1"
    assert workflow.triage_task_id == "t-1"
    _, _, result = task_client.create_pr_task.call_args.args
    assert result.confidence_score == Level.MEDIUM
    assert emitter.of_type(EventType.TASK_CREATED)[-1].details["kind"] == "pr"


def test_start_pr_prefers_given_result(orchestrator, store, task_client):
    _seed_completed_triage(store)
    override = make_result(confidence=Level.LOW, blockers=["Needs API key"])

    run_async(orchestrator.start_pr(make_item(), make_repo(), triage_result=override))

    assert task_client.create_pr_task.call_args.args[2] == override


def test_start_pr_without_triage_result_raises(orchestrator, task_client):
    with pytest.raises(TriageNotReadyError):
        run_async(orchestrator.start_pr(make_item(), make_repo()))
    task_client.create_pr_task.assert_not_called()


def test_start_pr_deduplicates_running_pr_task(orchestrator, store, task_client):
    _seed_completed_triage(store)

    first = run_async(orchestrator.start_pr(make_item(), make_repo()))
    second = run_async(orchestrator.start_pr(make_item(), make_repo()))

    assert second.pr_task_id == first.pr_task_id
    task_client.create_pr_task.assert_called_once()


def test_start_pr_rejects_issue_with_pr(orchestrator, store, task_client):
    _seed_completed_triage(store)
    run_async(
        store.update_workflow(
            OWNER,
            REPO,
            42,
            WorkflowPatch(workflow_status=WorkflowStatus.PR, pr_url=PR_URL),
        )
    )

    with pytest.raises(InvalidTransitionError):
        run_async(orchestrator.start_pr(make_item(), make_repo()))
    task_client.create_pr_task.assert_not_called()


def test_start_pr_retries_after_failure(orchestrator, store, task_client):
    _seed_completed_triage(store)
    task_client.create_pr_task.side_effect = [
        TaskServiceUnavailableError("down"),
        make_handle("pr-2"),
    ]

    with pytest.raises(TaskServiceUnavailableError):
        run_async(orchestrator.start_pr(make_item(), make_repo()))
    assert _workflow(store).workflow_status == WorkflowStatus.FAILED

    workflow = run_async(orchestrator.start_pr(make_item(), make_repo()))
    assert workflow.workflow_status == WorkflowStatus.PROCESSING
    assert workflow.pr_task_id == "pr-2"


# ---------------------------------------------------------------------------
# reconcile_pr
# ---------------------------------------------------------------------------


def _processing(store, pr_task_id: str = "pr-1"):
    run_async(
        store.upsert_workflow(
            IssueWorkflow(
                owner=OWNER,
                repo=REPO,
                item_number=42,
                workflow_status=WorkflowStatus.PROCESSING,
                triage_task_id="t-1",
                pr_task_id=pr_task_id,
            )
        )
    )


def _reconcile_pr(orchestrator, task_id: str = "pr-1"):
    return run_async(orchestrator.reconcile_pr(task_id, OWNER, REPO, 42))


def test_blocked_then_pr(orchestrator, store, task_client, emitter):
    _processing(store)

    task_client.get_task_status.return_value = make_task("pr-1", ExternalTaskStatus.BLOCKED)
    blocked = _reconcile_pr(orchestrator)
    assert blocked.workflow_status == WorkflowStatus.AWAITING_INSTRUCTIONS
    assert blocked.is_complete is False

    task_client.get_task_status.return_value = make_task(
        "pr-1", ExternalTaskStatus.BLOCKED, pr_url=PR_URL
    )
    done = _reconcile_pr(orchestrator)
    assert done.workflow_status == WorkflowStatus.PR
    assert done.pr_url == PR_URL
    assert done.is_complete is True

    workflow = _workflow(store)
    assert workflow.workflow_status == WorkflowStatus.PR
    assert workflow.pr_url == PR_URL
    completions = emitter.of_type(EventType.COMPLETION)
    assert len(completions) == 1
    assert completions[0].details["pr_url"] == PR_URL


def test_unchanged_pr_status_writes_nothing(orchestrator, store, task_client, emitter):
    _processing(store)
    before = _workflow(store)
    task_client.get_task_status.return_value = make_task("pr-1", ExternalTaskStatus.RUNNING)

    outcome = _reconcile_pr(orchestrator)

    assert outcome.workflow_status == WorkflowStatus.PROCESSING
    assert outcome.is_complete is False
    assert _workflow(store).updated_at == before.updated_at
    assert emitter.of_type(EventType.STATE_TRANSITION) == []


def test_stopped_pr_task_fails_workflow(orchestrator, store, task_client, emitter):
    _processing(store)
    task_client.get_task_status.return_value = make_task("pr-1", ExternalTaskStatus.STOPPED)

    outcome = _reconcile_pr(orchestrator)

    assert outcome.workflow_status == WorkflowStatus.FAILED
    assert outcome.is_complete is True
    assert emitter.of_type(EventType.ERROR)[-1].details["stage"] == "pr"


def test_superseded_pr_task_is_ignored(orchestrator, store, task_client):
    _processing(store, pr_task_id="pr-2")
    task_client.get_task_status.return_value = make_task(
        "pr-1", ExternalTaskStatus.STOPPED, pr_url=PR_URL
    )

    outcome = _reconcile_pr(orchestrator, "pr-1")

    assert outcome.is_complete is True
    assert outcome.workflow_status == WorkflowStatus.PROCESSING
    workflow = _workflow(store)
    assert workflow.pr_task_id == "pr-2"
    assert workflow.pr_url is None


def test_pr_is_terminal_for_polls(orchestrator, store, task_client):
    _processing(store)
    task_client.get_task_status.return_value = make_task(
        "pr-1", ExternalTaskStatus.RUNNING, pr_url=PR_URL
    )
    _reconcile_pr(orchestrator)

    task_client.get_task_status.return_value = make_task("pr-1", ExternalTaskStatus.ERROR)
    outcome = _reconcile_pr(orchestrator)

    assert outcome.workflow_status == WorkflowStatus.PR
    assert _workflow(store).workflow_status == WorkflowStatus.PR


def test_reconcile_pr_without_row_records_observed_status(orchestrator, store, task_client):
    task_client.get_task_status.return_value = make_task(
        "pr-ext", ExternalTaskStatus.STOPPED, pr_url=PR_URL
    )

    outcome = _reconcile_pr(orchestrator, "pr-ext")

    assert outcome.workflow_status == WorkflowStatus.PR
    workflow = _workflow(store)
    assert workflow.pr_task_id == "pr-ext"
    assert workflow.pr_url == PR_URL


def test_reconcile_pr_poll_failure_marks_failed(orchestrator, store, task_client):
    _processing(store)
    task_client.get_task_status.side_effect = TaskServiceUnavailableError("down")

    with pytest.raises(TaskServiceUnavailableError):
        _reconcile_pr(orchestrator)

    assert _workflow(store).workflow_status == WorkflowStatus.FAILED


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def test_user_settings_default_when_unset(orchestrator):
    settings_ = run_async(orchestrator.get_user_settings("someone"))
    assert settings_.user_id == "someone"
    assert settings_.auto_pr_enabled is True
    assert settings_.pr_confidence_threshold == Level.HIGH


def test_user_settings_from_store(orchestrator, store):
    store.put_user_settings(UserAutomationSettings(user_id="u1", auto_pr_enabled=False))
    assert run_async(orchestrator.get_user_settings("u1")).auto_pr_enabled is False
