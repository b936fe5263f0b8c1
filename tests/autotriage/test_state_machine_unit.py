"""Unit tests for workflow status rules and the WorkflowStateMachine."""

import pytest
from hypothesis import given, settings, strategies as st

from autotriage.agent.models import ExternalTaskStatus
from autotriage.state.machine import (
    InvalidTransitionError,
    TriageNotReadyError,
    WorkflowStateMachine,
    classify_triage_status,
    derive_pr_workflow_status,
    is_pr_complete,
)
from autotriage.state.memory import InMemoryWorkflowStore
from autotriage.state.models import (
    VALID_TRANSITIONS,
    TriageSessionStatus,
    WorkflowStatus,
    is_terminal_status,
    is_valid_transition,
)

from factories import OWNER, REPO, make_result, make_task, run_async


# ---------------------------------------------------------------------------
# Triage classification
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "status,with_result,expected",
    [
        (ExternalTaskStatus.RUNNING, False, TriageSessionStatus.IN_PROGRESS),
        (ExternalTaskStatus.RUNNING, True, TriageSessionStatus.IN_PROGRESS),
        (ExternalTaskStatus.BLOCKED, True, TriageSessionStatus.COMPLETED),
        (ExternalTaskStatus.BLOCKED, False, TriageSessionStatus.IN_PROGRESS),
        (ExternalTaskStatus.STOPPED, True, TriageSessionStatus.COMPLETED),
        (ExternalTaskStatus.STOPPED, False, TriageSessionStatus.FAILED),
        (ExternalTaskStatus.ERROR, True, TriageSessionStatus.FAILED),
        (ExternalTaskStatus.ERROR, False, TriageSessionStatus.FAILED),
    ],
)
def test_classify_triage_status(status, with_result, expected):
    task = make_task("t1", status=status, result=make_result() if with_result else None)
    assert classify_triage_status(task) == expected


# ---------------------------------------------------------------------------
# PR status derivation
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "status,expected",
    [
        (ExternalTaskStatus.RUNNING, WorkflowStatus.PROCESSING),
        (ExternalTaskStatus.BLOCKED, WorkflowStatus.AWAITING_INSTRUCTIONS),
        (ExternalTaskStatus.STOPPED, WorkflowStatus.FAILED),
        (ExternalTaskStatus.ERROR, WorkflowStatus.FAILED),
    ],
)
def test_derive_pr_status_without_pr(status, expected):
    assert derive_pr_workflow_status(make_task("pr-1", status=status)) == expected


@pytest.mark.parametrize("status", list(ExternalTaskStatus))
def test_pr_url_wins_over_task_status(status):
    task = make_task("pr-1", status=status, pr_url="https://github.com/acme/widgets/pull/9")
    assert derive_pr_workflow_status(task) == WorkflowStatus.PR


def test_pr_completion():
    assert is_pr_complete(WorkflowStatus.PR)
    assert is_pr_complete(WorkflowStatus.FAILED)
    assert not is_pr_complete(WorkflowStatus.PROCESSING)
    assert not is_pr_complete(WorkflowStatus.AWAITING_INSTRUCTIONS)


# ---------------------------------------------------------------------------
# Transition table
# ---------------------------------------------------------------------------


def test_every_status_has_transition_rules():
    assert set(VALID_TRANSITIONS) == set(WorkflowStatus)


@pytest.mark.parametrize(
    "status", [s for s in WorkflowStatus if s != WorkflowStatus.PR]
)
def test_failed_reachable_from_every_non_terminal_status(status):
    assert is_valid_transition(status, WorkflowStatus.FAILED)


def test_pr_only_leaves_through_retriage():
    assert VALID_TRANSITIONS[WorkflowStatus.PR] == [WorkflowStatus.NEW]
    assert is_terminal_status(WorkflowStatus.PR)
    assert not is_terminal_status(WorkflowStatus.FAILED)


@settings(max_examples=100)
@given(
    from_status=st.sampled_from(list(WorkflowStatus)),
    to_status=st.sampled_from(list(WorkflowStatus)),
)
def test_check_agrees_with_table(from_status, to_status):
    machine = WorkflowStateMachine(InMemoryWorkflowStore())
    if to_status in VALID_TRANSITIONS[from_status]:
        machine.check(from_status, to_status)
    else:
        with pytest.raises(InvalidTransitionError) as exc_info:
            machine.check(from_status, to_status)
        assert exc_info.value.from_status == from_status
        assert exc_info.value.to_status == to_status


# ---------------------------------------------------------------------------
# WorkflowStateMachine
# ---------------------------------------------------------------------------


@pytest.fixture
def store():
    return InMemoryWorkflowStore()


@pytest.fixture
def machine(store):
    return WorkflowStateMachine(store)


def test_missing_row_reads_as_new(machine):
    assert run_async(machine.current_status(OWNER, REPO, 42)) == WorkflowStatus.NEW
    assert run_async(machine.get(OWNER, REPO, 42)) is None


def test_transition_creates_row(machine, store):
    workflow = run_async(
        machine.transition(
            OWNER, REPO, 42, WorkflowStatus.TRIAGED, triage_task_id="t1"
        )
    )

    assert workflow.workflow_status == WorkflowStatus.TRIAGED
    assert workflow.triage_task_id == "t1"
    assert store.count_workflows() == 1


def test_transition_keeps_unmentioned_fields(machine):
    async def scenario():
        await machine.transition(
            OWNER, REPO, 42, WorkflowStatus.TRIAGED, triage_task_id="t1"
        )
        return await machine.transition(
            OWNER, REPO, 42, WorkflowStatus.PROCESSING, pr_task_id="pr-1"
        )

    workflow = run_async(scenario())
    assert workflow.workflow_status == WorkflowStatus.PROCESSING
    assert workflow.triage_task_id == "t1"
    assert workflow.pr_task_id == "pr-1"


def test_invalid_transition_raises_and_writes_nothing(machine, store):
    async def scenario():
        await machine.transition(OWNER, REPO, 42, WorkflowStatus.FAILED)
        await machine.transition(OWNER, REPO, 42, WorkflowStatus.PR)

    with pytest.raises(InvalidTransitionError):
        run_async(scenario())

    workflow = run_async(store.get_workflow(OWNER, REPO, 42))
    assert workflow.workflow_status == WorkflowStatus.FAILED


def test_invalid_transition_from_missing_row(machine, store):
    with pytest.raises(InvalidTransitionError):
        run_async(machine.transition(OWNER, REPO, 42, WorkflowStatus.PR))
    assert store.count_workflows() == 0


def test_force_skips_validation(machine):
    workflow = run_async(
        machine.transition(
            OWNER,
            REPO,
            42,
            WorkflowStatus.PR,
            force=True,
            pr_url="https://github.com/acme/widgets/pull/9",
        )
    )
    assert workflow.workflow_status == WorkflowStatus.PR


def test_triage_not_ready_error_names_issue():
    error = TriageNotReadyError(OWNER, REPO, 42)
    assert error.item_id == "acme/widgets#42"
    assert "acme/widgets#42" in str(error)
