"""Unit tests for the PostgreSQL store's row mapping and patch building.

The SQL itself is exercised against a live database in deployment; these
tests cover the pure translation between rows and models.
"""

import json
from datetime import datetime, timezone

import pytest

from autotriage.state.models import Level, TriageSessionStatus, WorkflowStatus
from autotriage.state.repository import (
    PostgresWorkflowStore,
    _SESSION_PATCH_COLUMNS,
    _WORKFLOW_PATCH_COLUMNS,
    _patch_assignments,
    row_to_session,
    row_to_workflow,
)
from autotriage.state.store import StoreError

from factories import make_result, run_async


NAIVE = datetime(2024, 3, 1, 12, 0, 0)


def _session_row(**overrides):
    row = {
        "repo_owner": "acme",
        "repo_name": "widgets",
        "issue_number": 42,
        "task_id": "t-1",
        "task_url": None,
        "status": "completed",
        "structured_result": json.dumps(make_result().model_dump(mode="json")),
        "created_at": NAIVE,
        "updated_at": NAIVE,
    }
    row.update(overrides)
    return row


def test_row_to_session_decodes_json_text():
    session = row_to_session(_session_row())

    assert session.status == TriageSessionStatus.COMPLETED
    assert session.structured_result.confidence_score == Level.HIGH
    assert session.task_url == ""
    assert session.created_at.tzinfo == timezone.utc


def test_row_to_session_accepts_decoded_json():
    row = _session_row(structured_result=make_result().model_dump(mode="json"))
    assert row_to_session(row).structured_result is not None


def test_row_to_session_without_result():
    session = row_to_session(_session_row(structured_result=None, status="in_progress"))
    assert session.structured_result is None
    assert session.is_active


def test_row_to_workflow():
    aware = datetime(2024, 3, 1, tzinfo=timezone.utc)
    workflow = row_to_workflow(
        {
            "repo_owner": "acme",
            "repo_name": "widgets",
            "issue_number": 42,
            "workflow_status": "awaiting_instructions",
            "triage_task_id": "t-1",
            "triage_task_url": None,
            "pr_task_id": "pr-1",
            "pr_task_url": None,
            "pr_url": None,
            "created_at": aware,
            "updated_at": aware,
        }
    )
    assert workflow.workflow_status == WorkflowStatus.AWAITING_INSTRUCTIONS
    assert workflow.item_id == "acme/widgets#42"
    assert workflow.created_at == aware


def test_patch_assignments_numbers_parameters():
    assignments, values = _patch_assignments(
        {"workflow_status": WorkflowStatus.PR, "pr_url": None, "unknown": "x"},
        _WORKFLOW_PATCH_COLUMNS,
        first_param=4,
    )
    assert assignments == ["workflow_status = $4", "pr_url = $5"]
    assert values == ["pr", None]


def test_patch_assignments_encodes_structured_result():
    result = make_result().model_dump()
    assignments, values = _patch_assignments(
        {"structured_result": result}, _SESSION_PATCH_COLUMNS, first_param=2
    )
    assert assignments == ["structured_result = $2::jsonb"]
    assert json.loads(values[0])["confidence_score"] == "high"


def test_pool_requires_connect():
    store = PostgresWorkflowStore("postgresql://localhost/autotriage")
    with pytest.raises(StoreError):
        store.pool


def test_health_check_without_pool_is_unhealthy():
    store = PostgresWorkflowStore("postgresql://localhost/autotriage")
    assert run_async(store.health_check()) is False
