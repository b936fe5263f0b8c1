"""Workflow state and persistence.

This package holds the two persisted entities of the triage workflow:
- TriageSession: history of triage tasks per issue, latest wins
- IssueWorkflow: one current lifecycle record per issue

State is persisted to PostgreSQL, or kept in memory when no database is
configured. Transition rules live in autotriage.state.machine, which is
imported directly to keep this package free of agent dependencies.
"""

from autotriage.state.models import (
    IssueWorkflow,
    Level,
    TriageResult,
    TriageSession,
    TriageSessionPatch,
    TriageSessionStatus,
    UserAutomationSettings,
    VALID_TRANSITIONS,
    WorkflowPatch,
    WorkflowStatus,
    is_terminal_status,
    is_valid_transition,
)
from autotriage.state.store import StoreError, WorkflowStore
from autotriage.state.memory import InMemoryWorkflowStore
from autotriage.state.repository import PostgresWorkflowStore

__all__ = [
    # Models
    "IssueWorkflow",
    "Level",
    "TriageResult",
    "TriageSession",
    "TriageSessionPatch",
    "TriageSessionStatus",
    "UserAutomationSettings",
    "VALID_TRANSITIONS",
    "WorkflowPatch",
    "WorkflowStatus",
    "is_terminal_status",
    "is_valid_transition",
    # Stores
    "InMemoryWorkflowStore",
    "PostgresWorkflowStore",
    "StoreError",
    "WorkflowStore",
]
