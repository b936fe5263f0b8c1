"""Agent task service integration.

Typed access to the external agent service that runs triage and
PR-generation tasks. Retries are the caller's responsibility.
"""

from autotriage.agent.client import (
    AgentTaskClient,
    TaskServiceUnavailableError,
)
from autotriage.agent.models import (
    ExternalTaskStatus,
    IssueItem,
    RepositoryRef,
    TaskHandle,
    TaskStatus,
)

__all__ = [
    "AgentTaskClient",
    "ExternalTaskStatus",
    "IssueItem",
    "RepositoryRef",
    "TaskHandle",
    "TaskServiceUnavailableError",
    "TaskStatus",
]
