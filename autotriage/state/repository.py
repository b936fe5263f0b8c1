"""PostgreSQL workflow store.

This module implements the WorkflowStore protocol using asyncpg for async
PostgreSQL access. It provides:
- Connection pooling for production use
- Atomic insert-or-replace of workflow rows (INSERT ... ON CONFLICT)
- "Latest wins" triage session reads, single and batched
- Read access to user automation settings

The schema lives in migrations/001_workflow_store.sql and must be applied
before use. Timestamps are assigned by the database.
"""

import json
import logging
from datetime import timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import asyncpg

from autotriage.state.models import (
    IssueWorkflow,
    Level,
    TriageResult,
    TriageSession,
    TriageSessionPatch,
    TriageSessionStatus,
    UserAutomationSettings,
    WorkflowPatch,
    WorkflowStatus,
)
from autotriage.state.store import StoreError


logger = logging.getLogger(__name__)


_SESSION_COLUMNS = """
    repo_owner, repo_name, issue_number, task_id, task_url, status,
    structured_result, created_at, updated_at
"""

_WORKFLOW_COLUMNS = """
    repo_owner, repo_name, issue_number, workflow_status, triage_task_id,
    triage_task_url, pr_task_id, pr_task_url, pr_url, created_at, updated_at
"""

# Patch field -> column. Only these columns can be written by a patch.
_SESSION_PATCH_COLUMNS = {
    "status": "status",
    "structured_result": "structured_result",
    "task_url": "task_url",
}

_WORKFLOW_PATCH_COLUMNS = {
    "workflow_status": "workflow_status",
    "triage_task_id": "triage_task_id",
    "triage_task_url": "triage_task_url",
    "pr_task_id": "pr_task_id",
    "pr_task_url": "pr_task_url",
    "pr_url": "pr_url",
}


def _aware(value):
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _decode_json(value: Any) -> Optional[Dict[str, Any]]:
    if value is None:
        return None
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


def row_to_session(row: Mapping[str, Any]) -> TriageSession:
    """Build a TriageSession from a triage_sessions row."""
    raw_result = _decode_json(row["structured_result"])
    return TriageSession(
        owner=row["repo_owner"],
        repo=row["repo_name"],
        item_number=row["issue_number"],
        task_id=row["task_id"],
        task_url=row["task_url"] or "",
        status=TriageSessionStatus(row["status"]),
        structured_result=(
            TriageResult.model_validate(raw_result) if raw_result else None
        ),
        created_at=_aware(row["created_at"]),
        updated_at=_aware(row["updated_at"]),
    )


def row_to_workflow(row: Mapping[str, Any]) -> IssueWorkflow:
    """Build an IssueWorkflow from an issue_workflows row."""
    return IssueWorkflow(
        owner=row["repo_owner"],
        repo=row["repo_name"],
        item_number=row["issue_number"],
        workflow_status=WorkflowStatus(row["workflow_status"]),
        triage_task_id=row["triage_task_id"],
        triage_task_url=row["triage_task_url"],
        pr_task_id=row["pr_task_id"],
        pr_task_url=row["pr_task_url"],
        pr_url=row["pr_url"],
        created_at=_aware(row["created_at"]),
        updated_at=_aware(row["updated_at"]),
    )


def _patch_assignments(
    changes: Dict[str, Any],
    columns: Dict[str, str],
    first_param: int,
) -> Tuple[List[str], List[Any]]:
    """Build ``column = $n`` fragments and values for a patch."""
    assignments: List[str] = []
    values: List[Any] = []
    for field, value in changes.items():
        column = columns.get(field)
        if column is None:
            continue
        placeholder = f"${first_param + len(values)}"
        if column == "structured_result":
            placeholder += "::jsonb"
            value = json.dumps(value) if value is not None else None
        elif hasattr(value, "value"):
            value = value.value
        assignments.append(f"{column} = {placeholder}")
        values.append(value)
    return assignments, values


class PostgresWorkflowStore:
    """PostgreSQL implementation of the WorkflowStore protocol.

    Example:
        >>> async with PostgresWorkflowStore("postgresql://...") as store:
        ...     workflow = await store.get_workflow("acme", "widgets", 42)
    """

    def __init__(
        self,
        connection_string: str,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ):
        self.connection_string = connection_string
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def pool(self) -> asyncpg.Pool:
        """Get the connection pool, raising if not connected.

        Raises:
            StoreError: If the pool is not initialized.
        """
        if self._pool is None:
            raise StoreError("Database pool not initialized. Call connect() first.")
        return self._pool

    async def connect(self) -> None:
        """Initialize the connection pool.

        Raises:
            StoreError: If connection fails.
        """
        if self._pool is not None:
            logger.warning("Connection pool already initialized")
            return

        try:
            logger.info(
                "Connecting to PostgreSQL",
                extra={
                    "min_pool_size": self.min_pool_size,
                    "max_pool_size": self.max_pool_size,
                },
            )
            self._pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
            )
            logger.info("PostgreSQL connection pool established")
        except Exception as e:
            logger.error("Failed to connect to PostgreSQL", extra={"error": str(e)})
            raise StoreError(
                f"Failed to connect to PostgreSQL: {e}",
                original_error=e,
            ) from e

    async def disconnect(self) -> None:
        if self._pool is not None:
            logger.info("Closing PostgreSQL connection pool")
            await self._pool.close()
            self._pool = None

    async def __aenter__(self) -> "PostgresWorkflowStore":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()

    # ------------------------------------------------------------------
    # Triage sessions
    # ------------------------------------------------------------------

    async def create_triage_session(self, session: TriageSession) -> TriageSession:
        result = (
            session.structured_result.model_dump(mode="json")
            if session.structured_result
            else None
        )
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO triage_sessions (
                        repo_owner, repo_name, issue_number, task_id,
                        task_url, status, structured_result
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb)
                    RETURNING {_SESSION_COLUMNS}
                    """,
                    session.owner,
                    session.repo,
                    session.item_number,
                    session.task_id,
                    session.task_url,
                    session.status.value,
                    json.dumps(result) if result is not None else None,
                )
        except asyncpg.UniqueViolationError as e:
            logger.error(
                "Triage session already exists",
                extra={"task_id": session.task_id, "error": str(e)},
            )
            raise StoreError(
                f"Triage session already exists for task: {session.task_id}",
                original_error=e,
            ) from e
        except StoreError:
            raise
        except Exception as e:
            logger.error(
                "Failed to save triage session",
                extra={"task_id": session.task_id, "error": str(e)},
            )
            raise StoreError(f"Failed to save triage session: {e}", original_error=e) from e

        logger.info(
            "Saved triage session",
            extra={"task_id": session.task_id, "status": session.status.value},
        )
        return row_to_session(row)

    async def update_triage_session(
        self, task_id: str, patch: TriageSessionPatch
    ) -> Optional[TriageSession]:
        changes = patch.model_dump(mode="json", exclude_unset=True)
        for field in ("status", "task_url"):
            if changes.get(field) is None:
                changes.pop(field, None)
        assignments, values = _patch_assignments(changes, _SESSION_PATCH_COLUMNS, 2)
        assignments.append("updated_at = clock_timestamp()")

        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    UPDATE triage_sessions
                    SET {", ".join(assignments)}
                    WHERE task_id = $1
                    RETURNING {_SESSION_COLUMNS}
                    """,
                    task_id,
                    *values,
                )
        except StoreError:
            raise
        except Exception as e:
            logger.error(
                "Failed to update triage session",
                extra={"task_id": task_id, "error": str(e)},
            )
            raise StoreError(f"Failed to update triage session: {e}", original_error=e) from e

        return row_to_session(row) if row is not None else None

    async def get_triage_session(self, task_id: str) -> Optional[TriageSession]:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"SELECT {_SESSION_COLUMNS} FROM triage_sessions WHERE task_id = $1",
                    task_id,
                )
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(f"Failed to get triage session: {e}", original_error=e) from e

        return row_to_session(row) if row is not None else None

    async def get_latest_triage_session(
        self, owner: str, repo: str, item_number: int
    ) -> Optional[TriageSession]:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    SELECT {_SESSION_COLUMNS}
                    FROM triage_sessions
                    WHERE repo_owner = $1 AND repo_name = $2 AND issue_number = $3
                    ORDER BY created_at DESC, id DESC
                    LIMIT 1
                    """,
                    owner,
                    repo,
                    item_number,
                )
        except StoreError:
            raise
        except Exception as e:
            logger.error(
                "Failed to get latest triage session",
                extra={"owner": owner, "repo": repo, "issue_number": item_number},
            )
            raise StoreError(
                f"Failed to get latest triage session: {e}", original_error=e
            ) from e

        return row_to_session(row) if row is not None else None

    async def get_latest_triage_sessions_batch(
        self, owner: str, repo: str, item_numbers: Iterable[int]
    ) -> Dict[int, TriageSession]:
        numbers = sorted(set(item_numbers))
        if not numbers:
            return {}

        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT DISTINCT ON (issue_number) {_SESSION_COLUMNS}
                    FROM triage_sessions
                    WHERE repo_owner = $1 AND repo_name = $2
                      AND issue_number = ANY($3::int[])
                    ORDER BY issue_number, created_at DESC, id DESC
                    """,
                    owner,
                    repo,
                    numbers,
                )
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(
                f"Failed to get latest triage sessions: {e}", original_error=e
            ) from e

        return {row["issue_number"]: row_to_session(row) for row in rows}

    # ------------------------------------------------------------------
    # Issue workflows
    # ------------------------------------------------------------------

    async def upsert_workflow(self, workflow: IssueWorkflow) -> IssueWorkflow:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO issue_workflows (
                        repo_owner, repo_name, issue_number, workflow_status,
                        triage_task_id, triage_task_url, pr_task_id,
                        pr_task_url, pr_url
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                    ON CONFLICT (repo_owner, repo_name, issue_number) DO UPDATE SET
                        workflow_status = EXCLUDED.workflow_status,
                        triage_task_id = EXCLUDED.triage_task_id,
                        triage_task_url = EXCLUDED.triage_task_url,
                        pr_task_id = EXCLUDED.pr_task_id,
                        pr_task_url = EXCLUDED.pr_task_url,
                        pr_url = EXCLUDED.pr_url,
                        updated_at = clock_timestamp()
                    RETURNING {_WORKFLOW_COLUMNS}
                    """,
                    workflow.owner,
                    workflow.repo,
                    workflow.item_number,
                    workflow.workflow_status.value,
                    workflow.triage_task_id,
                    workflow.triage_task_url,
                    workflow.pr_task_id,
                    workflow.pr_task_url,
                    workflow.pr_url,
                )
        except StoreError:
            raise
        except Exception as e:
            logger.error(
                "Failed to upsert workflow",
                extra={"issue_id": workflow.item_id, "error": str(e)},
            )
            raise StoreError(f"Failed to upsert workflow: {e}", original_error=e) from e

        logger.info(
            "Upserted workflow",
            extra={
                "issue_id": workflow.item_id,
                "workflow_status": workflow.workflow_status.value,
            },
        )
        return row_to_workflow(row)

    async def update_workflow(
        self, owner: str, repo: str, item_number: int, patch: WorkflowPatch
    ) -> Optional[IssueWorkflow]:
        changes = patch.model_dump(mode="json", exclude_unset=True)
        if changes.get("workflow_status") is None:
            changes.pop("workflow_status", None)
        assignments, values = _patch_assignments(changes, _WORKFLOW_PATCH_COLUMNS, 4)
        assignments.append("updated_at = clock_timestamp()")

        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    UPDATE issue_workflows
                    SET {", ".join(assignments)}
                    WHERE repo_owner = $1 AND repo_name = $2 AND issue_number = $3
                    RETURNING {_WORKFLOW_COLUMNS}
                    """,
                    owner,
                    repo,
                    item_number,
                    *values,
                )
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(f"Failed to update workflow: {e}", original_error=e) from e

        return row_to_workflow(row) if row is not None else None

    async def get_workflow(
        self, owner: str, repo: str, item_number: int
    ) -> Optional[IssueWorkflow]:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    SELECT {_WORKFLOW_COLUMNS}
                    FROM issue_workflows
                    WHERE repo_owner = $1 AND repo_name = $2 AND issue_number = $3
                    """,
                    owner,
                    repo,
                    item_number,
                )
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(f"Failed to get workflow: {e}", original_error=e) from e

        return row_to_workflow(row) if row is not None else None

    async def get_workflows_batch(
        self, owner: str, repo: str, item_numbers: Iterable[int]
    ) -> Dict[int, IssueWorkflow]:
        numbers = sorted(set(item_numbers))
        if not numbers:
            return {}

        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT {_WORKFLOW_COLUMNS}
                    FROM issue_workflows
                    WHERE repo_owner = $1 AND repo_name = $2
                      AND issue_number = ANY($3::int[])
                    """,
                    owner,
                    repo,
                    numbers,
                )
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(f"Failed to get workflows: {e}", original_error=e) from e

        return {row["issue_number"]: row_to_workflow(row) for row in rows}

    # ------------------------------------------------------------------
    # User settings
    # ------------------------------------------------------------------

    async def get_user_settings(self, user_id: str) -> Optional[UserAutomationSettings]:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT user_id, auto_triage_enabled, auto_pr_enabled,
                           pr_confidence_threshold
                    FROM user_settings
                    WHERE user_id = $1
                    """,
                    user_id,
                )
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(f"Failed to get user settings: {e}", original_error=e) from e

        if row is None:
            return None
        return UserAutomationSettings(
            user_id=row["user_id"],
            auto_triage_enabled=row["auto_triage_enabled"],
            auto_pr_enabled=row["auto_pr_enabled"],
            pr_confidence_threshold=Level(row["pr_confidence_threshold"]),
        )

    async def health_check(self) -> bool:
        """Check if the database connection is healthy."""
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception as e:
            logger.warning("Database health check failed", extra={"error": str(e)})
            return False
