"""Agent task service client.

This module provides an async client for the external agent task service:
- Creating triage tasks
- Creating PR-generation tasks from a triage assessment
- Fetching the current status of a task

The client performs no retries. Any transport failure or non-2xx response
surfaces as TaskServiceUnavailableError and retry policy is left to the
caller. Task creation is not idempotent: two calls create two tasks.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from autotriage.agent.models import (
    IssueItem,
    RepositoryRef,
    TaskHandle,
    TaskStatus,
)
from autotriage.agent.prompts import (
    build_pr_prompt,
    build_pr_title,
    build_triage_prompt,
    build_triage_title,
)
from autotriage.config import ConfigurationError
from autotriage.state.models import TriageResult


logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.devin.ai/v1"


class TaskServiceUnavailableError(Exception):
    """Raised when the agent task service cannot serve a request.

    Attributes:
        message: Human-readable error description.
        status_code: HTTP status code, if a response was received.
        response_body: Response body from the service.
        request_url: The URL that was requested.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        request_url: Optional[str] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.response_body = response_body
        self.request_url = request_url
        super().__init__(message)


class AgentTaskClient:
    """Async client for the agent task service.

    Attributes:
        api_key: Bearer token for the service. May be None at construction;
                 the first request then raises ConfigurationError.
        base_url: Base URL of the service API.
        timeout: Request timeout in seconds.

    Example:
        >>> client = AgentTaskClient(api_key="key")
        >>> async with client:
        ...     handle = await client.create_triage_task(item, repo)
        ...     status = await client.get_task_status(handle.task_id)
    """

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the HTTP client, creating it if necessary.

        Raises:
            ConfigurationError: If no API key is configured.
        """
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._default_headers(),
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def _default_headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise ConfigurationError("agent_api_key")
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "User-Agent": "autotriage/1.0",
        }

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "AgentTaskClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        path: str,
        json_data: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Make a single HTTP request to the task service.

        Raises:
            ConfigurationError: If no API key is configured.
            TaskServiceUnavailableError: On transport failure or non-2xx status.
        """
        try:
            response = await self.client.request(
                method=method,
                url=path,
                json=json_data,
            )
        except httpx.RequestError as e:
            logger.error(
                "Agent task service request failed",
                extra={"path": path, "method": method, "error": str(e)},
            )
            raise TaskServiceUnavailableError(
                message=f"Agent task service unreachable: {e}",
                request_url=f"{self.base_url}{path}",
            ) from e

        if response.status_code >= 400:
            error_body = response.text
            logger.error(
                "Agent task service error",
                extra={
                    "status_code": response.status_code,
                    "path": path,
                    "method": method,
                    "response_body": error_body[:500],
                },
            )
            raise TaskServiceUnavailableError(
                message=f"Agent task service error: {response.status_code}",
                status_code=response.status_code,
                response_body=error_body,
                request_url=str(response.url),
            )

        return response

    def _parse_json(self, response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError as e:
            raise TaskServiceUnavailableError(
                message="Agent task service returned invalid JSON",
                status_code=response.status_code,
                response_body=response.text[:500],
                request_url=str(response.url),
            ) from e
        if not isinstance(data, dict):
            raise TaskServiceUnavailableError(
                message="Agent task service returned an unexpected payload",
                status_code=response.status_code,
                request_url=str(response.url),
            )
        return data

    async def _create_task(
        self,
        prompt: str,
        title: str,
        tags: List[str],
    ) -> TaskHandle:
        response = await self._request(
            method="POST",
            path="/sessions",
            json_data={"prompt": prompt, "title": title, "tags": tags},
        )
        data = self._parse_json(response)
        if not (data.get("session_id") or data.get("task_id")):
            raise TaskServiceUnavailableError(
                message="Agent task service response is missing the task id",
                status_code=response.status_code,
                request_url=str(response.url),
            )
        return TaskHandle.from_api_response(data)

    async def create_triage_task(
        self,
        item: IssueItem,
        repo: RepositoryRef,
    ) -> TaskHandle:
        """Create a triage task for an issue.

        Returns:
            TaskHandle with the new task id and URL.

        Raises:
            ConfigurationError: If no API key is configured.
            TaskServiceUnavailableError: If the service rejects the request.
        """
        handle = await self._create_task(
            prompt=build_triage_prompt(item, repo),
            title=build_triage_title(item, repo),
            tags=["triage", repo.full_name, f"issue-{item.number}"],
        )
        logger.info(
            "Triage task created",
            extra={
                "repository": repo.full_name,
                "issue_number": item.number,
                "task_id": handle.task_id,
            },
        )
        return handle

    async def create_pr_task(
        self,
        item: IssueItem,
        repo: RepositoryRef,
        triage_result: TriageResult,
    ) -> TaskHandle:
        """Create a PR-generation task from a triage assessment.

        Raises:
            ConfigurationError: If no API key is configured.
            TaskServiceUnavailableError: If the service rejects the request.
        """
        handle = await self._create_task(
            prompt=build_pr_prompt(item, repo, triage_result),
            title=build_pr_title(item, repo),
            tags=["pr", repo.full_name, f"issue-{item.number}"],
        )
        logger.info(
            "PR task created",
            extra={
                "repository": repo.full_name,
                "issue_number": item.number,
                "task_id": handle.task_id,
            },
        )
        return handle

    async def get_task_status(self, task_id: str) -> TaskStatus:
        """Fetch the current status of a task.

        Raises:
            ConfigurationError: If no API key is configured.
            TaskServiceUnavailableError: If the service rejects the request.
        """
        response = await self._request(method="GET", path=f"/sessions/{task_id}")
        status = TaskStatus.from_api_response(task_id, self._parse_json(response))
        logger.debug(
            "Fetched task status",
            extra={"task_id": task_id, "status": status.status.value},
        )
        return status
