"""FastAPI application entry point for autotriage.

This module provides the HTTP surface of the service:
- GitHub webhook receiver (/webhooks/github)
- Manual triage and PR-generation triggers and their reconciliation polls
  (/api/triage, /api/workflow)
- Batch triage status for dashboards (/api/issues/status)
- Liveness, readiness and Prometheus metrics endpoints

Components are built from AutotriageSettings during the lifespan startup,
unless pre-built components are passed to create_app (as tests do).
"""

import hmac
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import AliasChoices, BaseModel, Field

from autotriage.agent.client import AgentTaskClient, TaskServiceUnavailableError
from autotriage.agent.models import IssueItem, RepositoryRef
from autotriage.config import AutotriageSettings, ConfigurationError, get_settings
from autotriage.events.emitter import EventSinkType, create_event_emitter
from autotriage.events.metrics import generate_metrics_output
from autotriage.github.client import GitHubAPIError, GitHubClient
from autotriage.github.comments import StatusCommentPoster
from autotriage.orchestrator import (
    PRReconciliation,
    TriageReconciliation,
    WorkflowOrchestrator,
)
from autotriage.state.machine import InvalidTransitionError, TriageNotReadyError
from autotriage.state.memory import InMemoryWorkflowStore
from autotriage.state.models import TriageResult, WorkflowStatus
from autotriage.state.repository import PostgresWorkflowStore
from autotriage.state.store import StoreError, WorkflowStore
from autotriage.status import TriageInfo, TriageStatusReader, create_status_reader
from autotriage.webhook.handler import (
    WebhookIngestor,
    WebhookPayloadError,
    WebhookSignatureError,
    create_webhook_ingestor,
)
from autotriage.webhook.models import WebhookOutcome

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class AppComponents:
    """Wired service dependencies shared by all requests."""

    def __init__(
        self,
        settings: AutotriageSettings,
        store: WorkflowStore,
        task_client: AgentTaskClient,
        orchestrator: WorkflowOrchestrator,
        ingestor: WebhookIngestor,
        status_reader: TriageStatusReader,
        github_client: Optional[GitHubClient] = None,
    ):
        self.settings = settings
        self.store = store
        self.task_client = task_client
        self.orchestrator = orchestrator
        self.ingestor = ingestor
        self.status_reader = status_reader
        self.github_client = github_client

    async def close(self) -> None:
        await self.task_client.close()
        if self.github_client is not None:
            await self.github_client.close()
        if isinstance(self.store, PostgresWorkflowStore):
            await self.store.disconnect()


def _redact_secret(value: Optional[str], visible_chars: int = 4) -> str:
    """Redact a secret value, showing only the first few characters."""
    if not value:
        return "<not set>"
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(settings: AutotriageSettings) -> None:
    """Log configuration values with secrets redacted."""
    logger.info("Autotriage configuration:")
    logger.info(f"  Agent API Base URL: {settings.agent_api_base_url}")
    logger.info(f"  Agent API Key: {_redact_secret(settings.agent_api_key)}")
    logger.info(f"  Agent Timeout Seconds: {settings.agent_timeout_seconds}")
    logger.info(f"  GitHub Base URL: {settings.github_base_url}")
    logger.info(f"  GitHub Token: {_redact_secret(settings.github_token)}")
    logger.info(
        f"  GitHub Webhook Secret: {_redact_secret(settings.github_webhook_secret)}"
    )
    logger.info(f"  Re-triage Phrases: {settings.retriage_phrases}")
    logger.info(f"  Database URL: {_redact_secret(settings.database_url, 13)}")
    logger.info(f"  Triage Status Source: {settings.triage_status_source}")
    logger.info(f"  API Token: {_redact_secret(settings.api_token)}")
    logger.info(f"  Host: {settings.host}")
    logger.info(f"  Port: {settings.port}")


async def build_components(settings: AutotriageSettings) -> AppComponents:
    """Wire all service dependencies from settings.

    Raises:
        StoreError: If the database is configured but unreachable.
        ConfigurationError: If the selected status source cannot be served.
    """
    store: WorkflowStore
    if settings.database_url:
        store = PostgresWorkflowStore(settings.database_url)
        await store.connect()
    else:
        logger.warning("No database_url configured, using the in-memory store")
        store = InMemoryWorkflowStore()

    github_client = None
    comment_poster = None
    if settings.github_token:
        github_client = GitHubClient(
            token=settings.github_token,
            base_url=settings.github_base_url,
        )
        comment_poster = StatusCommentPoster(github_client)

    task_client = AgentTaskClient(
        api_key=settings.agent_api_key,
        base_url=settings.agent_api_base_url,
        timeout=settings.agent_timeout_seconds,
    )

    orchestrator = WorkflowOrchestrator(
        store=store,
        task_client=task_client,
        event_emitter=create_event_emitter(
            [EventSinkType.LOGGING, EventSinkType.METRICS]
        ),
        comment_poster=comment_poster,
    )

    return AppComponents(
        settings=settings,
        store=store,
        task_client=task_client,
        orchestrator=orchestrator,
        ingestor=create_webhook_ingestor(
            orchestrator,
            secret=settings.github_webhook_secret,
            comment_poster=comment_poster,
            retriage_phrases=settings.retriage_phrases,
        ),
        status_reader=create_status_reader(settings, store, github_client),
        github_client=github_client,
    )


# ----------------------------------------------------------------------
# Request and response bodies
# ----------------------------------------------------------------------


class TriageRequest(BaseModel):
    item: IssueItem = Field(validation_alias=AliasChoices("item", "issue"))
    repository: RepositoryRef
    force: bool = Field(
        default=False,
        description="Create a new triage even if one is already running",
    )


class WorkflowRequest(BaseModel):
    item: IssueItem = Field(validation_alias=AliasChoices("item", "issue"))
    repository: RepositoryRef
    triage_result: Optional[TriageResult] = None


class TaskCreatedResponse(BaseModel):
    task_id: Optional[str]
    task_url: Optional[str]
    message: str
    workflow_status: Optional[WorkflowStatus] = None


class IssueStatusResponse(BaseModel):
    owner: str
    repo: str
    issues: List[TriageInfo]


# ----------------------------------------------------------------------
# Dependencies
# ----------------------------------------------------------------------


def get_components(request: Request) -> AppComponents:
    components = getattr(request.app.state, "components", None)
    if components is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return components


def require_caller(
    components: AppComponents = Depends(get_components),
    authorization: Optional[str] = Header(default=None),
    x_user_id: Optional[str] = Header(default=None),
) -> str:
    """Authorize an /api caller and return its user id.

    A bearer token is always required. When ``api_token`` is configured the
    token must match it.
    """
    scheme, _, token = (authorization or "").partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Unauthorized")

    expected = components.settings.api_token
    if expected and not hmac.compare_digest(token.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")

    return (x_user_id or "").strip() or "anonymous"


def _parse_numbers(numbers: str) -> List[int]:
    try:
        parsed = [int(part) for part in numbers.split(",") if part.strip()]
    except ValueError:
        raise HTTPException(status_code=422, detail="numbers must be integers")
    if not parsed or any(n <= 0 for n in parsed):
        raise HTTPException(status_code=422, detail="numbers must be positive integers")
    return parsed


# ----------------------------------------------------------------------
# Application
# ----------------------------------------------------------------------


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ConfigurationError)
    async def configuration_error(request: Request, exc: ConfigurationError):
        logger.error("Configuration error", extra={"setting": exc.setting})
        return _error_response(500, str(exc))

    @app.exception_handler(TaskServiceUnavailableError)
    async def task_service_error(request: Request, exc: TaskServiceUnavailableError):
        return _error_response(502, f"Agent task service unavailable: {exc.message}")

    @app.exception_handler(GitHubAPIError)
    async def github_error(request: Request, exc: GitHubAPIError):
        return _error_response(502, f"GitHub API error: {exc.message}")

    @app.exception_handler(StoreError)
    async def store_error(request: Request, exc: StoreError):
        return _error_response(503, f"Workflow store unavailable: {exc.message}")

    @app.exception_handler(TriageNotReadyError)
    async def triage_not_ready(request: Request, exc: TriageNotReadyError):
        return _error_response(409, str(exc))

    @app.exception_handler(InvalidTransitionError)
    async def invalid_transition(request: Request, exc: InvalidTransitionError):
        return _error_response(409, exc.message)


def create_app(components: Optional[AppComponents] = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        components: Pre-built dependencies. When omitted they are built from
            the environment at startup and closed at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned: Optional[AppComponents] = None
        if app.state.components is None:
            logger.info("Autotriage starting up...")
            settings = get_settings()
            logging.getLogger().setLevel(settings.log_level)
            _log_configuration(settings)
            owned = await build_components(settings)
            app.state.components = owned
            logger.info("Autotriage started successfully")

        yield

        if owned is not None:
            logger.info("Autotriage shutting down...")
            await owned.close()
            app.state.components = None
            logger.info("Autotriage shutdown complete")

    app = FastAPI(
        title="Autotriage",
        description="Agent-driven triage and pull request workflow for GitHub issues",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.components = components
    _register_exception_handlers(app)

    @app.get("/health")
    async def health():
        """Liveness probe endpoint."""
        return {"status": "healthy"}

    @app.get("/ready")
    async def ready(components: AppComponents = Depends(get_components)):
        """Readiness probe endpoint; checks the workflow store."""
        healthy = await components.store.health_check()
        body = {
            "status": "ready" if healthy else "not_ready",
            "dependencies": {"store": "healthy" if healthy else "unhealthy"},
        }
        return JSONResponse(status_code=200 if healthy else 503, content=body)

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics():
        """Prometheus metrics endpoint."""
        return Response(content=generate_metrics_output(), media_type=CONTENT_TYPE_LATEST)

    @app.post("/webhooks/github", response_model=WebhookOutcome)
    async def github_webhook(
        request: Request,
        components: AppComponents = Depends(get_components),
    ):
        """GitHub webhook receiver endpoint.

        Returns 200 when a delivery is accepted or ignored, 401 on a bad
        signature, and 500 when the triage cannot be started.
        """
        raw_body = await request.body()
        signature = request.headers.get("x-hub-signature-256") or request.headers.get(
            "x-signature"
        )
        event_type = request.headers.get("x-github-event")

        try:
            return await components.ingestor.handle(raw_body, signature, event_type)
        except WebhookSignatureError:
            return _error_response(401, "Invalid signature")
        except WebhookPayloadError as e:
            return _error_response(400, str(e))
        except (TaskServiceUnavailableError, StoreError):
            logger.exception("Error processing webhook")
            return _error_response(500, "Failed to process webhook")

    @app.post("/api/triage", response_model=TaskCreatedResponse)
    async def create_triage(
        body: TriageRequest,
        user_id: str = Depends(require_caller),
        components: AppComponents = Depends(get_components),
    ):
        """Start a triage task for an issue."""
        started = await components.orchestrator.start_triage(
            body.item, body.repository, force=body.force
        )
        return TaskCreatedResponse(
            task_id=started.session.task_id,
            task_url=started.session.task_url,
            message=(
                "Triage session created"
                if started.created
                else "Triage already in progress"
            ),
        )

    @app.get("/api/triage", response_model=TriageReconciliation)
    async def poll_triage(
        task_id: str = Query(..., min_length=1),
        owner: str = Query(..., min_length=1),
        repo: str = Query(..., min_length=1),
        item_number: int = Query(..., gt=0),
        user_id: str = Depends(require_caller),
        components: AppComponents = Depends(get_components),
    ):
        """Reconcile a triage task and apply the confidence gate."""
        settings = await components.orchestrator.get_user_settings(user_id)
        return await components.orchestrator.reconcile_triage(
            task_id, owner, repo, item_number, settings=settings
        )

    @app.post("/api/workflow", response_model=TaskCreatedResponse)
    async def create_pr(
        body: WorkflowRequest,
        user_id: str = Depends(require_caller),
        components: AppComponents = Depends(get_components),
    ):
        """Manually start PR generation for a triaged issue."""
        workflow = await components.orchestrator.start_pr(
            body.item, body.repository, triage_result=body.triage_result
        )
        return TaskCreatedResponse(
            task_id=workflow.pr_task_id,
            task_url=workflow.pr_task_url,
            message="PR generation started",
            workflow_status=workflow.workflow_status,
        )

    @app.get("/api/workflow", response_model=PRReconciliation)
    async def poll_pr(
        task_id: str = Query(..., min_length=1),
        owner: str = Query(..., min_length=1),
        repo: str = Query(..., min_length=1),
        item_number: int = Query(..., gt=0),
        user_id: str = Depends(require_caller),
        components: AppComponents = Depends(get_components),
    ):
        """Reconcile a PR-generation task."""
        return await components.orchestrator.reconcile_pr(
            task_id, owner, repo, item_number
        )

    @app.get("/api/issues/status", response_model=IssueStatusResponse)
    async def issues_status(
        owner: str = Query(..., min_length=1),
        repo: str = Query(..., min_length=1),
        numbers: str = Query(..., min_length=1),
        user_id: str = Depends(require_caller),
        components: AppComponents = Depends(get_components),
    ):
        """Triage and workflow status for a batch of issues."""
        infos = await components.status_reader.read(owner, repo, _parse_numbers(numbers))
        return IssueStatusResponse(
            owner=owner,
            repo=repo,
            issues=[infos[number] for number in sorted(infos)],
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    dev_settings = get_settings()
    uvicorn.run(
        "autotriage.main:app",
        host=dev_settings.host,
        port=dev_settings.port,
        reload=True,
    )
