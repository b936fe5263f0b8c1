"""Unit tests for the store-backed and comment-backed triage status readers."""

from unittest.mock import AsyncMock

import pytest

from autotriage.config import AutotriageSettings, ConfigurationError
from autotriage.github.client import GitHubAPIError
from autotriage.github.comments import format_assessment_comment, format_in_progress_comment
from autotriage.state.memory import InMemoryWorkflowStore
from autotriage.state.models import (
    IssueWorkflow,
    Level,
    TriageSession,
    TriageSessionStatus,
    WorkflowStatus,
)
from autotriage.status import (
    CommentStatusReader,
    StoreStatusReader,
    TriageStatusReader,
    create_status_reader,
)

from factories import OWNER, REPO, make_result, run_async


def _seed(store: InMemoryWorkflowStore) -> None:
    async def seed():
        await store.create_triage_session(
            TriageSession(
                owner=OWNER,
                repo=REPO,
                item_number=1,
                task_id="t-1",
                task_url="https://agent.example/sessions/t-1",
                status=TriageSessionStatus.COMPLETED,
                structured_result=make_result(confidence=Level.MEDIUM),
            )
        )
        await store.create_triage_session(
            TriageSession(
                owner=OWNER,
                repo=REPO,
                item_number=2,
                task_id="t-2",
                status=TriageSessionStatus.IN_PROGRESS,
            )
        )
        await store.upsert_workflow(
            IssueWorkflow(
                owner=OWNER,
                repo=REPO,
                item_number=1,
                workflow_status=WorkflowStatus.PR,
                pr_url="https://github.com/acme/widgets/pull/5",
            )
        )

    run_async(seed())


def test_store_reader_merges_sessions_and_workflows():
    store = InMemoryWorkflowStore()
    _seed(store)
    reader = StoreStatusReader(store)

    infos = run_async(reader.read(OWNER, REPO, [1, 2, 3]))

    assert sorted(infos) == [1, 2, 3]
    assert infos[1].triage_status == TriageSessionStatus.COMPLETED
    assert infos[1].confidence == Level.MEDIUM
    assert infos[1].workflow_status == WorkflowStatus.PR
    assert infos[1].pr_url == "https://github.com/acme/widgets/pull/5"
    assert infos[2].triage_status == TriageSessionStatus.IN_PROGRESS
    assert infos[2].task_url is None
    assert infos[2].workflow_status is None
    assert infos[3].triage_status is None


def test_comment_reader_scrapes_each_issue():
    github = AsyncMock()
    assessment = format_assessment_comment(make_result(confidence=Level.HIGH), "https://a/t1")
    comments_by_issue = {
        1: [{"body": assessment}],
        2: [{"body": format_in_progress_comment("https://a/t2")}],
        3: [{"body": "unrelated"}],
    }
    github.list_comments.side_effect = lambda owner, repo, n: comments_by_issue[n]
    reader = CommentStatusReader(github)

    infos = run_async(reader.read(OWNER, REPO, [3, 2, 1]))

    assert infos[1].triage_status == TriageSessionStatus.COMPLETED
    assert infos[1].confidence == Level.HIGH
    assert infos[1].task_url == "https://a/t1"
    assert infos[2].triage_status == TriageSessionStatus.IN_PROGRESS
    assert infos[3].triage_status is None
    assert infos[1].workflow_status is None


def test_comment_reader_degrades_on_api_error():
    github = AsyncMock()
    github.list_comments.side_effect = GitHubAPIError("boom", status_code=502)

    infos = run_async(CommentStatusReader(github).read(OWNER, REPO, [9]))

    assert infos[9].triage_status is None


def test_factory_selects_store_by_default():
    reader = create_status_reader(AutotriageSettings(), InMemoryWorkflowStore())
    assert isinstance(reader, StoreStatusReader)
    assert isinstance(reader, TriageStatusReader)


def test_factory_selects_comments():
    settings = AutotriageSettings(triage_status_source="comments")
    reader = create_status_reader(settings, InMemoryWorkflowStore(), AsyncMock())
    assert isinstance(reader, CommentStatusReader)


def test_comment_source_without_github_token_is_configuration_error():
    settings = AutotriageSettings(triage_status_source="comments")
    with pytest.raises(ConfigurationError) as exc_info:
        create_status_reader(settings, InMemoryWorkflowStore())
    assert exc_info.value.setting == "github_token"
