"""GitHub webhook ingestion.

This module provides the WebhookIngestor, which turns signed GitHub
deliveries into triage requests:
- ``issues`` with action opened/edited starts a triage
- ``issue_comment`` with action created and a re-triage phrase in the body
  starts a new triage, even if one is already running; the status comments
  this service posts never do
- everything else is acknowledged and ignored

The signature is verified over the raw body before the body is decoded.
When a comment poster is configured, an "in progress" comment is posted on
the issue after a triage starts; a failed post does not fail the delivery.

GitHub Webhook Payload Structure (issue_comment event):
{
  "action": "created",
  "issue": {"number": 42, "title": "...", "body": "...", "labels": [...]},
  "comment": {"body": "/retriage please", "user": {"login": "octocat"}},
  "repository": {"name": "widgets", "owner": {"login": "acme"}}
}
"""

import json
import logging
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from autotriage.config import ConfigurationError
from autotriage.github.comments import StatusCommentPoster, is_status_comment
from autotriage.orchestrator import WorkflowOrchestrator
from autotriage.webhook.models import (
    CommentAction,
    GitHubIssueCommentEvent,
    GitHubIssueEvent,
    WebhookOutcome,
)
from autotriage.webhook.signature import verify_signature


logger = logging.getLogger(__name__)

DEFAULT_RETRIAGE_PHRASES = ("/retriage", "@devin retriage")


class WebhookSignatureError(Exception):
    """Raised when a delivery's signature is absent or does not match."""


class WebhookPayloadError(Exception):
    """Raised when a verified delivery body is not a JSON object."""


class WebhookIngestor:
    """Verifies GitHub deliveries and dispatches triage triggers.

    Attributes:
        orchestrator: Starts triage tasks.
        secret: Shared webhook secret. Its absence is a configuration error
            raised on the first delivery.
        comment_poster: Posts the "in progress" comment; None disables it.
        retriage_phrases: Case-insensitive phrases that request a re-triage.
    """

    def __init__(
        self,
        orchestrator: WorkflowOrchestrator,
        secret: Optional[str],
        comment_poster: Optional[StatusCommentPoster] = None,
        retriage_phrases: Sequence[str] = DEFAULT_RETRIAGE_PHRASES,
    ) -> None:
        self.orchestrator = orchestrator
        self.secret = secret
        self.comment_poster = comment_poster
        self.retriage_phrases: List[str] = [
            phrase.lower() for phrase in retriage_phrases if phrase.strip()
        ]

    async def handle(
        self,
        raw_body: bytes,
        signature: Optional[str],
        event_type: Optional[str],
    ) -> WebhookOutcome:
        """Handle one delivery.

        Args:
            raw_body: The request body exactly as received.
            signature: The signature header value, or None if absent.
            event_type: The X-GitHub-Event header value.

        Returns:
            What was done with the delivery.

        Raises:
            ConfigurationError: If no webhook secret is configured.
            WebhookSignatureError: If the signature is absent or wrong.
            WebhookPayloadError: If the body is not a JSON object.
            TaskServiceUnavailableError: If the triage task cannot be created.
            StoreError: If the triage cannot be recorded.
        """
        if not self.secret:
            raise ConfigurationError("github_webhook_secret")

        if not verify_signature(raw_body, signature, self.secret):
            logger.warning(
                "Rejected webhook with invalid signature",
                extra={"event_type": event_type, "signature_present": bool(signature)},
            )
            raise WebhookSignatureError("Invalid signature")

        payload = self._decode(raw_body)

        if event_type == "issues":
            return await self._handle_issue_event(payload)
        if event_type == "issue_comment":
            return await self._handle_comment_event(payload)

        logger.debug("Ignoring webhook event type: %s", event_type)
        return WebhookOutcome(message="Event ignored")

    def _decode(self, raw_body: bytes) -> Dict[str, Any]:
        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            raise WebhookPayloadError(f"Invalid JSON payload: {e}") from e
        if not isinstance(payload, dict):
            raise WebhookPayloadError(
                f"Invalid payload: expected object, got {type(payload).__name__}"
            )
        return payload

    async def _handle_issue_event(self, payload: Dict[str, Any]) -> WebhookOutcome:
        try:
            event = GitHubIssueEvent.model_validate(payload)
        except ValidationError as e:
            logger.warning("Ignoring malformed issues payload: %s", e.errors()[:3])
            return WebhookOutcome(message="Malformed issue event ignored")

        if not event.triggers_triage:
            return WebhookOutcome(message=f"Issue action '{event.action}' ignored")

        logger.info(
            "Processing issue event",
            extra={"issue_id": event.issue_id, "action": event.action},
        )
        started = await self.orchestrator.start_triage(event.issue, event.repository)
        session = started.session
        if not started.created:
            return WebhookOutcome(
                message="Triage already in progress",
                triggered=True,
                task_id=session.task_id,
                task_url=session.task_url,
            )
        await self._post_in_progress(
            event.repository.owner,
            event.repository.name,
            event.issue.number,
            session.task_url,
        )
        return WebhookOutcome(
            message="Triage session created",
            triggered=True,
            task_id=session.task_id,
            task_url=session.task_url,
        )

    async def _handle_comment_event(self, payload: Dict[str, Any]) -> WebhookOutcome:
        try:
            event = GitHubIssueCommentEvent.model_validate(payload)
        except ValidationError as e:
            logger.warning("Ignoring malformed issue_comment payload: %s", e.errors()[:3])
            return WebhookOutcome(message="Malformed comment event ignored")

        if event.action != CommentAction.CREATED.value:
            return WebhookOutcome(message=f"Comment action '{event.action}' ignored")

        if is_status_comment(event.comment.body):
            return WebhookOutcome(message="Status comment ignored")

        if not self.is_retriage_request(event.comment.body):
            return WebhookOutcome(message="Comment does not trigger re-triage")

        logger.info(
            "Re-triage requested",
            extra={"issue_id": event.issue_id, "requested_by": event.comment.author},
        )
        started = await self.orchestrator.start_triage(
            event.issue, event.repository, force=True
        )
        session = started.session
        await self._post_in_progress(
            event.repository.owner,
            event.repository.name,
            event.issue.number,
            session.task_url,
        )
        return WebhookOutcome(
            message="Re-triage session created",
            triggered=True,
            task_id=session.task_id,
            task_url=session.task_url,
        )

    def is_retriage_request(self, body: str) -> bool:
        text = body.lower()
        return any(phrase in text for phrase in self.retriage_phrases)

    async def _post_in_progress(
        self, owner: str, repo: str, item_number: int, task_url: str
    ) -> None:
        if self.comment_poster is None:
            return
        try:
            await self.comment_poster.post_in_progress(owner, repo, item_number, task_url)
        except Exception:
            logger.exception(
                "Failed to post in-progress comment",
                extra={"issue_id": f"{owner}/{repo}#{item_number}"},
            )


def create_webhook_ingestor(
    orchestrator: WorkflowOrchestrator,
    secret: Optional[str],
    comment_poster: Optional[StatusCommentPoster] = None,
    retriage_phrases: Sequence[str] = DEFAULT_RETRIAGE_PHRASES,
) -> WebhookIngestor:
    """Factory function to create a WebhookIngestor instance."""
    return WebhookIngestor(
        orchestrator=orchestrator,
        secret=secret,
        comment_poster=comment_poster,
        retriage_phrases=retriage_phrases,
    )
