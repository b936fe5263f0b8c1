"""GitHub webhook handling.

This package verifies and parses GitHub webhook deliveries:
- issues.opened / issues.edited - start a triage
- issue_comment.created with a re-triage phrase - start a new triage

Signatures are verified over the raw request body before decoding.
"""

from autotriage.webhook.handler import (
    WebhookIngestor,
    WebhookPayloadError,
    WebhookSignatureError,
    create_webhook_ingestor,
)
from autotriage.webhook.models import (
    GitHubIssueCommentEvent,
    GitHubIssueEvent,
    IssueAction,
    WebhookOutcome,
)
from autotriage.webhook.signature import compute_signature, verify_signature

__all__ = [
    "GitHubIssueCommentEvent",
    "GitHubIssueEvent",
    "IssueAction",
    "WebhookIngestor",
    "WebhookOutcome",
    "WebhookPayloadError",
    "WebhookSignatureError",
    "compute_signature",
    "create_webhook_ingestor",
    "verify_signature",
]
