"""GitHub integration.

Posting triage status comments on issues and reading them back.
"""

from autotriage.github.client import (
    GitHubAPIError,
    GitHubClient,
    RateLimitError,
)
from autotriage.github.comments import (
    CommentTriageInfo,
    StatusCommentPoster,
    format_assessment_comment,
    format_in_progress_comment,
    is_status_comment,
    parse_triage_comments,
)

__all__ = [
    "CommentTriageInfo",
    "GitHubAPIError",
    "GitHubClient",
    "RateLimitError",
    "StatusCommentPoster",
    "format_assessment_comment",
    "format_in_progress_comment",
    "is_status_comment",
    "parse_triage_comments",
]
