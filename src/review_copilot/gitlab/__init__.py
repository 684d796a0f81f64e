"""GitLab integration for Review Copilot."""

from review_copilot.gitlab.client import GitLabClient, normalize_api_base_url
from review_copilot.gitlab.formatter import CommentFormatter, diff_anchor, run_marker
from review_copilot.gitlab.webhook import (
    MergeRequestEvent,
    PushEvent,
    TriggerDecision,
    TriggerGuard,
    create_app,
)

__all__ = [
    "CommentFormatter",
    "GitLabClient",
    "MergeRequestEvent",
    "PushEvent",
    "TriggerDecision",
    "TriggerGuard",
    "create_app",
    "diff_anchor",
    "normalize_api_base_url",
    "run_marker",
]
