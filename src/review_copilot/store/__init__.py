"""Persistence for review runs and findings."""

from review_copilot.store.models import PUSH_CHANGE_IID, Finding, ReviewRun, RunStatus
from review_copilot.store.repository import ReviewStore, RunInProgressError, RunNotFoundError

__all__ = [
    "PUSH_CHANGE_IID",
    "Finding",
    "ReviewRun",
    "ReviewStore",
    "RunInProgressError",
    "RunNotFoundError",
    "RunStatus",
]
