"""Data models for Review Copilot."""

from review_copilot.models.changes import ChangeDiff, ChangeMetadata, CommentRef, DiffRefs
from review_copilot.models.findings import (
    BATCH_KEY,
    FileReviewResult,
    ParsedReview,
    ReviewCounts,
    ReviewItem,
    Severity,
)

__all__ = [
    "BATCH_KEY",
    "ChangeDiff",
    "ChangeMetadata",
    "CommentRef",
    "DiffRefs",
    "FileReviewResult",
    "ParsedReview",
    "ReviewCounts",
    "ReviewItem",
    "Severity",
]
