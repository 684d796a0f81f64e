"""Prompt construction and reply parsing."""

from review_copilot.review.parser import StructuredFinding, parse_review, parse_structured_finding

__all__ = ["StructuredFinding", "parse_review", "parse_structured_finding"]
