"""Combine per-file (or batch) review results into run totals."""

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from review_copilot.models.findings import FileReviewResult, ReviewCounts, ReviewItem

logger = logging.getLogger(__name__)


@dataclass
class AggregateResult:
    """Totals for a whole run."""

    counts: ReviewCounts = field(default_factory=ReviewCounts)
    critical_items: list[ReviewItem] = field(default_factory=list)
    dropped_items: int = 0
    files_with_issues: int = 0


def aggregate_results(file_results: Sequence[FileReviewResult], cap: int) -> AggregateResult:
    """Sum counts across results and keep the first ``cap`` critical items.

    Items keep file order, then reply order within a file. Items beyond the
    cap are only reflected in the counts.

    Args:
        file_results: Results in review order
        cap: Maximum number of critical items to keep

    Returns:
        Aggregated totals
    """
    result = AggregateResult()
    all_items: list[ReviewItem] = []

    for file_result in file_results:
        result.counts = result.counts + file_result.counts
        if file_result.has_issues:
            result.files_with_issues += 1
        for item in file_result.critical_items:
            if item.file_path is None and not file_result.is_batch:
                item.file_path = file_result.file_path
            all_items.append(item)

    cap = max(cap, 0)
    result.critical_items = all_items[:cap]
    result.dropped_items = max(len(all_items) - cap, 0)
    if result.dropped_items:
        logger.info(f"Keeping {cap} critical findings, {result.dropped_items} counted only")
    return result
