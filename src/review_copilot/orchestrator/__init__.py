"""Review pipeline orchestration."""

from review_copilot.orchestrator.aggregator import AggregateResult, aggregate_results
from review_copilot.orchestrator.pipeline import (
    PipelineError,
    PipelineState,
    ReviewPipeline,
    RunNotPendingError,
    Stage,
    review_stage_for,
    should_continue,
)

__all__ = [
    "AggregateResult",
    "PipelineError",
    "PipelineState",
    "ReviewPipeline",
    "RunNotPendingError",
    "Stage",
    "aggregate_results",
    "review_stage_for",
    "should_continue",
]
