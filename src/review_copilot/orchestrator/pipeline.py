"""Review pipeline: fetch, summarize, review, aggregate and publish.

The pipeline is an explicit state machine. Each stage is one coroutine that
reads the accumulated ``PipelineState`` and returns a dict of updates; the
driver merges the updates, picks the next stage and owns the per-file index.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

from review_copilot.config import (
    ConfigurationError,
    ModelConfig,
    PipelineSettings,
    RepositoryConfig,
    RepositoryRegistry,
)
from review_copilot.gitlab.client import GitLabClient
from review_copilot.gitlab.formatter import BATCH_KEY, CommentFormatter, run_marker
from review_copilot.llm.client import ModelClient
from review_copilot.models.changes import ChangeDiff, ChangeMetadata, CommentRef
from review_copilot.models.findings import FileReviewResult, ReviewCounts, ReviewItem
from review_copilot.orchestrator.aggregator import aggregate_results
from review_copilot.review.parser import parse_review
from review_copilot.review.prompts import (
    OUTPUT_FORMAT,
    SUMMARY_SYSTEM_PROMPT,
    SYSTEM_PROMPT,
    build_batch_review_prompt,
    build_review_prompt,
    build_summary_prompt,
    record_prompt,
)
from review_copilot.store.models import ReviewRun, RunStatus
from review_copilot.store.repository import ReviewStore, RunNotFoundError

logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """Raised for unrecoverable pipeline conditions (no files, no commit SHA)."""

    pass


class RunNotPendingError(PipelineError):
    """Raised when a run that already finished is started again without a reset."""

    pass


class Stage(Enum):
    """Pipeline stages."""

    FETCH_DIFF = "fetch_diff"
    GENERATE_SUMMARY = "generate_summary"
    REVIEW_BATCH = "review_batch"
    REVIEW_FILE = "review_file"
    AGGREGATE = "aggregate"
    PUBLISH = "publish"
    DONE = "done"


def should_continue(index: int, total: int) -> bool:
    """Whether the per-file loop has another file at ``index``."""
    return 0 <= index < total


def review_stage_for(total: int, threshold: int) -> Stage:
    """Stage that follows the summary for a change with ``total`` files."""
    if total <= 0:
        return Stage.AGGREGATE
    if total > threshold:
        return Stage.REVIEW_BATCH
    return Stage.REVIEW_FILE


APPEND_FIELDS = ("file_results", "critical_items")
MERGE_FIELDS = ("responses", "prompts")


@dataclass
class PipelineState:
    """Everything the stages of one run have produced so far."""

    run_id: str
    stage: Stage = Stage.FETCH_DIFF
    run: ReviewRun | None = None
    repository: RepositoryConfig | None = None
    model: ModelConfig | None = None
    system_prompt: str = ""
    metadata: ChangeMetadata | None = None
    diffs: list[ChangeDiff] = field(default_factory=list)
    summary: str = ""
    counts: ReviewCounts = field(default_factory=ReviewCounts)
    file_results: list[FileReviewResult] = field(default_factory=list)
    critical_items: list[ReviewItem] = field(default_factory=list)
    responses: dict[str, str] = field(default_factory=dict)
    prompts: dict[str, str] = field(default_factory=dict)
    comment: CommentRef | None = None

    def merge(self, updates: dict[str, Any]) -> None:
        """Apply a stage's updates.

        List fields are appended to, dict fields are merged by key and every
        other field is overwritten.
        """
        for name, value in updates.items():
            if name in APPEND_FIELDS:
                getattr(self, name).extend(value)
            elif name in MERGE_FIELDS:
                getattr(self, name).update(value)
            elif hasattr(self, name):
                setattr(self, name, value)
            else:
                raise AttributeError(f"Unknown pipeline state field: {name}")

    @property
    def title(self) -> str:
        if self.metadata:
            return self.metadata.title
        return self.run.title if self.run else ""

    @property
    def description(self) -> str:
        if self.metadata:
            return self.metadata.description
        return self.run.description if self.run else ""


def _truncate(text: str, limit: int) -> str:
    if limit <= 0 or len(text) <= limit:
        return text
    return text[:limit] + "\n... (truncated)"


class ReviewPipeline:
    """Runs one review from diff fetch to published comment."""

    def __init__(
        self,
        store: ReviewStore,
        registry: RepositoryRegistry,
        gitlab: GitLabClient,
        model_client: ModelClient,
        formatter: CommentFormatter,
        settings: PipelineSettings | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            store: Run and finding persistence
            registry: Repository and model configuration
            gitlab: GitLab API client
            model_client: Model invocation client
            formatter: Comment renderer
            settings: Pipeline tuning (batch threshold, finding cap)
        """
        self.store = store
        self.registry = registry
        self.gitlab = gitlab
        self.model_client = model_client
        self.formatter = formatter
        self.settings = settings or PipelineSettings()

    async def run(self, run_id: str) -> PipelineState:
        """Drive a run through every stage.

        Any exception aborts the run. A pending run is marked failed with the
        error text; a run that already completed keeps its status and only
        records the error. The exception is re-raised.

        A missing run, or one that is not pending, is refused without
        touching the store.

        Args:
            run_id: Id of an existing run

        Returns:
            Final pipeline state
        """
        state = PipelineState(run_id=run_id)
        stage = Stage.FETCH_DIFF
        index = 0

        try:
            while stage is not Stage.DONE:
                state.stage = stage
                if stage is Stage.REVIEW_FILE:
                    logger.info(f"[{run_id}] Reviewing file {index + 1}/{len(state.diffs)}")
                    state.merge(await self.review_file(state, index))
                    index += 1
                    if should_continue(index, len(state.diffs)):
                        continue
                    stage = Stage.AGGREGATE
                else:
                    logger.info(f"[{run_id}] Stage {stage.value}")
                    state.merge(await self._step(stage, state))
                    stage = self._next_stage(stage, state)
        except (RunNotFoundError, RunNotPendingError) as e:
            logger.error(f"[{run_id}] Review not started: {e}")
            raise
        except Exception as e:
            error = str(e) or type(e).__name__
            if self.store.fail_run(run_id, error):
                logger.error(f"[{run_id}] Review failed at {state.stage.value}: {error}")
            else:
                self.store.record_error(run_id, f"{state.stage.value}: {error}")
                logger.error(f"[{run_id}] {state.stage.value} failed after completion: {error}")
            raise

        state.stage = Stage.DONE
        logger.info(
            f"[{run_id}] Review done: {state.counts.critical} critical, "
            f"{state.counts.normal} normal, {state.counts.suggestion} suggestions"
        )
        return state

    async def _step(self, stage: Stage, state: PipelineState) -> dict[str, Any]:
        if stage is Stage.FETCH_DIFF:
            return await self.fetch_diff(state)
        if stage is Stage.GENERATE_SUMMARY:
            return await self.generate_summary(state)
        if stage is Stage.REVIEW_BATCH:
            return await self.review_batch(state)
        if stage is Stage.AGGREGATE:
            return await self.aggregate(state)
        if stage is Stage.PUBLISH:
            return await self.publish(state)
        raise ValueError(f"No step for stage {stage}")

    def _next_stage(self, stage: Stage, state: PipelineState) -> Stage:
        if stage is Stage.FETCH_DIFF:
            return Stage.GENERATE_SUMMARY
        if stage is Stage.GENERATE_SUMMARY:
            return review_stage_for(len(state.diffs), self.settings.batch_threshold)
        if stage in (Stage.REVIEW_BATCH, Stage.REVIEW_FILE):
            return Stage.AGGREGATE
        if stage is Stage.AGGREGATE:
            return Stage.PUBLISH
        return Stage.DONE

    # Stages

    async def fetch_diff(self, state: PipelineState) -> dict[str, Any]:
        """Load the run, resolve configuration and fetch the diff set."""
        run = self.store.require_run(state.run_id)
        if run.status != RunStatus.PENDING:
            raise RunNotPendingError(
                f"Review run {run.id} is {run.status.value}, reset it before running again"
            )

        repo = self.registry.get(run.repository_id)
        if repo is None:
            raise ConfigurationError(f"Repository '{run.repository_id}' is not configured")
        model = self.registry.resolve_model(repo)
        system_prompt = self.registry.resolve_system_prompt(repo, SYSTEM_PROMPT, OUTPUT_FORMAT)

        metadata = None
        if run.is_push:
            if not run.commit_sha:
                raise PipelineError("Push review has no commit SHA")
            diffs = await self.gitlab.get_commit_diff(run.project_id, run.commit_sha)
        else:
            metadata = await self.gitlab.get_change_metadata(run.project_id, run.merge_request_iid)
            diffs = await self.gitlab.get_full_diff(run.project_id, run.merge_request_iid)

        relevant = [diff for diff in diffs if not diff.deleted_file]
        logger.info(
            f"[{run.id}] {len(relevant)} files to review "
            f"({len(diffs) - len(relevant)} deleted skipped) with {model.label}"
        )
        if not relevant:
            raise PipelineError("Change has no files to review")

        self.store.set_total_files(run.id, len(relevant))
        return {
            "run": run,
            "repository": repo,
            "model": model,
            "system_prompt": system_prompt,
            "metadata": metadata,
            "diffs": relevant,
        }

    async def generate_summary(self, state: PipelineState) -> dict[str, Any]:
        """Ask the model for a short synopsis and persist it right away."""
        diffs = _truncate(
            "\n".join(diff.to_patch() for diff in state.diffs), self.settings.max_diff_chars
        )
        prompt = build_summary_prompt(state.title, diffs, state.description)
        summary = (await self.model_client.invoke(SUMMARY_SYSTEM_PROMPT, prompt, state.model)).strip()
        self.store.set_summary(state.run_id, summary)
        return {"summary": summary}

    async def review_batch(self, state: PipelineState) -> dict[str, Any]:
        """Review every file in one model call."""
        files = [
            (diff.path, _truncate(diff.to_patch(), self.settings.max_diff_chars))
            for diff in state.diffs
        ]
        prompt = _truncate(
            build_batch_review_prompt(state.title, files, state.description),
            self.settings.max_diff_chars,
        )
        response = await self.model_client.invoke(state.system_prompt, prompt, state.model)
        parsed = parse_review(response, max_critical_items=self.settings.max_critical_findings)
        recorded = record_prompt(state.system_prompt, prompt)

        self.store.set_reviewed(state.run_id, len(state.diffs))
        logger.info(
            f"[{state.run_id}] Batch review of {len(state.diffs)} files: "
            f"{parsed.counts.total} issues ({parsed.dialect})"
        )
        return {
            "file_results": [
                FileReviewResult(
                    file_path=BATCH_KEY,
                    response=response,
                    prompt=recorded,
                    counts=parsed.counts,
                    critical_items=parsed.critical_items,
                )
            ],
            "critical_items": parsed.critical_items,
            "responses": {BATCH_KEY: response},
            "prompts": {BATCH_KEY: recorded},
        }

    async def review_file(self, state: PipelineState, index: int) -> dict[str, Any]:
        """Review the file at ``index``."""
        diff = state.diffs[index]
        prompt = build_review_prompt(
            title=state.title,
            filename=diff.path,
            diff=_truncate(diff.to_patch(), self.settings.max_diff_chars),
            description=state.description,
            summary=state.summary,
        )
        response = await self.model_client.invoke(state.system_prompt, prompt, state.model)
        parsed = parse_review(
            response,
            default_file_path=diff.path,
            max_critical_items=self.settings.max_critical_findings,
        )
        recorded = record_prompt(state.system_prompt, prompt)

        self.store.increment_reviewed(state.run_id)
        return {
            "file_results": [
                FileReviewResult(
                    file_path=diff.path,
                    response=response,
                    prompt=recorded,
                    counts=parsed.counts,
                    critical_items=parsed.critical_items,
                )
            ],
            "critical_items": parsed.critical_items,
            "responses": {diff.path: response},
            "prompts": {diff.path: recorded},
        }

    async def aggregate(self, state: PipelineState) -> dict[str, Any]:
        """Sum counts, persist capped findings and complete the run."""
        cap = self.settings.max_critical_findings
        result = aggregate_results(state.file_results, cap)
        self.store.add_findings(state.run_id, result.critical_items, cap)
        self.store.complete_run(
            state.run_id,
            counts=result.counts,
            model_provider=state.model.provider,
            model_id=state.model.model_id,
            responses=state.responses,
            prompts=state.prompts,
        )
        return {"counts": result.counts}

    async def publish(self, state: PipelineState) -> dict[str, Any]:
        """Post the review comment, updating the placeholder when there is one.

        Safe to call more than once for the same run: once a comment exists
        its reference is stored and later calls edit it in place.
        """
        run = self.store.require_run(state.run_id)
        repo = state.repository or self.registry.get(run.repository_id)
        project_path = repo.path if repo else ""

        body = self.formatter.format_review(
            run_id=run.id,
            project_path=project_path,
            counts=ReviewCounts(run.critical_issues, run.normal_issues, run.suggestions),
            total_files=run.total_files,
            reviewed_files=run.reviewed_files,
            summary=run.summary,
            file_results=state.file_results,
            findings=run.findings,
            responses=run.model_responses,
            merge_request_iid=None if run.is_push else run.merge_request_iid,
            commit_sha=run.commit_sha,
        )

        if run.is_push:
            ref = await self._publish_commit_comment(run, body)
        else:
            ref = await self._publish_thread_comment(run, body)

        posted = self.store.mark_findings_posted(run.id, ref.comment_id)
        logger.info(f"[{run.id}] Published review comment {ref.comment_id} ({posted} findings)")
        return {"comment": ref}

    async def _publish_thread_comment(self, run: ReviewRun, body: str) -> CommentRef:
        discussion_id = run.placeholder_discussion_id
        note_id = run.placeholder_note_id

        if discussion_id and not note_id:
            try:
                discussion = await self.gitlab.get_discussion(
                    run.project_id, run.merge_request_iid, discussion_id
                )
            except httpx.HTTPError as e:
                logger.warning(f"[{run.id}] Could not resolve placeholder note: {e}")
            else:
                if discussion.note_id is not None:
                    note_id = str(discussion.note_id)
                    self.store.set_placeholder(run.id, note_id=note_id)

        if discussion_id and note_id:
            return await self.gitlab.update_thread_comment(
                run.project_id, run.merge_request_iid, discussion_id, note_id, body
            )

        ref = await self.gitlab.create_thread_comment(run.project_id, run.merge_request_iid, body)
        self.store.set_placeholder(
            run.id,
            discussion_id=ref.discussion_id,
            note_id=str(ref.note_id) if ref.note_id is not None else None,
        )
        return ref

    async def _publish_commit_comment(self, run: ReviewRun, body: str) -> CommentRef:
        note_id = run.placeholder_note_id

        if not note_id:
            note_id = await self._find_marked_commit_comment(run)
            if note_id:
                self.store.set_placeholder(run.id, note_id=note_id)

        if note_id:
            ref = await self.gitlab.update_commit_comment(
                run.project_id, run.commit_sha, note_id, body
            )
        else:
            ref = await self.gitlab.create_commit_comment(run.project_id, run.commit_sha, body)

        if ref.note_id is not None:
            self.store.set_placeholder(run.id, note_id=str(ref.note_id))
        return ref

    async def _find_marked_commit_comment(self, run: ReviewRun) -> str | None:
        """Find this run's earlier commit comment by its hidden marker."""
        marker = run_marker(run.id)
        try:
            comments = await self.gitlab.get_commit_comments(run.project_id, run.commit_sha)
        except httpx.HTTPError as e:
            logger.warning(f"[{run.id}] Could not list commit comments: {e}")
            return None

        for comment in reversed(comments):
            if marker in (comment.get("note") or ""):
                found = comment.get("id") or comment.get("note_id")
                if found:
                    return str(found)
        return None
