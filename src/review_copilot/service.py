"""Review service: starts, retries and reports review runs."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from review_copilot.config import Config, ConfigurationError, RepositoryConfig, RepositoryRegistry
from review_copilot.gitlab.client import GitLabClient
from review_copilot.gitlab.formatter import CommentFormatter
from review_copilot.gitlab.webhook import MergeRequestEvent, PushEvent, TriggerGuard
from review_copilot.llm.client import ModelClient
from review_copilot.orchestrator.pipeline import ReviewPipeline
from review_copilot.store.models import PUSH_CHANGE_IID, ReviewRun
from review_copilot.store.repository import ReviewStore, RunInProgressError

logger = logging.getLogger(__name__)


@dataclass
class TriggerResult:
    """Acknowledgement returned to a trigger."""

    started: bool
    run_id: str | None = None
    reason: str = ""


class ReviewService:
    """Creates runs and launches the pipeline without blocking the caller."""

    def __init__(
        self,
        config: Config,
        store: ReviewStore,
        registry: RepositoryRegistry,
        gitlab: GitLabClient,
        pipeline: ReviewPipeline,
        formatter: CommentFormatter,
    ) -> None:
        self.config = config
        self.store = store
        self.registry = registry
        self.gitlab = gitlab
        self.pipeline = pipeline
        self.formatter = formatter
        self.guard = TriggerGuard(registry, store, config.pipeline)
        self._tasks: set[asyncio.Task] = set()

    # Triggers

    async def handle_event(self, event: MergeRequestEvent | PushEvent) -> TriggerResult:
        """Start a run for a webhook event when the guard accepts it.

        Ignored events and configuration problems are acknowledged with
        ``started=False``; they are never raised to the webhook caller.
        """
        decision = self.guard.evaluate(event)
        if not decision.accepted:
            logger.info(f"Ignoring event for project {event.project_id}: {decision.reason}")
            return TriggerResult(False, reason=decision.reason)

        repo = decision.repository
        try:
            self.registry.resolve_model(repo)
        except ConfigurationError as e:
            logger.warning(f"Not reviewing {repo.id}: {e}")
            return TriggerResult(False, reason=str(e))

        if isinstance(event, MergeRequestEvent):
            run = self.store.create_run(
                repository_id=repo.id,
                project_id=repo.project_id,
                merge_request_iid=event.iid,
                merge_request_id=event.merge_request_id,
                source_branch=event.source_branch,
                target_branch=event.target_branch,
                commit_sha=event.commit_sha,
                commit_short_id=event.commit_sha[:8],
                author=event.author,
                author_username=event.author_username,
                title=event.title,
                description=event.description,
            )
        else:
            run = self.store.create_run(
                repository_id=repo.id,
                project_id=repo.project_id,
                merge_request_iid=PUSH_CHANGE_IID,
                source_branch=event.branch,
                target_branch=event.branch,
                commit_sha=event.commit_sha,
                commit_short_id=event.commit_sha[:8],
                author=event.author,
                author_username=event.author_username,
                title=event.title,
                description=event.description,
            )

        await self._post_placeholder(run)
        self._launch(run.id)
        return TriggerResult(True, run.id, "accepted")

    async def trigger_manual(self, repository_id: str, merge_request_iid: int) -> ReviewRun:
        """Start a run for a merge request on request.

        Raises:
            ConfigurationError: If the repository or its model is not usable
        """
        repo = self._require_repository(repository_id)
        self.registry.resolve_model(repo)

        metadata = await self.gitlab.get_change_metadata(repo.project_id, merge_request_iid)
        run = self.store.create_run(
            repository_id=repo.id,
            project_id=repo.project_id,
            merge_request_iid=metadata.iid,
            merge_request_id=metadata.id,
            source_branch=metadata.source_branch,
            target_branch=metadata.target_branch,
            commit_sha=metadata.head_sha,
            commit_short_id=metadata.head_sha[:8],
            author=metadata.author_name,
            author_username=metadata.author_username,
            title=metadata.title,
            description=metadata.description,
        )

        await self._post_placeholder(run)
        self._launch(run.id)
        return run

    async def retry(self, run_id: str) -> ReviewRun:
        """Reset a finished run and start it again from the beginning.

        The placeholder reference is kept so the existing comment is updated.

        Raises:
            RunNotFoundError: If the run does not exist
            RunInProgressError: If the run is still pending
            ConfigurationError: If its repository is no longer configured
        """
        run = self.store.require_run(run_id)
        if not run.is_terminal:
            raise RunInProgressError(f"Review run {run_id} is still in progress")
        self._require_repository(run.repository_id)

        run = self.store.reset_for_retry(run_id)
        logger.info(f"Retrying review run {run_id}")
        self._launch(run.id)
        return run

    def get_status(self, run_id: str) -> dict[str, Any]:
        """Return a run with its findings and their diff links."""
        run = self.store.require_run(run_id)
        repo = self.registry.get(run.repository_id)
        data = run.to_dict()
        data["findings"] = []
        for finding in run.findings:
            item = finding.to_dict()
            if repo and finding.file_path:
                item["url"] = self.formatter.diff_url(
                    repo.path,
                    finding.file_path,
                    finding.line,
                    finding.line_end,
                    merge_request_iid=None if run.is_push else run.merge_request_iid,
                    commit_sha=run.commit_sha,
                )
            data["findings"].append(item)
        return data

    # Background tasks

    def _launch(self, run_id: str) -> asyncio.Task:
        task = asyncio.create_task(self._run_pipeline(run_id), name=f"review-{run_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_pipeline(self, run_id: str) -> None:
        try:
            await self.pipeline.run(run_id)
        except Exception:
            logger.exception(f"Review run {run_id} failed")

    async def wait_for_tasks(self) -> None:
        """Wait until every launched run has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def active_tasks(self) -> int:
        """Number of runs still executing."""
        return len(self._tasks)

    # Helpers

    def _require_repository(self, repository_id: str) -> RepositoryConfig:
        repo = self.registry.get(repository_id)
        if repo is None or not repo.active:
            raise ConfigurationError(f"Repository '{repository_id}' is not configured or inactive")
        return repo

    async def _post_placeholder(self, run: ReviewRun) -> None:
        """Post the "review in progress" comment and remember its reference."""
        if not self.config.pipeline.post_placeholder:
            return

        body = self.formatter.format_placeholder(run.id)
        try:
            if run.is_push:
                ref = await self.gitlab.create_commit_comment(run.project_id, run.commit_sha, body)
            else:
                ref = await self.gitlab.create_thread_comment(
                    run.project_id, run.merge_request_iid, body
                )
        except httpx.HTTPError as e:
            logger.warning(f"Could not post placeholder for run {run.id}: {e}")
            return

        self.store.set_placeholder(
            run.id,
            discussion_id=ref.discussion_id,
            note_id=str(ref.note_id) if ref.note_id is not None else None,
        )

    async def aclose(self) -> None:
        """Close the HTTP clients."""
        await self.gitlab.close()
        await self.pipeline.model_client.close()


def build_service(config: Config, store: ReviewStore | None = None) -> ReviewService:
    """Wire a review service from configuration."""
    store = store or ReviewStore.from_settings(config.database)
    registry = RepositoryRegistry(config)
    gitlab = GitLabClient(
        config.gitlab.url, config.gitlab.token, timeout=config.gitlab.timeout_seconds
    )
    formatter = CommentFormatter(config.gitlab.url)
    pipeline = ReviewPipeline(
        store=store,
        registry=registry,
        gitlab=gitlab,
        model_client=ModelClient(),
        formatter=formatter,
        settings=config.pipeline,
    )
    return ReviewService(config, store, registry, gitlab, pipeline, formatter)
