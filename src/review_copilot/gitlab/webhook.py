"""GitLab webhook server and trigger guard for automatic reviews."""

import hmac
import json
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, HTTPException, Query, Request
from pydantic import BaseModel

from review_copilot import __version__
from review_copilot.config import (
    Config,
    ConfigurationError,
    PipelineSettings,
    RepositoryConfig,
    RepositoryRegistry,
)
from review_copilot.matching import matches
from review_copilot.store.database import utcnow
from review_copilot.store.models import RunStatus
from review_copilot.store.repository import ReviewStore, RunInProgressError, RunNotFoundError

if TYPE_CHECKING:
    from review_copilot.service import ReviewService

logger = logging.getLogger(__name__)

MERGE_REQUEST_HOOK = "Merge Request Hook"
PUSH_HOOK = "Push Hook"
TRIGGER_ACTIONS = {"open", "reopen", "update"}
ZERO_SHA = "0" * 40


@dataclass
class MergeRequestEvent:
    """A merge request webhook event."""

    project_id: int
    iid: int
    action: str
    source_branch: str
    target_branch: str
    title: str = ""
    description: str = ""
    merge_request_id: int | None = None
    commit_sha: str = ""
    author: str = ""
    author_username: str = ""

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "MergeRequestEvent":
        """Parse a ``Merge Request Hook`` payload."""
        attrs = payload.get("object_attributes") or {}
        user = payload.get("user") or {}
        last_commit = attrs.get("last_commit") or {}
        project_id = (payload.get("project") or {}).get("id") or attrs.get("target_project_id")
        return cls(
            project_id=int(project_id),
            iid=int(attrs["iid"]),
            action=attrs.get("action") or "",
            source_branch=attrs.get("source_branch") or "",
            target_branch=attrs.get("target_branch") or "",
            title=attrs.get("title") or "",
            description=attrs.get("description") or "",
            merge_request_id=attrs.get("id"),
            commit_sha=last_commit.get("id") or "",
            author=user.get("name") or user.get("username") or "",
            author_username=user.get("username") or "",
        )


@dataclass
class PushEvent:
    """A push webhook event."""

    project_id: int
    ref: str
    before: str
    after: str
    commit_sha: str
    title: str = ""
    description: str = ""
    author: str = ""
    author_username: str = ""

    @property
    def branch(self) -> str:
        """Pushed branch name (``refs/heads/`` stripped)."""
        prefix = "refs/heads/"
        return self.ref[len(prefix):] if self.ref.startswith(prefix) else self.ref

    @property
    def is_branch_deletion(self) -> bool:
        """True when the push deleted the branch."""
        return self.after == ZERO_SHA

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "PushEvent":
        """Parse a ``Push Hook`` payload."""
        project_id = payload.get("project_id") or (payload.get("project") or {}).get("id")
        after = payload.get("after") or ""
        sha = payload.get("checkout_sha") or after
        commits = payload.get("commits") or []
        head = next((c for c in commits if c.get("id") == sha), commits[-1] if commits else {})
        message = (head.get("message") or "").strip()
        title = head.get("title") or message.split("\n", 1)[0]
        return cls(
            project_id=int(project_id),
            ref=payload.get("ref") or "",
            before=payload.get("before") or "",
            after=after,
            commit_sha=sha if sha != ZERO_SHA else "",
            title=title,
            description=message,
            author=payload.get("user_name") or (head.get("author") or {}).get("name") or "",
            author_username=payload.get("user_username") or "",
        )


@dataclass
class TriggerDecision:
    """Outcome of evaluating an event."""

    accepted: bool
    reason: str
    repository: RepositoryConfig | None = None


class TriggerGuard:
    """Decides whether an incoming event should start a review run.

    The duplicate checks are advisory: two identical events arriving at
    the same moment can both pass.
    """

    def __init__(
        self,
        registry: RepositoryRegistry,
        store: ReviewStore,
        settings: PipelineSettings | None = None,
    ) -> None:
        self.registry = registry
        self.store = store
        self.settings = settings or PipelineSettings()

    def evaluate(self, event: MergeRequestEvent | PushEvent) -> TriggerDecision:
        """Evaluate an event against repository settings and existing runs."""
        repo = self.registry.find_by_project(event.project_id)
        if repo is None:
            return TriggerDecision(False, f"no active repository for project {event.project_id}")
        if not repo.auto_review:
            return TriggerDecision(False, f"auto review disabled for {repo.id}", repo)

        if isinstance(event, MergeRequestEvent):
            return self._evaluate_merge_request(event, repo)
        return self._evaluate_push(event, repo)

    def _evaluate_merge_request(
        self, event: MergeRequestEvent, repo: RepositoryConfig
    ) -> TriggerDecision:
        if event.action not in TRIGGER_ACTIONS:
            return TriggerDecision(False, f"ignored merge request action '{event.action}'", repo)
        if not matches(event.target_branch, repo.watch_branches):
            return TriggerDecision(
                False, f"target branch '{event.target_branch}' is not watched", repo
            )

        since = utcnow() - timedelta(minutes=self.settings.dedup_window_minutes)
        existing = self.store.find_pending_merge_request_run(repo.id, event.iid, since)
        if existing is not None:
            return TriggerDecision(
                False, f"run {existing.id} already pending for !{event.iid}", repo
            )
        return TriggerDecision(True, "accepted", repo)

    def _evaluate_push(self, event: PushEvent, repo: RepositoryConfig) -> TriggerDecision:
        if event.is_branch_deletion or not event.commit_sha:
            return TriggerDecision(False, f"branch '{event.branch}' deleted", repo)
        if not matches(event.branch, repo.watch_branches):
            return TriggerDecision(False, f"branch '{event.branch}' is not watched", repo)

        existing = self.store.find_run_by_commit(repo.id, event.commit_sha)
        if existing is not None:
            return TriggerDecision(
                False, f"commit {event.commit_sha[:8]} already reviewed by run {existing.id}", repo
            )
        return TriggerDecision(True, "accepted", repo)


class ManualReviewRequest(BaseModel):
    """Body of a manual review request."""

    repository_id: str
    merge_request_iid: int


def verify_token(received: str | None, secret: str) -> bool:
    """Check the ``X-Gitlab-Token`` header against the configured secret."""
    if not received:
        return False
    return hmac.compare_digest(received.encode(), secret.encode())


def create_app(config: Config, service: "ReviewService") -> FastAPI:
    """Create the FastAPI application.

    Args:
        config: Application configuration
        service: Review service that owns runs and background tasks

    Returns:
        FastAPI application
    """
    webhook_secret = config.gitlab.webhook_secret

    app = FastAPI(
        title="Review Copilot",
        description="Automated GitLab merge request and commit reviews",
        version=__version__,
    )
    app.state.service = service

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "service": "review-copilot"}

    @app.post("/webhook/gitlab")
    async def gitlab_webhook(request: Request):
        """Handle GitLab webhook events."""
        body = await request.body()

        if webhook_secret:
            token = request.headers.get("X-Gitlab-Token")
            if not verify_token(token, webhook_secret):
                raise HTTPException(status_code=401, detail="Invalid token")

        try:
            payload = json.loads(body)
        except json.JSONDecodeError as e:
            raise HTTPException(status_code=400, detail=f"Invalid JSON: {e}") from e

        event_type = request.headers.get("X-Gitlab-Event", "")

        try:
            if event_type == MERGE_REQUEST_HOOK:
                result = await service.handle_event(MergeRequestEvent.from_payload(payload))
            elif event_type == PUSH_HOOK:
                result = await service.handle_event(PushEvent.from_payload(payload))
            else:
                logger.debug(f"Ignoring event type: {event_type}")
                return {"started": False, "run_id": None}
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Malformed {event_type} payload: {e}")
            return {"started": False, "run_id": None}

        return {"started": result.started, "run_id": result.run_id}

    @app.post("/api/review")
    async def manual_review(request: ManualReviewRequest):
        """Start a review for a merge request."""
        try:
            run = await service.trigger_manual(request.repository_id, request.merge_request_iid)
        except ConfigurationError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        return {"started": True, "run_id": run.id}

    @app.post("/api/review/{run_id}/retry")
    async def retry_review(run_id: str):
        """Reset a finished run and review it again."""
        try:
            run = await service.retry(run_id)
        except RunNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        except (RunInProgressError, ConfigurationError) as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        return {"started": True, "run_id": run.id}

    @app.get("/api/review/{run_id}")
    async def review_status(run_id: str):
        """Get a run with its findings."""
        try:
            return service.get_status(run_id)
        except RunNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e

    @app.get("/api/reviews")
    async def list_reviews(
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
        repository_id: str | None = None,
        status: str | None = None,
    ):
        """List runs, newest first."""
        try:
            run_status = RunStatus(status) if status else None
        except ValueError as e:
            raise HTTPException(status_code=400, detail=f"Invalid status: {status}") from e
        runs, total = service.store.list_runs(page, limit, repository_id, run_status)
        return {
            "items": [run.to_dict() for run in runs],
            "page": page,
            "limit": limit,
            "total": total,
        }

    return app
