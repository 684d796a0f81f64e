"""Persistence operations used by the pipeline and the triggers."""

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session, sessionmaker

from review_copilot.config import DatabaseSettings
from review_copilot.models.findings import ReviewCounts, ReviewItem
from review_copilot.store.database import create_db_engine, create_session_factory, utcnow
from review_copilot.store.models import Finding, ReviewRun, RunStatus

logger = logging.getLogger(__name__)


class RunNotFoundError(Exception):
    """Raised when a review run id does not exist."""

    pass


class RunInProgressError(Exception):
    """Raised when retrying a run that is still pending."""

    pass


class ReviewStore:
    """Store for review runs and findings."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    @classmethod
    def from_settings(cls, settings: DatabaseSettings) -> "ReviewStore":
        """Create a store from database settings, creating tables if needed."""
        engine = create_db_engine(settings.url, echo=settings.echo)
        return cls(create_session_factory(engine))

    def _session(self) -> Session:
        return self._session_factory()

    def _load(self, session: Session, run_id: str) -> ReviewRun:
        run = session.get(ReviewRun, run_id)
        if run is None:
            raise RunNotFoundError(f"Review run {run_id} not found")
        return run

    # Runs

    def create_run(self, **fields: Any) -> ReviewRun:
        """Create a pending run."""
        with self._session() as session, session.begin():
            run = ReviewRun(status=RunStatus.PENDING, started_at=utcnow(), **fields)
            session.add(run)
            session.flush()
            session.refresh(run)
        logger.info(f"Created review run {run.id} for {run.repository_id}")
        return run

    def get_run(self, run_id: str) -> ReviewRun | None:
        """Fetch a run with its findings, or None."""
        with self._session() as session:
            return session.get(ReviewRun, run_id)

    def require_run(self, run_id: str) -> ReviewRun:
        """Fetch a run with its findings.

        Raises:
            RunNotFoundError: If the run does not exist
        """
        with self._session() as session:
            return self._load(session, run_id)

    def set_total_files(self, run_id: str, total: int) -> None:
        """Record the number of files under review."""
        with self._session() as session, session.begin():
            run = self._load(session, run_id)
            run.total_files = total
            run.reviewed_files = min(run.reviewed_files, total)

    def increment_reviewed(self, run_id: str, by: int = 1) -> None:
        """Advance the progress counter, never beyond the file total."""
        with self._session() as session, session.begin():
            session.execute(
                update(ReviewRun)
                .where(ReviewRun.id == run_id)
                .values(
                    reviewed_files=case(
                        (
                            ReviewRun.reviewed_files + by <= ReviewRun.total_files,
                            ReviewRun.reviewed_files + by,
                        ),
                        else_=ReviewRun.total_files,
                    )
                )
            )

    def set_reviewed(self, run_id: str, reviewed: int) -> None:
        """Raise the progress counter to ``reviewed`` (clamped, never lowered)."""
        with self._session() as session, session.begin():
            run = self._load(session, run_id)
            run.reviewed_files = max(run.reviewed_files, min(reviewed, run.total_files))

    def set_summary(self, run_id: str, summary: str) -> None:
        """Persist the change synopsis."""
        with self._session() as session, session.begin():
            self._load(session, run_id).summary = summary

    def complete_run(
        self,
        run_id: str,
        counts: ReviewCounts,
        model_provider: str,
        model_id: str,
        responses: dict[str, str],
        prompts: dict[str, str],
    ) -> None:
        """Write aggregated results and move the run to ``completed``."""
        with self._session() as session, session.begin():
            run = self._load(session, run_id)
            run.critical_issues = counts.critical
            run.normal_issues = counts.normal
            run.suggestions = counts.suggestion
            run.model_provider = model_provider
            run.model_id = model_id
            run.model_responses = dict(responses)
            run.review_prompts = dict(prompts)
            run.status = RunStatus.COMPLETED
            run.error = None
            run.completed_at = utcnow()

    def fail_run(self, run_id: str, error: str) -> bool:
        """Mark a pending run as failed.

        Returns:
            True if the run was pending and is now failed
        """
        with self._session() as session, session.begin():
            run = session.get(ReviewRun, run_id)
            if run is None or run.status != RunStatus.PENDING:
                return False
            run.status = RunStatus.FAILED
            run.error = error
            run.completed_at = utcnow()
            return True

    def record_error(self, run_id: str, error: str) -> None:
        """Record error text without changing the status."""
        with self._session() as session, session.begin():
            run = session.get(ReviewRun, run_id)
            if run is not None:
                run.error = error

    def set_placeholder(
        self,
        run_id: str,
        discussion_id: str | None = None,
        note_id: str | None = None,
    ) -> ReviewRun:
        """Store the placeholder comment reference.

        Each part is written only while it is still empty, so a reference
        never changes once set.
        """
        with self._session() as session, session.begin():
            run = self._load(session, run_id)
            if discussion_id and not run.placeholder_discussion_id:
                run.placeholder_discussion_id = discussion_id
            if note_id and not run.placeholder_note_id:
                run.placeholder_note_id = str(note_id)
            return run

    def reset_for_retry(self, run_id: str) -> ReviewRun:
        """Reset a terminal run to a fresh pending state and drop its findings."""
        with self._session() as session, session.begin():
            run = self._load(session, run_id)
            run.findings.clear()
            run.status = RunStatus.PENDING
            run.error = None
            run.total_files = 0
            run.reviewed_files = 0
            run.critical_issues = 0
            run.normal_issues = 0
            run.suggestions = 0
            run.summary = None
            run.model_responses = None
            run.review_prompts = None
            run.model_provider = None
            run.model_id = None
            run.started_at = utcnow()
            run.completed_at = None
            return run

    # Findings

    def add_findings(self, run_id: str, items: Iterable[ReviewItem], cap: int) -> int:
        """Persist findings up to ``cap`` per run.

        Returns:
            Number of findings written
        """
        with self._session() as session, session.begin():
            existing = session.scalar(
                select(func.count()).select_from(Finding).where(Finding.run_id == run_id)
            )
            room = max(cap - (existing or 0), 0)
            written = 0
            for item in items:
                if written >= room:
                    break
                session.add(
                    Finding(
                        run_id=run_id,
                        file_path=item.file_path or "",
                        line=item.line,
                        line_end=item.line_end,
                        severity=item.severity,
                        content=item.content,
                    )
                )
                written += 1
            return written

    def unposted_findings(self, run_id: str) -> list[Finding]:
        """Findings not yet published, oldest first."""
        with self._session() as session:
            return list(
                session.scalars(
                    select(Finding)
                    .where(Finding.run_id == run_id, Finding.posted.is_(False))
                    .order_by(Finding.id)
                )
            )

    def mark_findings_posted(self, run_id: str, comment_id: str | None) -> int:
        """Mark every unposted finding of a run as posted."""
        with self._session() as session, session.begin():
            result = session.execute(
                update(Finding)
                .where(Finding.run_id == run_id, Finding.posted.is_(False))
                .values(posted=True, comment_id=comment_id)
            )
            return result.rowcount or 0

    # Lookups

    def find_pending_merge_request_run(
        self,
        repository_id: str,
        merge_request_iid: int,
        since: datetime,
    ) -> ReviewRun | None:
        """Find a pending run for the same merge request started after ``since``."""
        with self._session() as session:
            return session.scalars(
                select(ReviewRun)
                .where(
                    ReviewRun.repository_id == repository_id,
                    ReviewRun.merge_request_iid == merge_request_iid,
                    ReviewRun.status == RunStatus.PENDING,
                    ReviewRun.started_at >= since,
                )
                .order_by(ReviewRun.started_at.desc())
                .limit(1)
            ).first()

    def find_run_by_commit(self, repository_id: str, commit_sha: str) -> ReviewRun | None:
        """Find any run that already reviewed a commit."""
        with self._session() as session:
            return session.scalars(
                select(ReviewRun)
                .where(
                    ReviewRun.repository_id == repository_id,
                    ReviewRun.commit_sha == commit_sha,
                )
                .limit(1)
            ).first()

    def list_runs(
        self,
        page: int = 1,
        limit: int = 20,
        repository_id: str | None = None,
        status: RunStatus | None = None,
    ) -> tuple[list[ReviewRun], int]:
        """List runs newest first.

        Returns:
            Tuple of (runs on the page, total matching runs)
        """
        page = max(page, 1)
        limit = max(min(limit, 100), 1)
        filters = []
        if repository_id:
            filters.append(ReviewRun.repository_id == repository_id)
        if status:
            filters.append(ReviewRun.status == status)

        with self._session() as session:
            total = session.scalar(select(func.count()).select_from(ReviewRun).where(*filters))
            runs = session.scalars(
                select(ReviewRun)
                .where(*filters)
                .order_by(ReviewRun.started_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            return list(runs), total or 0
