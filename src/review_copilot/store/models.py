"""ORM models for review runs and their findings."""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from review_copilot.models.findings import Severity
from review_copilot.store.database import Base, utcnow

PUSH_CHANGE_IID = 0


class RunStatus(str, Enum):
    """Lifecycle status of a review run."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


def _new_id() -> str:
    return uuid.uuid4().hex


class ReviewRun(Base):
    """One execution of the review pipeline for one change."""

    __tablename__ = "review_runs"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    repository_id: Mapped[str] = mapped_column(String(255), index=True)
    project_id: Mapped[int] = mapped_column(Integer)

    # Change info; merge_request_iid == 0 marks a push event
    merge_request_iid: Mapped[int] = mapped_column(Integer, default=PUSH_CHANGE_IID, index=True)
    merge_request_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    source_branch: Mapped[str] = mapped_column(String(255), default="")
    target_branch: Mapped[str] = mapped_column(String(255), default="")
    commit_sha: Mapped[str] = mapped_column(String(64), default="", index=True)
    commit_short_id: Mapped[str] = mapped_column(String(16), default="")
    author: Mapped[str] = mapped_column(String(255), default="")
    author_username: Mapped[str] = mapped_column(String(255), default="")
    title: Mapped[str] = mapped_column(Text, default="")
    description: Mapped[str] = mapped_column(Text, default="")

    # Review state
    status: Mapped[RunStatus] = mapped_column(
        SQLEnum(RunStatus, native_enum=False, values_callable=_enum_values),
        default=RunStatus.PENDING,
        index=True,
    )
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Progress
    total_files: Mapped[int] = mapped_column(Integer, default=0)
    reviewed_files: Mapped[int] = mapped_column(Integer, default=0)

    # Results
    critical_issues: Mapped[int] = mapped_column(Integer, default=0)
    normal_issues: Mapped[int] = mapped_column(Integer, default=0)
    suggestions: Mapped[int] = mapped_column(Integer, default=0)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    model_responses: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    review_prompts: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    model_provider: Mapped[str | None] = mapped_column(String(50), nullable=True)
    model_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Placeholder comment to update in place
    placeholder_discussion_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    placeholder_note_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Timestamps
    started_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    findings: Mapped[list["Finding"]] = relationship(
        back_populates="run",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="Finding.id",
    )

    @property
    def is_push(self) -> bool:
        """True when the run reviews a single pushed commit."""
        return self.merge_request_iid == PUSH_CHANGE_IID

    @property
    def is_terminal(self) -> bool:
        """True once the run has completed or failed."""
        return self.status != RunStatus.PENDING

    def to_dict(self) -> dict:
        """Serialize for API responses."""
        return {
            "id": self.id,
            "repository_id": self.repository_id,
            "project_id": self.project_id,
            "merge_request_iid": self.merge_request_iid,
            "source_branch": self.source_branch,
            "target_branch": self.target_branch,
            "commit_sha": self.commit_sha,
            "commit_short_id": self.commit_short_id,
            "author": self.author,
            "author_username": self.author_username,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "error": self.error,
            "total_files": self.total_files,
            "reviewed_files": self.reviewed_files,
            "critical_issues": self.critical_issues,
            "normal_issues": self.normal_issues,
            "suggestions": self.suggestions,
            "summary": self.summary,
            "model_provider": self.model_provider,
            "model_id": self.model_id,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class Finding(Base):
    """A persisted severity-classified issue belonging to one run."""

    __tablename__ = "review_findings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(
        ForeignKey("review_runs.id", ondelete="CASCADE"),
        index=True,
    )
    file_path: Mapped[str] = mapped_column(String(1024))
    line: Mapped[int] = mapped_column(Integer)
    line_end: Mapped[int | None] = mapped_column(Integer, nullable=True)
    severity: Mapped[Severity] = mapped_column(
        SQLEnum(Severity, native_enum=False, values_callable=_enum_values),
    )
    content: Mapped[str] = mapped_column(Text)
    diff_hunk: Mapped[str | None] = mapped_column(Text, nullable=True)
    posted: Mapped[bool] = mapped_column(default=False)
    comment_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    run: Mapped[ReviewRun] = relationship(back_populates="findings")

    def to_dict(self) -> dict:
        """Serialize for API responses."""
        return {
            "id": self.id,
            "file_path": self.file_path,
            "line": self.line,
            "line_end": self.line_end,
            "severity": self.severity.value,
            "content": self.content,
            "posted": self.posted,
            "comment_id": self.comment_id,
        }
