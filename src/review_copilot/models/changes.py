"""Change models returned by the VCS client."""

from dataclasses import dataclass, field
from typing import Any


@dataclass
class DiffRefs:
    """Commit SHA triple used to anchor positioned merge request comments."""

    base_sha: str
    head_sha: str
    start_sha: str

    @classmethod
    def from_api(cls, data: dict[str, Any] | None) -> "DiffRefs | None":
        """Build from a GitLab ``diff_refs`` object (None when absent)."""
        if not data:
            return None
        return cls(
            base_sha=data.get("base_sha") or "",
            head_sha=data.get("head_sha") or "",
            start_sha=data.get("start_sha") or "",
        )


@dataclass
class ChangeMetadata:
    """Merge request metadata needed by the pipeline."""

    iid: int
    title: str
    description: str
    source_branch: str
    target_branch: str
    author_name: str = ""
    author_username: str = ""
    id: int | None = None
    web_url: str | None = None
    diff_refs: DiffRefs | None = None

    @property
    def head_sha(self) -> str:
        """Head commit SHA, or empty string if unknown."""
        return self.diff_refs.head_sha if self.diff_refs else ""

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "ChangeMetadata":
        """Build from a GitLab merge request payload."""
        author = data.get("author") or {}
        return cls(
            iid=int(data["iid"]),
            id=data.get("id"),
            title=data.get("title") or "",
            description=data.get("description") or "",
            source_branch=data.get("source_branch") or "",
            target_branch=data.get("target_branch") or "",
            author_name=author.get("name") or author.get("username") or "",
            author_username=author.get("username") or "",
            web_url=data.get("web_url"),
            diff_refs=DiffRefs.from_api(data.get("diff_refs")),
        )


@dataclass
class ChangeDiff:
    """One changed file in a merge request or commit."""

    old_path: str
    new_path: str
    diff: str = ""
    new_file: bool = False
    renamed_file: bool = False
    deleted_file: bool = False

    @property
    def path(self) -> str:
        """Path used to key results (the new path)."""
        return self.new_path or self.old_path

    def to_patch(self) -> str:
        """Render as a unified patch with file headers."""
        return f"--- a/{self.old_path}\n+++ b/{self.new_path}\n{self.diff}"

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "ChangeDiff":
        """Build from a GitLab diff entry."""
        return cls(
            old_path=data.get("old_path") or data.get("new_path") or "",
            new_path=data.get("new_path") or data.get("old_path") or "",
            diff=data.get("diff") or "",
            new_file=bool(data.get("new_file")),
            renamed_file=bool(data.get("renamed_file")),
            deleted_file=bool(data.get("deleted_file")),
        )


@dataclass
class CommentRef:
    """Reference to a comment created or updated on the VCS host."""

    note_id: int | None = None
    discussion_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def comment_id(self) -> str | None:
        """Host-assigned id as a string, preferring the note id."""
        if self.note_id is not None:
            return str(self.note_id)
        return self.discussion_id
