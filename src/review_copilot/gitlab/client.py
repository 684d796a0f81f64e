"""GitLab REST API client for merge request and commit operations."""

import logging
from typing import Any
from urllib.parse import urlsplit

import httpx

from review_copilot.models.changes import ChangeDiff, ChangeMetadata, CommentRef, DiffRefs

logger = logging.getLogger(__name__)

PAGE_SIZE = 100


def normalize_api_base_url(base_url: str) -> str:
    """Reduce any GitLab URL to ``<scheme>://<host>/api/v4``.

    Args:
        base_url: GitLab instance URL, with or without a path

    Returns:
        REST API base URL
    """
    parts = urlsplit(base_url.strip())
    if not parts.scheme or not parts.netloc:
        raise ValueError(f"Invalid GitLab URL: {base_url!r}")
    return f"{parts.scheme}://{parts.netloc}/api/v4"


def _comment_ref(data: dict[str, Any]) -> CommentRef:
    """Build a comment reference from a discussion, note or commit comment payload."""
    notes = data.get("notes") or []
    if notes and isinstance(notes[0], dict):
        # Discussion payload: the comment itself is the first note
        return CommentRef(note_id=notes[0].get("id"), discussion_id=data.get("id"), raw=data)
    if "individual_note" in data:
        return CommentRef(discussion_id=data.get("id"), raw=data)
    return CommentRef(note_id=data.get("id") or data.get("note_id"), raw=data)


class GitLabClient:
    """Client for GitLab API operations."""

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: float = 30,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the GitLab client.

        Args:
            base_url: GitLab instance URL
            token: Personal or project access token
            timeout: Request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.api_url = normalize_api_base_url(base_url)
        self._client = httpx.AsyncClient(
            base_url=self.api_url,
            headers={"PRIVATE-TOKEN": token},
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> "GitLabClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.close()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._client.request(method, path, **kwargs)
        if response.is_error:
            logger.error(
                f"GitLab {method} {path} failed: {response.status_code} {response.text[:300]}"
            )
        response.raise_for_status()
        return response.json()

    async def _paginate(
        self, path: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """GET every page of a list endpoint, following ``X-Next-Page``."""
        items: list[dict[str, Any]] = []
        page: str | None = "1"
        while page:
            response = await self._client.get(
                path, params={**(params or {}), "per_page": PAGE_SIZE, "page": page}
            )
            if response.is_error:
                logger.error(
                    f"GitLab GET {path} failed: {response.status_code} {response.text[:300]}"
                )
            response.raise_for_status()
            items.extend(response.json() or [])
            page = response.headers.get("X-Next-Page", "").strip()
        return items

    async def get_change_metadata(self, project_id: int, iid: int) -> ChangeMetadata:
        """Get merge request metadata.

        Args:
            project_id: GitLab project id
            iid: Merge request iid

        Returns:
            Title, description, branches, author and diff refs
        """
        data = await self._request("GET", f"/projects/{project_id}/merge_requests/{iid}")
        return ChangeMetadata.from_api(data)

    async def get_full_diff(self, project_id: int, iid: int) -> list[ChangeDiff]:
        """Get every changed file of a merge request across all of its commits."""
        data = await self._request(
            "GET",
            f"/projects/{project_id}/merge_requests/{iid}/changes",
            params={"access_raw_diffs": "true"},
        )
        changes = data.get("changes", []) if isinstance(data, dict) else data
        if isinstance(data, dict) and data.get("overflow"):
            logger.warning(
                f"GitLab capped the file list of !{iid} in project {project_id}: "
                f"reviewing {len(changes or [])} files"
            )
        return [ChangeDiff.from_api(item) for item in changes or []]

    async def get_commit_diff(self, project_id: int, sha: str) -> list[ChangeDiff]:
        """Get the diff of a single commit, across every page."""
        data = await self._paginate(f"/projects/{project_id}/repository/commits/{sha}/diff")
        return [ChangeDiff.from_api(item) for item in data]

    async def create_thread_comment(
        self,
        project_id: int,
        iid: int,
        body: str,
        position: dict[str, Any] | None = None,
        diff_refs: DiffRefs | None = None,
    ) -> CommentRef:
        """Start a merge request discussion.

        Args:
            project_id: GitLab project id
            iid: Merge request iid
            body: Comment body
            position: Optional file/line anchor (``old_path``, ``new_path``,
                ``new_line`` or ``old_line``)
            diff_refs: SHA triple required for positioned comments

        Returns:
            Reference holding the discussion id and first note id
        """
        payload: dict[str, Any] = {"body": body}
        if position and diff_refs:
            payload["position"] = {
                "base_sha": diff_refs.base_sha,
                "head_sha": diff_refs.head_sha,
                "start_sha": diff_refs.start_sha,
                "position_type": "text",
                **{k: v for k, v in position.items() if v is not None},
            }
        data = await self._request(
            "POST", f"/projects/{project_id}/merge_requests/{iid}/discussions", json=payload
        )
        return _comment_ref(data)

    async def update_thread_comment(
        self,
        project_id: int,
        iid: int,
        discussion_id: str,
        note_id: int | str,
        body: str,
    ) -> CommentRef:
        """Edit a note inside a merge request discussion."""
        data = await self._request(
            "PUT",
            f"/projects/{project_id}/merge_requests/{iid}/discussions/{discussion_id}/notes/{note_id}",
            json={"body": body},
        )
        ref = _comment_ref(data)
        ref.discussion_id = discussion_id
        return ref

    async def get_discussion(self, project_id: int, iid: int, discussion_id: str) -> CommentRef:
        """Get a merge request discussion (resolves its first note id)."""
        data = await self._request(
            "GET", f"/projects/{project_id}/merge_requests/{iid}/discussions/{discussion_id}"
        )
        return _comment_ref(data)

    async def create_commit_comment(
        self,
        project_id: int,
        sha: str,
        body: str,
        path: str | None = None,
        line: int | None = None,
    ) -> CommentRef:
        """Comment on a commit, optionally on a file line.

        A positioned comment the host rejects with 400 is retried once
        without its position.
        """
        url = f"/projects/{project_id}/repository/commits/{sha}/comments"
        note = body
        if path:
            location = f" (line {line})" if line else ""
            note = f"**File**: `{path}`{location}\n\n{body}"

        payload: dict[str, Any] = {"note": note}
        if path and line:
            payload.update({"path": path, "line": line, "line_type": "new"})

        try:
            data = await self._request("POST", url, json=payload)
        except httpx.HTTPStatusError as e:
            if e.response.status_code != 400 or "line" not in payload:
                raise
            logger.warning(f"Positioned commit comment rejected on {sha[:8]}, retrying without line")
            data = await self._request("POST", url, json={"note": note})
        return _comment_ref(data)

    async def update_commit_comment(
        self,
        project_id: int,
        sha: str,
        note_id: int | str,
        body: str,
    ) -> CommentRef:
        """Edit a commit comment, creating a new one if the host refuses the edit."""
        try:
            data = await self._request(
                "PUT",
                f"/projects/{project_id}/repository/commits/{sha}/comments/{note_id}",
                json={"note": body},
            )
        except httpx.HTTPStatusError as e:
            logger.warning(
                f"Could not update commit comment {note_id} ({e.response.status_code}), "
                "posting a new one"
            )
            return await self.create_commit_comment(project_id, sha, body)
        ref = _comment_ref(data)
        if ref.note_id is None:
            ref.note_id = int(note_id) if str(note_id).isdigit() else None
        return ref

    async def get_commit_comments(self, project_id: int, sha: str) -> list[dict[str, Any]]:
        """List the comments on a commit."""
        return await self._paginate(f"/projects/{project_id}/repository/commits/{sha}/comments")
