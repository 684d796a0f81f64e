"""Pytest configuration and shared fixtures."""

import pytest

from review_copilot.config import (
    Config,
    DatabaseSettings,
    GitLabConfig,
    ModelConfig,
    PipelineSettings,
    RepositoryConfig,
    RepositoryRegistry,
)
from review_copilot.gitlab.formatter import CommentFormatter
from review_copilot.models.changes import ChangeDiff, ChangeMetadata, CommentRef, DiffRefs
from review_copilot.orchestrator.pipeline import ReviewPipeline
from review_copilot.review.prompts import SUMMARY_SYSTEM_PROMPT
from review_copilot.store.database import create_db_engine, create_session_factory
from review_copilot.store.repository import ReviewStore

HEAD_SHA = "a1b2c3d4e5f60718293a4b5c6d7e8f9012345678"

# GitLab returns per-file hunks without the ---/+++ header lines
SAMPLE_VULNERABLE_DIFF = """\
@@ -10,6 +10,10 @@ def authenticate(username: str, password: str) -> bool:
     hashed = hash_password(password)
     return db.verify_user(username, hashed)
+
+def get_user(username: str) -> dict:
+    query = f"SELECT * FROM users WHERE username = '{username}'"
+    return db.execute(query)
"""

SAMPLE_PERFORMANCE_DIFF = """\
@@ -5,6 +5,12 @@ def process_items(items: list) -> list:
     return [transform(item) for item in items]
+
+def find_duplicates(items: list) -> list:
+    duplicates = []
+    for i in range(len(items)):
+        for j in range(len(items)):
+            if i != j and items[i] == items[j] and items[i] not in duplicates:
+                duplicates.append(items[i])
+    return duplicates
"""

SAMPLE_CLEAN_DIFF = """\
@@ -1,3 +1,4 @@
 import os
+import sys

 def main():
"""


def make_diff(path: str, diff: str = SAMPLE_CLEAN_DIFF, **flags) -> ChangeDiff:
    """Build a changed file entry."""
    return ChangeDiff(old_path=path, new_path=path, diff=diff, **flags)


class FakeGitLab:
    """In-memory stand-in for GitLabClient that records every write."""

    def __init__(self, diffs: list[ChangeDiff] | None = None) -> None:
        self.diffs = diffs if diffs is not None else [make_diff("app/main.py")]
        self.metadata = ChangeMetadata(
            iid=7,
            id=1007,
            title="Add user lookup",
            description="Looks users up by name",
            source_branch="feature/lookup",
            target_branch="main",
            author_name="Dana",
            author_username="dana",
            diff_refs=DiffRefs(base_sha="b" * 40, head_sha=HEAD_SHA, start_sha="s" * 40),
        )
        self.commit_comments: list[dict] = []
        self.created_threads: list[tuple] = []
        self.updated_threads: list[tuple] = []
        self.created_commit_comments: list[tuple] = []
        self.updated_commit_comments: list[tuple] = []
        self.diff_requests: list[tuple] = []
        self._next_note = 100

    async def get_change_metadata(self, project_id, iid):
        return self.metadata

    async def get_full_diff(self, project_id, iid):
        self.diff_requests.append(("merge_request", project_id, iid))
        return self.diffs

    async def get_commit_diff(self, project_id, sha):
        self.diff_requests.append(("commit", project_id, sha))
        return self.diffs

    async def create_thread_comment(self, project_id, iid, body, position=None, diff_refs=None):
        self._next_note += 1
        self.created_threads.append((project_id, iid, body))
        return CommentRef(note_id=self._next_note, discussion_id=f"disc-{self._next_note}")

    async def update_thread_comment(self, project_id, iid, discussion_id, note_id, body):
        self.updated_threads.append((project_id, iid, discussion_id, str(note_id), body))
        return CommentRef(note_id=int(note_id), discussion_id=discussion_id)

    async def get_discussion(self, project_id, iid, discussion_id):
        return CommentRef(note_id=555, discussion_id=discussion_id)

    async def create_commit_comment(self, project_id, sha, body, path=None, line=None):
        self._next_note += 1
        self.created_commit_comments.append((project_id, sha, body))
        self.commit_comments.append({"id": self._next_note, "note": body})
        return CommentRef(note_id=self._next_note)

    async def update_commit_comment(self, project_id, sha, note_id, body):
        self.updated_commit_comments.append((project_id, sha, str(note_id), body))
        return CommentRef(note_id=int(note_id))

    async def get_commit_comments(self, project_id, sha):
        return list(self.commit_comments)

    async def close(self):
        pass


class FakeModelClient:
    """Model client returning canned replies and recording every call."""

    def __init__(
        self,
        review_reply: str = "statistics: critical=0 normal=1 suggestion=0",
        summary_reply: str = "Adds a user lookup helper.",
    ) -> None:
        self.review_reply = review_reply
        self.summary_reply = summary_reply
        self.calls: list[tuple[str, str]] = []

    @property
    def review_calls(self) -> list[tuple[str, str]]:
        return [call for call in self.calls if call[0] != SUMMARY_SYSTEM_PROMPT]

    @property
    def summary_calls(self) -> list[tuple[str, str]]:
        return [call for call in self.calls if call[0] == SUMMARY_SYSTEM_PROMPT]

    async def invoke(self, system_prompt, user_prompt, model):
        self.calls.append((system_prompt, user_prompt))
        if system_prompt == SUMMARY_SYSTEM_PROMPT:
            return self.summary_reply
        if callable(self.review_reply):
            return self.review_reply(user_prompt)
        return self.review_reply

    async def close(self):
        pass


@pytest.fixture
def model_config() -> ModelConfig:
    """Global default model."""
    return ModelConfig(
        name="default", provider="openai", model_id="gpt-4o", api_key="sk-test"
    )


@pytest.fixture
def repository() -> RepositoryConfig:
    """A watched repository with auto review on."""
    return RepositoryConfig(
        id="web",
        project_id=42,
        name="web",
        path="acme/web",
        auto_review=True,
        watch_branches="main, release/*",
    )


@pytest.fixture
def config(model_config, repository) -> Config:
    """Complete in-memory configuration."""
    return Config(
        gitlab=GitLabConfig(url="https://gitlab.example.com", token="glpat-test"),
        models={"default": model_config},
        default_model="default",
        repositories=[repository],
        pipeline=PipelineSettings(),
        database=DatabaseSettings(url="sqlite://"),
    )


@pytest.fixture
def registry(config) -> RepositoryRegistry:
    return RepositoryRegistry(config)


@pytest.fixture
def store() -> ReviewStore:
    """Empty in-memory store."""
    return ReviewStore(create_session_factory(create_db_engine("sqlite://")))


@pytest.fixture
def fake_gitlab() -> FakeGitLab:
    return FakeGitLab()


@pytest.fixture
def fake_model() -> FakeModelClient:
    return FakeModelClient()


@pytest.fixture
def formatter() -> CommentFormatter:
    return CommentFormatter("https://gitlab.example.com")


@pytest.fixture
def pipeline(config, store, registry, fake_gitlab, fake_model, formatter) -> ReviewPipeline:
    """Pipeline wired to fakes."""
    return ReviewPipeline(
        store=store,
        registry=registry,
        gitlab=fake_gitlab,
        model_client=fake_model,
        formatter=formatter,
        settings=config.pipeline,
    )


@pytest.fixture
def create_mr_run(store, repository):
    """Factory creating a pending merge request run."""

    def _create(**overrides):
        fields = {
            "repository_id": repository.id,
            "project_id": repository.project_id,
            "merge_request_iid": 7,
            "source_branch": "feature/lookup",
            "target_branch": "main",
            "commit_sha": HEAD_SHA,
            "commit_short_id": HEAD_SHA[:8],
            "title": "Add user lookup",
        }
        fields.update(overrides)
        return store.create_run(**fields)

    return _create


@pytest.fixture
def create_push_run(store, repository):
    """Factory creating a pending push run."""

    def _create(**overrides):
        fields = {
            "repository_id": repository.id,
            "project_id": repository.project_id,
            "merge_request_iid": 0,
            "source_branch": "main",
            "target_branch": "main",
            "commit_sha": HEAD_SHA,
            "commit_short_id": HEAD_SHA[:8],
            "title": "Fix login",
        }
        fields.update(overrides)
        return store.create_run(**fields)

    return _create
