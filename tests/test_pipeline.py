"""Tests for the review pipeline."""

from unittest.mock import AsyncMock

import httpx
import pytest

from conftest import SAMPLE_PERFORMANCE_DIFF, SAMPLE_VULNERABLE_DIFF, make_diff


class TestStageHelpers:
    """Tests for the stage selection helpers."""

    def test_review_stage_for(self):
        """Test choosing per-file or batch review by file count."""
        from review_copilot.orchestrator.pipeline import Stage, review_stage_for

        assert review_stage_for(0, 20) is Stage.AGGREGATE
        assert review_stage_for(1, 20) is Stage.REVIEW_FILE
        assert review_stage_for(20, 20) is Stage.REVIEW_FILE
        assert review_stage_for(21, 20) is Stage.REVIEW_BATCH

    def test_should_continue(self):
        """Test the per-file loop condition."""
        from review_copilot.orchestrator.pipeline import should_continue

        assert should_continue(0, 3)
        assert should_continue(2, 3)
        assert not should_continue(3, 3)
        assert not should_continue(0, 0)
        assert not should_continue(-1, 3)


class TestPipelineState:
    """Tests for PipelineState.merge()."""

    def test_merge_rules(self):
        """Test append, merge and overwrite semantics."""
        from review_copilot.models.findings import FileReviewResult, ReviewCounts
        from review_copilot.orchestrator.pipeline import PipelineState

        state = PipelineState(run_id="r1")
        first = FileReviewResult("a.py", "", "", ReviewCounts())
        second = FileReviewResult("b.py", "", "", ReviewCounts())

        state.merge({"file_results": [first], "responses": {"a.py": "x"}, "summary": "one"})
        state.merge({"file_results": [second], "responses": {"b.py": "y"}, "summary": "two"})

        assert state.file_results == [first, second]
        assert state.responses == {"a.py": "x", "b.py": "y"}
        assert state.summary == "two"

    def test_unknown_field(self):
        """Test that unknown update keys are rejected."""
        from review_copilot.orchestrator.pipeline import PipelineState

        with pytest.raises(AttributeError):
            PipelineState(run_id="r1").merge({"nonsense": 1})


class TestMergeRequestRuns:
    """End-to-end merge request runs against fake GitLab and model clients."""

    @pytest.mark.asyncio
    async def test_three_files_per_file_review(self, pipeline, store, fake_gitlab, fake_model, create_mr_run):
        """Test a small change reviewed file by file."""
        from review_copilot.store.models import RunStatus

        fake_gitlab.diffs = [make_diff(f"app/mod{n}.py") for n in range(3)]
        run = create_mr_run()

        state = await pipeline.run(run.id)

        loaded = store.require_run(run.id)
        assert loaded.status == RunStatus.COMPLETED
        assert loaded.total_files == 3
        assert loaded.reviewed_files == 3
        assert loaded.normal_issues == 3
        assert loaded.critical_issues == 0
        assert loaded.summary == "Adds a user lookup helper."
        assert loaded.model_provider == "openai"
        assert loaded.model_id == "gpt-4o"
        assert set(loaded.model_responses) == {"app/mod0.py", "app/mod1.py", "app/mod2.py"}
        assert "=== System Prompt ===" in loaded.review_prompts["app/mod0.py"]
        assert len(fake_model.summary_calls) == 1
        assert len(fake_model.review_calls) == 3
        assert len(fake_gitlab.created_threads) == 1
        assert state.comment.discussion_id == store.require_run(run.id).placeholder_discussion_id

    @pytest.mark.asyncio
    async def test_prompt_carries_title_and_summary(self, pipeline, fake_model, create_mr_run):
        """Test that file prompts include the change title, summary and patch."""
        run = create_mr_run()

        await pipeline.run(run.id)

        prompt = fake_model.review_calls[0][1]
        assert "## Change\nAdd user lookup" in prompt
        assert "## Summary\nAdds a user lookup helper." in prompt
        assert "--- a/app/main.py\n+++ b/app/main.py" in prompt

    @pytest.mark.asyncio
    async def test_large_change_reviewed_in_one_batch(self, pipeline, store, fake_gitlab, fake_model, create_mr_run):
        """Test that more files than the threshold use a single review call."""
        from review_copilot.gitlab.formatter import BATCH_KEY
        from review_copilot.store.models import RunStatus

        fake_gitlab.diffs = [make_diff(f"pkg/file{n}.py") for n in range(25)]
        run = create_mr_run()

        await pipeline.run(run.id)

        loaded = store.require_run(run.id)
        assert loaded.status == RunStatus.COMPLETED
        assert loaded.total_files == 25
        assert loaded.reviewed_files == 25
        assert len(fake_model.calls) == 2
        assert list(loaded.model_responses) == [BATCH_KEY]
        assert "pkg/file24.py" in fake_model.review_calls[0][1]

    @pytest.mark.asyncio
    async def test_batch_finding_without_file_keeps_empty_path(
        self, pipeline, store, fake_gitlab, fake_model, create_mr_run
    ):
        """Test that a batch finding naming no file is not stored under the result key."""
        from review_copilot.gitlab.formatter import BATCH_KEY

        fake_gitlab.diffs = [make_diff(f"pkg/file{n}.py") for n in range(25)]
        fake_model.review_reply = "12: [critical] possible null dereference"
        run = create_mr_run()

        await pipeline.run(run.id)

        loaded = store.require_run(run.id)
        assert loaded.critical_issues == 1
        assert [finding.file_path for finding in loaded.findings] == [""]
        assert BATCH_KEY not in {finding.file_path for finding in loaded.findings}

    @pytest.mark.asyncio
    async def test_deleted_files_skipped(self, pipeline, store, fake_gitlab, fake_model, create_mr_run):
        """Test that deleted files are not reviewed or counted."""
        fake_gitlab.diffs = [
            make_diff("app/kept.py", SAMPLE_VULNERABLE_DIFF),
            make_diff("app/gone.py", "", deleted_file=True),
        ]
        run = create_mr_run()

        await pipeline.run(run.id)

        loaded = store.require_run(run.id)
        assert loaded.total_files == 1
        assert list(loaded.model_responses) == ["app/kept.py"]
        assert len(fake_model.review_calls) == 1

    @pytest.mark.asyncio
    async def test_findings_capped(self, pipeline, store, fake_gitlab, fake_model, create_mr_run):
        """Test that counts are exact while stored findings stop at the cap."""
        fake_gitlab.diffs = [make_diff(f"app/mod{n}.py") for n in range(5)]
        fake_model.review_reply = "\n".join(
            [
                "statistics: critical=3 normal=0 suggestion=0",
                "app/x.py:1 first",
                "app/x.py:2 second",
                "app/x.py:3 third",
            ]
        )
        run = create_mr_run()

        await pipeline.run(run.id)

        loaded = store.require_run(run.id)
        assert loaded.critical_issues == 15
        assert len(loaded.findings) == 10
        assert all(finding.posted for finding in loaded.findings)

    @pytest.mark.asyncio
    async def test_legacy_reply_produces_finding(self, pipeline, store, fake_gitlab, fake_model, create_mr_run):
        """Test that a legacy critical line is counted and stored against its file."""
        from review_copilot.models.findings import Severity

        fake_gitlab.diffs = [make_diff("app/user.py", SAMPLE_PERFORMANCE_DIFF)]
        fake_model.review_reply = "12: [critical] possible null dereference"
        run = create_mr_run()

        await pipeline.run(run.id)

        loaded = store.require_run(run.id)
        assert loaded.critical_issues == 1
        assert len(loaded.findings) == 1
        finding = loaded.findings[0]
        assert finding.file_path == "app/user.py"
        assert finding.line == 12
        assert finding.severity is Severity.CRITICAL
        assert "possible null dereference" in fake_gitlab.created_threads[0][2]

    @pytest.mark.asyncio
    async def test_custom_prompt_extends_system_prompt(self, pipeline, repository, fake_model, create_mr_run):
        """Test that repository requirements are appended to the system prompt."""
        repository.custom_prompt = "Flag any use of eval."
        run = create_mr_run()

        await pipeline.run(run.id)

        system = fake_model.review_calls[0][0]
        assert system.endswith("## Repository requirements\nFlag any use of eval.")


class TestFailures:
    """Tests for runs that cannot finish."""

    @pytest.mark.asyncio
    async def test_no_files_fails_run(self, pipeline, store, fake_gitlab, fake_model, create_mr_run):
        """Test that an empty change fails without calling the model."""
        from review_copilot.orchestrator.pipeline import PipelineError
        from review_copilot.store.models import RunStatus

        fake_gitlab.diffs = []
        run = create_mr_run()

        with pytest.raises(PipelineError):
            await pipeline.run(run.id)

        loaded = store.require_run(run.id)
        assert loaded.status == RunStatus.FAILED
        assert "no files" in loaded.error
        assert fake_model.calls == []

    @pytest.mark.asyncio
    async def test_model_error_fails_run(self, pipeline, store, fake_model, create_mr_run):
        """Test that a model failure marks the run failed with its message."""
        from review_copilot.llm.client import ModelInvocationError
        from review_copilot.store.models import RunStatus

        fake_model.invoke = AsyncMock(side_effect=ModelInvocationError("model unavailable"))
        run = create_mr_run()

        with pytest.raises(ModelInvocationError):
            await pipeline.run(run.id)

        loaded = store.require_run(run.id)
        assert loaded.status == RunStatus.FAILED
        assert loaded.error == "model unavailable"

    @pytest.mark.asyncio
    async def test_unknown_repository_fails_run(self, pipeline, store, create_mr_run):
        """Test that a run for an unconfigured repository fails."""
        from review_copilot.config import ConfigurationError
        from review_copilot.store.models import RunStatus

        run = create_mr_run(repository_id="gone")

        with pytest.raises(ConfigurationError):
            await pipeline.run(run.id)

        assert store.require_run(run.id).status == RunStatus.FAILED

    @pytest.mark.asyncio
    async def test_push_without_sha_fails(self, pipeline, store, create_push_run):
        """Test that a push run needs a commit SHA."""
        from review_copilot.orchestrator.pipeline import PipelineError
        from review_copilot.store.models import RunStatus

        run = create_push_run(commit_sha="")

        with pytest.raises(PipelineError):
            await pipeline.run(run.id)

        assert store.require_run(run.id).status == RunStatus.FAILED

    @pytest.mark.asyncio
    async def test_missing_run_is_not_recorded(self, pipeline, store, caplog):
        """Test that an unknown run id is refused without recording an error."""
        from review_copilot.store.repository import RunNotFoundError

        with caplog.at_level("ERROR", logger="review_copilot.orchestrator.pipeline"):
            with pytest.raises(RunNotFoundError):
                await pipeline.run("missing")

        assert "Review not started" in caplog.text
        assert "after completion" not in caplog.text
        assert store.get_run("missing") is None

    @pytest.mark.asyncio
    async def test_completed_run_not_rerun(self, pipeline, store, fake_model, create_mr_run):
        """Test that a finished run stays completed when started again."""
        from review_copilot.orchestrator.pipeline import RunNotPendingError
        from review_copilot.store.models import RunStatus

        run = create_mr_run()
        await pipeline.run(run.id)
        calls = len(fake_model.calls)

        with pytest.raises(RunNotPendingError):
            await pipeline.run(run.id)

        loaded = store.require_run(run.id)
        assert loaded.status == RunStatus.COMPLETED
        assert loaded.error is None
        assert len(fake_model.calls) == calls

    @pytest.mark.asyncio
    async def test_publish_failure_keeps_completed_status(self, pipeline, store, fake_gitlab, create_mr_run):
        """Test that a failed publish records the error on a completed run."""
        from review_copilot.store.models import RunStatus

        fake_gitlab.create_thread_comment = AsyncMock(side_effect=httpx.ConnectError("down"))
        run = create_mr_run()

        with pytest.raises(httpx.ConnectError):
            await pipeline.run(run.id)

        loaded = store.require_run(run.id)
        assert loaded.status == RunStatus.COMPLETED
        assert loaded.error.startswith("publish:")


class TestPublish:
    """Tests for publishing and placeholder reuse."""

    @pytest.mark.asyncio
    async def test_publish_twice_updates_in_place(self, pipeline, store, fake_gitlab, create_mr_run):
        """Test that publishing again edits the same comment with the same body."""
        run = create_mr_run()
        state = await pipeline.run(run.id)

        await pipeline.publish(state)

        assert len(fake_gitlab.created_threads) == 1
        assert len(fake_gitlab.updated_threads) == 1
        created_body = fake_gitlab.created_threads[0][2]
        _, _, discussion_id, note_id, updated_body = fake_gitlab.updated_threads[0]
        assert updated_body == created_body
        loaded = store.require_run(run.id)
        assert discussion_id == loaded.placeholder_discussion_id
        assert note_id == loaded.placeholder_note_id

    @pytest.mark.asyncio
    async def test_placeholder_is_updated(self, pipeline, store, fake_gitlab, create_mr_run):
        """Test that an existing placeholder is edited instead of posting anew."""
        run = create_mr_run()
        store.set_placeholder(run.id, discussion_id="disc-1", note_id="5")

        await pipeline.run(run.id)

        assert fake_gitlab.created_threads == []
        assert fake_gitlab.updated_threads[0][2:4] == ("disc-1", "5")

    @pytest.mark.asyncio
    async def test_placeholder_note_resolved_from_discussion(self, pipeline, store, fake_gitlab, create_mr_run):
        """Test that a placeholder without a note id is resolved first."""
        run = create_mr_run()
        store.set_placeholder(run.id, discussion_id="disc-1")

        await pipeline.run(run.id)

        assert fake_gitlab.updated_threads[0][2:4] == ("disc-1", "555")
        assert store.require_run(run.id).placeholder_note_id == "555"

    @pytest.mark.asyncio
    async def test_push_review_comments_on_commit(self, pipeline, store, fake_gitlab, create_push_run):
        """Test that push runs review the commit diff and comment on the commit."""
        from review_copilot.gitlab.formatter import run_marker
        from review_copilot.store.models import RunStatus

        run = create_push_run()

        await pipeline.run(run.id)

        assert fake_gitlab.diff_requests == [("commit", 42, run.commit_sha)]
        assert len(fake_gitlab.created_commit_comments) == 1
        assert run_marker(run.id) in fake_gitlab.created_commit_comments[0][2]
        assert store.require_run(run.id).status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_push_placeholder_found_by_marker(self, pipeline, store, fake_gitlab, create_push_run):
        """Test that a push placeholder is located through the run marker."""
        from review_copilot.gitlab.formatter import run_marker

        run = create_push_run()
        fake_gitlab.commit_comments = [
            {"id": 70, "note": "unrelated"},
            {"id": 77, "note": f"in progress\n{run_marker(run.id)}"},
        ]

        await pipeline.run(run.id)

        assert fake_gitlab.created_commit_comments == []
        assert fake_gitlab.updated_commit_comments[0][2] == "77"
        assert store.require_run(run.id).placeholder_note_id == "77"
