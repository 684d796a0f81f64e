"""Render review results as a single GitLab Markdown comment."""

import hashlib
from collections.abc import Iterable, Sequence
from typing import Protocol

from review_copilot.models.findings import BATCH_KEY, FileReviewResult, ReviewCounts, Severity
from review_copilot.review.parser import parse_structured_finding

MARKER_PREFIX = "review-copilot:run:"
TOP_RISK_FILES = 5

SEVERITY_LABELS = {
    Severity.CRITICAL: "🔴 Critical",
    Severity.NORMAL: "⚠️ Normal",
    Severity.SUGGESTION: "💡 Suggestion",
}


class FindingLike(Protocol):
    """Anything carrying a finding's location, severity and text."""

    file_path: str | None
    line: int
    line_end: int | None
    severity: Severity
    content: str


def run_marker(run_id: str) -> str:
    """Hidden marker identifying a run's comment."""
    return f"<!-- {MARKER_PREFIX}{run_id} -->"


def diff_anchor(file_path: str, line: int, line_end: int | None = None) -> str:
    """Anchor into GitLab's diff view: ``sha1(path)_<line>_<end>``."""
    end = line_end if line_end and line_end != line else line
    digest = hashlib.sha1(file_path.encode("utf-8")).hexdigest()
    return f"{digest}_{line}_{end}"


def location(finding: FindingLike) -> str:
    """``path:line[-end]`` text for a finding."""
    path = finding.file_path or "unknown"
    if finding.line_end and finding.line_end != finding.line:
        return f"{path}:{finding.line}-{finding.line_end}"
    return f"{path}:{finding.line}"


def conclusion(counts: ReviewCounts) -> str:
    """One-line risk verdict derived from the counts."""
    if counts.critical > 0:
        return f"High risk: {counts.critical} critical issue(s) found, fix before merging"
    if counts.normal > 0:
        return f"Medium risk: no critical issues, {counts.normal} normal issue(s) need attention"
    if counts.suggestion > 0:
        return f"Low risk: {counts.suggestion} suggestion(s) only"
    return "Pass: no obvious problems found"


def processing_order(counts: ReviewCounts) -> list[str]:
    """Numbered next steps, most urgent first."""
    if counts.critical > 0:
        return [
            "1. Fix every critical issue and verify the fix.",
            "2. Address normal issues before they grow in later iterations.",
            "3. Schedule suggestions by their benefit.",
        ]
    if counts.normal > 0:
        return [
            "1. Review can continue, but address the normal issues first.",
            "2. Suggestions can be scheduled after merging.",
        ]
    return [
        "1. Low risk, the merge can proceed.",
        "2. Consider the maintainability suggestions.",
    ]


class CommentFormatter:
    """Builds comment bodies and deep links for one GitLab instance."""

    def __init__(self, web_url: str, title: str = "Review Copilot") -> None:
        """Initialize the formatter.

        Args:
            web_url: GitLab web root (e.g. "https://gitlab.example.com")
            title: Header shown at the top of every comment
        """
        self.web_url = web_url.rstrip("/")
        self.title = title

    def diff_url(
        self,
        project_path: str,
        file_path: str,
        line: int,
        line_end: int | None = None,
        merge_request_iid: int | None = None,
        commit_sha: str | None = None,
    ) -> str:
        """Link to a line range in the merge request diff, or the commit view."""
        anchor = diff_anchor(file_path, line, line_end)
        base = f"{self.web_url}/{project_path.strip('/')}"
        if merge_request_iid:
            return f"{base}/-/merge_requests/{merge_request_iid}/diffs#{anchor}"
        return f"{base}/-/commit/{commit_sha}#{anchor}"

    def format_placeholder(self, run_id: str) -> str:
        """Body of the comment posted when a review starts."""
        return "\n".join(
            [
                f"## 🤖 {self.title}",
                "",
                "⏳ Review in progress. This comment will be updated with the results.",
                "",
                run_marker(run_id),
            ]
        )

    def format_review(
        self,
        run_id: str,
        project_path: str,
        counts: ReviewCounts,
        total_files: int,
        reviewed_files: int,
        summary: str | None,
        file_results: Sequence[FileReviewResult],
        findings: Iterable[FindingLike],
        responses: dict[str, str] | None = None,
        merge_request_iid: int | None = None,
        commit_sha: str | None = None,
    ) -> str:
        """Render the final review comment.

        Output depends only on the arguments, so publishing the same run
        twice produces the same body.
        """
        responses = responses or {}
        batch_mode = BATCH_KEY in responses
        files_with_issues = sum(1 for result in file_results if result.has_issues)

        lines = [
            f"## 🤖 {self.title}",
            "",
            f"> **Conclusion: {conclusion(counts)}**",
            "",
            "### Overview",
            f"- Files reviewed: {reviewed_files}/{total_files}"
            + ("" if batch_mode else f" ({files_with_issues} with issues)"),
            f"- Issues: 🔴 critical {counts.critical} / ⚠️ normal {counts.normal} / "
            f"💡 suggestion {counts.suggestion}",
        ]

        if summary:
            lines += ["", "### Summary", summary.strip()]

        lines.append("")
        if batch_mode:
            lines += ["### Findings", responses[BATCH_KEY].strip()]
        else:
            lines += self._findings_section(
                list(findings), project_path, merge_request_iid, commit_sha
            )
            lines += [""] + self._risk_section(file_results)

        lines += ["", "### Suggested processing order"] + processing_order(counts)
        lines += ["", run_marker(run_id)]
        return "\n".join(lines)

    def _findings_section(
        self,
        findings: list[FindingLike],
        project_path: str,
        merge_request_iid: int | None,
        commit_sha: str | None,
    ) -> list[str]:
        lines = ["### Findings"]
        if not findings:
            lines.append("- No critical issues blocking the merge.")
            return lines

        grouped: dict[str, list[FindingLike]] = {}
        for finding in findings:
            grouped.setdefault(finding.file_path or "", []).append(finding)

        for file_path, file_findings in grouped.items():
            lines += ["", f"#### `{file_path or 'unknown'}`"]
            for finding in file_findings:
                label = SEVERITY_LABELS[finding.severity]
                if file_path:
                    url = self.diff_url(
                        project_path,
                        file_path,
                        finding.line,
                        finding.line_end,
                        merge_request_iid=merge_request_iid,
                        commit_sha=commit_sha,
                    )
                    lines.append(f"- {label} [`{location(finding)}`]({url})")
                else:
                    # No file to link to
                    lines.append(f"- {label} `{location(finding)}`")
                if finding.severity is Severity.CRITICAL:
                    structured = parse_structured_finding(finding.content)
                    lines.append(f"  - Issue: {structured.issue}")
                    lines.append(f"  - Impact: {structured.impact}")
                    lines.append(f"  - Fix: {structured.fix}")
                else:
                    lines.append(f"  - {finding.content}")
        return lines

    def _risk_section(self, file_results: Sequence[FileReviewResult]) -> list[str]:
        lines = ["### Files at risk"]
        ranked = sorted(
            (result for result in file_results if result.has_issues),
            key=lambda result: result.risk_score,
            reverse=True,
        )[:TOP_RISK_FILES]
        if not ranked:
            lines.append("- No files with issues.")
            return lines
        for result in ranked:
            lines.append(
                f"- `{result.file_path}`: 🔴 {result.counts.critical} / "
                f"⚠️ {result.counts.normal} / 💡 {result.counts.suggestion}"
            )
        return lines
