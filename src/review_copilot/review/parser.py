"""Parse free-text model replies into severity counts and critical findings.

Two reply dialects are understood:

- the statistics dialect, a single line such as
  ``statistics: critical=1 normal=2 suggestion=0`` followed by one line per
  critical issue in the form ``path/to/file.py:12[-14] description``;
- the legacy dialect, one line per issue in the form
  ``12[-14]: [critical] description`` optionally grouped under file headings.

The statistics line is authoritative when present. The legacy scan is used
when it is missing or reports nothing.
"""

import logging
import re
from dataclasses import dataclass

from review_copilot.models.findings import ParsedReview, ReviewCounts, ReviewItem, Severity

logger = logging.getLogger(__name__)

LGTM = "LGTM!"

_SEP = r"[\s,，;；]*"
_EQ = r"\s*[=:：]\s*"

STATS_PATTERN = re.compile(
    r"(?:statistics|stats|统计)[*`\s]*[:：]\s*"
    rf"(?:critical|严重){_EQ}(?P<critical>\d+){_SEP}"
    rf"(?:normal|一般){_EQ}(?P<normal>\d+){_SEP}"
    rf"(?:suggestions?|建议){_EQ}(?P<suggestion>\d+)",
    re.IGNORECASE,
)

CRITICAL_ITEM_PATTERN = re.compile(
    r"^\s*(?:[-*]\s*)?`?(?P<path>[^\s:`]+):(?P<line>\d+)(?:-(?P<end>\d+))?`?\s+(?P<desc>.+)$"
)

LEGACY_LINE_PATTERN = re.compile(r"^(\d+)(?:-(\d+))?:\s*(.*)$")

FILE_HEADING_PATTERN = re.compile(
    r"^\s*(?:#{1,6}\s+|File:\s*|文件[:：]\s*|【文件】\s*)`?(?P<path>[^\s`]+)`?\s*$",
    re.IGNORECASE,
)

SEVERITY_TAGS = {
    Severity.CRITICAL: re.compile(r"\[(?:critical|严重)\]", re.IGNORECASE),
    Severity.SUGGESTION: re.compile(r"\[(?:suggestion|建议)\]", re.IGNORECASE),
    Severity.NORMAL: re.compile(r"\[(?:normal|一般)\]", re.IGNORECASE),
}

LEADING_TAG = re.compile(r"^\[(?:critical|normal|suggestion|严重|一般|建议)\]\s*", re.IGNORECASE)

CRITICAL_KEYWORDS = ("严重", "critical", "security", "vulnerability", "bug", "error", "breaking")
SUGGESTION_KEYWORDS = ("建议", "suggestion", "consider", "could", "might")

STRUCTURED_LABELS = {
    "issue": ("问题", "issue", "problem"),
    "impact": ("影响", "impact"),
    "fix": ("建议", "fix", "suggestion"),
}
DEFAULT_IMPACT = "May introduce functional, stability or maintainability risk."
DEFAULT_FIX = "Fix this and add regression coverage where needed."


def infer_severity(text: str) -> Severity:
    """Infer a severity from bracketed tags, falling back to keywords."""
    for severity, pattern in SEVERITY_TAGS.items():
        if pattern.search(text):
            return severity

    lowered = text.lower()
    if any(word in lowered for word in CRITICAL_KEYWORDS):
        return Severity.CRITICAL
    if any(word in lowered for word in SUGGESTION_KEYWORDS):
        return Severity.SUGGESTION
    return Severity.NORMAL


def clean_content(text: str) -> str:
    """Strip a leading severity tag and surrounding whitespace."""
    return LEADING_TAG.sub("", text.strip()).strip()


def _find_statistics(lines: list[str]) -> tuple[int, ReviewCounts] | None:
    for index, line in enumerate(lines):
        match = STATS_PATTERN.search(line)
        if match:
            return index, ReviewCounts(
                critical=int(match.group("critical")),
                normal=int(match.group("normal")),
                suggestion=int(match.group("suggestion")),
            )
    return None


def _looks_like_path(path: str) -> bool:
    # "localhost:8080" is a host and port, not a file and line
    return not path.isdigit() and ("/" in path or "." in path)


def _critical_item(line: str) -> ReviewItem | None:
    match = CRITICAL_ITEM_PATTERN.match(line)
    if not match or not _looks_like_path(match.group("path")):
        return None
    end = match.group("end")
    return ReviewItem(
        file_path=match.group("path"),
        line=int(match.group("line")),
        line_end=int(end) if end else None,
        severity=Severity.CRITICAL,
        content=clean_content(match.group("desc")),
    )


def _heading_path(line: str) -> str | None:
    match = FILE_HEADING_PATTERN.match(line)
    if not match:
        return None
    path = match.group("path")
    # Headings like "## Summary" are section titles, not files.
    if _looks_like_path(path):
        return path
    return ""


def _parse_legacy(lines: list[str], default_file_path: str | None) -> list[ReviewItem]:
    """Scan ``<line>[-<end>]: text`` entries with multi-line continuation."""
    items: list[ReviewItem] = []
    current_path = default_file_path
    start: tuple[int, int | None, Severity] | None = None
    content: list[str] = []

    def flush() -> None:
        if start is None:
            return
        text = clean_content("\n".join(content))
        if text and text != LGTM:
            line, end, severity = start
            items.append(
                ReviewItem(
                    file_path=current_path,
                    line=line,
                    line_end=end,
                    severity=severity,
                    content=text,
                )
            )

    for line in lines:
        match = LEGACY_LINE_PATTERN.match(line.strip())
        if match:
            flush()
            rest = match.group(3) or ""
            start = (
                int(match.group(1)),
                int(match.group(2)) if match.group(2) else None,
                infer_severity(rest or line),
            )
            content = [rest] if rest.strip() else []
            continue

        heading = _heading_path(line)
        if heading is not None or STATS_PATTERN.search(line) or _critical_item(line):
            flush()
            start, content = None, []
            if heading:
                current_path = heading
            continue

        if start is not None:
            content.append(line)

    flush()
    return items


def parse_review(
    text: str,
    default_file_path: str | None = None,
    max_critical_items: int = 10,
) -> ParsedReview:
    """Parse one model reply.

    Args:
        text: Raw model reply
        default_file_path: File the reply is about (single-file reviews)
        max_critical_items: Cap on extracted critical items

    Returns:
        Parsed counts and items. Never raises; unrecognized text yields
        zero counts with ``dialect="none"``.
    """
    text = text or ""
    lines = text.splitlines()

    stats = _find_statistics(lines)
    strict_items: list[ReviewItem] = []
    if stats is not None:
        stats_index, counts = stats
        for index, line in enumerate(lines):
            if index == stats_index:
                continue
            item = _critical_item(line)
            if item is None:
                continue
            strict_items.append(item)
            if len(strict_items) >= max_critical_items:
                break

    legacy_items = _parse_legacy(lines, default_file_path)

    if stats is not None and not stats[1].is_empty:
        return ParsedReview(
            counts=stats[1],
            critical_items=strict_items,
            items=legacy_items,
            dialect="statistics",
        )

    if legacy_items:
        counts = ReviewCounts()
        for item in legacy_items:
            counts.add(item.severity)
        legacy_critical = [item for item in legacy_items if item.severity is Severity.CRITICAL]
        critical_items = strict_items or legacy_critical
        return ParsedReview(
            counts=counts,
            critical_items=critical_items[:max_critical_items],
            items=legacy_items,
            dialect="legacy",
        )

    if stats is not None:
        return ParsedReview(counts=stats[1], critical_items=strict_items, dialect="statistics")

    if text.strip() == LGTM:
        return ParsedReview(dialect="legacy")

    if text.strip():
        logger.warning(
            f"Unrecognized review reply for {default_file_path or 'change'}, counting as zero"
        )
    return ParsedReview()


def _labelled(segment: str) -> tuple[str | None, str]:
    for key, labels in STRUCTURED_LABELS.items():
        for label in labels:
            match = re.match(rf"{label}\s*[:：]\s*", segment, re.IGNORECASE)
            if match:
                return key, segment[match.end():].strip()
    return None, segment


@dataclass
class StructuredFinding:
    """A finding split into issue, impact and fix parts."""

    issue: str
    impact: str
    fix: str


def parse_structured_finding(content: str) -> StructuredFinding:
    """Split ``Issue: ... | Impact: ... | Fix: ...`` content.

    Missing parts fall back to the whole content for the issue and to
    generic text for impact and fix.
    """
    clean = content.strip()
    parts: dict[str, str] = {}

    for segment in re.split(r"[|｜]", clean):
        key, value = _labelled(segment.strip())
        if key and key not in parts:
            parts[key] = value

    return StructuredFinding(
        issue=parts.get("issue") or clean,
        impact=parts.get("impact") or DEFAULT_IMPACT,
        fix=parts.get("fix") or DEFAULT_FIX,
    )
