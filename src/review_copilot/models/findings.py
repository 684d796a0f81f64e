"""Finding models for parsed review output."""

from dataclasses import dataclass, field
from enum import Enum

# Result key used when the whole change is reviewed in one call
BATCH_KEY = "batch_review"


class Severity(Enum):
    """Severity levels for findings.

    - CRITICAL: Must fix before merge (security, crashes, data loss, clear bugs).
    - NORMAL: Should fix; correctness or maintainability problems.
    - SUGGESTION: Optional improvement.
    """

    CRITICAL = "critical"
    NORMAL = "normal"
    SUGGESTION = "suggestion"

    @property
    def weight(self) -> int:
        """Sort weight, higher is more severe."""
        return {Severity.CRITICAL: 3, Severity.NORMAL: 2, Severity.SUGGESTION: 1}[self]


@dataclass
class ReviewCounts:
    """Critical/normal/suggestion statistics triple."""

    critical: int = 0
    normal: int = 0
    suggestion: int = 0

    @property
    def total(self) -> int:
        """Sum of all three counts."""
        return self.critical + self.normal + self.suggestion

    @property
    def is_empty(self) -> bool:
        """True when every count is zero."""
        return self.total == 0

    def __add__(self, other: "ReviewCounts") -> "ReviewCounts":
        return ReviewCounts(
            critical=self.critical + other.critical,
            normal=self.normal + other.normal,
            suggestion=self.suggestion + other.suggestion,
        )

    def add(self, severity: Severity) -> None:
        """Increment the counter for one severity."""
        if severity is Severity.CRITICAL:
            self.critical += 1
        elif severity is Severity.NORMAL:
            self.normal += 1
        else:
            self.suggestion += 1


@dataclass
class ReviewItem:
    """A single severity-classified item extracted from model output."""

    file_path: str | None
    line: int
    line_end: int | None
    severity: Severity
    content: str

    def __post_init__(self) -> None:
        """Drop degenerate ranges (end before or equal to start)."""
        if self.line_end is not None and self.line_end <= self.line:
            self.line_end = None

    @property
    def location(self) -> str:
        """Human readable ``path:line[-end]`` location."""
        path = self.file_path or "unknown"
        if self.line_end:
            return f"{path}:{self.line}-{self.line_end}"
        return f"{path}:{self.line}"


@dataclass
class ParsedReview:
    """Result of parsing one model response."""

    counts: ReviewCounts = field(default_factory=ReviewCounts)
    critical_items: list[ReviewItem] = field(default_factory=list)
    items: list[ReviewItem] = field(default_factory=list)
    dialect: str = "none"  # "statistics", "legacy" or "none"

    @property
    def is_uncertain(self) -> bool:
        """True when nothing recognizable was parsed."""
        return self.dialect == "none"


@dataclass
class FileReviewResult:
    """Outcome of reviewing one file (or the whole change in batch mode)."""

    file_path: str
    response: str
    prompt: str
    counts: ReviewCounts
    critical_items: list[ReviewItem] = field(default_factory=list)

    @property
    def has_issues(self) -> bool:
        """True when any issue was counted for this unit."""
        return not self.counts.is_empty

    @property
    def is_batch(self) -> bool:
        """True when this result covers the whole change rather than one file."""
        return self.file_path == BATCH_KEY

    @property
    def risk_score(self) -> int:
        """Weighted score used to rank files by risk."""
        return self.counts.critical * 5 + self.counts.normal * 2 + self.counts.suggestion
