"""Branch watch-pattern matching."""

import logging
import re

logger = logging.getLogger(__name__)


def _compile_glob(pattern: str) -> re.Pattern[str] | None:
    """Translate a ``*`` glob into an anchored regex, or None if it cannot compile."""
    regex = ".*".join(re.escape(part) for part in pattern.split("*"))
    try:
        return re.compile(f"^{regex}$")
    except re.error as e:
        logger.warning(f"Invalid branch pattern {pattern!r}, comparing literally: {e}")
        return None


def matches(branch_name: str, pattern: str | None) -> bool:
    """Check whether a branch matches a repository's watch-branch pattern.

    Args:
        branch_name: Branch to test (e.g. "release/1.2")
        pattern: Comma-separated list of globs where ``*`` matches zero or
            more characters. Empty or None matches every branch.

    Returns:
        True if any sub-pattern fully matches the branch name
    """
    if not pattern or not pattern.strip():
        return True

    subs = [raw.strip() for raw in pattern.split(",") if raw.strip()]
    if not subs:
        return True

    for sub in subs:
        compiled = _compile_glob(sub)
        if compiled is None:
            if branch_name == sub:
                return True
        elif compiled.match(branch_name):
            return True

    return False
