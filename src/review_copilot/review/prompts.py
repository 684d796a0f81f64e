"""Prompt templates for summary, per-file and batch review calls."""

SYSTEM_PROMPT = """You are an expert code reviewer. Review only the changed code and point out \
concrete, actionable problems.

## Review context
1. This is an internal project that values fast, frequent delivery.
2. The code is not public, so do not comment on contribution guides, READMEs or other \
open-source housekeeping.

## Output requirements
1. Start with exactly one statistics line:
   statistics: critical=<n> normal=<n> suggestion=<n>
2. Then list every critical issue on its own line:
   <file-path>:<line>[-<end-line>] <description>
3. Then list the remaining issues, one per line:
   <line>[-<end-line>]: [critical/normal/suggestion] <description>
4. Report only real problems, be brief and direct.
5. If there are no problems, reply only: LGTM!

## Example
statistics: critical=1 normal=1 suggestion=0
app/db.py:25 SQL injection risk, use a parameterized query
12: [normal] Variable name does not follow the naming convention
25: [critical] SQL injection risk, use a parameterized query
"""

OUTPUT_FORMAT = """
## Output format
Start with one line `statistics: critical=<n> normal=<n> suggestion=<n>`, then one line per \
critical issue as `<file-path>:<line>[-<end-line>] <description>`, then one line per \
remaining issue as `<line>[-<end-line>]: [critical/normal/suggestion] <description>`. \
Reply `LGTM!` when there are no problems."""

SUMMARY_SYSTEM_PROMPT = "You summarize code changes for reviewers. Answer in plain prose."


def build_review_prompt(
    title: str,
    filename: str,
    diff: str,
    description: str = "",
    summary: str = "",
) -> str:
    """Build the user prompt for reviewing one file.

    Args:
        title: Change title (merge request title or commit message)
        filename: Path of the file under review
        diff: Patch-formatted diff of the file
        description: Change description
        summary: Synopsis produced by the summary stage

    Returns:
        Prompt text
    """
    parts = [
        f"## Change\n{title}" if title else "",
        f"## Summary\n{summary}" if summary else "",
        f"## Description\n{description}" if description else "",
        f"## File\n{filename}",
        "```diff",
        diff,
        "```",
    ]
    return "\n".join(part for part in parts if part)


def build_summary_prompt(title: str, diffs: str, description: str = "") -> str:
    """Build the prompt asking for a short synopsis of the whole change."""
    return f"""Briefly summarize the following code change in under 100 words:

## {title}
{description or ''}

```diff
{diffs}
```"""


def build_batch_review_prompt(
    title: str,
    files: list[tuple[str, str]],
    description: str = "",
) -> str:
    """Build a single prompt reviewing every file of a large change.

    Args:
        title: Change title
        files: (path, patch) pairs in diff order
        description: Change description

    Returns:
        Prompt text
    """
    file_list = "\n".join(f"- {path}" for path, _ in files)
    sections = "\n".join(f"\n### {path}\n```diff\n{patch}\n```" for path, patch in files)
    description_block = f"## Description\n{description}\n" if description else ""

    return f"""Review the code changes in the following {len(files)} files.

## Change
{title}
{description_block}
## Changed files
{file_list}

## Focus
Code quality, likely bugs, security and performance. Give concrete line numbers and group \
the findings by file.

## Output format
statistics: critical=<n> normal=<n> suggestion=<n>
<file-path>:<line>[-<end-line>] <description>    (one line per critical issue)

## <file-path>
<line>[-<end-line>]: [critical/normal/suggestion] <description>

(Reply LGTM! if there are no problems.)

## Code changes
{sections}"""


def record_prompt(system_prompt: str, user_prompt: str) -> str:
    """Combine both prompts into the text stored for audit."""
    return f"=== System Prompt ===\n{system_prompt}\n\n=== User Prompt ===\n{user_prompt}"
