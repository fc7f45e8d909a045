"""Text the engine writes to GitHub.

Issue comments, the commit message and the pull request title and body
for a task. Kept together so the wording lives in one place.

Source:
- src/loom/github/models.py (GitHubIssue)
"""

from src.loom.github.models import GitHubIssue


BRANCH_PREFIX = "loom/issue-"

# Agent output excerpt length in PR bodies
PR_OUTPUT_EXCERPT_CHARS = 3000


def branch_name(issue_number: int) -> str:
    return f"{BRANCH_PREFIX}{issue_number}"


def format_started_comment(task_id: int) -> str:
    return (
        f"🤖 Loom is working on this issue (task #{task_id}). "
        "I'll open a PR when done."
    )


def format_success_comment(pr_url: str) -> str:
    return f"✅ Done! PR opened: {pr_url}"


def format_failure_comment(error_message: str) -> str:
    return f"❌ Loom failed to process this issue: {error_message}"


def format_commit_message(issue_number: int) -> str:
    return f"fix: resolve issue #{issue_number} via loom\n\nCloses #{issue_number}"


def format_pr_title(issue: GitHubIssue) -> str:
    return f"fix: {issue.title} (#{issue.number})"


def format_pr_body(issue: GitHubIssue, agent_output: str) -> str:
    """Build the pull request body.

    The agent output is cut to PR_OUTPUT_EXCERPT_CHARS characters and
    placed in a code block. The body ends with a closing keyword so
    merging the PR closes the issue.

    Args:
        issue: The issue being resolved.
        agent_output: Combined agent stdout/stderr.

    Returns:
        Markdown body for the pull request.
    """
    lines = [
        f"This PR was automatically generated by Loom to resolve issue #{issue.number}.",
        "",
        f"**Issue:** {issue.title}",
        "",
        "**Agent output:**",
        "```",
        agent_output[:PR_OUTPUT_EXCERPT_CHARS],
        "```",
        "",
        f"Closes #{issue.number}",
    ]
    return "\n".join(lines)
