"""GitHub API integration.

This module provides:
- GitHubClient: async REST client for issues, labels, branches and PRs
- Typed models for issues, pull requests and repositories
- Error types for API failures and rate limiting
"""

from src.loom.github.client import GitHubAPIError, GitHubClient, RateLimitError
from src.loom.github.models import (
    GitHubIssue,
    GitHubLabel,
    GitHubPullRequest,
    GitHubRepository,
    PRCreateRequest,
)

__all__ = [
    "GitHubAPIError",
    "GitHubClient",
    "GitHubIssue",
    "GitHubLabel",
    "GitHubPullRequest",
    "GitHubRepository",
    "PRCreateRequest",
    "RateLimitError",
]
