"""GitHub API integration for the orchestrator.

Wraps the REST endpoints for issues, pull requests, reviews and check
runs, plus the GraphQL auto-merge mutation.
"""

from src.issueflow.github.client import (
    GitHubAPIError,
    GitHubClient,
    IssueContext,
    RateLimitError,
    RepoRef,
)

__all__ = [
    "GitHubAPIError",
    "GitHubClient",
    "IssueContext",
    "RateLimitError",
    "RepoRef",
]
