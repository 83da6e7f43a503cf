"""GitHub integration package.

Async REST client implementing the commit, pull request, deployment (workflow
run), repository and organization-member collectors.
"""

from .client import GitHubClient, GitHubClientError, RateLimitExceeded

__all__ = [
    "GitHubClient",
    "GitHubClientError",
    "RateLimitExceeded",
]
