"""Bridges package for external integrations."""

from trifecta_guard.bridges.github import GitHubRepositoryClient

__all__ = [
    "GitHubRepositoryClient",
]
