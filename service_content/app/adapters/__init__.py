"""
Adapters package for the Content Service.

Contains the sources the cache reads through to: the GitHub REST/GraphQL
client and a local directory mirror for development. Adapters map remote
failures to shared errors and never touch the cache themselves.
"""

from .content_source import ContentSource
from .github_client import GitHubClient
from .local_source import LocalContentSource

__all__ = [
    "ContentSource",
    "GitHubClient",
    "LocalContentSource",
]
