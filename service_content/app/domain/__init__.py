"""
Domain models for the Content Service.

Pydantic models for remote payloads and the push-notification boundary
that turns change batches into invalidations.
"""

from .models import CommitInfo, ContentItem, PushPayload

__all__ = [
    "CommitInfo",
    "ContentItem",
    "PushPayload",
]
