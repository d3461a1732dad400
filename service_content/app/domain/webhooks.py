"""
Push-notification boundary.

Turns a verified push notification into targeted cache invalidations: every
changed file, every ancestor directory of a changed file, and the content
roots the change touched.
"""

import hashlib
import hmac
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from shared.logging import get_logger, log_origin

from ..caching.invalidation import InvalidationEngine
from ..caching.keys import EntryKind, ancestor_paths, is_within, normalize_path
from .models import PushPayload

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".webp", ".gif")

logger = get_logger("content.webhooks")


@dataclass
class ChangeBatch:
    """Files added, modified and removed by one push."""

    added: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)

    def all_paths(self) -> List[str]:
        seen: Dict[str, None] = {}
        for path in self.added + self.modified + self.removed:
            seen.setdefault(normalize_path(path), None)
        return list(seen)


def verify_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """Check an ``X-Hub-Signature-256`` header against the raw request body."""
    if not signature or not signature.startswith("sha256="):
        return False
    expected = "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


def parse_push_payload(payload: Dict[str, Any]) -> ChangeBatch:
    push = PushPayload.model_validate(payload)
    batch = ChangeBatch()
    for commit in push.commits:
        batch.added.extend(commit.added)
        batch.modified.extend(commit.modified)
        batch.removed.extend(commit.removed)
    return batch


def affected_directories(paths: Iterable[str], roots: Iterable[str]) -> List[str]:
    """Every ancestor directory of ``paths`` plus the content roots they fall under."""
    paths = [normalize_path(path) for path in paths]
    directories = set()
    for path in paths:
        directories.update(ancestor_paths(path))
    for root in roots:
        root = normalize_path(root)
        if any(is_within(path, root) for path in paths):
            directories.add(root)
    return sorted(directories)


async def apply_change_batch(engine: InvalidationEngine, batch: ChangeBatch, roots: Iterable[str]) -> Dict[str, Any]:
    """Invalidate everything ``batch`` may have made stale and summarize the result."""
    paths = batch.all_paths()
    directories = affected_directories(paths, roots)
    removed = {normalize_path(path) for path in batch.removed}
    invalidated = 0

    with log_origin("webhook"):
        for directory in directories:
            # A directory's latest commit moves with its files
            if await engine.invalidate_cache_path(directory, EntryKind.COMMIT, source="webhook"):
                invalidated += 1

        for path in paths:
            kinds = [EntryKind.COMMIT]
            lowered = path.lower()
            if lowered.endswith(".json"):
                kinds.append(EntryKind.JSON)
            if lowered.endswith(IMAGE_EXTENSIONS):
                kinds.append(EntryKind.THUMBNAIL)
            if path in removed:
                kinds.append(EntryKind.SLUG)
            for kind in kinds:
                if await engine.invalidate_cache_path(path, kind, source="webhook"):
                    invalidated += 1

    result = {
        "added": len(batch.added),
        "modified": len(batch.modified),
        "removed": len(batch.removed),
        "directories": directories,
        "invalidated": invalidated,
    }
    logger.info(
        "Applied push invalidations",
        files=len(paths),
        directories=len(directories),
        invalidated=invalidated,
    )
    return result
