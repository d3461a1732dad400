"""
Typed cache keys.

Every cache entry is addressed by an entry kind plus a normalized repository
path, so a directory listing and the commit info of the same path can never
collide.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional


class EntryKind(str, Enum):
    """Kinds of values held by the cache store."""

    LISTING = "listing"
    JSON = "json"
    COMMIT = "commit"
    THUMBNAIL = "thumbnail"
    SLUG = "slug"


def normalize_path(path: str) -> str:
    """Normalize a repository path: forward slashes, no empty segments, no edge slashes."""
    parts = [part for part in path.replace("\\", "/").split("/") if part]
    return "/".join(parts)


def parent_path(path: str) -> Optional[str]:
    """Return the parent directory of ``path`` (``""`` for top-level entries, None for the root)."""
    normalized = normalize_path(path)
    if not normalized:
        return None
    if "/" not in normalized:
        return ""
    return normalized.rsplit("/", 1)[0]


def ancestor_paths(path: str) -> List[str]:
    """
    Return every ancestor directory of ``path``, nearest first.

    ``"A/B/C"`` yields ``["A/B", "A"]``; the repository root is not included.
    """
    parts = normalize_path(path).split("/")
    return ["/".join(parts[:i]) for i in range(len(parts) - 1, 0, -1)]


def is_within(path: str, prefix: str) -> bool:
    """True when ``path`` equals ``prefix`` or lies underneath it."""
    prefix = normalize_path(prefix)
    if not prefix:
        return True
    return path == prefix or path.startswith(prefix + "/")


@dataclass(frozen=True)
class CacheKey:
    """Entry kind plus normalized repository path."""

    kind: EntryKind
    path: str

    def __post_init__(self):
        object.__setattr__(self, "kind", EntryKind(self.kind))
        object.__setattr__(self, "path", normalize_path(self.path))

    @property
    def storage_key(self) -> str:
        return f"{self.kind.value}:{self.path}"

    @classmethod
    def from_storage_key(cls, storage_key: str) -> "CacheKey":
        kind, _, path = storage_key.partition(":")
        return cls(EntryKind(kind), path)

    @classmethod
    def listing(cls, path: str) -> "CacheKey":
        return cls(EntryKind.LISTING, path)

    @classmethod
    def json(cls, path: str) -> "CacheKey":
        return cls(EntryKind.JSON, path)

    @classmethod
    def commit(cls, path: str) -> "CacheKey":
        return cls(EntryKind.COMMIT, path)

    @classmethod
    def thumbnail(cls, path: str) -> "CacheKey":
        return cls(EntryKind.THUMBNAIL, path)

    @classmethod
    def slug(cls, path: str) -> "CacheKey":
        return cls(EntryKind.SLUG, path)

    def __str__(self) -> str:
        return self.storage_key
