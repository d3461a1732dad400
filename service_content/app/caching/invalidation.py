"""
Targeted cache invalidation.
"""

from fnmatch import fnmatchcase
from typing import Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector

from .cache_store import CacheStore
from .keys import CacheKey, EntryKind, ancestor_paths, normalize_path
from .slugs import SlugRegistry

GLOB_CHARACTERS = "*?["


class InvalidationEngine:
    """Removes cache entries that depend on a changed path."""

    def __init__(self, store: CacheStore, slugs: Optional[SlugRegistry] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.store = store
        self.slugs = slugs
        self.metrics = metrics
        self.logger = get_logger("content.invalidation")

    async def invalidate_cache_path(self, path: str, kind: Optional[EntryKind] = None, source: str = "api") -> bool:
        """
        Remove the listing for ``path``, the ``kind`` entry for it (if given)
        and the listing of every ancestor directory. Descendants are untouched.
        """
        path = normalize_path(path)
        kind = EntryKind(kind) if kind is not None else None
        keys = [CacheKey.listing(path)]
        if kind is not None and kind is not EntryKind.LISTING:
            keys.append(CacheKey(kind, path))
        if path:
            keys.extend(CacheKey.listing(ancestor) for ancestor in ancestor_paths(path) + [""])

        removed = 0
        for key in keys:
            if await self.store.invalidate(key):
                removed += 1

        if kind is EntryKind.SLUG and self.slugs is not None:
            self.slugs.forget(path)

        self._count(removed, source)
        self.logger.info("Invalidated cache path", path=path, kind=kind.value if kind else None, removed=removed)
        return removed > 0

    async def invalidate_cache_by_pattern(self, pattern: str, source: str = "api") -> int:
        """
        Remove every entry whose path matches ``pattern``.

        Glob patterns are matched against whole paths (``*`` crosses ``/``);
        a plain path is treated as a prefix and also drops ancestor listings.
        """
        if any(character in pattern for character in GLOB_CHARACTERS):
            glob = normalize_path(pattern)
            matched = []

            def matches(key: CacheKey) -> bool:
                if fnmatchcase(key.path, glob):
                    matched.append(key.path)
                    return True
                return False

            count = await self.store.invalidate_matching(matches)
            if self.slugs is not None:
                for path in set(matched):
                    self.slugs.forget(path)
        else:
            prefix = normalize_path(pattern)
            count = await self.store.invalidate_prefix(prefix)
            if self.slugs is not None:
                self.slugs.forget(prefix)

        self._count(count, source)
        self.logger.info("Invalidated cache by pattern", pattern=pattern, removed=count)
        return count

    def _count(self, amount: int, source: str) -> None:
        if self.metrics and amount:
            self.metrics.increment_counter("cache_invalidations_total", amount, source=source)
