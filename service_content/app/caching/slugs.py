"""
Slug derivation and the slug registry.

``slugify`` is a pure function of the display name. The registry memoizes the
slug of each (name, path) pair in the cache store and disambiguates sibling
collisions with a short hash of the full path, so the result only depends on
the inputs and on which sibling claimed the plain slug first.
"""

import hashlib
import re
from typing import Any, Dict, List, Optional

from shared.logging import get_logger

from .cache_store import CacheStore
from .keys import CacheKey, EntryKind, is_within, normalize_path, parent_path

_WHITESPACE = re.compile(r"\s+")
_DISALLOWED = re.compile(r"[^a-z0-9-]+")
_HYPHENS = re.compile(r"-{2,}")
_VARIANT_SUFFIX = re.compile(r"\s+[vV]\d+$")

FALLBACK_SLUG = "item"


def slugify(text: str) -> str:
    """
    Lowercase, trim, whitespace runs to ``-``, drop anything outside
    ``[a-z0-9-]``, collapse repeated hyphens and trim them from both ends.
    """
    slug = text.lower().strip()
    slug = _WHITESPACE.sub("-", slug)
    slug = _DISALLOWED.sub("", slug)
    slug = _HYPHENS.sub("-", slug)
    return slug.strip("-")


def deslugify(slug: str) -> str:
    """Render a slug back into a display title."""
    return re.sub(r"\b\w", lambda match: match.group(0).upper(), slug.replace("-", " "))


def path_hash(path: str, length: int = 6) -> str:
    return hashlib.sha1(normalize_path(path).encode("utf-8")).hexdigest()[:length]


class SlugRegistry:
    """Derived-value cache mapping (name, path) to a URL-safe slug."""

    def __init__(self, store: CacheStore, strip_variant_suffix: bool = False):
        self.store = store
        self.strip_variant_suffix = strip_variant_suffix
        self.logger = get_logger("content.slugs")
        # parent directory -> slug -> owning path
        self._claims: Dict[str, Dict[str, str]] = {}
        self._by_path: Dict[str, str] = {}

    def base_slug(self, name: str) -> str:
        if self.strip_variant_suffix:
            name = _VARIANT_SUFFIX.sub("", name)
        return slugify(name) or FALLBACK_SLUG

    def _claim(self, path: str, slug: str) -> None:
        parent = parent_path(path) or ""
        self._claims.setdefault(parent, {})[slug] = path
        self._by_path[path] = slug

    def _assign(self, name: str, path: str) -> str:
        parent = parent_path(path) or ""
        claims = self._claims.setdefault(parent, {})
        slug = self.base_slug(name)
        owner = claims.get(slug)
        if owner is not None and owner != path:
            slug = f"{slug}-{path_hash(path)}"
            self.logger.debug("Slug collision, disambiguating by path", path=path, slug=slug, owner=owner)
        self._claim(path, slug)
        return slug

    def get_cached_slug(self, name: str, path: str) -> str:
        """Slug for ``path``; computed and cached on first call."""
        path = normalize_path(path)
        key = CacheKey.slug(path)

        entry = self.store.peek(key)
        if entry is not None and isinstance(entry.value, dict) and entry.value.get("slug"):
            slug = entry.value["slug"]
            if self._by_path.get(path) != slug:
                self._claim(path, slug)
            return slug

        slug = self._by_path.get(path)
        if slug is None:
            slug = self._assign(name, path)
        self.store.put_local(key, {"source_name": name, "source_path": path, "slug": slug}, ttl=None)
        return slug

    def annotate(self, listing: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Return copies of the listing items with their ``slug`` filled in."""
        slugs: Dict[int, str] = {}
        # Path order makes the first claimant of a colliding slug deterministic
        for index in sorted(range(len(listing)), key=lambda i: listing[i].get("path", "")):
            item = listing[index]
            slugs[index] = self.get_cached_slug(item.get("name", ""), item.get("path", ""))
        return [dict(item, slug=slugs[index]) for index, item in enumerate(listing)]

    def find_path(self, dir_path: str, slug: str) -> Optional[str]:
        """Path of the child of ``dir_path`` currently owning ``slug``."""
        return self._claims.get(normalize_path(dir_path), {}).get(slug)

    def forget(self, path_prefix: str) -> int:
        """Drop the claims of every path at or below ``path_prefix``."""
        doomed = [path for path in self._by_path if is_within(path, path_prefix)]
        for path in doomed:
            slug = self._by_path.pop(path)
            claims = self._claims.get(parent_path(path) or "", {})
            if claims.get(slug) == path:
                del claims[slug]
        return len(doomed)

    def reset(self) -> None:
        self._claims.clear()
        self._by_path.clear()

    async def hydrate(self) -> int:
        """Rebuild the claims from persisted slug entries."""
        restored = 0
        for entry in await self.store.load_kind(EntryKind.SLUG):
            value = entry.value
            if isinstance(value, dict) and value.get("slug"):
                self._claim(entry.key.path, value["slug"])
                restored += 1
        if restored:
            self.logger.info("Restored persisted slugs", count=restored)
        return restored
