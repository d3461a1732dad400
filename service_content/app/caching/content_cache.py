"""
Content cache facade.

The single entry point the rest of the service uses to read repository
content. Reads go memory -> persistent tier -> remote (coalesced per key),
NotFound results are cached briefly, and when the remote refuses or cannot be
reached a stale entry is served if one is inside the stale ceiling.
"""

import asyncio
import copy
import hashlib
import json
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

import httpx

from shared.errors import (
    ContentLayerException,
    InvalidDataError,
    NotFoundError,
    QuotaExhaustedError,
    UpstreamUnavailableError,
)
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..adapters.content_source import ContentSource
from ..adapters.github_client import GitHubClient
from ..adapters.local_source import LocalContentSource
from ..ratelimit.quota_tracker import QuotaTracker
from .cache_store import CacheEntry, CacheStore, Tier
from .invalidation import InvalidationEngine
from .keys import CacheKey, EntryKind, normalize_path
from .persistent import FilePersistentTier, PersistentTier, RedisPersistentTier
from .refresh import RefreshScheduler, RefreshStatus
from .slugs import SlugRegistry
from .warmup import WarmupCoordinator, WarmupStatus

DEFAULT_ROOTS = ["Character Cards", "World Books", "Chat Completion"]
IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".webp", ".gif")


@dataclass
class TTLPolicy:
    """Time-to-live per entry kind, in seconds."""

    listing: float = 30
    json: float = 1800
    commit: float = 1800
    thumbnail: float = 3600
    negative: float = 60

    def for_kind(self, kind: EntryKind) -> Optional[float]:
        if kind is EntryKind.SLUG:
            return None
        return {
            EntryKind.LISTING: self.listing,
            EntryKind.JSON: self.json,
            EntryKind.COMMIT: self.commit,
            EntryKind.THUMBNAIL: self.thumbnail,
        }[kind]


def git_blob_sha(content: bytes) -> str:
    """SHA-1 of ``content`` the way git names blobs."""
    header = f"blob {len(content)}\0".encode("utf-8")
    return hashlib.sha1(header + content).hexdigest()


def build_persistent_tier(config) -> Optional[PersistentTier]:
    backend = config.persistent_backend.lower()
    if backend == "file":
        return FilePersistentTier(config.persistent_cache_dir, config.persistent_max_size_mb * 1024 * 1024)
    if backend == "redis":
        return RedisPersistentTier(config.redis_url, retention_seconds=config.max_stale_seconds or 86400)
    if backend == "none":
        return None
    raise ValueError(f"Unknown persistent backend: {config.persistent_backend}")


class ContentCache:
    """Read-through cache over the content repository."""

    def __init__(
        self,
        source: ContentSource,
        store: CacheStore,
        quota: Optional[QuotaTracker] = None,
        *,
        roots: Optional[List[str]] = None,
        ttl: Optional[TTLPolicy] = None,
        strip_variant_suffix: bool = False,
        warmup_on_startup: bool = False,
        warmup_depth: int = 1,
        warm_concurrency: int = 5,
        use_batched_warmup: bool = True,
        refresh_interval_seconds: float = 0,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.source = source
        self.store = store
        self.quota = quota or QuotaTracker(clock=store.clock)
        self.roots = [normalize_path(root) for root in (roots if roots is not None else DEFAULT_ROOTS)]
        self.ttl = ttl or TTLPolicy()
        self.clock = store.clock
        self.metrics = metrics
        self.warmup_on_startup = warmup_on_startup
        self.refresh_interval_seconds = refresh_interval_seconds
        self.lookup_concurrency = max(1, warm_concurrency)
        self.logger = get_logger("content.cache")

        self.slugs = SlugRegistry(store, strip_variant_suffix=strip_variant_suffix)
        self.invalidation = InvalidationEngine(store, self.slugs, metrics)
        self.warmup = WarmupCoordinator(
            self.warm_directory,
            self.roots,
            prefetch=self.prefetch_directories if use_batched_warmup else None,
            entry_loader=self.warm_entry,
            depth=warmup_depth,
            concurrency=warm_concurrency,
            clock=self.clock,
            metrics=metrics,
        )
        self.refresh = RefreshScheduler(self.refresh_directory, self.roots, clock=self.clock, metrics=metrics)
        self._started = False

    @classmethod
    def from_config(
        cls,
        config,
        metrics: Optional[MetricsCollector] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ) -> "ContentCache":
        """Build a cache with every collaborator wired from ``config``."""
        quota = QuotaTracker(
            rest_floor=config.rest_quota_floor,
            batched_floor=config.batched_quota_floor,
            clock=clock,
        )
        if config.use_local_cache:
            source: ContentSource = LocalContentSource(config.local_cache_path)
        else:
            source = GitHubClient.from_config(config, quota, metrics=metrics, transport=transport)

        store = CacheStore(
            build_persistent_tier(config),
            clock=clock,
            max_memory_entries=config.memory_max_entries,
            max_stale_seconds=config.max_stale_seconds,
        )
        return cls(
            source,
            store,
            quota,
            roots=config.content_roots,
            ttl=TTLPolicy(
                listing=config.listing_ttl_seconds,
                json=config.json_ttl_seconds,
                commit=config.commit_ttl_seconds,
                thumbnail=config.thumbnail_ttl_seconds,
                negative=config.negative_ttl_seconds,
            ),
            strip_variant_suffix=config.strip_variant_suffix,
            warmup_on_startup=config.warmup_on_startup,
            warmup_depth=config.warmup_depth,
            warm_concurrency=config.cache_warm_concurrency,
            use_batched_warmup=config.use_batched_warmup,
            refresh_interval_seconds=config.refresh_interval_seconds,
            metrics=metrics,
        )

    # ------------------------------------------------------------------
    # Lifecycle

    async def start(self) -> None:
        if self._started:
            return
        await self.source.start()
        await self.slugs.hydrate()
        if self.warmup_on_startup:
            self.warmup.trigger()
        self.refresh.start(self.refresh_interval_seconds)
        self._started = True
        self.logger.info("Content cache started", roots=self.roots, source=type(self.source).__name__)

    async def shutdown(self) -> None:
        await self.refresh.stop()
        await self.store.flush()
        await self.source.close()
        if self.store.persistent is not None:
            await self.store.persistent.close()
        self._started = False
        self.logger.info("Content cache stopped")

    # ------------------------------------------------------------------
    # Read-through core

    def _record(self, metric: str, kind: EntryKind) -> None:
        if self.metrics:
            self.metrics.increment_counter(metric, kind=kind.value)

    async def _fetch_and_store(self, key: CacheKey, fetch: Callable[[], Awaitable[Any]]) -> CacheEntry:
        token = self.store.epoch(key)
        try:
            value = await fetch()
        except NotFoundError:
            await self.store.set(key, None, self.ttl.negative, missing=True, expect_epoch=token)
            raise

        ttl = self.ttl.for_kind(key.kind)
        entry = await self.store.set(key, value, ttl, expect_epoch=token)
        if entry is None:
            # Invalidated while the fetch was running; the waiters still get this result
            entry = CacheEntry(key=key, value=value, stored_at=self.clock(), ttl=ttl, tier=Tier.MEMORY, version=0)
        return entry

    async def _read_through(
        self,
        key: CacheKey,
        fetch: Callable[[], Awaitable[Any]],
        accept: Optional[Callable[[CacheEntry], bool]] = None,
    ) -> CacheEntry:
        entry = await self.store.get(key)
        if entry is not None and (accept is None or entry.missing or accept(entry)):
            self._record("cache_hits_total", key.kind)
            self.logger.debug("Cache hit", key=key.storage_key, tier=entry.tier.value)
        else:
            self._record("cache_misses_total", key.kind)
            try:
                entry = await self.store.get_or_fetch(key, lambda: self._fetch_and_store(key, fetch))
            except (QuotaExhaustedError, UpstreamUnavailableError) as exc:
                entry = await self.store.get_stale(key)
                if entry is None:
                    raise
                self._record("cache_stale_served_total", key.kind)
                self.logger.warning(
                    "Serving stale cache entry",
                    key=key.storage_key,
                    age_seconds=round(entry.age(self.clock()), 1),
                    error=exc.message,
                )

        if entry.missing:
            raise NotFoundError(key.path)
        return entry

    # ------------------------------------------------------------------
    # Read API

    async def get_directory_contents(self, path: str) -> List[Dict[str, Any]]:
        """Listing of ``path`` with slugs; empty when the directory does not exist."""
        key = CacheKey.listing(path)
        try:
            entry = await self._read_through(key, lambda: self.source.fetch_directory(key.path))
        except NotFoundError:
            return []
        return self.slugs.annotate(entry.value or [])

    async def get_json_data(self, file: Union[str, Mapping[str, Any]]) -> Optional[Any]:
        """
        Parsed JSON body of a file, or None when it does not exist.

        ``file`` may be a path or a listing item; an item whose ``sha`` differs
        from the cached body's forces a refetch.
        """
        if isinstance(file, Mapping):
            path = file.get("path", "")
            sha = file.get("sha")
        else:
            path, sha = file, None
        key = CacheKey.json(path)

        async def fetch() -> Dict[str, Any]:
            raw = await self.source.fetch_file(key.path)
            try:
                data = json.loads(raw)
            except ValueError as exc:
                raise InvalidDataError(key.path, "File is not valid JSON") from exc
            return {"sha": sha or git_blob_sha(raw), "data": data}

        def same_sha(entry: CacheEntry) -> bool:
            return not sha or entry.value.get("sha") == sha

        try:
            entry = await self._read_through(key, fetch, accept=same_sha)
        except NotFoundError:
            return None
        return copy.deepcopy(entry.value["data"])

    async def get_latest_commit(self, path: str) -> Optional[Dict[str, Any]]:
        """CommitInfo dict of the most recent commit touching ``path``."""
        key = CacheKey.commit(path)
        try:
            entry = await self._read_through(key, lambda: self.source.fetch_latest_commit(key.path))
        except NotFoundError:
            return None
        return dict(entry.value) if entry.value else None

    async def get_character_thumbnail(self, dir_path: str, file: Optional[Mapping[str, Any]] = None) -> Optional[str]:
        """
        Download URL of the image representing ``dir_path``.

        Uses ``file`` when given, else the first image in the directory. The URL
        is memoized per image path and sha.
        """
        if file is None:
            images = [
                item for item in await self.get_directory_contents(dir_path)
                if item.get("type") == "file" and item.get("name", "").lower().endswith(IMAGE_EXTENSIONS)
            ]
            if not images:
                return None
            file = images[0]

        key = CacheKey.thumbnail(file.get("path", ""))
        sha = file.get("sha")
        entry = await self.store.get(key)
        if entry is not None and entry.value and entry.value.get("sha") == sha:
            self._record("cache_hits_total", key.kind)
            return entry.value["url"]

        self._record("cache_misses_total", key.kind)
        url = file.get("download_url")
        if url:
            await self.store.set(key, {"url": url, "sha": sha}, self.ttl.thumbnail)
        return url

    async def get_file_versions(self, path: str) -> List[Dict[str, Any]]:
        """
        ``{"file", "commit"}`` pairs for every file under ``path``, newest first.

        Files without a dated commit come last, in listing order.
        """
        files = [item for item in await self.get_directory_contents(path) if item.get("type") == "file"]
        semaphore = asyncio.Semaphore(self.lookup_concurrency)

        async def lookup(item: Dict[str, Any]) -> Dict[str, Any]:
            async with semaphore:
                try:
                    commit = await self.get_latest_commit(item["path"])
                except (QuotaExhaustedError, UpstreamUnavailableError, InvalidDataError) as exc:
                    self.logger.warning("Commit lookup failed", path=item["path"], error=exc.message)
                    commit = None
            return {"file": item, "commit": commit}

        versions = await asyncio.gather(*(lookup(item) for item in files))

        dated = [version for version in versions if version["commit"] and version["commit"].get("date")]
        undated = [version for version in versions if not (version["commit"] and version["commit"].get("date"))]
        dated.sort(key=lambda version: version["commit"]["date"], reverse=True)
        return dated + undated

    def get_cached_slug(self, name: str, path: str) -> str:
        return self.slugs.get_cached_slug(name, path)

    async def find_by_slug(self, dir_path: str, slug: str) -> Optional[Dict[str, Any]]:
        """Listing item of ``dir_path`` whose slug is ``slug``."""
        for item in await self.get_directory_contents(dir_path):
            if item.get("slug") == slug:
                return item
        return None

    # ------------------------------------------------------------------
    # Warmup, refresh and prefetch

    async def ensure_warmup(self) -> WarmupStatus:
        return await self.warmup.ensure_warmup()

    def trigger_warmup(self) -> None:
        """Start warmup in the background if it has not run yet."""
        self.warmup.trigger()

    def get_warmup_status(self) -> WarmupStatus:
        return self.warmup.get_warmup_status()

    def get_periodic_refresh_status(self) -> RefreshStatus:
        return self.refresh.get_periodic_refresh_status()

    async def warm_directory(self, path: str) -> List[Dict[str, Any]]:
        """Listing of ``path`` for warmup; unlike reads, a missing directory raises NotFoundError."""
        key = CacheKey.listing(path)
        entry = await self._read_through(key, lambda: self.source.fetch_directory(key.path))
        return self.slugs.annotate(entry.value or [])

    async def warm_entry(self, path: str, listing: List[Dict[str, Any]]) -> Dict[str, str]:
        """
        Warm the latest commit of entry directory ``path`` and every JSON file in it.

        Returns failed path -> error message; the warmed parts stay cached.
        """
        documents = [
            item for item in listing
            if item.get("type") == "file" and item.get("name", "").lower().endswith(".json")
        ]
        targets = [(path, self.get_latest_commit(path))]
        targets += [(item["path"], self.get_json_data(item)) for item in documents]

        results = await asyncio.gather(*(call for _, call in targets), return_exceptions=True)
        failures: Dict[str, str] = {}
        for (target, _), result in zip(targets, results):
            if isinstance(result, ContentLayerException):
                failures[target] = result.message
            elif isinstance(result, Exception):
                failures[target] = str(result)
        if failures:
            self.logger.warning("Failed to warm entry", path=path, failures=len(failures))
        return failures

    async def refresh_directory(self, path: str) -> List[Dict[str, Any]]:
        """Re-fetch the listing of ``path`` regardless of freshness; failures propagate."""
        key = CacheKey.listing(path)

        async def fetch() -> List[Dict[str, Any]]:
            return await self.source.fetch_directory(key.path)

        entry = await self.store.get_or_fetch(key, lambda: self._fetch_and_store(key, fetch))
        return self.slugs.annotate(entry.value or [])

    async def prefetch_directories(self, paths: List[str]) -> Dict[str, Optional[str]]:
        """
        Populate listings for ``paths`` with one batched query.

        Falls back to per-path reads when the batched interface refuses or
        fails. Returns path -> error message (None on success).
        """
        pending = []
        for path in paths:
            if await self.store.get(CacheKey.listing(path)) is None:
                pending.append(normalize_path(path))
        outcome: Dict[str, Optional[str]] = {normalize_path(path): None for path in paths}
        if not pending:
            return outcome
        tokens = {path: self.store.epoch(CacheKey.listing(path)) for path in pending}

        try:
            trees = await self.source.fetch_trees(pending)
        except (QuotaExhaustedError, UpstreamUnavailableError, InvalidDataError) as exc:
            self.logger.warning("Batched prefetch failed, falling back to single reads",
                                paths=len(pending), error=exc.message)
            trees = None

        if trees is not None:
            for path in pending:
                key = CacheKey.listing(path)
                if path in trees:
                    await self.store.set(key, trees[path], self.ttl.listing, expect_epoch=tokens[path])
                    self.slugs.annotate(trees[path])
                else:
                    await self.store.set(key, None, self.ttl.negative, missing=True, expect_epoch=tokens[path])
            return outcome

        for path in pending:
            try:
                await self.get_directory_contents(path)
            except (QuotaExhaustedError, UpstreamUnavailableError, InvalidDataError) as exc:
                outcome[path] = exc.message
        return outcome

    # ------------------------------------------------------------------
    # Status and administration

    def get_rate_limit_status(self) -> Dict[str, Dict[str, Any]]:
        return self.quota.snapshot()

    async def get_cache_stats(self) -> Dict[str, Any]:
        """Composite, side-effect free snapshot of the cache."""
        return {
            "warmup": self.get_warmup_status().to_dict(),
            "periodic_refresh": self.get_periodic_refresh_status().to_dict(),
            "rate_limits": self.get_rate_limit_status(),
            "store": await self.store.stats(),
            "source": type(self.source).__name__,
            "timestamp": self.clock(),
        }

    async def clear_cache(self) -> None:
        """Empty both tiers and reset warmup to not-started."""
        await self.store.clear()
        self.slugs.reset()
        self.warmup.reset()
        self.logger.info("Content cache cleared")

    async def invalidate_cache_path(self, path: str, kind: Optional[EntryKind] = None, source: str = "api") -> bool:
        return await self.invalidation.invalidate_cache_path(path, kind, source=source)

    async def invalidate_cache_by_pattern(self, pattern: str, source: str = "api") -> int:
        return await self.invalidation.invalidate_cache_by_pattern(pattern, source=source)
