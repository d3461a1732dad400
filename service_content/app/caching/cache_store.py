"""
Two-tier cache store.

The memory tier is an LRU-bounded dict of CacheEntry objects; the persistent
tier (disk or Redis) survives restarts. Reads check memory first and promote
fresh persistent hits into memory. Expired entries are kept until the stale
ceiling so they can still be served when the remote store is unusable.

The store also owns request coalescing: ``get_or_fetch`` guarantees at most
one in-flight loader per key, shared by every concurrent reader.
"""

from __future__ import annotations

import asyncio
import functools
import time
from collections import OrderedDict
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from shared.logging import get_logger

from .keys import CacheKey, EntryKind, ancestor_paths, is_within, normalize_path
from .persistent import PersistentTier


class Tier(str, Enum):
    MEMORY = "memory"
    PERSISTENT = "persistent"


@dataclass
class CacheEntry:
    """A cached value with its freshness bookkeeping."""

    key: CacheKey
    value: Any
    stored_at: float
    ttl: Optional[float]
    tier: Tier
    version: int
    missing: bool = False

    def age(self, now: float) -> float:
        return max(0.0, now - self.stored_at)

    def is_fresh(self, now: float) -> bool:
        if self.ttl is None:
            return True
        return self.age(now) < self.ttl

    def is_servable(self, now: float, max_stale: float) -> bool:
        """Fresh, or expired for less than ``max_stale`` seconds (0 means no ceiling)."""
        if self.is_fresh(now) or max_stale <= 0:
            return True
        return self.age(now) < self.ttl + max_stale

    def to_record(self) -> Dict[str, Any]:
        return {
            "key": self.key.storage_key,
            "value": self.value,
            "stored_at": self.stored_at,
            "ttl": self.ttl,
            "version": self.version,
            "missing": self.missing,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any], tier: Tier = Tier.PERSISTENT) -> "CacheEntry":
        return cls(
            key=CacheKey.from_storage_key(record["key"]),
            value=record.get("value"),
            stored_at=float(record["stored_at"]),
            ttl=record.get("ttl"),
            tier=tier,
            version=int(record.get("version", 0)),
            missing=bool(record.get("missing", False)),
        )


EpochToken = Tuple[int, int]


class CacheStore:
    """Memory + persistent key/value store with TTLs, invalidation and coalescing."""

    def __init__(
        self,
        persistent: Optional[PersistentTier] = None,
        *,
        clock: Callable[[], float] = time.time,
        max_memory_entries: int = 5000,
        max_stale_seconds: float = 86400,
    ):
        self.persistent = persistent
        self.clock = clock
        self.max_memory_entries = max(1, max_memory_entries)
        self.max_stale_seconds = max_stale_seconds
        self.logger = get_logger("content.cache_store")

        self._memory: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._inflight: Dict[str, "asyncio.Future[Any]"] = {}
        self._epochs: Dict[str, int] = {}
        self._generation = 0
        self._version = 0
        self._pending_writes: Set["asyncio.Task[None]"] = set()

    # ------------------------------------------------------------------
    # Persistent tier access

    async def _safe_persistent(self, operation: str, *args, default: Any = None) -> Any:
        """Call the persistent tier, logging and degrading on failure."""
        if self.persistent is None:
            return default
        try:
            return await getattr(self.persistent, operation)(*args)
        except Exception as exc:
            self.logger.error("Persistent cache error", operation=operation, error=str(exc))
            return default

    # ------------------------------------------------------------------
    # Bookkeeping

    def epoch(self, key: CacheKey) -> EpochToken:
        """Token that changes whenever ``key`` is invalidated or the store is cleared."""
        return self._generation, self._epochs.get(key.storage_key, 0)

    def _bump(self, storage_key: str) -> None:
        self._epochs[storage_key] = self._epochs.get(storage_key, 0) + 1
        # Readers arriving after an invalidation must not join a fetch that started before it
        self._inflight.pop(storage_key, None)

    def _memory_put(self, storage_key: str, entry: CacheEntry) -> None:
        self._memory[storage_key] = entry
        self._memory.move_to_end(storage_key)
        while len(self._memory) > self.max_memory_entries:
            self._memory.popitem(last=False)

    # ------------------------------------------------------------------
    # Reads

    def peek(self, key: CacheKey) -> Optional[CacheEntry]:
        """Fresh memory-tier entry for ``key``, without touching the persistent tier."""
        entry = self._memory.get(key.storage_key)
        if entry is None or not entry.is_fresh(self.clock()):
            return None
        self._memory.move_to_end(key.storage_key)
        return entry

    async def get(self, key: CacheKey) -> Optional[CacheEntry]:
        """Return a fresh entry for ``key`` or None on miss/expiry."""
        storage_key = key.storage_key
        entry = self._memory.get(storage_key)
        if entry is not None:
            if entry.is_fresh(self.clock()):
                self._memory.move_to_end(storage_key)
                return entry
            return None

        token = self.epoch(key)
        record = await self._safe_persistent("get", storage_key)
        if token != self.epoch(key):
            return self.peek(key)
        if storage_key in self._memory:
            # Written by someone else while we were reading the persistent tier
            return self.peek(key)
        if record is None:
            return None

        try:
            persisted = CacheEntry.from_record(record)
        except (KeyError, TypeError, ValueError) as exc:
            self.logger.warning("Discarding malformed persistent record", key=storage_key, error=str(exc))
            await self._safe_persistent("delete", storage_key)
            return None

        now = self.clock()
        if persisted.is_fresh(now):
            self._memory_put(storage_key, replace(persisted, tier=Tier.MEMORY))
            return persisted
        if not persisted.is_servable(now, self.max_stale_seconds):
            await self._safe_persistent("delete", storage_key)
        return None

    async def get_stale(self, key: CacheKey) -> Optional[CacheEntry]:
        """Return any entry for ``key`` still inside the stale ceiling, fresh or not."""
        now = self.clock()
        entry = self._memory.get(key.storage_key)
        if entry is not None and entry.is_servable(now, self.max_stale_seconds):
            return entry

        record = await self._safe_persistent("get", key.storage_key)
        if record is None:
            return None
        try:
            persisted = CacheEntry.from_record(record)
        except (KeyError, TypeError, ValueError):
            return None
        if persisted.is_servable(self.clock(), self.max_stale_seconds):
            return persisted
        return None

    async def load_kind(self, kind: EntryKind) -> List[CacheEntry]:
        """Promote every fresh persisted entry of ``kind`` into memory and return them."""
        loaded: List[CacheEntry] = []
        prefix = f"{EntryKind(kind).value}:"
        for storage_key in await self._safe_persistent("keys", default=[]):
            if not storage_key.startswith(prefix):
                continue
            entry = await self.get(CacheKey.from_storage_key(storage_key))
            if entry is not None:
                loaded.append(entry)
        return loaded

    # ------------------------------------------------------------------
    # Writes

    async def set(
        self,
        key: CacheKey,
        value: Any,
        ttl: Optional[float],
        *,
        persist: bool = True,
        missing: bool = False,
        expect_epoch: Optional[EpochToken] = None,
    ) -> Optional[CacheEntry]:
        """
        Store ``value`` in memory and (when ``persist``) in the persistent tier.

        With ``expect_epoch`` the write is dropped if the key was invalidated
        or the store cleared since the token was taken.
        """
        if expect_epoch is not None and expect_epoch != self.epoch(key):
            self.logger.debug("Dropping write for invalidated key", key=key.storage_key)
            return None

        storage_key = key.storage_key
        self._version += 1
        entry = CacheEntry(
            key=key,
            value=value,
            stored_at=self.clock(),
            ttl=ttl,
            tier=Tier.MEMORY,
            version=self._version,
            missing=missing,
        )
        # Single assignment: readers see either the previous entry or this one
        self._memory_put(storage_key, entry)

        if persist and self.persistent is not None:
            token = self.epoch(key)
            await self._safe_persistent("set", storage_key, entry.to_record())
            if token != self.epoch(key):
                await self._safe_persistent("delete", storage_key)
        return entry

    def put_local(self, key: CacheKey, value: Any, ttl: Optional[float] = None, *, persist: bool = True) -> CacheEntry:
        """
        Synchronous memory write; persistence is scheduled on the running loop.

        Used for derived values computed on synchronous paths (slugs).
        """
        storage_key = key.storage_key
        self._version += 1
        entry = CacheEntry(
            key=key,
            value=value,
            stored_at=self.clock(),
            ttl=ttl,
            tier=Tier.MEMORY,
            version=self._version,
        )
        self._memory_put(storage_key, entry)

        if persist and self.persistent is not None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                self.logger.debug("No running loop, keeping derived value in memory only", key=storage_key)
                return entry
            task = loop.create_task(self._persist_derived(key, entry.to_record(), self.epoch(key)))
            self._pending_writes.add(task)
            task.add_done_callback(self._pending_writes.discard)
        return entry

    async def _persist_derived(self, key: CacheKey, record: Dict[str, Any], token: EpochToken) -> None:
        # Invalidated or cleared before the scheduled write ran
        if token != self.epoch(key):
            return
        await self._safe_persistent("set", key.storage_key, record)
        if token != self.epoch(key):
            await self._safe_persistent("delete", key.storage_key)

    async def flush(self) -> None:
        """Wait for scheduled persistent writes."""
        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)

    # ------------------------------------------------------------------
    # Invalidation

    async def _remove(self, storage_key: str) -> bool:
        self._bump(storage_key)
        removed = self._memory.pop(storage_key, None) is not None
        if self.persistent is not None:
            removed = bool(await self._safe_persistent("delete", storage_key, default=False)) or removed
        return removed

    async def invalidate(self, key: CacheKey) -> bool:
        """Remove ``key`` from both tiers; True when an entry existed."""
        return await self._remove(key.storage_key)

    async def _all_storage_keys(self) -> Set[str]:
        keys = set(self._memory.keys())
        keys.update(await self._safe_persistent("keys", default=[]))
        return keys

    async def invalidate_matching(self, predicate: Callable[[CacheKey], bool]) -> int:
        """Remove every entry whose key satisfies ``predicate``."""
        count = 0
        for storage_key in await self._all_storage_keys():
            try:
                key = CacheKey.from_storage_key(storage_key)
            except ValueError:
                continue
            if predicate(key) and await self._remove(storage_key):
                count += 1
        return count

    async def invalidate_prefix(self, path_prefix: str) -> int:
        """
        Remove every entry at or under ``path_prefix`` plus the listing of
        each ancestor directory, including the repository root.
        """
        prefix = normalize_path(path_prefix)
        count = await self.invalidate_matching(lambda key: is_within(key.path, prefix))
        if prefix:
            for ancestor in ancestor_paths(prefix) + [""]:
                if await self._remove(CacheKey.listing(ancestor).storage_key):
                    count += 1
        return count

    async def clear(self) -> None:
        """Empty both tiers and forget in-flight fetches."""
        self._generation += 1
        self._memory.clear()
        self._inflight.clear()
        self._epochs.clear()
        removed = await self._safe_persistent("clear", default=0)
        self.logger.info("Cache store cleared", persistent_removed=removed)

    # ------------------------------------------------------------------
    # Coalescing

    async def get_or_fetch(self, key: CacheKey, loader: Callable[[], Awaitable[Any]]) -> Any:
        """
        Run ``loader`` for ``key`` unless one is already in flight, and share its outcome.

        Every concurrent caller receives the same value or the same exception.
        Cancelling one waiter does not cancel the shared fetch.
        """
        storage_key = key.storage_key
        future = self._inflight.get(storage_key)
        if future is None:
            future = asyncio.ensure_future(loader())
            self._inflight[storage_key] = future
            future.add_done_callback(functools.partial(self._fetch_done, storage_key))
        return await asyncio.shield(future)

    def _fetch_done(self, storage_key: str, future: "asyncio.Future[Any]") -> None:
        if self._inflight.get(storage_key) is future:
            del self._inflight[storage_key]
        if not future.cancelled():
            # Mark the exception retrieved even if every waiter went away
            future.exception()

    def inflight_count(self) -> int:
        return len(self._inflight)

    # ------------------------------------------------------------------
    # Stats

    async def stats(self) -> Dict[str, Any]:
        persistent_stats = await self._safe_persistent("stats", default={}) or {}
        return {
            "memory_entries": len(self._memory),
            "persistent_entries": persistent_stats.get("entries", 0),
            "persistent_size_bytes": persistent_stats.get("size_bytes", 0),
            "persistent_backend": type(self.persistent).__name__ if self.persistent is not None else None,
            "inflight_fetches": len(self._inflight),
            "version": self._version,
        }
