"""
Persistent cache tiers.

A persistent tier stores serialized cache records (plain JSON-compatible
dicts) so they survive a process restart. Two backends are provided: a
directory of JSON files and a Redis namespace. Tiers raise on I/O failure;
the cache store decides how to degrade.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import math
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple, runtime_checkable

import redis.asyncio as redis

from shared.logging import get_logger


@runtime_checkable
class PersistentTier(Protocol):
    """Interface shared by persistent cache backends."""

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Return the stored record for ``key`` or None."""
        ...

    async def set(self, key: str, record: Dict[str, Any]) -> None:
        """Store ``record`` under ``key``, replacing any previous record."""
        ...

    async def delete(self, key: str) -> bool:
        """Remove ``key``; True when something was removed."""
        ...

    async def keys(self) -> List[str]:
        """Return every stored key."""
        ...

    async def clear(self) -> int:
        """Remove every record and return how many were removed."""
        ...

    async def stats(self) -> Dict[str, Any]:
        """Return ``entries`` and ``size_bytes``."""
        ...

    async def close(self) -> None:
        ...


class FilePersistentTier:
    """
    Disk-backed tier: one JSON file per record inside ``cache_dir``.

    Writes are atomic (temp file + rename). When the directory grows past
    ``max_size_bytes`` the oldest 20% of records are removed.
    """

    def __init__(self, cache_dir: os.PathLike | str, max_size_bytes: int = 100 * 1024 * 1024):
        self.cache_dir = Path(cache_dir)
        self.max_size_bytes = max_size_bytes
        self.logger = get_logger("content.persistent_cache")
        # storage key -> (filename, size in bytes, mtime)
        self._index: Optional[Dict[str, Tuple[str, int, float]]] = None
        self._index_lock = asyncio.Lock()

    @staticmethod
    def _filename(key: str) -> str:
        safe = re.sub(r"[^a-zA-Z0-9_-]", "_", key)[:80]
        digest = hashlib.sha1(key.encode("utf-8")).hexdigest()[:12]
        return f"{safe}-{digest}.json"

    def _scan_sync(self) -> Dict[str, Tuple[str, int, float]]:
        index: Dict[str, Tuple[str, int, float]] = {}
        if not self.cache_dir.exists():
            return index
        for file_path in self.cache_dir.glob("*.json"):
            try:
                with file_path.open("r", encoding="utf-8") as handle:
                    record = json.load(handle)
                stat = file_path.stat()
            except (OSError, ValueError):
                continue
            key = record.get("key") if isinstance(record, dict) else None
            if key:
                index[key] = (file_path.name, stat.st_size, stat.st_mtime)
        return index

    async def _ensure_index(self) -> Dict[str, Tuple[str, int, float]]:
        if self._index is None:
            async with self._index_lock:
                if self._index is None:
                    self._index = await asyncio.to_thread(self._scan_sync)
        return self._index

    def _read_sync(self, filename: str) -> Optional[Dict[str, Any]]:
        file_path = self.cache_dir / filename
        try:
            with file_path.open("r", encoding="utf-8") as handle:
                return json.load(handle)
        except FileNotFoundError:
            return None
        except ValueError:
            # Corrupted record
            file_path.unlink(missing_ok=True)
            return None

    def _write_sync(self, filename: str, payload: str) -> Tuple[int, float]:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        file_path = self.cache_dir / filename
        # Unique temp name per write; concurrent writers of one key race only on the rename
        with tempfile.NamedTemporaryFile(
            "w", encoding="utf-8", dir=self.cache_dir, prefix=f".{filename}.", suffix=".tmp", delete=False
        ) as handle:
            handle.write(payload)
        try:
            os.replace(handle.name, file_path)
        except OSError:
            Path(handle.name).unlink(missing_ok=True)
            raise
        stat = file_path.stat()
        return stat.st_size, stat.st_mtime

    def _unlink_sync(self, filename: str) -> bool:
        try:
            (self.cache_dir / filename).unlink()
            return True
        except FileNotFoundError:
            return False

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        index = await self._ensure_index()
        filename = index[key][0] if key in index else self._filename(key)
        record = await asyncio.to_thread(self._read_sync, filename)
        if record is None or record.get("key") != key:
            index.pop(key, None)
            return None
        return record

    async def set(self, key: str, record: Dict[str, Any]) -> None:
        index = await self._ensure_index()
        filename = self._filename(key)
        payload = json.dumps(record)
        size, mtime = await asyncio.to_thread(self._write_sync, filename, payload)
        index[key] = (filename, size, mtime)
        await self._cleanup_if_needed()

    async def delete(self, key: str) -> bool:
        index = await self._ensure_index()
        entry = index.pop(key, None)
        filename = entry[0] if entry else self._filename(key)
        return await asyncio.to_thread(self._unlink_sync, filename)

    async def keys(self) -> List[str]:
        index = await self._ensure_index()
        return list(index.keys())

    async def clear(self) -> int:
        index = await self._ensure_index()
        filenames = [entry[0] for entry in index.values()]
        index.clear()
        removed = 0
        for filename in filenames:
            if await asyncio.to_thread(self._unlink_sync, filename):
                removed += 1
        return removed

    async def stats(self) -> Dict[str, Any]:
        index = await self._ensure_index()
        mtimes = [entry[2] for entry in index.values()]
        return {
            "entries": len(index),
            "size_bytes": sum(entry[1] for entry in index.values()),
            "oldest_entry": min(mtimes) if mtimes else None,
            "newest_entry": max(mtimes) if mtimes else None,
        }

    async def _cleanup_if_needed(self) -> None:
        index = await self._ensure_index()
        total = sum(entry[1] for entry in index.values())
        if total <= self.max_size_bytes:
            return

        oldest_first = sorted(index.items(), key=lambda item: item[1][2])
        to_delete = math.ceil(len(oldest_first) * 0.2)
        self.logger.info(
            "Persistent cache over size limit, removing oldest entries",
            size_bytes=total,
            limit_bytes=self.max_size_bytes,
            removing=to_delete,
        )
        for key, (filename, _, _) in oldest_first[:to_delete]:
            index.pop(key, None)
            await asyncio.to_thread(self._unlink_sync, filename)

    async def close(self) -> None:
        return None


class RedisPersistentTier:
    """
    Redis-backed tier. Records live under ``<namespace>:<key>`` and expire
    ``retention_seconds`` after their own TTL so stale copies stay servable.
    """

    def __init__(self, redis_url: str, namespace: str = "content", retention_seconds: float = 86400):
        self.redis_url = redis_url
        self.namespace = namespace
        self.retention_seconds = retention_seconds
        self.logger = get_logger("content.redis_cache")
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url)
        return self._redis

    def _make_key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def _strip_key(self, raw_key: Any) -> str:
        if isinstance(raw_key, bytes):
            raw_key = raw_key.decode("utf-8")
        return raw_key[len(self.namespace) + 1:]

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        redis_client = await self._get_redis()
        raw = await redis_client.get(self._make_key(key))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            self.logger.warning("Discarding corrupted cache record", key=key)
            await redis_client.delete(self._make_key(key))
            return None

    async def set(self, key: str, record: Dict[str, Any]) -> None:
        redis_client = await self._get_redis()
        ttl = record.get("ttl")
        expire = None
        if ttl is not None:
            expire = max(1, math.ceil(ttl + self.retention_seconds))
        await redis_client.set(self._make_key(key), json.dumps(record), ex=expire)

    async def delete(self, key: str) -> bool:
        redis_client = await self._get_redis()
        return bool(await redis_client.delete(self._make_key(key)))

    async def keys(self) -> List[str]:
        redis_client = await self._get_redis()
        return [
            self._strip_key(raw_key)
            async for raw_key in redis_client.scan_iter(match=f"{self.namespace}:*")
        ]

    async def clear(self) -> int:
        redis_client = await self._get_redis()
        raw_keys = [raw_key async for raw_key in redis_client.scan_iter(match=f"{self.namespace}:*")]
        if not raw_keys:
            return 0
        removed = await redis_client.delete(*raw_keys)
        self.logger.info("Cleared cache namespace", namespace=self.namespace, keys_count=removed)
        return int(removed)

    async def stats(self) -> Dict[str, Any]:
        redis_client = await self._get_redis()
        raw_keys = [raw_key async for raw_key in redis_client.scan_iter(match=f"{self.namespace}:*")]
        size = 0
        if raw_keys:
            async with redis_client.pipeline(transaction=False) as pipeline:
                for raw_key in raw_keys:
                    pipeline.strlen(raw_key)
                lengths = await pipeline.execute()
            size = sum(int(length or 0) for length in lengths)
        return {"entries": len(raw_keys), "size_bytes": size}

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
