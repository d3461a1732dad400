"""
Local directory mirror used instead of GitHub during development.
"""

import asyncio
import hashlib
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from shared.errors import InvalidDataError, NotFoundError
from shared.logging import get_logger

from ..caching.keys import normalize_path
from ..domain.models import CommitInfo, ContentItem


class LocalContentSource:
    """Serve listings and files from ``root_dir``; no quota is involved."""

    def __init__(self, root_dir: str):
        self.root_dir = Path(root_dir).resolve()
        self.logger = get_logger("content.local_source")

    async def start(self) -> None:
        if self.root_dir.is_dir():
            self.logger.info("Local content source enabled", root=str(self.root_dir))
        else:
            self.logger.warning("Local content source directory not found", root=str(self.root_dir))

    async def close(self) -> None:
        return None

    def _resolve(self, path: str) -> Path:
        target = (self.root_dir / normalize_path(path)).resolve()
        if target != self.root_dir and self.root_dir not in target.parents:
            raise NotFoundError(path)
        return target

    def _list_sync(self, path: str) -> List[Dict[str, Any]]:
        target = self._resolve(path)
        if not target.exists():
            raise NotFoundError(path)
        if not target.is_dir():
            raise InvalidDataError(path, "Expected a directory listing")

        items = []
        for child in sorted(target.iterdir(), key=lambda entry: entry.name):
            stat = child.stat()
            child_path = f"{normalize_path(path)}/{child.name}" if normalize_path(path) else child.name
            is_file = child.is_file()
            fingerprint = f"{child_path}:{stat.st_size}:{stat.st_mtime_ns}".encode("utf-8")
            items.append(ContentItem(
                name=child.name,
                path=child_path,
                type="file" if is_file else "dir",
                size=stat.st_size if is_file else 0,
                sha=hashlib.sha1(fingerprint).hexdigest(),
                download_url=child.as_uri() if is_file else None,
            ).model_dump())
        return items

    def _read_sync(self, path: str) -> bytes:
        target = self._resolve(path)
        if not target.is_file():
            raise NotFoundError(path)
        return target.read_bytes()

    def _commit_sync(self, path: str) -> Optional[Dict[str, Any]]:
        target = self._resolve(path)
        if not target.exists():
            return None
        mtime = target.stat().st_mtime
        return CommitInfo(
            sha="",
            author="Local Cache",
            date=datetime.fromtimestamp(mtime, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            message="",
        ).model_dump()

    async def fetch_directory(self, path: str) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._list_sync, path)

    async def fetch_file(self, path: str) -> bytes:
        return await asyncio.to_thread(self._read_sync, path)

    async def fetch_latest_commit(self, path: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._commit_sync, path)

    async def fetch_trees(self, paths: List[str]) -> Dict[str, List[Dict[str, Any]]]:
        trees: Dict[str, List[Dict[str, Any]]] = {}
        for path in paths:
            try:
                trees[normalize_path(path)] = await self.fetch_directory(path)
            except (NotFoundError, InvalidDataError):
                continue
        return trees
