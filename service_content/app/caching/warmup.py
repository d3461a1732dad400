"""
Cache warmup coordinator.

Warms the configured content roots once per process (or once per cache
clear). Every caller of ``ensure_warmup`` awaits the same task, and a path
that fails to warm is recorded without failing the run.

Depth 1 warms the root listings, 2 adds their sub-directories (categories),
3 the directories inside those (entries) and 4 also warms each entry: its
latest commit and the JSON documents it holds.
"""

import asyncio
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from shared.logging import get_logger, log_origin
from shared.metrics import MetricsCollector

Loader = Callable[[str], Awaitable[Any]]
Prefetcher = Callable[[List[str]], Awaitable[Dict[str, Optional[str]]]]
# (entry path, entry listing) -> failed path -> error message
EntryLoader = Callable[[str, List[Dict[str, Any]]], Awaitable[Dict[str, str]]]

DIRECTORY_LEVELS = 3


@dataclass
class WarmupStatus:
    started: bool = False
    completed: bool = False
    in_progress: bool = False
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    roots_warmed: int = 0
    directories_prefetched: int = 0
    entries_warmed: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)
    duration_seconds: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class WarmupCoordinator:
    """Runs the warmup of the content roots as one shared background task."""

    def __init__(
        self,
        loader: Loader,
        roots: List[str],
        prefetch: Optional[Prefetcher] = None,
        entry_loader: Optional[EntryLoader] = None,
        depth: int = 1,
        concurrency: int = 5,
        clock: Callable[[], float] = time.time,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.loader = loader
        self.roots = list(roots)
        self.prefetch = prefetch
        self.entry_loader = entry_loader
        self.depth = depth
        self.concurrency = max(1, concurrency)
        self.clock = clock
        self.metrics = metrics
        self.logger = get_logger("content.warmup")

        self._status = WarmupStatus()
        self._task: Optional["asyncio.Task[WarmupStatus]"] = None

    def get_warmup_status(self) -> WarmupStatus:
        return self._status

    def trigger(self) -> Optional["asyncio.Task[WarmupStatus]"]:
        """Start warmup if it has not started yet; never waits."""
        if self._status.completed:
            return None
        if self._task is None:
            status = self._status
            status.started = True
            status.in_progress = True
            status.started_at = self.clock()
            with log_origin("warmup"):
                self._task = asyncio.get_running_loop().create_task(self._run(status))
            self.logger.info("Cache warmup started", roots=self.roots, depth=self.depth)
        return self._task

    async def ensure_warmup(self) -> WarmupStatus:
        """Wait until warmup has completed, starting it if needed."""
        task = self.trigger()
        if task is None:
            return self._status
        # Waiters may be cancelled; the warmup itself keeps running
        return await asyncio.shield(task)

    def reset(self) -> None:
        """
        Back to not-started. A warmup still running finishes against its own
        status object and does not touch the new one.
        """
        self._status = WarmupStatus()
        self._task = None

    async def _run(self, status: WarmupStatus) -> WarmupStatus:
        start_time = self.clock()
        semaphore = asyncio.Semaphore(self.concurrency)

        async def warm_root(root: str) -> Optional[Any]:
            async with semaphore:
                try:
                    listing = await self.loader(root)
                except Exception as exc:
                    status.errors.append({"path": root, "error": str(exc)})
                    self._count("failure")
                    self.logger.warning("Failed to warm content root", root=root, error=str(exc))
                    return None
            status.roots_warmed += 1
            self._count("success")
            return listing

        try:
            results = await asyncio.gather(*(warm_root(root) for root in self.roots))
            listings = {root: listing for root, listing in zip(self.roots, results) if listing is not None}
            # Levels 2 and 3: categories, then the entry directories inside them
            reached = 1
            for level in range(2, min(self.depth, DIRECTORY_LEVELS) + 1):
                children = _subdirectories(listings)
                if not children:
                    break
                listings = await self._warm_directories(
                    children, status, semaphore, need_listings=self.depth > level
                )
                reached = level
            if self.depth > DIRECTORY_LEVELS and reached == DIRECTORY_LEVELS and self.entry_loader is not None:
                await self._warm_entries(listings, status, semaphore)
        except Exception as exc:
            status.errors.append({"path": "*", "error": str(exc)})
            self.logger.error("Cache warmup aborted", error=str(exc))
        finally:
            status.in_progress = False
            status.completed = True
            status.completed_at = self.clock()
            status.duration_seconds = status.completed_at - start_time
            if self.metrics:
                self.metrics.observe_histogram("cache_warm_duration_seconds", status.duration_seconds)

        self.logger.info(
            "Cache warmup completed",
            roots_warmed=status.roots_warmed,
            directories_prefetched=status.directories_prefetched,
            entries_warmed=status.entries_warmed,
            errors=len(status.errors),
            duration_seconds=round(status.duration_seconds, 3),
        )
        return status

    async def _warm_directories(
        self,
        paths: List[str],
        status: WarmupStatus,
        semaphore: asyncio.Semaphore,
        need_listings: bool,
    ) -> Dict[str, List[Dict[str, Any]]]:
        """Warm listings of ``paths``; returns the listings when a deeper level needs them."""
        listings: Dict[str, List[Dict[str, Any]]] = {}
        if self.prefetch is not None:
            failures = await self.prefetch(paths)
            warmed = []
            for path, error in failures.items():
                if error is None:
                    status.directories_prefetched += 1
                    warmed.append(path)
                else:
                    status.errors.append({"path": path, "error": error})
            if not need_listings:
                return listings
            # Prefetched listings are fresh, so these reads are cache hits
            paths = warmed

        async def warm_child(path: str) -> None:
            async with semaphore:
                try:
                    listings[path] = await self.loader(path)
                except Exception as exc:
                    status.errors.append({"path": path, "error": str(exc)})
                    return
            if self.prefetch is None:
                status.directories_prefetched += 1

        await asyncio.gather(*(warm_child(path) for path in paths))
        return listings

    async def _warm_entries(
        self,
        listings: Dict[str, List[Dict[str, Any]]],
        status: WarmupStatus,
        semaphore: asyncio.Semaphore,
    ) -> None:
        async def warm_entry(path: str, listing: List[Dict[str, Any]]) -> None:
            async with semaphore:
                failures = await self.entry_loader(path, listing)
            for failed_path, error in failures.items():
                status.errors.append({"path": failed_path, "error": error})
            if not failures:
                status.entries_warmed += 1

        await asyncio.gather(*(warm_entry(path, listing) for path, listing in listings.items()))

    def _count(self, result: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("cache_warm_total", result=result)


def _subdirectories(listings: Dict[str, List[Dict[str, Any]]]) -> List[str]:
    return [
        item["path"]
        for listing in listings.values()
        for item in listing if item.get("type") == "dir"
    ]
