"""
Periodic refresh of the content roots.

Runs on its own asyncio task at a fixed interval, independent of request
traffic. A root that fails (quota denial included) is skipped until the next
cycle.
"""

import asyncio
import contextlib
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from shared.errors import QuotaExhaustedError
from shared.logging import get_logger, log_origin
from shared.metrics import MetricsCollector


@dataclass
class RefreshStatus:
    running: bool = False
    interval_seconds: Optional[float] = None
    last_run_at: Optional[float] = None
    next_run_at: Optional[float] = None
    last_run_succeeded_count: int = 0
    last_run_failed_count: int = 0
    cycles: int = 0
    last_errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RefreshScheduler:
    """Re-fetches the content roots every ``interval_seconds``."""

    def __init__(
        self,
        refresher: Callable[[str], Awaitable[Any]],
        roots: List[str],
        clock: Callable[[], float] = time.time,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.refresher = refresher
        self.roots = list(roots)
        self.clock = clock
        self.metrics = metrics
        self.logger = get_logger("content.refresh")
        self.status = RefreshStatus()
        self._task: Optional[asyncio.Task] = None

    def get_periodic_refresh_status(self) -> RefreshStatus:
        return self.status

    def start(self, interval_seconds: float) -> None:
        if interval_seconds <= 0:
            self.logger.info("Periodic refresh disabled")
            return
        if self._task is not None and not self._task.done():
            return
        self.status.running = True
        self.status.interval_seconds = interval_seconds
        self.status.next_run_at = self.clock() + interval_seconds
        with log_origin("refresh"):
            self._task = asyncio.get_running_loop().create_task(self._loop(interval_seconds))
        self.logger.info("Periodic refresh started", interval_seconds=interval_seconds, roots=self.roots)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self.status.running = False
        self.status.next_run_at = None

    async def _loop(self, interval_seconds: float) -> None:
        while True:
            self.status.next_run_at = self.clock() + interval_seconds
            await asyncio.sleep(interval_seconds)
            try:
                await self.run_cycle()
            except Exception as exc:
                self.logger.error("Periodic refresh cycle crashed", error=str(exc))

    async def run_cycle(self) -> RefreshStatus:
        """Refresh every root once and record the outcome."""
        succeeded = 0
        errors: List[Dict[str, str]] = []

        for root in self.roots:
            try:
                await self.refresher(root)
            except QuotaExhaustedError as exc:
                errors.append({"path": root, "error": exc.message})
                self.logger.warning("Refresh skipped, quota exhausted", root=root, retry_after=exc.retry_after)
                self._count("quota_denied")
                continue
            except Exception as exc:
                errors.append({"path": root, "error": str(exc)})
                self.logger.warning("Refresh failed", root=root, error=str(exc))
                self._count("failure")
                continue
            succeeded += 1
            self._count("success")

        self.status.last_run_at = self.clock()
        self.status.last_run_succeeded_count = succeeded
        self.status.last_run_failed_count = len(errors)
        self.status.last_errors = errors
        self.status.cycles += 1
        self.logger.info("Periodic refresh cycle finished", succeeded=succeeded, failed=len(errors))
        return self.status

    def _count(self, result: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("cache_refresh_total", result=result)
