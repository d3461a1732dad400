"""
Unit tests for the warmup coordinator.
"""

import asyncio
from collections import Counter

import pytest

from service_content.app.caching.warmup import WarmupCoordinator
from shared.test_helpers import DummyMetrics, ManualClock

LISTINGS = {
    "Character Cards": [
        {"name": "Foo", "path": "Character Cards/Foo", "type": "dir"},
        {"name": "card.json", "path": "Character Cards/card.json", "type": "file"},
    ],
    "World Books": [
        {"name": "Atlas", "path": "World Books/Atlas", "type": "dir"},
    ],
    "Character Cards/Foo": [
        {"name": "Bunny", "path": "Character Cards/Foo/Bunny", "type": "dir"},
    ],
    "Character Cards/Foo/Bunny": [
        {"name": "card.json", "path": "Character Cards/Foo/Bunny/card.json", "type": "file"},
    ],
    "World Books/Atlas": [],
}


class RecordingLoader:
    """Loader answering from LISTINGS and counting calls per path."""

    def __init__(self, failing=()):
        self.calls = Counter()
        self.failing = set(failing)
        self.gate = None

    async def __call__(self, path):
        self.calls[path] += 1
        if self.gate is not None:
            await self.gate.wait()
        if path in self.failing:
            raise RuntimeError(f"cannot load {path}")
        return LISTINGS[path]


class TestWarmupCoordinator:
    """Test cases for WarmupCoordinator."""

    @pytest.fixture
    def loader(self):
        return RecordingLoader()

    @pytest.fixture
    def metrics(self):
        return DummyMetrics()

    @pytest.fixture
    def coordinator(self, loader, metrics):
        return WarmupCoordinator(loader, ["Character Cards", "World Books"], clock=ManualClock(), metrics=metrics)

    def test_initial_status(self, coordinator):
        status = coordinator.get_warmup_status()
        assert status.started is False
        assert status.completed is False
        assert status.in_progress is False

    @pytest.mark.asyncio
    async def test_ensure_warmup_loads_each_root_once(self, coordinator, loader, metrics):
        status = await coordinator.ensure_warmup()

        assert status.completed is True
        assert status.in_progress is False
        assert status.roots_warmed == 2
        assert status.errors == []
        assert loader.calls == Counter({"Character Cards": 1, "World Books": 1})
        assert metrics.count("cache_warm_total", result="success") == 2

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_run(self, coordinator, loader):
        loader.gate = asyncio.Event()

        waiters = [asyncio.create_task(coordinator.ensure_warmup()) for _ in range(5)]
        await asyncio.sleep(0)
        assert coordinator.get_warmup_status().in_progress is True

        loader.gate.set()
        results = await asyncio.gather(*waiters)

        assert all(result is results[0] for result in results)
        assert loader.calls["Character Cards"] == 1
        assert loader.calls["World Books"] == 1

    @pytest.mark.asyncio
    async def test_completed_warmup_is_not_repeated(self, coordinator, loader):
        await coordinator.ensure_warmup()
        await coordinator.ensure_warmup()

        assert coordinator.trigger() is None
        assert loader.calls["Character Cards"] == 1

    @pytest.mark.asyncio
    async def test_failed_root_does_not_fail_warmup(self, metrics):
        loader = RecordingLoader(failing={"World Books"})
        coordinator = WarmupCoordinator(loader, ["Character Cards", "World Books"], metrics=metrics)

        status = await coordinator.ensure_warmup()

        assert status.completed is True
        assert status.roots_warmed == 1
        assert status.errors == [{"path": "World Books", "error": "cannot load World Books"}]
        assert metrics.count("cache_warm_total", result="failure") == 1

    @pytest.mark.asyncio
    async def test_reset_allows_a_new_run(self, coordinator, loader):
        await coordinator.ensure_warmup()
        coordinator.reset()

        assert coordinator.get_warmup_status().completed is False

        await coordinator.ensure_warmup()
        assert loader.calls["Character Cards"] == 2

    @pytest.mark.asyncio
    async def test_depth_two_loads_child_directories(self, loader):
        coordinator = WarmupCoordinator(loader, ["Character Cards", "World Books"], depth=2)

        status = await coordinator.ensure_warmup()

        assert status.directories_prefetched == 2
        assert loader.calls["Character Cards/Foo"] == 1
        assert loader.calls["World Books/Atlas"] == 1
        assert "Character Cards/card.json" not in loader.calls

    @pytest.mark.asyncio
    async def test_depth_two_uses_prefetch_when_available(self, loader):
        requested = []

        async def prefetch(paths):
            requested.extend(paths)
            return {"Character Cards/Foo": None, "World Books/Atlas": "tree unavailable"}

        coordinator = WarmupCoordinator(loader, ["Character Cards", "World Books"], prefetch=prefetch, depth=2)

        status = await coordinator.ensure_warmup()

        assert sorted(requested) == ["Character Cards/Foo", "World Books/Atlas"]
        assert status.directories_prefetched == 1
        assert status.errors == [{"path": "World Books/Atlas", "error": "tree unavailable"}]
        assert "Character Cards/Foo" not in loader.calls

    @pytest.mark.asyncio
    async def test_cancelled_waiter_leaves_warmup_running(self, coordinator, loader):
        loader.gate = asyncio.Event()

        waiter = asyncio.create_task(coordinator.ensure_warmup())
        await asyncio.sleep(0)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        loader.gate.set()
        status = await coordinator.ensure_warmup()

        assert status.completed is True
        assert loader.calls["Character Cards"] == 1

    @pytest.mark.asyncio
    async def test_depth_three_loads_entry_directories(self, loader):
        coordinator = WarmupCoordinator(loader, ["Character Cards", "World Books"], depth=3)

        status = await coordinator.ensure_warmup()

        assert status.directories_prefetched == 3
        assert loader.calls["Character Cards/Foo/Bunny"] == 1
        assert status.entries_warmed == 0

    @pytest.mark.asyncio
    async def test_depth_four_warms_entries(self, loader):
        warmed = []

        async def entry_loader(path, listing):
            warmed.append((path, [item["name"] for item in listing]))
            return {}

        coordinator = WarmupCoordinator(
            loader, ["Character Cards", "World Books"], entry_loader=entry_loader, depth=4
        )

        status = await coordinator.ensure_warmup()

        assert warmed == [("Character Cards/Foo/Bunny", ["card.json"])]
        assert status.entries_warmed == 1
        assert status.errors == []

    @pytest.mark.asyncio
    async def test_entry_failures_are_recorded(self, loader):
        async def entry_loader(path, listing):
            return {f"{path}/card.json": "File is not valid JSON"}

        coordinator = WarmupCoordinator(
            loader, ["Character Cards"], entry_loader=entry_loader, depth=4
        )

        status = await coordinator.ensure_warmup()

        assert status.completed is True
        assert status.entries_warmed == 0
        assert status.errors == [
            {"path": "Character Cards/Foo/Bunny/card.json", "error": "File is not valid JSON"}
        ]

    @pytest.mark.asyncio
    async def test_prefetched_levels_feed_deeper_levels(self, loader):
        requested = []

        async def prefetch(paths):
            requested.append(sorted(paths))
            return {path: None for path in paths}

        coordinator = WarmupCoordinator(loader, ["Character Cards"], prefetch=prefetch, depth=3)

        status = await coordinator.ensure_warmup()

        assert requested == [["Character Cards/Foo"], ["Character Cards/Foo/Bunny"]]
        assert status.directories_prefetched == 2
        # Read back only to descend; the last level is never re-read
        assert loader.calls["Character Cards/Foo"] == 1
        assert "Character Cards/Foo/Bunny" not in loader.calls

    @pytest.mark.asyncio
    async def test_shallow_tree_skips_entry_level(self, loader):
        warmed = []

        async def entry_loader(path, listing):
            warmed.append(path)
            return {}

        coordinator = WarmupCoordinator(loader, ["World Books"], entry_loader=entry_loader, depth=4)

        status = await coordinator.ensure_warmup()

        assert warmed == []
        assert status.directories_prefetched == 1
        assert status.entries_warmed == 0
