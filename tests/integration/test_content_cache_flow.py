"""
Integration tests for the content cache against a simulated GitHub API.

The cache is wired from configuration exactly as the service wires it; only
the HTTP transport is replaced.
"""

import asyncio
import time
from collections import Counter
from urllib.parse import unquote

import httpx
import pytest

from service_content.app.caching.content_cache import ContentCache
from service_content.app.ratelimit.quota_tracker import InterfaceKind
from shared.config import get_config
from shared.errors import QuotaExhaustedError
from shared.test_helpers import ContentDataFactory, ManualClock

CONTENTS_PREFIX = "/repos/prolix-oc/ST-Presets/contents/"

DIRECTORIES = {
    "Character Cards": [
        ContentDataFactory.item("Character Cards/Foo", type="dir"),
        ContentDataFactory.item("Character Cards/Foo Bar", type="dir"),
        ContentDataFactory.item("Character Cards/Foo  Bar!", type="dir"),
    ],
    "Character Cards/Foo": [ContentDataFactory.item("Character Cards/Foo/Foo.json", sha="s1")],
    "World Books": [],
}


class SimulatedGitHub:
    """Answers contents requests from DIRECTORIES and counts them per path."""

    def __init__(self, remaining: int = 4999, directories=None):
        self.directories = DIRECTORIES if directories is None else directories
        self.requests = Counter()
        self.remaining = remaining
        self.gate = None

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        path = unquote(request.url.path)
        assert path.startswith(CONTENTS_PREFIX), path
        repo_path = path[len(CONTENTS_PREFIX):]
        self.requests[repo_path] += 1
        if self.gate is not None:
            await self.gate.wait()

        headers = {
            "x-ratelimit-limit": "5000",
            "x-ratelimit-remaining": str(self.remaining),
            "x-ratelimit-reset": str(int(time.time()) + 3600),
        }
        if repo_path not in self.directories:
            return httpx.Response(404, json={"message": "Not Found"}, headers=headers)
        return httpx.Response(200, json=self.directories[repo_path], headers=headers)


def build_cache(tmp_path, remote, clock, **overrides):
    settings = {
        "github_token": "test-token",
        "use_local_cache": False,
        "persistent_backend": "file",
        "persistent_cache_dir": str(tmp_path / "cache"),
        "content_roots": ["Character Cards"],
        "warmup_on_startup": False,
        "warmup_depth": 1,
        "use_batched_warmup": False,
        "refresh_interval_seconds": 0,
        "retry_base_delay": 0,
    }
    settings.update(overrides)
    config = get_config("content", 8000, **settings)
    return ContentCache.from_config(config, transport=httpx.MockTransport(remote), clock=clock)


class TestContentCacheFlow:
    """End-to-end flows through the cache, the quota tracker and the client."""

    @pytest.fixture
    def clock(self):
        return ManualClock(start=time.time())

    @pytest.mark.asyncio
    async def test_warm_read_invalidate(self, tmp_path, clock):
        remote = SimulatedGitHub(directories={
            "Character Cards": [ContentDataFactory.item("Character Cards/Foo", type="dir")],
        })
        cache = build_cache(tmp_path, remote, clock)
        await cache.start()

        await cache.ensure_warmup()
        listing = await cache.get_directory_contents("Character Cards")
        assert [(item["name"], item["type"]) for item in listing] == [("Foo", "dir")]
        assert remote.requests["Character Cards"] == 1

        again = await cache.get_directory_contents("Character Cards")
        assert again == listing
        assert remote.requests["Character Cards"] == 1

        await cache.invalidate_cache_path("Character Cards/Foo")
        await cache.get_directory_contents("Character Cards")
        assert remote.requests["Character Cards"] == 2

        await cache.shutdown()

    @pytest.mark.asyncio
    async def test_exhausted_quota_issues_no_request(self, tmp_path, clock):
        remote = SimulatedGitHub()
        cache = build_cache(tmp_path, remote, clock)
        cache.quota.record(InterfaceKind.REST, remaining=0, reset_at=clock() + 600)

        with pytest.raises(QuotaExhaustedError):
            await cache.source.fetch_directory("Character Cards")

        assert sum(remote.requests.values()) == 0
        await cache.shutdown()

    @pytest.mark.asyncio
    async def test_restart_reads_persistent_tier(self, tmp_path, clock):
        remote = SimulatedGitHub()
        cache = build_cache(tmp_path, remote, clock)
        await cache.start()
        await cache.get_directory_contents("Character Cards/Foo")
        await cache.shutdown()

        restarted = build_cache(tmp_path, remote, clock)
        await restarted.start()
        listing = await restarted.get_directory_contents("Character Cards/Foo")
        await restarted.shutdown()

        assert [item["name"] for item in listing] == ["Foo.json"]
        assert remote.requests["Character Cards/Foo"] == 1

    @pytest.mark.asyncio
    async def test_quota_floor_serves_stale_and_blocks_new_calls(self, tmp_path, clock):
        remote = SimulatedGitHub(remaining=10)
        cache = build_cache(tmp_path, remote, clock, rest_quota_floor=10)
        await cache.start()

        fresh = await cache.get_directory_contents("Character Cards")
        clock.advance(31)

        stale = await cache.get_directory_contents("Character Cards")
        with pytest.raises(QuotaExhaustedError):
            await cache.get_directory_contents("World Books")

        assert stale == fresh
        assert sum(remote.requests.values()) == 1
        assert cache.get_rate_limit_status()["rest"]["remaining"] == 10
        await cache.shutdown()

    @pytest.mark.asyncio
    async def test_missing_path_is_negatively_cached(self, tmp_path, clock):
        remote = SimulatedGitHub()
        cache = build_cache(tmp_path, remote, clock)
        await cache.start()

        assert await cache.get_directory_contents("Gone") == []
        assert await cache.get_directory_contents("Gone") == []

        assert remote.requests["Gone"] == 1
        await cache.shutdown()

    @pytest.mark.asyncio
    async def test_concurrent_readers_cause_one_request(self, tmp_path, clock):
        remote = SimulatedGitHub()
        remote.gate = asyncio.Event()
        cache = build_cache(tmp_path, remote, clock)
        await cache.start()

        readers = [asyncio.create_task(cache.get_directory_contents("Character Cards")) for _ in range(20)]
        while not remote.requests["Character Cards"]:
            await asyncio.sleep(0.01)
        remote.gate.set()
        results = await asyncio.gather(*readers)

        assert remote.requests["Character Cards"] == 1
        assert all(result == results[0] for result in results)
        await cache.shutdown()

    @pytest.mark.asyncio
    async def test_slugs_survive_restart(self, tmp_path, clock):
        remote = SimulatedGitHub()
        cache = build_cache(tmp_path, remote, clock)
        await cache.start()
        listing = await cache.get_directory_contents("Character Cards")
        await cache.shutdown()
        slugs = {item["path"]: item["slug"] for item in listing}

        restarted = build_cache(tmp_path, remote, clock)
        await restarted.start()
        found = await restarted.find_by_slug("Character Cards", slugs["Character Cards/Foo  Bar!"])
        await restarted.shutdown()

        assert slugs["Character Cards/Foo"] == "foo"
        assert len(set(slugs.values())) == 3
        assert found["path"] == "Character Cards/Foo  Bar!"
