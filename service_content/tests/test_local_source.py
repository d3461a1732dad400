"""
Unit tests for the local directory content source.
"""

import json

import pytest

from service_content.app.adapters.local_source import LocalContentSource
from shared.errors import InvalidDataError, NotFoundError


class TestLocalContentSource:
    """Test cases for LocalContentSource."""

    @pytest.fixture
    def source(self, tmp_path):
        card_dir = tmp_path / "Character Cards" / "Foo"
        card_dir.mkdir(parents=True)
        (card_dir / "Foo.json").write_text(json.dumps({"name": "Foo"}))
        (card_dir / "Foo.png").write_bytes(b"\x89PNG")
        (tmp_path / "World Books").mkdir()
        return LocalContentSource(str(tmp_path))

    @pytest.mark.asyncio
    async def test_fetch_directory(self, source):
        items = await source.fetch_directory("Character Cards/Foo")

        assert [item["name"] for item in items] == ["Foo.json", "Foo.png"]
        assert items[0]["path"] == "Character Cards/Foo/Foo.json"
        assert items[0]["type"] == "file"
        assert items[0]["download_url"].startswith("file://")
        assert len(items[0]["sha"]) == 40

    @pytest.mark.asyncio
    async def test_root_listing(self, source):
        items = await source.fetch_directory("")

        assert [(item["name"], item["type"]) for item in items] == [("Character Cards", "dir"), ("World Books", "dir")]
        assert items[0]["path"] == "Character Cards"

    @pytest.mark.asyncio
    async def test_missing_directory(self, source):
        with pytest.raises(NotFoundError):
            await source.fetch_directory("Nope")

    @pytest.mark.asyncio
    async def test_file_is_not_a_directory(self, source):
        with pytest.raises(InvalidDataError):
            await source.fetch_directory("Character Cards/Foo/Foo.json")

    @pytest.mark.asyncio
    async def test_path_escape_is_rejected(self, source):
        with pytest.raises(NotFoundError):
            await source.fetch_file("../outside.json")

    @pytest.mark.asyncio
    async def test_fetch_file(self, source):
        content = await source.fetch_file("Character Cards/Foo/Foo.json")
        assert json.loads(content) == {"name": "Foo"}

    @pytest.mark.asyncio
    async def test_latest_commit_uses_mtime(self, source):
        commit = await source.fetch_latest_commit("Character Cards/Foo/Foo.json")

        assert commit["author"] == "Local Cache"
        assert commit["date"].endswith("Z")
        assert await source.fetch_latest_commit("Nope") is None

    @pytest.mark.asyncio
    async def test_fetch_trees_skips_missing(self, source):
        trees = await source.fetch_trees(["Character Cards/Foo", "Nope", "World Books"])

        assert sorted(trees) == ["Character Cards/Foo", "World Books"]
        assert trees["World Books"] == []
