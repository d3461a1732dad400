"""
Interface for the remote side of the content cache.
"""

from typing import Any, Dict, List, Optional, Protocol, runtime_checkable


@runtime_checkable
class ContentSource(Protocol):
    """Where listings, file contents and commit info come from."""

    async def start(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def fetch_directory(self, path: str) -> List[Dict[str, Any]]:
        ...

    async def fetch_file(self, path: str) -> bytes:
        ...

    async def fetch_latest_commit(self, path: str) -> Optional[Dict[str, Any]]:
        ...

    async def fetch_trees(self, paths: List[str]) -> Dict[str, List[Dict[str, Any]]]:
        ...
