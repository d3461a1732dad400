"""
Pydantic models for remote payloads.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ContentItem(BaseModel):
    """One entry of a directory listing."""

    model_config = ConfigDict(extra="ignore")

    name: str
    path: str
    type: str
    size: int = 0
    sha: Optional[str] = None
    download_url: Optional[str] = None
    html_url: Optional[str] = None
    slug: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value: Any) -> str:
        # Symlinks and submodules are listed but never fetched as content
        mapping = {"blob": "file", "tree": "dir", "commit": "submodule"}
        value = mapping.get(value, value)
        if value not in ("file", "dir", "symlink", "submodule"):
            raise ValueError(f"unsupported entry type: {value}")
        return value

    @field_validator("size", mode="before")
    @classmethod
    def default_size(cls, value: Any) -> int:
        return int(value or 0)


class CommitInfo(BaseModel):
    """Most recent commit touching a path."""

    sha: str
    author: Optional[str] = None
    date: Optional[str] = None
    message: str = ""

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "CommitInfo":
        commit = payload.get("commit") or {}
        author = commit.get("author") or {}
        return cls(
            sha=payload.get("sha", ""),
            author=author.get("name"),
            date=author.get("date"),
            message=commit.get("message", ""),
        )


class PushCommit(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    message: str = ""
    added: List[str] = Field(default_factory=list)
    modified: List[str] = Field(default_factory=list)
    removed: List[str] = Field(default_factory=list)


class PushRepository(BaseModel):
    model_config = ConfigDict(extra="ignore")

    full_name: Optional[str] = None


class PushPayload(BaseModel):
    """Subset of a push notification the invalidation boundary needs."""

    model_config = ConfigDict(extra="ignore")

    ref: Optional[str] = None
    repository: Optional[PushRepository] = None
    commits: List[PushCommit] = Field(default_factory=list)
