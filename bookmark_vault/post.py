from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Sequence

SyncType = Literal["manual", "scheduled", "incremental"]

CHECKPOINT_KEY = "latest_source_id"


@dataclass(frozen=True)
class UrlEntity:
    """A structured URL entity attached to an input item."""

    url: str
    expanded_url: str | None = None
    display_url: str | None = None


@dataclass(frozen=True)
class PostMetrics:
    replies: int | None = None
    reposts: int | None = None
    likes: int | None = None
    quotes: int | None = None
    bookmarks: int | None = None

    def as_dict(self) -> dict[str, int]:
        out: dict[str, int] = {}
        for key in ("replies", "reposts", "likes", "quotes", "bookmarks"):
            val = getattr(self, key)
            if val is not None:
                out[key] = int(val)
        return out

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "PostMetrics":
        if not data:
            return cls()

        def _count(key: str) -> int | None:
            val = data.get(key)
            if isinstance(val, bool) or not isinstance(val, int) or val < 0:
                return None
            return val

        return cls(
            replies=_count("replies"),
            reposts=_count("reposts"),
            likes=_count("likes"),
            quotes=_count("quotes"),
            bookmarks=_count("bookmarks"),
        )


@dataclass(frozen=True)
class Post:
    """A canonical bookmarked post after normalization."""

    post_id: str
    author_username: str
    content: str

    author_name: str | None = None
    author_profile_image: str | None = None
    created_at: str | None = None
    media_urls: Sequence[str] = ()
    metrics: PostMetrics = field(default_factory=PostMetrics)
    url_entities: Sequence[UrlEntity] = ()
    raw_data: Mapping[str, Any] | None = None

    fetched_at: str | None = None
    processed_at: str | None = None
    links_extracted_at: str | None = None
    embedding: Sequence[float] | None = None


@dataclass(frozen=True)
class LinkCandidate:
    post_id: str
    url: str
    expanded_url: str | None = None
    display_url: str | None = None
    domain: str | None = None


@dataclass(frozen=True)
class Link:
    id: int
    post_id: str
    url: str
    expanded_url: str | None = None
    display_url: str | None = None
    domain: str | None = None

    title: str | None = None
    description: str | None = None
    og_image: str | None = None
    content_type: str | None = None

    fetched_at: str | None = None
    fetch_error: str | None = None
    embedding: Sequence[float] | None = None

    @property
    def target_url(self) -> str:
        return self.expanded_url or self.url


@dataclass(frozen=True)
class LinkMetadata:
    """Outcome of one metadata fetch attempt: either page fields or fetch_error."""

    domain: str | None = None
    expanded_url: str | None = None
    title: str | None = None
    description: str | None = None
    og_image: str | None = None
    content_type: str | None = None
    fetch_error: str | None = None

    @property
    def failed(self) -> bool:
        return self.fetch_error is not None


@dataclass(frozen=True)
class SyncState:
    last_sync_at: str
    posts_added: int = 0
    links_processed: int = 0
    embeddings_generated: int = 0
    sync_type: SyncType = "manual"
    error_message: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    id: int | None = None

    @property
    def checkpoint_id(self) -> str | None:
        val = self.metadata.get(CHECKPOINT_KEY) if self.metadata else None
        if isinstance(val, str) and val.strip():
            return val.strip()
        return None


@dataclass(frozen=True)
class UpsertPostsResult:
    added: Sequence[str] = ()
    updated: Sequence[str] = ()


@dataclass(frozen=True)
class UpsertLinksResult:
    inserted: int = 0
    updated: int = 0


@dataclass(frozen=True)
class VaultStats:
    total_posts: int
    total_links: int
    posts_with_embeddings: int
    links_with_embeddings: int
    links_with_errors: int
    top_authors: Sequence[tuple[str, int]] = ()
    top_domains: Sequence[tuple[str, int]] = ()
    last_sync: SyncState | None = None
