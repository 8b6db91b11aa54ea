from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, Sequence

from .post import (
    Link,
    LinkCandidate,
    LinkMetadata,
    Post,
    SyncState,
    UpsertLinksResult,
    UpsertPostsResult,
    VaultStats,
)

if TYPE_CHECKING:
    from .config_schema import StorageConfig


class VaultStore(Protocol):
    """
    Backing store for posts, links and sync history.

    Unique keys (post_id for posts, (post_id, url) for links) are the only
    concurrency guarantee: a duplicate insert becomes an update, never a new row.
    """

    def upsert_posts(self, posts: Sequence[Post]) -> UpsertPostsResult: ...

    def upsert_links(self, candidates: Sequence[LinkCandidate]) -> UpsertLinksResult: ...

    def query_posts_missing_embedding(self, limit: int) -> list[Post]: ...

    def query_links_missing_metadata(self, limit: int) -> list[Link]: ...

    def query_links_missing_embedding(self, limit: int) -> list[Link]: ...

    def query_posts_missing_links(self, limit: int) -> list[Post]: ...

    def patch_post_embedding(self, post_id: str, vector: Sequence[float]) -> None: ...

    def patch_link_metadata(self, link_id: int, metadata: LinkMetadata) -> None: ...

    def patch_link_embedding(self, link_id: int, vector: Sequence[float]) -> None: ...

    def mark_links_extracted(self, post_ids: Sequence[str]) -> None: ...

    def insert_sync_state(self, state: SyncState) -> SyncState: ...

    def get_latest_sync_state(self) -> SyncState | None: ...

    def get_post(self, post_id: str) -> Post | None: ...

    def links_for_post(self, post_id: str) -> list[Link]: ...

    def posts_by_author(self, username: str, *, limit: int = 50) -> list[Post]: ...

    def links_by_domain(self, domain: str, *, limit: int = 50) -> list[Link]: ...

    def stats(self, *, top_n: int = 10) -> VaultStats: ...

    def close(self) -> None: ...

    def __enter__(self) -> "VaultStore": ...

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None: ...


def open_store(config: "StorageConfig") -> VaultStore:
    """Open the adapter named by config.backend."""
    if config.backend == "memory":
        from .memory_store import MemoryVaultStore

        return MemoryVaultStore()

    from .storage import SQLiteVaultStore

    return SQLiteVaultStore.open(config.sqlite_path)
