from __future__ import annotations

from collections import Counter
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Sequence

from .errors import StorageError
from .links import extract_domain
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


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _vector(vector: Sequence[float]) -> tuple[float, ...]:
    values = tuple(float(x) for x in vector)
    if not values:
        raise ValueError("embedding vector must be non-empty")
    return values


class MemoryVaultStore:
    """Dict-backed vault with the same upsert and query semantics as the SQLite store."""

    def __init__(self) -> None:
        self._posts: dict[str, Post] = {}
        self._links: dict[int, Link] = {}
        self._link_keys: dict[tuple[str, str], int] = {}
        self._sync_states: list[SyncState] = []
        self._next_link_id = 1

    def close(self) -> None:
        return None

    def __enter__(self) -> "MemoryVaultStore":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    def upsert_posts(self, posts: Sequence[Post]) -> UpsertPostsResult:
        added: list[str] = []
        updated: list[str] = []
        now = _utc_now_iso()

        for post in posts:
            existing = self._posts.get(post.post_id)
            if existing is None:
                self._posts[post.post_id] = replace(
                    post,
                    fetched_at=post.fetched_at or now,
                    processed_at=None,
                    links_extracted_at=None,
                    embedding=None,
                )
                added.append(post.post_id)
                continue

            if existing.embedding is None:
                self._posts[post.post_id] = replace(
                    existing,
                    metrics=post.metrics,
                    raw_data=post.raw_data or existing.raw_data,
                    author_name=post.author_name or existing.author_name,
                    author_profile_image=post.author_profile_image
                    or existing.author_profile_image,
                )
            updated.append(post.post_id)

        return UpsertPostsResult(added=added, updated=updated)

    def upsert_links(self, candidates: Sequence[LinkCandidate]) -> UpsertLinksResult:
        missing = sorted({c.post_id for c in candidates if c.post_id not in self._posts})
        if missing:
            raise StorageError(
                "Failed to upsert links; ensure posts contains each post_id first: "
                + ", ".join(missing)
            )

        inserted = 0
        updated = 0
        for c in candidates:
            key = (c.post_id, c.url)
            link_id = self._link_keys.get(key)
            if link_id is None:
                link_id = self._next_link_id
                self._next_link_id += 1
                self._link_keys[key] = link_id
                self._links[link_id] = Link(
                    id=link_id,
                    post_id=c.post_id,
                    url=c.url,
                    expanded_url=c.expanded_url,
                    display_url=c.display_url,
                    domain=c.domain,
                )
                inserted += 1
                continue

            link = self._links[link_id]
            self._links[link_id] = replace(
                link,
                expanded_url=link.expanded_url or c.expanded_url,
                display_url=link.display_url or c.display_url,
                domain=link.domain or c.domain,
            )
            updated += 1

        return UpsertLinksResult(inserted=inserted, updated=updated)

    def patch_post_embedding(self, post_id: str, vector: Sequence[float]) -> None:
        post = self._require_post(post_id)
        self._posts[post_id] = replace(
            post, embedding=_vector(vector), processed_at=_utc_now_iso()
        )

    def patch_link_metadata(self, link_id: int, metadata: LinkMetadata) -> None:
        link = self._require_link(link_id)
        failed = metadata.failed
        self._links[link.id] = replace(
            link,
            domain=metadata.domain or link.domain,
            expanded_url=metadata.expanded_url or link.expanded_url,
            title=None if failed else metadata.title,
            description=None if failed else metadata.description,
            og_image=None if failed else metadata.og_image,
            content_type=metadata.content_type,
            fetch_error=metadata.fetch_error,
            fetched_at=_utc_now_iso(),
        )

    def patch_link_embedding(self, link_id: int, vector: Sequence[float]) -> None:
        link = self._require_link(link_id)
        self._links[link.id] = replace(link, embedding=_vector(vector))

    def mark_links_extracted(self, post_ids: Sequence[str]) -> None:
        now = _utc_now_iso()
        for pid in post_ids:
            post = self._posts.get(pid)
            if post is not None:
                self._posts[pid] = replace(post, links_extracted_at=now)

    def insert_sync_state(self, state: SyncState) -> SyncState:
        stored = replace(state, id=len(self._sync_states) + 1, metadata=dict(state.metadata or {}))
        self._sync_states.append(stored)
        return stored

    def get_latest_sync_state(self) -> SyncState | None:
        if not self._sync_states:
            return None
        return max(self._sync_states, key=lambda s: (s.last_sync_at, s.id or 0))

    def query_posts_missing_embedding(self, limit: int) -> list[Post]:
        return self._first_posts(lambda p: p.embedding is None, limit)

    def query_posts_missing_links(self, limit: int) -> list[Post]:
        return self._first_posts(lambda p: p.links_extracted_at is None, limit)

    def query_links_missing_metadata(self, limit: int) -> list[Link]:
        return self._first_links(
            lambda link: link.fetched_at is None and link.fetch_error is None, limit
        )

    def query_links_missing_embedding(self, limit: int) -> list[Link]:
        return self._first_links(
            lambda link: link.embedding is None
            and link.fetched_at is not None
            and link.fetch_error is None
            and link.title is not None,
            limit,
        )

    def get_post(self, post_id: str) -> Post | None:
        return self._posts.get(post_id)

    def links_for_post(self, post_id: str) -> list[Link]:
        return [link for link in self._links.values() if link.post_id == post_id]

    def posts_by_author(self, username: str, *, limit: int = 50) -> list[Post]:
        handle = (username or "").strip().lstrip("@").casefold()
        matches = [p for p in self._posts.values() if p.author_username.casefold() == handle]
        matches.sort(key=lambda p: p.created_at or "", reverse=True)
        return matches[: max(0, int(limit))]

    def links_by_domain(self, domain: str, *, limit: int = 50) -> list[Link]:
        d = extract_domain(f"http://{(domain or '').strip()}")
        matches = [link for link in self._links.values() if link.domain == d]
        matches.sort(key=lambda link: link.id, reverse=True)
        return matches[: max(0, int(limit))]

    def stats(self, *, top_n: int = 10) -> VaultStats:
        links = list(self._links.values())
        authors = Counter(p.author_username for p in self._posts.values())
        domains = Counter(link.domain for link in links if link.domain)

        def _top(counter: Counter[str]) -> list[tuple[str, int]]:
            ranked = sorted(counter.items(), key=lambda kv: (-kv[1], kv[0]))
            return ranked[: max(0, int(top_n))]

        return VaultStats(
            total_posts=len(self._posts),
            total_links=len(links),
            posts_with_embeddings=sum(1 for p in self._posts.values() if p.embedding is not None),
            links_with_embeddings=sum(1 for link in links if link.embedding is not None),
            links_with_errors=sum(1 for link in links if link.fetch_error is not None),
            top_authors=_top(authors),
            top_domains=_top(domains),
            last_sync=self.get_latest_sync_state(),
        )

    def _require_post(self, post_id: str) -> Post:
        post = self._posts.get(post_id)
        if post is None:
            raise StorageError(f"Failed to update post {post_id}: no such row")
        return post

    def _require_link(self, link_id: int) -> Link:
        link = self._links.get(int(link_id))
        if link is None:
            raise StorageError(f"Failed to update link {link_id}: no such row")
        return link

    def _first_posts(self, pred: Callable[[Post], bool], limit: int) -> list[Post]:
        out: list[Post] = []
        for post in self._posts.values():
            if len(out) >= int(limit):
                break
            if pred(post):
                out.append(post)
        return out

    def _first_links(self, pred: Callable[[Link], bool], limit: int) -> list[Link]:
        out: list[Link] = []
        for link_id in sorted(self._links):
            if len(out) >= int(limit):
                break
            link = self._links[link_id]
            if pred(link):
                out.append(link)
        return out
