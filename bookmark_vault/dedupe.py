from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Sequence

from .post import Post
from .run_log import EventLogger, ensure_logger
from .store import VaultStore


@dataclass
class SeenIds:
    ids: set[str] = field(default_factory=set)

    def has(self, post_id: str) -> bool:
        return post_id in self.ids

    def add(self, post_id: str) -> None:
        self.ids.add(post_id)


def collapse_duplicates(posts: Iterable[Post]) -> tuple[list[Post], int]:
    """Keep the first occurrence of each post_id; return (unique, collapsed_count)."""
    seen = SeenIds()
    unique: list[Post] = []
    collapsed = 0
    for post in posts:
        if seen.has(post.post_id):
            collapsed += 1
            continue
        seen.add(post.post_id)
        unique.append(post)
    return unique, collapsed


@dataclass(frozen=True)
class DedupeResult:
    new: Sequence[Post]
    skipped: int
    batch_duplicates: int

    @property
    def new_ids(self) -> list[str]:
        return [p.post_id for p in self.new]


def _chunks(items: Sequence[Post], size: int) -> Iterable[Sequence[Post]]:
    step = max(1, int(size))
    for start in range(0, len(items), step):
        yield items[start : start + step]


def partition_new_posts(
    posts: Sequence[Post],
    store: VaultStore,
    *,
    chunk_size: int = 100,
    logger: EventLogger | None = None,
) -> DedupeResult:
    """
    Persist a batch of posts and report which ones were genuinely new.

    The store's upsert decides novelty: identifiers it reports as added are new,
    the rest already existed and only had mutable fields refreshed.
    """
    log = ensure_logger(logger)
    unique, collapsed = collapse_duplicates(posts)

    added: set[str] = set()
    skipped = 0
    for chunk in _chunks(unique, chunk_size):
        result = store.upsert_posts(chunk)
        added.update(result.added)
        skipped += len(result.updated)

    new_posts = [p for p in unique if p.post_id in added]
    log.info(
        "posts_deduplicated",
        input=len(posts),
        new=len(new_posts),
        skipped=skipped,
        batch_duplicates=collapsed,
    )
    return DedupeResult(new=new_posts, skipped=skipped, batch_duplicates=collapsed)
