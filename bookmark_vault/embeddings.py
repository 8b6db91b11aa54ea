from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Protocol, Sequence, TypeVar

from openai import AsyncOpenAI

from .errors import EmbeddingError
from .openai_retry import is_retryable_openai_exception
from .post import Link, Post
from .retry import AsyncSleepFn, IsRetryableFn, RetryConfig, RetryEvent, call_with_retries_async
from .run_log import EventLogger, ensure_logger
from .store import VaultStore

T = TypeVar("T")


class _EmbeddingsAPI(Protocol):
    async def create(self, **kwargs: Any) -> Any: ...


class _AsyncOpenAIClient(Protocol):
    embeddings: _EmbeddingsAPI


class EmbeddingClient(Protocol):
    async def embed(self, texts: Sequence[str]) -> list[list[float]]: ...


def post_embedding_text(post: Post) -> str:
    name = (post.author_name or "").strip() or post.author_username
    return f"{name} (@{post.author_username}): {post.content}"


def link_embedding_text(link: Link) -> str:
    parts = [
        (link.title or "").strip(),
        (link.description or "").strip(),
        f"Source: {link.domain}" if link.domain else "",
    ]
    text = "\n".join(p for p in parts if p)
    return text or link.target_url


def truncate_text(text: str, max_chars: int) -> str:
    """Cut text to max_chars, backing up to a word boundary if one is in the last 20%."""
    if max_chars <= 0:
        return ""
    if len(text) <= max_chars:
        return text

    cut = text[:max_chars]
    boundary = max(cut.rfind(" "), cut.rfind("\n"))
    if boundary >= int(max_chars * 0.8):
        cut = cut[:boundary]
    return cut.rstrip()


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


class OpenAIEmbeddingClient:
    """
    Thin wrapper over the embeddings endpoint.

    SDK-level retries are disabled; SDK errors propagate unchanged so the
    caller's retry policy can classify them.
    """

    def __init__(
        self,
        api_key: str,
        *,
        model: str,
        dimensions: int | None = None,
        base_url: str | None = None,
        timeout_seconds: float = 60.0,
        client: _AsyncOpenAIClient | None = None,
    ) -> None:
        key = (api_key or "").strip()
        if not key and client is None:
            raise ValueError("api_key must be a non-empty string")
        if not (model or "").strip():
            raise ValueError("model must be non-empty")

        self._model = model.strip()
        self._dimensions = dimensions
        self._client: _AsyncOpenAIClient = client or AsyncOpenAI(
            api_key=key,
            base_url=base_url,
            timeout=timeout_seconds,
            max_retries=0,
        )

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []

        kwargs: dict[str, Any] = {"model": self._model, "input": list(texts)}
        if self._dimensions is not None:
            kwargs["dimensions"] = int(self._dimensions)

        response = await self._client.embeddings.create(**kwargs)

        data = _field(response, "data")
        if not isinstance(data, (list, tuple)) or len(data) != len(texts):
            got = len(data) if isinstance(data, (list, tuple)) else "no"
            raise EmbeddingError(f"Expected {len(texts)} embeddings, got {got}")

        ordered: list[Any] = list(data)
        indexes = [_field(item, "index") for item in ordered]
        if all(isinstance(i, int) for i in indexes):
            ordered = [item for _, item in sorted(zip(indexes, ordered), key=lambda p: p[0])]

        vectors: list[list[float]] = []
        for item in ordered:
            raw = _field(item, "embedding")
            if not isinstance(raw, (list, tuple)) or not raw:
                raise EmbeddingError("Embedding response item has no vector")
            vector = [float(x) for x in raw]
            if self._dimensions is not None and len(vector) != self._dimensions:
                raise EmbeddingError(
                    f"Expected {self._dimensions}-dimensional vectors, got {len(vector)}"
                )
            vectors.append(vector)
        return vectors


@dataclass(frozen=True)
class EmbeddingResult:
    posts_embedded: int = 0
    links_embedded: int = 0
    failed: int = 0
    rounds: int = 0

    @property
    def total(self) -> int:
        return self.posts_embedded + self.links_embedded


@dataclass(frozen=True)
class _StageCounts:
    embedded: int
    failed_keys: Sequence[Any]


def _chunks(items: Sequence[T], size: int) -> list[Sequence[T]]:
    step = max(1, int(size))
    return [items[start : start + step] for start in range(0, len(items), step)]


class EmbeddingGenerator:
    def __init__(
        self,
        store: VaultStore,
        client: EmbeddingClient,
        *,
        batch_size: int = 100,
        concurrency: int = 3,
        max_input_chars: int = 8000,
        retry: RetryConfig | None = None,
        is_retryable: IsRetryableFn = is_retryable_openai_exception,
        sleep_fn: AsyncSleepFn | None = None,
        logger: EventLogger | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")

        self._store = store
        self._client = client
        self._batch_size = int(batch_size)
        self._concurrency = int(concurrency)
        self._max_chars = int(max_input_chars)
        self._retry = retry or RetryConfig()
        self._is_retryable = is_retryable
        self._sleep_fn = sleep_fn
        self._log = ensure_logger(logger)

    def _on_retry(self, event: RetryEvent) -> None:
        self._log.warning(
            "embedding_retry",
            operation=event.operation,
            failure_attempt=event.failure_attempt,
            next_attempt=event.next_attempt,
            max_attempts=event.max_attempts,
            delay_seconds=round(event.delay_seconds, 3),
            retry_after_seconds=event.retry_after_seconds,
            reason=event.reason,
            error_type=event.error_type,
        )

    async def _embed_batch(
        self, texts: Sequence[str], *, operation: str, sem: asyncio.Semaphore
    ) -> list[list[float]] | None:
        async with sem:
            try:
                vectors = await call_with_retries_async(
                    lambda: self._client.embed(texts),
                    cfg=self._retry,
                    is_retryable=self._is_retryable,
                    operation=operation,
                    on_retry=self._on_retry,
                    sleep_fn=self._sleep_fn,
                )
                if len(vectors) != len(texts):
                    raise EmbeddingError(
                        f"Expected {len(texts)} embeddings, got {len(vectors)}"
                    )
                return vectors
            except Exception as e:
                self._log.exception(
                    "embedding_batch_failed", exc=e, operation=operation, size=len(texts)
                )
                return None

    async def _embed_items(
        self,
        items: Sequence[T],
        *,
        operation: str,
        text_fn: Callable[[T], str],
        key_fn: Callable[[T], Any],
        patch_fn: Callable[[Any, Sequence[float]], None],
    ) -> _StageCounts:
        if not items:
            return _StageCounts(embedded=0, failed_keys=())

        sem = asyncio.Semaphore(self._concurrency)
        batches = _chunks(items, self._batch_size)
        results = await asyncio.gather(
            *(
                self._embed_batch(
                    [truncate_text(text_fn(item), self._max_chars) for item in batch],
                    operation=operation,
                    sem=sem,
                )
                for batch in batches
            )
        )

        embedded = 0
        failed: list[Any] = []
        for batch, vectors in zip(batches, results):
            if vectors is None:
                failed.extend(key_fn(item) for item in batch)
                continue
            for item, vector in zip(batch, vectors):
                patch_fn(key_fn(item), vector)
                embedded += 1
        return _StageCounts(embedded=embedded, failed_keys=failed)

    async def embed_posts(self, posts: Sequence[Post]) -> _StageCounts:
        return await self._embed_items(
            posts,
            operation="embed_posts",
            text_fn=post_embedding_text,
            key_fn=lambda p: p.post_id,
            patch_fn=self._store.patch_post_embedding,
        )

    async def embed_links(self, links: Sequence[Link]) -> _StageCounts:
        return await self._embed_items(
            links,
            operation="embed_links",
            text_fn=link_embedding_text,
            key_fn=lambda link: link.id,
            patch_fn=self._store.patch_link_embedding,
        )

    async def drain(self, *, query_limit: int = 500, max_rounds: int = 20) -> EmbeddingResult:
        """
        Embed posts, then eligible links, in rounds until nothing is left.

        Items whose batch failed are not retried within the same drain; they stay
        unembedded for a later run. Stops early when a round embeds nothing.
        """
        posts_embedded = 0
        links_embedded = 0
        failed = 0
        rounds = 0
        failed_posts: set[str] = set()
        failed_links: set[int] = set()

        while rounds < max_rounds:
            posts = [
                p
                for p in self._store.query_posts_missing_embedding(query_limit)
                if p.post_id not in failed_posts
            ]
            post_counts = await self.embed_posts(posts)

            links = [
                link
                for link in self._store.query_links_missing_embedding(query_limit)
                if link.id not in failed_links
            ]
            link_counts = await self.embed_links(links)

            if not posts and not links:
                break

            rounds += 1
            posts_embedded += post_counts.embedded
            links_embedded += link_counts.embedded
            failed += len(post_counts.failed_keys) + len(link_counts.failed_keys)
            failed_posts.update(post_counts.failed_keys)
            failed_links.update(link_counts.failed_keys)

            self._log.info(
                "embedding_round_completed",
                round=rounds,
                posts=len(posts),
                links=len(links),
                posts_embedded=post_counts.embedded,
                links_embedded=link_counts.embedded,
                failed=len(post_counts.failed_keys) + len(link_counts.failed_keys),
            )

            if post_counts.embedded + link_counts.embedded == 0:
                break

        return EmbeddingResult(
            posts_embedded=posts_embedded,
            links_embedded=links_embedded,
            failed=failed,
            rounds=rounds,
        )
