from __future__ import annotations

import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from importlib.metadata import PackageNotFoundError, version
from typing import AbstractSet, Any, Callable, Sequence

from .dedupe import partition_new_posts
from .embeddings import EmbeddingGenerator, EmbeddingResult
from .errors import CheckpointMismatch
from .links import SKIP_DOMAINS, extract_link_candidates, store_link_candidates
from .metadata import MetadataFetcher, MetadataFetchResult
from .normalize import normalize_items
from .post import CHECKPOINT_KEY, SyncState, SyncType
from .run_log import EventLogger, ensure_logger
from .source import BookmarkSource, source_item_id
from .store import VaultStore


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _pkg_version(name: str) -> str:
    try:
        return version(name)
    except PackageNotFoundError:
        return "unknown"


class SyncStage(str, Enum):
    IDLE = "idle"
    FETCHING_SOURCE = "fetching_source"
    NORMALIZING = "normalizing"
    DEDUPLICATING = "deduplicating"
    EXTRACTING_LINKS = "extracting_links"
    FETCHING_METADATA = "fetching_metadata"
    EMBEDDING = "embedding"
    RECORDING_CHECKPOINT = "recording_checkpoint"


@dataclass(frozen=True)
class CheckpointWindow:
    items: Sequence[Any]
    checkpoint_hit: bool
    newest_id: str | None


def select_checkpoint_window(
    items: Sequence[Any],
    checkpoint_id: str | None,
    *,
    strict: bool = False,
) -> CheckpointWindow:
    """
    Cut a newest-first item list at the previous checkpoint.

    Items from the checkpoint onward were handled by an earlier run. Under strict
    mode a checkpoint that never shows up raises CheckpointMismatch, since the
    backlog may be larger than the fetched window.
    """
    newest = next((i for i in (source_item_id(it) for it in items) if i is not None), None)

    if checkpoint_id is None:
        return CheckpointWindow(items=list(items), checkpoint_hit=False, newest_id=newest)

    for idx, item in enumerate(items):
        if source_item_id(item) == checkpoint_id:
            return CheckpointWindow(items=list(items[:idx]), checkpoint_hit=True, newest_id=newest)

    if strict:
        raise CheckpointMismatch(
            f"Checkpoint not found: {checkpoint_id} is not among the {len(items)} fetched items"
        )
    return CheckpointWindow(items=list(items), checkpoint_hit=False, newest_id=newest)


@dataclass
class SyncSummary:
    sync_type: SyncType
    fetched: int = 0
    normalized: int = 0
    rejected: int = 0
    posts_added: int = 0
    posts_skipped: int = 0
    batch_duplicates: int = 0
    links_inserted: int = 0
    links_skipped: int = 0
    links_processed: int = 0
    links_failed: int = 0
    posts_embedded: int = 0
    links_embedded: int = 0
    embeddings_failed: int = 0
    previous_checkpoint_id: str | None = None
    checkpoint_id: str | None = None
    checkpoint_hit: bool = False
    error_message: str | None = None
    sync_state_id: int | None = None

    @property
    def embeddings_generated(self) -> int:
        return self.posts_embedded + self.links_embedded

    @property
    def ok(self) -> bool:
        return self.error_message is None


class SyncOrchestrator:
    """
    Runs the ingestion stages in order and records one SyncState per run.

    Stages never overlap: links are extracted only after new posts are stored,
    metadata is fetched only after extraction, and embedding comes last.
    """

    def __init__(
        self,
        store: VaultStore,
        *,
        fetcher: MetadataFetcher | None = None,
        embedder: EmbeddingGenerator | None = None,
        chunk_size: int = 100,
        skip_domains: AbstractSet[str] = SKIP_DOMAINS,
        fetch_batch_limit: int = 200,
        fetch_max_rounds: int = 50,
        embed_query_limit: int = 500,
        embed_max_rounds: int = 20,
        config_hash: str | None = None,
        logger: EventLogger | None = None,
    ) -> None:
        self._store = store
        self._fetcher = fetcher
        self._embedder = embedder
        self._chunk_size = int(chunk_size)
        self._skip = frozenset(skip_domains)
        self._fetch_batch_limit = int(fetch_batch_limit)
        self._fetch_max_rounds = int(fetch_max_rounds)
        self._embed_query_limit = int(embed_query_limit)
        self._embed_max_rounds = int(embed_max_rounds)
        self._config_hash = config_hash
        self._log = ensure_logger(logger)
        self._stage = SyncStage.IDLE

    @property
    def stage(self) -> SyncStage:
        return self._stage

    def _enter(self, stage: SyncStage) -> None:
        previous = self._stage
        self._stage = stage
        self._log.debug("stage_changed", previous=previous.value, stage=stage.value)

    async def run_import(self, items: Sequence[Any]) -> SyncSummary:
        """One-shot import of a static export; the checkpoint is left as it was."""
        return await self._run(
            "manual",
            fetch_items=lambda: list(items),
            source_name="import",
        )

    async def run_incremental(
        self,
        source: BookmarkSource,
        *,
        strict_checkpoint: bool = False,
        ignore_checkpoint: bool = False,
        scheduled: bool = False,
    ) -> SyncSummary:
        return await self._run(
            "scheduled" if scheduled else "incremental",
            fetch_items=source.fetch,
            source_name=source.name,
            use_checkpoint=True,
            strict_checkpoint=strict_checkpoint,
            ignore_checkpoint=ignore_checkpoint,
        )

    async def run_processing(self) -> SyncSummary:
        """Metadata and embedding drains over whatever the store already holds."""
        return await self._run("manual", fetch_items=None, source_name="process")

    async def _run(
        self,
        sync_type: SyncType,
        *,
        fetch_items: Callable[[], Sequence[Any]] | None,
        source_name: str,
        use_checkpoint: bool = False,
        strict_checkpoint: bool = False,
        ignore_checkpoint: bool = False,
    ) -> SyncSummary:
        previous = self._store.get_latest_sync_state()
        summary = SyncSummary(sync_type=sync_type)
        summary.previous_checkpoint_id = previous.checkpoint_id if previous else None
        summary.checkpoint_id = summary.previous_checkpoint_id

        self._log.info(
            "sync_started",
            sync_type=sync_type,
            source=source_name,
            checkpoint=summary.previous_checkpoint_id,
            strict_checkpoint=strict_checkpoint,
            ignore_checkpoint=ignore_checkpoint,
        )

        try:
            if fetch_items is not None:
                self._ingest(
                    summary,
                    fetch_items,
                    use_checkpoint=use_checkpoint,
                    strict_checkpoint=strict_checkpoint,
                    ignore_checkpoint=ignore_checkpoint,
                )
            await self._enrich(summary)
        except Exception as e:
            # The checkpoint stays at the previous value so the next run resumes there.
            summary.checkpoint_id = summary.previous_checkpoint_id
            summary.error_message = f"{type(e).__name__}: {e}"
            self._log.exception("sync_failed", exc=e, sync_type=sync_type, stage=self._stage.value)
            self._record(summary, source_name=source_name)
            raise

        self._record(summary, source_name=source_name)
        return summary

    def _ingest(
        self,
        summary: SyncSummary,
        fetch_items: Callable[[], Sequence[Any]],
        *,
        use_checkpoint: bool,
        strict_checkpoint: bool,
        ignore_checkpoint: bool,
    ) -> None:
        self._enter(SyncStage.FETCHING_SOURCE)
        items = list(fetch_items())
        summary.fetched = len(items)

        if use_checkpoint:
            window = select_checkpoint_window(
                items,
                None if ignore_checkpoint else summary.previous_checkpoint_id,
                strict=strict_checkpoint,
            )
            items = list(window.items)
            summary.checkpoint_hit = window.checkpoint_hit
            pending_checkpoint = window.newest_id or summary.previous_checkpoint_id
            self._log.info(
                "checkpoint_window",
                fetched=summary.fetched,
                window=len(items),
                checkpoint_hit=window.checkpoint_hit,
                newest_id=window.newest_id,
            )
        else:
            pending_checkpoint = summary.previous_checkpoint_id

        self._enter(SyncStage.NORMALIZING)
        normalized = normalize_items(items, logger=self._log)
        summary.normalized = len(normalized.posts)
        summary.rejected = normalized.rejected
        self._log.info(
            "posts_normalized", normalized=summary.normalized, rejected=summary.rejected
        )

        self._enter(SyncStage.DEDUPLICATING)
        dedupe = partition_new_posts(
            normalized.posts, self._store, chunk_size=self._chunk_size, logger=self._log
        )
        summary.posts_added = len(dedupe.new)
        summary.posts_skipped = dedupe.skipped
        summary.batch_duplicates = dedupe.batch_duplicates

        self._enter(SyncStage.EXTRACTING_LINKS)
        extracted = extract_link_candidates(dedupe.new, skip_domains=self._skip)
        stored = store_link_candidates(
            extracted.candidates, self._store, chunk_size=self._chunk_size
        )
        self._store.mark_links_extracted(dedupe.new_ids)
        summary.links_inserted = stored.inserted
        summary.links_skipped = extracted.skipped
        self._log.info(
            "links_extracted",
            candidates=len(extracted.candidates),
            inserted=stored.inserted,
            skipped=extracted.skipped,
        )

        summary.checkpoint_id = pending_checkpoint

    async def _enrich(self, summary: SyncSummary) -> None:
        self._enter(SyncStage.FETCHING_METADATA)
        if self._fetcher is not None:
            fetched: MetadataFetchResult = await self._fetcher.drain(
                batch_limit=self._fetch_batch_limit, max_rounds=self._fetch_max_rounds
            )
            summary.links_processed = fetched.attempted
            summary.links_failed = fetched.failed

        self._enter(SyncStage.EMBEDDING)
        if self._embedder is not None:
            embedded: EmbeddingResult = await self._embedder.drain(
                query_limit=self._embed_query_limit, max_rounds=self._embed_max_rounds
            )
            summary.posts_embedded = embedded.posts_embedded
            summary.links_embedded = embedded.links_embedded
            summary.embeddings_failed = embedded.failed

    def _record(self, summary: SyncSummary, *, source_name: str) -> None:
        self._enter(SyncStage.RECORDING_CHECKPOINT)

        metadata: dict[str, Any] = {
            "source": source_name,
            "fetched": summary.fetched,
            "normalized": summary.normalized,
            "rejected": summary.rejected,
            "added": summary.posts_added,
            "updated": summary.posts_skipped,
            "batch_duplicates": summary.batch_duplicates,
            "links_inserted": summary.links_inserted,
            "links_failed": summary.links_failed,
            "embeddings_failed": summary.embeddings_failed,
            "previous_source_id": summary.previous_checkpoint_id,
            "checkpoint_hit": summary.checkpoint_hit,
            "versions": {
                "python": sys.version.split()[0],
                "openai": _pkg_version("openai"),
                "httpx": _pkg_version("httpx"),
            },
        }
        if summary.checkpoint_id:
            metadata[CHECKPOINT_KEY] = summary.checkpoint_id
        if self._config_hash:
            metadata["config_sha256"] = self._config_hash

        state = self._store.insert_sync_state(
            SyncState(
                last_sync_at=_utc_now_iso(),
                posts_added=summary.posts_added,
                links_processed=summary.links_processed,
                embeddings_generated=summary.embeddings_generated,
                sync_type=summary.sync_type,
                error_message=summary.error_message,
                metadata=metadata,
            )
        )
        summary.sync_state_id = state.id
        self._log.info(
            "sync_recorded",
            sync_state_id=state.id,
            sync_type=summary.sync_type,
            posts_added=summary.posts_added,
            links_processed=summary.links_processed,
            embeddings_generated=summary.embeddings_generated,
            checkpoint=summary.checkpoint_id,
            error=summary.error_message,
        )
        self._enter(SyncStage.IDLE)
