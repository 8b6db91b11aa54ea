from __future__ import annotations

import unittest
from typing import Any

import httpx

from bookmark_vault.embeddings import EmbeddingGenerator
from bookmark_vault.errors import CheckpointMismatch
from bookmark_vault.memory_store import MemoryVaultStore
from bookmark_vault.metadata import MetadataFetcher
from bookmark_vault.offline import OfflineEmbeddingClient, OfflineSource, offline_http_client
from bookmark_vault.post import SyncState
from bookmark_vault.sync import SyncOrchestrator, SyncStage, select_checkpoint_window


def _item(i: int) -> dict[str, Any]:
    return {
        "id": str(i),
        "author": {"username": "alice"},
        "text": f"post {i} https://site{i}.test/page",
    }


_NEWEST_FIRST = [_item(i) for i in range(105, 98, -1)]


class _ListSource:
    def __init__(self, items: list[dict[str, Any]]) -> None:
        self.items = items

    @property
    def name(self) -> str:
        return "list"

    def fetch(self) -> list[Any]:
        return list(self.items)


def _seed_checkpoint(store: MemoryVaultStore, checkpoint: str) -> None:
    store.insert_sync_state(
        SyncState(last_sync_at="2025-01-01T00:00:00+00:00", metadata={"latest_source_id": checkpoint})
    )


class TestCheckpointWindow(unittest.TestCase):
    def test_window_stops_before_checkpoint(self) -> None:
        window = select_checkpoint_window(_NEWEST_FIRST, "100")

        self.assertEqual([it["id"] for it in window.items], ["105", "104", "103", "102", "101"])
        self.assertTrue(window.checkpoint_hit)
        self.assertEqual(window.newest_id, "105")

    def test_missing_checkpoint(self) -> None:
        lenient = select_checkpoint_window(_NEWEST_FIRST, "50")
        self.assertEqual(len(lenient.items), 7)
        self.assertFalse(lenient.checkpoint_hit)

        with self.assertRaisesRegex(CheckpointMismatch, "Checkpoint not found"):
            select_checkpoint_window(_NEWEST_FIRST, "50", strict=True)

    def test_checkpoint_at_head_yields_nothing(self) -> None:
        window = select_checkpoint_window(_NEWEST_FIRST, "105")
        self.assertEqual(window.items, [])
        self.assertTrue(window.checkpoint_hit)


class TestSyncOrchestrator(unittest.IsolatedAsyncioTestCase):
    async def test_incremental_sync_only_adds_posts_newer_than_checkpoint(self) -> None:
        store = MemoryVaultStore()
        _seed_checkpoint(store, "100")
        orchestrator = SyncOrchestrator(store)

        summary = await orchestrator.run_incremental(_ListSource(_NEWEST_FIRST))

        self.assertEqual(summary.posts_added, 5)
        self.assertEqual(summary.links_inserted, 5)
        self.assertTrue(summary.checkpoint_hit)
        self.assertEqual(summary.checkpoint_id, "105")
        self.assertIsNone(store.get_post("100"))

        latest = store.get_latest_sync_state()
        assert latest is not None
        self.assertEqual(latest.sync_type, "incremental")
        self.assertEqual(latest.checkpoint_id, "105")
        self.assertEqual(latest.metadata["previous_source_id"], "100")
        self.assertEqual(
            set(latest.metadata),
            {
                "source",
                "fetched",
                "normalized",
                "rejected",
                "added",
                "updated",
                "batch_duplicates",
                "links_inserted",
                "links_failed",
                "embeddings_failed",
                "previous_source_id",
                "checkpoint_hit",
                "versions",
                "latest_source_id",
            },
        )
        self.assertEqual(orchestrator.stage, SyncStage.IDLE)

    async def test_strict_mismatch_records_failure_and_keeps_checkpoint(self) -> None:
        store = MemoryVaultStore()
        _seed_checkpoint(store, "50")
        orchestrator = SyncOrchestrator(store)

        with self.assertRaises(CheckpointMismatch):
            await orchestrator.run_incremental(_ListSource(_NEWEST_FIRST), strict_checkpoint=True)

        latest = store.get_latest_sync_state()
        assert latest is not None
        self.assertEqual(latest.id, 2)
        self.assertIn("Checkpoint not found", latest.error_message or "")
        self.assertEqual(latest.checkpoint_id, "50")
        self.assertEqual(latest.posts_added, 0)
        self.assertEqual(store.stats().total_posts, 0)
        self.assertEqual(orchestrator.stage, SyncStage.IDLE)

    async def test_ignore_checkpoint_takes_everything(self) -> None:
        store = MemoryVaultStore()
        _seed_checkpoint(store, "100")

        summary = await SyncOrchestrator(store).run_incremental(
            _ListSource(_NEWEST_FIRST), ignore_checkpoint=True, scheduled=True
        )

        self.assertEqual(summary.posts_added, 7)
        self.assertEqual(summary.sync_type, "scheduled")

    async def test_rerun_is_idempotent_and_records_one_state_per_run(self) -> None:
        store = MemoryVaultStore()
        orchestrator = SyncOrchestrator(store)

        first = await orchestrator.run_import(_NEWEST_FIRST)
        second = await orchestrator.run_import(_NEWEST_FIRST)

        self.assertEqual(first.posts_added, 7)
        self.assertEqual((second.posts_added, second.posts_skipped), (0, 7))
        self.assertEqual(second.links_inserted, 0)
        self.assertEqual((first.sync_state_id, second.sync_state_id), (1, 2))
        self.assertEqual(store.stats().total_links, 7)

    async def test_manual_import_keeps_checkpoint(self) -> None:
        store = MemoryVaultStore()
        _seed_checkpoint(store, "100")

        summary = await SyncOrchestrator(store).run_import([_item(200)])

        latest = store.get_latest_sync_state()
        assert latest is not None
        self.assertEqual(summary.posts_added, 1)
        self.assertEqual(latest.sync_type, "manual")
        self.assertEqual(latest.checkpoint_id, "100")

    async def test_full_pipeline_fetches_and_embeds(self) -> None:
        store = MemoryVaultStore()
        embedding_client = OfflineEmbeddingClient(dimensions=4)

        async with offline_http_client() as client:
            orchestrator = SyncOrchestrator(
                store,
                fetcher=MetadataFetcher(store, client=client),
                embedder=EmbeddingGenerator(store, embedding_client),
                config_hash="abc",
            )
            summary = await orchestrator.run_incremental(OfflineSource())

        self.assertEqual(summary.rejected, 1)
        self.assertEqual(summary.posts_added, 4)
        self.assertEqual(summary.links_processed, summary.links_inserted)
        self.assertEqual(summary.links_failed, 0)
        self.assertEqual(summary.posts_embedded, 4)
        self.assertGreater(summary.links_embedded, 0)
        self.assertTrue(summary.ok)

        stats = store.stats()
        self.assertEqual(stats.posts_with_embeddings, 4)
        assert stats.last_sync is not None
        self.assertEqual(stats.last_sync.embeddings_generated, summary.embeddings_generated)
        self.assertEqual(stats.last_sync.metadata["config_sha256"], "abc")
        self.assertEqual(stats.last_sync.checkpoint_id, "1005")

    async def test_processing_run_drains_existing_rows(self) -> None:
        store = MemoryVaultStore()
        await SyncOrchestrator(store).run_import(_NEWEST_FIRST[:2])

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, headers={"content-type": "text/html"}, text="<title>t</title>")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            summary = await SyncOrchestrator(
                store,
                fetcher=MetadataFetcher(store, client=client),
                embedder=EmbeddingGenerator(store, OfflineEmbeddingClient(dimensions=2)),
            ).run_processing()

        self.assertEqual(summary.posts_added, 0)
        self.assertEqual(summary.links_processed, 2)
        self.assertEqual(summary.embeddings_generated, 4)


if __name__ == "__main__":
    unittest.main()
