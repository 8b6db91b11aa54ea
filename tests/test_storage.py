from __future__ import annotations

import sqlite3
import tempfile
import unittest
from pathlib import Path

from bookmark_vault.config_schema import StorageConfig
from bookmark_vault.errors import StorageError
from bookmark_vault.memory_store import MemoryVaultStore
from bookmark_vault.post import (
    LinkCandidate,
    LinkMetadata,
    Post,
    PostMetrics,
    SyncState,
    UrlEntity,
)
from bookmark_vault.storage import SQLiteVaultStore
from bookmark_vault.storage_schema import SCHEMA_VERSION
from bookmark_vault.store import VaultStore, open_store


def _post(post_id: str, *, author: str = "alice", likes: int = 1) -> Post:
    return Post(
        post_id=post_id,
        author_username=author,
        author_name=author.title(),
        content=f"post {post_id}",
        created_at=f"2024-01-0{int(post_id) % 9 + 1}T00:00:00+00:00",
        media_urls=("https://pbs.twimg.com/media/a.jpg",),
        metrics=PostMetrics(likes=likes, reposts=0),
        url_entities=(UrlEntity("https://t.co/x", "https://example.com/x", "example.com/x"),),
        raw_data={"rest_id": post_id},
    )


def _link(post_id: str, url: str, domain: str = "example.com") -> LinkCandidate:
    return LinkCandidate(post_id=post_id, url=url, domain=domain)


class _StoreContract:
    """Behaviour both adapters share; subclasses provide make_store()."""

    def make_store(self) -> VaultStore:
        raise NotImplementedError

    def setUp(self) -> None:
        self.store = self.make_store()

    def tearDown(self) -> None:
        self.store.close()

    def test_upsert_posts_reports_added_and_updated(self) -> None:
        first = self.store.upsert_posts([_post("1"), _post("2")])
        second = self.store.upsert_posts([_post("2", likes=9), _post("3")])

        self.assertEqual(list(first.added), ["1", "2"])
        self.assertEqual(list(first.updated), [])
        self.assertEqual(list(second.added), ["3"])
        self.assertEqual(list(second.updated), ["2"])

        updated = self.store.get_post("2")
        assert updated is not None
        self.assertEqual(updated.metrics.likes, 9)
        self.assertIsNotNone(updated.fetched_at)

    def test_post_fields_survive_storage(self) -> None:
        original = _post("5")
        self.store.upsert_posts([original])

        stored = self.store.get_post("5")
        assert stored is not None
        self.assertEqual(stored.content, original.content)
        self.assertEqual(tuple(stored.media_urls), original.media_urls)
        self.assertEqual(tuple(stored.url_entities), original.url_entities)
        self.assertEqual(stored.metrics, original.metrics)
        self.assertEqual(dict(stored.raw_data or {}), {"rest_id": "5"})
        self.assertIsNone(stored.embedding)

    def test_embedded_post_is_not_rewritten(self) -> None:
        self.store.upsert_posts([_post("1", likes=1)])
        self.store.patch_post_embedding("1", [0.1, 0.2])
        self.store.upsert_posts([_post("1", likes=50)])

        stored = self.store.get_post("1")
        assert stored is not None
        self.assertEqual(stored.metrics.likes, 1)
        self.assertEqual(tuple(stored.embedding or ()), (0.1, 0.2))
        self.assertIsNotNone(stored.processed_at)
        self.assertEqual(self.store.query_posts_missing_embedding(10), [])

    def test_links_are_unique_per_post_and_url(self) -> None:
        self.store.upsert_posts([_post("1"), _post("2")])

        first = self.store.upsert_links(
            [_link("1", "https://a.test"), _link("1", "https://b.test"), _link("2", "https://a.test")]
        )
        second = self.store.upsert_links([_link("1", "https://a.test")])

        self.assertEqual((first.inserted, first.updated), (3, 0))
        self.assertEqual((second.inserted, second.updated), (0, 1))
        self.assertEqual(len(self.store.links_for_post("1")), 2)

    def test_links_require_known_post(self) -> None:
        with self.assertRaises(StorageError):
            self.store.upsert_links([_link("404", "https://a.test")])

    def test_link_metadata_lifecycle(self) -> None:
        self.store.upsert_posts([_post("1")])
        self.store.upsert_links([_link("1", "https://a.test"), _link("1", "https://b.test")])

        pending = self.store.query_links_missing_metadata(10)
        self.assertEqual(len(pending), 2)
        ok, bad = pending

        self.store.patch_link_metadata(
            ok.id, LinkMetadata(domain="a.test", title="A", description="about a")
        )
        self.store.patch_link_metadata(bad.id, LinkMetadata(fetch_error="HTTP 500", title="ignored"))

        self.assertEqual(self.store.query_links_missing_metadata(10), [])

        eligible = self.store.query_links_missing_embedding(10)
        self.assertEqual([link.id for link in eligible], [ok.id])
        self.assertEqual(eligible[0].title, "A")
        self.assertIsNotNone(eligible[0].fetched_at)

        failed = [link for link in self.store.links_for_post("1") if link.id == bad.id][0]
        self.assertEqual(failed.fetch_error, "HTTP 500")
        self.assertIsNone(failed.title)
        self.assertIsNotNone(failed.fetched_at)

        self.store.patch_link_embedding(ok.id, [1.0, 0.0])
        self.assertEqual(self.store.query_links_missing_embedding(10), [])

    def test_domain_only_outcome_is_not_embeddable(self) -> None:
        self.store.upsert_posts([_post("1")])
        self.store.upsert_links([_link("1", "https://t.co/x"), _link("1", "https://docs.test/a.pdf")])
        short, pdf = self.store.links_for_post("1")

        self.store.patch_link_metadata(
            short.id, LinkMetadata(domain="x.com", expanded_url="https://x.com/a/status/1")
        )
        self.store.patch_link_metadata(pdf.id, LinkMetadata(content_type="application/pdf"))

        self.assertEqual(self.store.query_links_missing_metadata(10), [])
        self.assertEqual(self.store.query_links_missing_embedding(10), [])

    def test_patch_unknown_rows_raise(self) -> None:
        with self.assertRaises(StorageError):
            self.store.patch_post_embedding("missing", [1.0])
        with self.assertRaises(StorageError):
            self.store.patch_link_metadata(999, LinkMetadata(title="x"))

    def test_sync_state_latest_and_checkpoint(self) -> None:
        self.assertIsNone(self.store.get_latest_sync_state())

        self.store.insert_sync_state(
            SyncState(last_sync_at="2025-01-01T00:00:00+00:00", metadata={"latest_source_id": "10"})
        )
        saved = self.store.insert_sync_state(
            SyncState(
                last_sync_at="2025-01-02T00:00:00+00:00",
                posts_added=3,
                sync_type="incremental",
                metadata={"latest_source_id": "20", "fetched": 7},
            )
        )

        latest = self.store.get_latest_sync_state()
        assert latest is not None
        self.assertEqual(latest.id, saved.id)
        self.assertEqual(latest.checkpoint_id, "20")
        self.assertEqual(latest.posts_added, 3)
        self.assertEqual(latest.sync_type, "incremental")
        self.assertEqual(latest.metadata["fetched"], 7)

    def test_backfill_markers(self) -> None:
        self.store.upsert_posts([_post("1"), _post("2")])
        self.store.mark_links_extracted(["1"])

        self.assertEqual([p.post_id for p in self.store.query_posts_missing_links(10)], ["2"])

    def test_read_queries_and_stats(self) -> None:
        self.store.upsert_posts([_post("1"), _post("2"), _post("3", author="bob")])
        self.store.upsert_links(
            [
                _link("1", "https://a.test/1", domain="a.test"),
                _link("2", "https://a.test/2", domain="a.test"),
                _link("3", "https://b.test", domain="b.test"),
            ]
        )
        link = self.store.links_for_post("3")[0]
        self.store.patch_link_metadata(link.id, LinkMetadata(fetch_error="HTTP 404"))
        self.store.patch_post_embedding("1", [0.5])
        self.store.insert_sync_state(SyncState(last_sync_at="2025-01-01T00:00:00+00:00"))

        self.assertEqual(len(self.store.posts_by_author("@Alice")), 2)
        self.assertEqual(len(self.store.links_by_domain("www.a.test")), 2)

        stats = self.store.stats(top_n=1)
        self.assertEqual(stats.total_posts, 3)
        self.assertEqual(stats.total_links, 3)
        self.assertEqual(stats.posts_with_embeddings, 1)
        self.assertEqual(stats.links_with_errors, 1)
        self.assertEqual(list(stats.top_authors), [("alice", 2)])
        self.assertEqual(list(stats.top_domains), [("a.test", 2)])
        self.assertIsNotNone(stats.last_sync)


class TestSQLiteVaultStore(_StoreContract, unittest.TestCase):
    def make_store(self) -> VaultStore:
        self._td = tempfile.TemporaryDirectory()
        self.addCleanup(self._td.cleanup)
        return SQLiteVaultStore.open(Path(self._td.name) / "vault.sqlite3")

    def test_migrations_are_recorded_once(self) -> None:
        path = Path(self._td.name) / "vault.sqlite3"
        self.store.close()
        self.store = SQLiteVaultStore.open(path)

        conn = sqlite3.connect(path)
        try:
            versions = [r[0] for r in conn.execute("SELECT version FROM schema_migrations ORDER BY version")]
        finally:
            conn.close()
        self.assertEqual(versions, list(range(1, SCHEMA_VERSION + 1)))


class TestMemoryVaultStore(_StoreContract, unittest.TestCase):
    def make_store(self) -> VaultStore:
        return MemoryVaultStore()


class TestOpenStore(unittest.TestCase):
    def test_backend_selection(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            sqlite_store = open_store(StorageConfig(sqlite_path=str(Path(td) / "v.sqlite3")))
            try:
                self.assertIsInstance(sqlite_store, SQLiteVaultStore)
            finally:
                sqlite_store.close()

        self.assertIsInstance(open_store(StorageConfig(backend="memory")), MemoryVaultStore)


if __name__ == "__main__":
    unittest.main()
