from __future__ import annotations

import unittest

from bookmark_vault.links import (
    backfill_links,
    extract_domain,
    extract_link_candidates,
    normalize_url_text,
    store_link_candidates,
    trim_url,
    urls_for_post,
)
from bookmark_vault.memory_store import MemoryVaultStore
from bookmark_vault.post import Post, UrlEntity


def _post(text: str, *, post_id: str = "1", entities: tuple[UrlEntity, ...] = (), raw=None) -> Post:
    return Post(
        post_id=post_id,
        author_username="alice",
        content=text,
        url_entities=entities,
        raw_data=raw,
    )


def _scanned(text: str) -> list[str]:
    return [e.url for e in urls_for_post(_post(text))]


class TestUrlText(unittest.TestCase):
    def test_wrapped_url_is_rejoined(self) -> None:
        self.assertEqual(_scanned("see https://ex.am/\nple for info"), ["https://ex.am/ple"])

    def test_url_after_sentence_break_is_unaffected(self) -> None:
        self.assertEqual(_scanned("first.\nhttps://x.test"), ["https://x.test"])

    def test_blank_line_after_url_ends_it(self) -> None:
        self.assertEqual(_scanned("Read https://a.test/post\n\nGreat stuff"), ["https://a.test/post"])

    def test_crlf_after_url_ends_it(self) -> None:
        self.assertEqual(_scanned("Read https://a.test/post\r\nGreat stuff"), ["https://a.test/post"])

    def test_newline_next_to_space_becomes_space(self) -> None:
        self.assertEqual(normalize_url_text("end of line \nnext"), "end of line  next")
        self.assertEqual(normalize_url_text("a\r\nb"), "a  b")
        self.assertEqual(normalize_url_text("a\nb"), "ab")
        self.assertEqual(normalize_url_text("a)\n(b"), "a)(b")
        self.assertEqual(normalize_url_text("a\né"), "a é")

    def test_trailing_punctuation_is_trimmed(self) -> None:
        self.assertEqual(_scanned("...check (https://x.test)."), ["https://x.test"])
        self.assertEqual(trim_url("https://x.test/a?b=1!…"), "https://x.test/a?b=1")
        self.assertEqual(trim_url("https://x.test/path];"), "https://x.test/path")

    def test_extract_domain(self) -> None:
        self.assertEqual(extract_domain("https://WWW.Example.COM/a"), "example.com")
        self.assertEqual(extract_domain("http://sub.example.org:8080/"), "sub.example.org")
        self.assertIsNone(extract_domain("not a url"))
        self.assertIsNone(extract_domain(""))
        self.assertIsNone(extract_domain("http://[::1"))


class TestExtractLinkCandidates(unittest.TestCase):
    def test_same_url_in_text_and_entities_yields_one_candidate(self) -> None:
        post = _post(
            "https://x.test twice https://x.test",
            entities=(UrlEntity(url="https://x.test"),),
        )
        result = extract_link_candidates([post])

        self.assertEqual([c.url for c in result.candidates], ["https://x.test"])

    def test_text_scan_suppressed_by_expanded_entity(self) -> None:
        post = _post(
            "short https://t.co/abc and long https://example.com/read",
            entities=(UrlEntity("https://t.co/abc", "https://example.com/read", "example.com/read"),),
        )
        result = extract_link_candidates([post])

        self.assertEqual(len(result.candidates), 1)
        c = result.candidates[0]
        self.assertEqual(c.url, "https://t.co/abc")
        self.assertEqual(c.expanded_url, "https://example.com/read")
        self.assertEqual(c.domain, "example.com")

    def test_skip_domains_are_dropped(self) -> None:
        post = _post(
            "pic https://pic.twitter.com/x status https://x.com/a/status/1 "
            "bare https://t.co/zzz img https://pbs.twimg.com/media/a.jpg "
            "real https://www.example.com/post",
        )
        result = extract_link_candidates([post])

        self.assertEqual([c.domain for c in result.candidates], ["example.com"])
        self.assertEqual(result.skipped, 4)

    def test_entities_fall_back_to_raw_payload(self) -> None:
        raw = {
            "legacy": {
                "entities": {
                    "urls": [{"url": "https://t.co/q", "expanded_url": "https://blog.test/q"}]
                }
            }
        }
        result = extract_link_candidates([_post("no urls in text", raw=raw)])

        self.assertEqual(len(result.candidates), 1)
        self.assertEqual(result.candidates[0].domain, "blog.test")

    def test_same_url_in_two_posts_is_kept_per_post(self) -> None:
        posts = [_post("https://a.test", post_id="1"), _post("https://a.test", post_id="2")]
        result = extract_link_candidates(posts)

        self.assertEqual([(c.post_id, c.url) for c in result.candidates], [("1", "https://a.test"), ("2", "https://a.test")])


class TestStoreAndBackfill(unittest.TestCase):
    def test_store_link_candidates_chunks_and_counts(self) -> None:
        store = MemoryVaultStore()
        post = _post(" ".join(f"https://site{i}.test" for i in range(5)))
        store.upsert_posts([post])

        candidates = extract_link_candidates([post]).candidates
        first = store_link_candidates(candidates, store, chunk_size=2)
        second = store_link_candidates(candidates, store, chunk_size=2)

        self.assertEqual((first.inserted, first.updated), (5, 0))
        self.assertEqual((second.inserted, second.updated), (0, 5))
        self.assertEqual(len(store.links_for_post("1")), 5)

    def test_backfill_marks_posts_and_is_idempotent(self) -> None:
        store = MemoryVaultStore()
        store.upsert_posts(
            [_post("https://a.test", post_id="1"), _post("nothing here", post_id="2")]
        )

        first = backfill_links(store, limit=10)
        second = backfill_links(store, limit=10)

        self.assertEqual((first.posts_scanned, first.inserted), (2, 1))
        self.assertEqual((second.posts_scanned, second.inserted), (0, 0))
        post = store.get_post("2")
        assert post is not None
        self.assertIsNotNone(post.links_extracted_at)


if __name__ == "__main__":
    unittest.main()
