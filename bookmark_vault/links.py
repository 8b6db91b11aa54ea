from __future__ import annotations

import re
from dataclasses import dataclass
from typing import AbstractSet, Any, Iterable, Mapping, Sequence
from urllib.parse import urlsplit

from .post import LinkCandidate, Post, UrlEntity
from .run_log import EventLogger, ensure_logger
from .store import VaultStore

SKIP_DOMAINS: frozenset[str] = frozenset(
    {"t.co", "pic.twitter.com", "twitter.com", "x.com", "pbs.twimg.com"}
)

_URL_LEGAL_CHARS = frozenset(
    "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789" "-._~:/?#@!$&'()*+,;=%"
)
_URL_TOKEN_RE = re.compile(r"https?://\S+")
_TRAILING_PUNCT_RE = re.compile(r"[)\].,;!?…]+$")


def _is_url_char(ch: str) -> bool:
    return ch in _URL_LEGAL_CHARS


def normalize_url_text(text: str) -> str:
    """
    Rejoin URLs that an exporter wrapped across lines.

    Each CR or LF is judged by its immediate neighbours: dropped when both are
    URL-legal, otherwise replaced by a space. A blank line or CRLF after a URL
    therefore always separates it from the next word.
    """
    s = text or ""
    out: list[str] = []
    for i, ch in enumerate(s):
        if ch not in "\r\n":
            out.append(ch)
            continue

        prev = s[i - 1] if i > 0 else ""
        nxt = s[i + 1] if i + 1 < len(s) else ""
        if not (prev and nxt and _is_url_char(prev) and _is_url_char(nxt)):
            out.append(" ")
    return "".join(out)


def trim_url(url: str) -> str:
    return _TRAILING_PUNCT_RE.sub("", (url or "").strip())


def extract_domain(url: str | None) -> str | None:
    value = (url or "").strip()
    if not value:
        return None
    try:
        host = urlsplit(value).hostname
    except ValueError:
        return None
    if not host:
        return None
    host = host.lower()
    if host.startswith("www."):
        host = host[4:]
    return host or None


def _raw_entities(raw: Mapping[str, Any] | None) -> list[UrlEntity]:
    if not isinstance(raw, Mapping):
        return []
    legacy = raw.get("legacy")
    entities = legacy.get("entities") if isinstance(legacy, Mapping) else None
    urls = entities.get("urls") if isinstance(entities, Mapping) else None
    if not isinstance(urls, list):
        return []

    out: list[UrlEntity] = []
    for item in urls:
        if not isinstance(item, Mapping):
            continue
        url = item.get("url")
        if not isinstance(url, str) or not url.strip():
            continue
        expanded = item.get("expanded_url")
        display = item.get("display_url")
        out.append(
            UrlEntity(
                url=url.strip(),
                expanded_url=expanded if isinstance(expanded, str) and expanded.strip() else None,
                display_url=display if isinstance(display, str) and display.strip() else None,
            )
        )
    return out


def urls_for_post(post: Post) -> list[UrlEntity]:
    """Structured URL entities first, then URLs scanned from the text that no entity covers."""
    entities = list(post.url_entities) or _raw_entities(post.raw_data)

    known: set[str] = set()
    for e in entities:
        known.add(e.url)
        if e.expanded_url:
            known.add(e.expanded_url)

    out = list(entities)
    for token in _URL_TOKEN_RE.findall(normalize_url_text(post.content)):
        cleaned = trim_url(token)
        if not cleaned or cleaned in known:
            continue
        known.add(cleaned)
        out.append(UrlEntity(url=cleaned))
    return out


@dataclass(frozen=True)
class LinkExtractionResult:
    candidates: Sequence[LinkCandidate]
    skipped: int


def extract_link_candidates(
    posts: Iterable[Post],
    *,
    skip_domains: AbstractSet[str] = SKIP_DOMAINS,
) -> LinkExtractionResult:
    candidates: list[LinkCandidate] = []
    seen: set[tuple[str, str]] = set()
    skipped = 0

    for post in posts:
        for entity in urls_for_post(post):
            domain = extract_domain(entity.expanded_url or entity.url)
            if domain and domain in skip_domains:
                skipped += 1
                continue

            key = (post.post_id, entity.url)
            if key in seen:
                skipped += 1
                continue
            seen.add(key)

            candidates.append(
                LinkCandidate(
                    post_id=post.post_id,
                    url=entity.url,
                    expanded_url=entity.expanded_url,
                    display_url=entity.display_url,
                    domain=domain,
                )
            )

    return LinkExtractionResult(candidates=candidates, skipped=skipped)


@dataclass(frozen=True)
class StoredLinks:
    inserted: int
    updated: int


def store_link_candidates(
    candidates: Sequence[LinkCandidate],
    store: VaultStore,
    *,
    chunk_size: int = 100,
) -> StoredLinks:
    step = max(1, int(chunk_size))
    inserted = 0
    updated = 0
    for start in range(0, len(candidates), step):
        result = store.upsert_links(candidates[start : start + step])
        inserted += result.inserted
        updated += result.updated
    return StoredLinks(inserted=inserted, updated=updated)


@dataclass(frozen=True)
class BackfillResult:
    posts_scanned: int
    inserted: int
    skipped: int


def backfill_links(
    store: VaultStore,
    *,
    limit: int = 500,
    chunk_size: int = 100,
    skip_domains: AbstractSet[str] = SKIP_DOMAINS,
    logger: EventLogger | None = None,
) -> BackfillResult:
    """Extract links for stored posts that have never been through link extraction."""
    log = ensure_logger(logger)
    posts = store.query_posts_missing_links(limit)
    if not posts:
        return BackfillResult(posts_scanned=0, inserted=0, skipped=0)

    extracted = extract_link_candidates(posts, skip_domains=skip_domains)
    stored = store_link_candidates(extracted.candidates, store, chunk_size=chunk_size)
    store.mark_links_extracted([p.post_id for p in posts])

    log.info(
        "links_backfilled",
        posts=len(posts),
        inserted=stored.inserted,
        skipped=extracted.skipped,
    )
    return BackfillResult(
        posts_scanned=len(posts), inserted=stored.inserted, skipped=extracted.skipped
    )
