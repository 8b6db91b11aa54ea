from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import AbstractSet, Sequence

import httpx
from bs4 import BeautifulSoup

from .config_schema import FetcherConfig
from .errors import FetchError
from .links import SKIP_DOMAINS, extract_domain
from .post import Link, LinkMetadata
from .run_log import EventLogger, ensure_logger
from .store import VaultStore

SHORT_LINK_DOMAIN = "t.co"

ACCEPT_HTML = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
DEFAULT_USER_AGENT = FetcherConfig().user_agent

_HTML_TYPES = ("text/html", "application/xhtml+xml")
_WS_RE = re.compile(r"\s+")


def _clean(value: object, *, limit: int) -> str | None:
    if not isinstance(value, str):
        return None
    text = _WS_RE.sub(" ", value).strip()
    if not text:
        return None
    return text[:limit]


def _meta_values(soup: BeautifulSoup) -> dict[str, str]:
    out: dict[str, str] = {}
    for tag in soup.find_all("meta"):
        key = (tag.get("property") or tag.get("name") or "").strip().lower()
        content = tag.get("content")
        if key and isinstance(content, str) and content.strip() and key not in out:
            out[key] = content
    return out


@dataclass(frozen=True)
class PageMetadata:
    title: str | None = None
    description: str | None = None
    og_image: str | None = None


def extract_html_metadata(
    html: str,
    *,
    max_title_chars: int = 500,
    max_description_chars: int = 2000,
) -> PageMetadata:
    """
    Pull title, description and preview image from an HTML document.

    Open Graph tags win over platform card tags, which win over the generic
    <title> and description meta tag.
    """
    soup = BeautifulSoup(html or "", "html.parser")
    meta = _meta_values(soup)

    title_tag = soup.title.get_text() if soup.title is not None else None
    title = (
        _clean(meta.get("og:title"), limit=max_title_chars)
        or _clean(meta.get("twitter:title"), limit=max_title_chars)
        or _clean(title_tag, limit=max_title_chars)
    )
    description = (
        _clean(meta.get("og:description"), limit=max_description_chars)
        or _clean(meta.get("twitter:description"), limit=max_description_chars)
        or _clean(meta.get("description"), limit=max_description_chars)
    )
    image = _clean(meta.get("og:image"), limit=2048) or _clean(
        meta.get("twitter:image"), limit=2048
    )
    return PageMetadata(title=title, description=description, og_image=image)


def _media_type(content_type: str | None) -> str | None:
    value = (content_type or "").split(";", 1)[0].strip().lower()
    return value or None


def _is_html(media_type: str | None) -> bool:
    return media_type in _HTML_TYPES


def _describe_http_error(exc: httpx.HTTPError) -> str:
    message = str(exc).strip()
    name = type(exc).__name__
    return f"{name}: {message}" if message else name


@dataclass(frozen=True)
class MetadataFetchResult:
    processed: int = 0
    failed: int = 0
    rounds: int = 0

    @property
    def attempted(self) -> int:
        return self.processed + self.failed


class MetadataFetcher:
    """
    Fetches page metadata for stored links with a bounded number of requests in flight.

    Each attempt records exactly one outcome on its link (page fields or a fetch
    error), and a failing link never affects the other links of the batch.
    """

    def __init__(
        self,
        store: VaultStore,
        *,
        client: httpx.AsyncClient | None = None,
        concurrency: int = 5,
        timeout_seconds: float = 10.0,
        max_response_bytes: int = 1024 * 1024,
        user_agent: str = DEFAULT_USER_AGENT,
        skip_domains: AbstractSet[str] = SKIP_DOMAINS,
        max_title_chars: int = 500,
        max_description_chars: int = 2000,
        logger: EventLogger | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")

        self._store = store
        self._timeout = float(timeout_seconds)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(self._timeout))
        self._concurrency = int(concurrency)
        self._max_bytes = int(max_response_bytes)
        self._headers = {"User-Agent": user_agent, "Accept": ACCEPT_HTML}
        self._skip = frozenset(skip_domains)
        self._max_title = int(max_title_chars)
        self._max_description = int(max_description_chars)
        self._log = ensure_logger(logger)

    @classmethod
    def from_config(
        cls,
        store: VaultStore,
        cfg: FetcherConfig,
        *,
        skip_domains: AbstractSet[str] = SKIP_DOMAINS,
        client: httpx.AsyncClient | None = None,
        logger: EventLogger | None = None,
    ) -> "MetadataFetcher":
        return cls(
            store,
            client=client,
            concurrency=cfg.concurrency,
            timeout_seconds=cfg.timeout_seconds,
            max_response_bytes=cfg.max_response_bytes,
            user_agent=cfg.user_agent,
            skip_domains=skip_domains,
            max_title_chars=cfg.max_title_chars,
            max_description_chars=cfg.max_description_chars,
            logger=logger,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "MetadataFetcher":
        return self

    async def __aexit__(self, exc_type: object, exc: object, tb: object) -> None:
        await self.aclose()

    async def fetch_metadata(self, link: Link) -> LinkMetadata:
        """
        Resolve and fetch one link.

        Raises FetchError for HTTP error statuses and lets httpx errors propagate;
        callers that need an outcome for every link use process_batch().
        """
        target = link.target_url
        domain = extract_domain(target) or link.domain
        expanded: str | None = None

        if domain == SHORT_LINK_DOMAIN:
            resp = await self._client.head(target, headers=self._headers, follow_redirects=True)
            expanded = str(resp.url)
            domain = extract_domain(expanded)
            target = expanded

        if domain in self._skip:
            return LinkMetadata(domain=domain, expanded_url=expanded)

        async with self._client.stream(
            "GET", target, headers=self._headers, follow_redirects=True
        ) as resp:
            if resp.status_code >= 400:
                raise FetchError(f"HTTP {resp.status_code}")

            media_type = _media_type(resp.headers.get("content-type"))
            if not _is_html(media_type):
                return LinkMetadata(domain=domain, expanded_url=expanded, content_type=media_type)

            body = bytearray()
            async for chunk in resp.aiter_bytes():
                body.extend(chunk)
                if len(body) >= self._max_bytes:
                    break
            html = bytes(body[: self._max_bytes]).decode(
                resp.charset_encoding or "utf-8", errors="replace"
            )

        page = extract_html_metadata(
            html,
            max_title_chars=self._max_title,
            max_description_chars=self._max_description,
        )
        return LinkMetadata(
            domain=domain,
            expanded_url=expanded,
            title=page.title,
            description=page.description,
            og_image=page.og_image,
            content_type=media_type,
        )

    async def _attempt(self, link: Link, sem: asyncio.Semaphore) -> LinkMetadata:
        async with sem:
            try:
                metadata = await asyncio.wait_for(self.fetch_metadata(link), timeout=self._timeout)
            except asyncio.TimeoutError:
                metadata = LinkMetadata(fetch_error=f"Timed out after {self._timeout:g}s")
            except FetchError as e:
                metadata = LinkMetadata(fetch_error=str(e))
            except httpx.HTTPError as e:
                metadata = LinkMetadata(fetch_error=_describe_http_error(e))
            except Exception as e:
                self._log.exception("link_fetch_crashed", exc=e, url=link.target_url, link_id=link.id)
                metadata = LinkMetadata(fetch_error=f"{type(e).__name__}: {e}")

        self._store.patch_link_metadata(link.id, metadata)

        if metadata.failed:
            self._log.warning(
                "link_fetch_failed",
                url=link.target_url,
                link_id=link.id,
                error=metadata.fetch_error,
            )
        else:
            self._log.debug(
                "link_fetched",
                url=link.target_url,
                link_id=link.id,
                domain=metadata.domain,
                content_type=metadata.content_type,
                has_title=metadata.title is not None,
            )
        return metadata

    async def process_batch(self, links: Sequence[Link]) -> MetadataFetchResult:
        if not links:
            return MetadataFetchResult()

        sem = asyncio.Semaphore(self._concurrency)
        outcomes = await asyncio.gather(*(self._attempt(link, sem) for link in links))
        failed = sum(1 for m in outcomes if m.failed)
        return MetadataFetchResult(processed=len(outcomes) - failed, failed=failed, rounds=1)

    async def drain(self, *, batch_limit: int = 200, max_rounds: int = 50) -> MetadataFetchResult:
        """Fetch batches until no link is left without an outcome, or max_rounds is reached."""
        processed = 0
        failed = 0
        rounds = 0

        while rounds < max_rounds:
            links = self._store.query_links_missing_metadata(batch_limit)
            if not links:
                break

            rounds += 1
            result = await self.process_batch(links)
            processed += result.processed
            failed += result.failed
            self._log.info(
                "metadata_round_completed",
                round=rounds,
                links=len(links),
                processed=result.processed,
                failed=result.failed,
            )

        return MetadataFetchResult(processed=processed, failed=failed, rounds=rounds)
