from __future__ import annotations

import copy
import hashlib
from typing import Any, Sequence

import httpx

_OFFLINE_PAGE = """<!doctype html>
<html>
  <head>
    <title>{title}</title>
    <meta property="og:title" content="{title}">
    <meta property="og:description" content="Offline stub page for {path}.">
    <meta property="og:image" content="https://example.com/preview.png">
  </head>
  <body><p>offline</p></body>
</html>
"""

_OFFLINE_ITEMS: list[dict[str, Any]] = [
    {
        "id": "1005",
        "author": {"username": "pyweekly", "name": "Python Weekly"},
        "text": "New release notes are out: https://example.com/releases/3-13 worth a read.",
        "created_at": "2025-01-05T09:00:00Z",
        "metrics": {"likes": 12, "retweets": 3, "replies": 1},
    },
    {
        "rest_id": "1004",
        "core": {
            "user_results": {
                "result": {"legacy": {"screen_name": "dataeng", "name": "Data Eng"}}
            }
        },
        "legacy": {
            "full_text": "Slides from the talk https://t.co/slides1",
            "created_at": "Sat Jan 04 10:30:00 +0000 2025",
            "entities": {
                "urls": [
                    {
                        "url": "https://t.co/slides1",
                        "expanded_url": "https://example.org/talks/pipelines.pdf",
                        "display_url": "example.org/talks/pipeli…",
                    }
                ],
                "media": [],
            },
            "favorite_count": 40,
            "retweet_count": 8,
            "reply_count": 2,
        },
    },
    {
        "id": "1003",
        "author": {"username": "pyweekly", "name": "Python Weekly"},
        "text": "Thread on packaging (https://example.com/packaging-guide).",
        "created_at": "2025-01-03T08:00:00Z",
    },
    {
        "id": "1002",
        "author": {"username": "someone"},
        "text": "No links here, just a thought worth keeping.",
    },
    {"id": "", "author": {"username": "broken"}, "text": "rejected: blank id"},
]


class OfflineSource:
    """Fixed newest-first export used by `--offline` smoke runs."""

    def __init__(self, items: Sequence[dict[str, Any]] | None = None) -> None:
        self._items = list(items) if items is not None else _OFFLINE_ITEMS

    @property
    def name(self) -> str:
        return "offline"

    def fetch(self) -> list[Any]:
        return copy.deepcopy(self._items)


class OfflineEmbeddingClient:
    """Deterministic pseudo-embeddings derived from a hash of each text."""

    def __init__(self, *, dimensions: int = 1536) -> None:
        if dimensions < 1:
            raise ValueError("dimensions must be >= 1")
        self._dimensions = int(dimensions)
        self.calls: list[list[str]] = []

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        return [self._vector(t) for t in texts]

    def _vector(self, text: str) -> list[float]:
        out: list[float] = []
        counter = 0
        while len(out) < self._dimensions:
            digest = hashlib.sha256(f"{counter}:{text}".encode("utf-8")).digest()
            out.extend((b / 127.5) - 1.0 for b in digest)
            counter += 1
        return out[: self._dimensions]


def _offline_handler(request: httpx.Request) -> httpx.Response:
    if request.url.host == "t.co":
        return httpx.Response(301, headers={"Location": "https://example.com/expanded"})

    path = request.url.path or "/"
    if path.endswith(".pdf"):
        return httpx.Response(
            200, headers={"content-type": "application/pdf"}, content=b"%PDF-1.4 offline"
        )
    if "missing" in path:
        return httpx.Response(404, headers={"content-type": "text/html"}, text="not found")

    title = f"Offline: {request.url.host}{path}"
    return httpx.Response(
        200,
        headers={"content-type": "text/html; charset=utf-8"},
        text=_OFFLINE_PAGE.format(title=title, path=path),
    )


def offline_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(_offline_handler))
