from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence

from .errors import StorageError
from .links import extract_domain
from .post import (
    Link,
    LinkCandidate,
    LinkMetadata,
    Post,
    PostMetrics,
    SyncState,
    UpsertLinksResult,
    UpsertPostsResult,
    UrlEntity,
    VaultStats,
)
from .storage_schema import initialize_sqlite


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_dumps(value: Any) -> str:
    return json.dumps(
        value,
        ensure_ascii=False,
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )


def _json_loads(raw: str | None, default: Any) -> Any:
    text = (raw or "").strip()
    if not text:
        return default
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return default


def _vector_json(vector: Sequence[float]) -> str:
    values = [float(x) for x in vector]
    if not values:
        raise ValueError("embedding vector must be non-empty")
    return _json_dumps(values)


def _vector_from_json(raw: str | None) -> tuple[float, ...] | None:
    data = _json_loads(raw, None)
    if not isinstance(data, list):
        return None
    return tuple(float(x) for x in data)


def _opt_str(value: Any) -> str | None:
    return str(value) if value is not None else None


def _post_from_row(row: sqlite3.Row) -> Post:
    media = _json_loads(row["media_urls_json"], [])
    entities = _json_loads(row["url_entities_json"], [])
    raw = _json_loads(row["raw_json"], None)
    return Post(
        post_id=str(row["post_id"]),
        author_username=str(row["author_username"]),
        author_name=_opt_str(row["author_name"]),
        author_profile_image=_opt_str(row["author_profile_image"]),
        content=str(row["content"]),
        created_at=_opt_str(row["created_at"]),
        media_urls=tuple(str(m) for m in media if isinstance(m, str)),
        metrics=PostMetrics.from_mapping(_json_loads(row["metrics_json"], {})),
        url_entities=tuple(
            UrlEntity(
                url=str(e["url"]),
                expanded_url=e.get("expanded_url"),
                display_url=e.get("display_url"),
            )
            for e in entities
            if isinstance(e, dict) and e.get("url")
        ),
        raw_data=raw if isinstance(raw, dict) else None,
        fetched_at=_opt_str(row["fetched_at"]),
        processed_at=_opt_str(row["processed_at"]),
        links_extracted_at=_opt_str(row["links_extracted_at"]),
        embedding=_vector_from_json(row["embedding_json"]),
    )


def _link_from_row(row: sqlite3.Row) -> Link:
    return Link(
        id=int(row["id"]),
        post_id=str(row["post_id"]),
        url=str(row["url"]),
        expanded_url=_opt_str(row["expanded_url"]),
        display_url=_opt_str(row["display_url"]),
        domain=_opt_str(row["domain"]),
        title=_opt_str(row["title"]),
        description=_opt_str(row["description"]),
        og_image=_opt_str(row["og_image"]),
        content_type=_opt_str(row["content_type"]),
        fetched_at=_opt_str(row["fetched_at"]),
        fetch_error=_opt_str(row["fetch_error"]),
        embedding=_vector_from_json(row["embedding_json"]),
    )


def _sync_state_from_row(row: sqlite3.Row) -> SyncState:
    metadata = _json_loads(row["metadata_json"], {})
    return SyncState(
        id=int(row["id"]),
        last_sync_at=str(row["last_sync_at"]),
        posts_added=int(row["posts_added"]),
        links_processed=int(row["links_processed"]),
        embeddings_generated=int(row["embeddings_generated"]),
        sync_type=str(row["sync_type"]),  # type: ignore[arg-type]
        error_message=_opt_str(row["error_message"]),
        metadata=metadata if isinstance(metadata, dict) else {},
    )


_POST_COLUMNS = """
  post_id, author_username, author_name, author_profile_image, content, created_at,
  media_urls_json, metrics_json, url_entities_json, raw_json, fetched_at,
  processed_at, links_extracted_at, embedding_json
""".strip()

_LINK_COLUMNS = """
  id, post_id, url, expanded_url, display_url, domain, title, description,
  og_image, content_type, fetched_at, fetch_error, embedding_json
""".strip()


class SQLiteVaultStore:
    """
    SQLite-backed vault.

    Post and link identity is enforced by the schema's unique keys; everything
    else about a row may be refreshed by a later upsert until it is embedded.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._conn.row_factory = sqlite3.Row

    @classmethod
    def open(cls, path: str | Path) -> "SQLiteVaultStore":
        db_path = str(path)
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            conn = sqlite3.connect(db_path)
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to open sqlite database: {db_path}: {e}") from e

        try:
            initialize_sqlite(conn)
        except (sqlite3.DatabaseError, RuntimeError) as e:
            conn.close()
            raise StorageError(f"Failed to initialize sqlite schema: {e}") from e

        return cls(conn)

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "SQLiteVaultStore":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    # -- writes ---------------------------------------------------------------

    def upsert_posts(self, posts: Sequence[Post]) -> UpsertPostsResult:
        added: list[str] = []
        updated: list[str] = []
        now = _utc_now_iso()

        try:
            with self._conn:
                for post in posts:
                    raw_json = _json_dumps(dict(post.raw_data)) if post.raw_data else None
                    metrics_json = _json_dumps(post.metrics.as_dict())
                    cur = self._conn.execute(
                        f"""
                        INSERT OR IGNORE INTO posts({_POST_COLUMNS})
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, NULL, NULL)
                        """.strip(),
                        (
                            post.post_id,
                            post.author_username,
                            post.author_name,
                            post.author_profile_image,
                            post.content,
                            post.created_at,
                            _json_dumps(list(post.media_urls)),
                            metrics_json,
                            _json_dumps(
                                [
                                    {
                                        "url": e.url,
                                        "expanded_url": e.expanded_url,
                                        "display_url": e.display_url,
                                    }
                                    for e in post.url_entities
                                ]
                            ),
                            raw_json,
                            post.fetched_at or now,
                        ),
                    )
                    if cur.rowcount == 1:
                        added.append(post.post_id)
                        continue

                    # Embedded posts are frozen.
                    self._conn.execute(
                        """
                        UPDATE posts SET
                          metrics_json = ?,
                          raw_json = COALESCE(?, raw_json),
                          author_name = COALESCE(?, author_name),
                          author_profile_image = COALESCE(?, author_profile_image)
                        WHERE post_id = ? AND embedding_json IS NULL
                        """.strip(),
                        (
                            metrics_json,
                            raw_json,
                            post.author_name,
                            post.author_profile_image,
                            post.post_id,
                        ),
                    )
                    updated.append(post.post_id)
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to upsert posts: {e}") from e

        return UpsertPostsResult(added=added, updated=updated)

    def upsert_links(self, candidates: Sequence[LinkCandidate]) -> UpsertLinksResult:
        inserted = 0
        updated = 0

        try:
            with self._conn:
                for c in candidates:
                    cur = self._conn.execute(
                        """
                        INSERT OR IGNORE INTO links(post_id, url, expanded_url, display_url, domain)
                        VALUES (?, ?, ?, ?, ?)
                        """.strip(),
                        (c.post_id, c.url, c.expanded_url, c.display_url, c.domain),
                    )
                    if cur.rowcount == 1:
                        inserted += 1
                        continue

                    self._conn.execute(
                        """
                        UPDATE links SET
                          expanded_url = COALESCE(expanded_url, ?),
                          display_url = COALESCE(display_url, ?),
                          domain = COALESCE(domain, ?)
                        WHERE post_id = ? AND url = ?
                        """.strip(),
                        (c.expanded_url, c.display_url, c.domain, c.post_id, c.url),
                    )
                    updated += 1
        except sqlite3.IntegrityError as e:
            raise StorageError(
                "Failed to upsert links; ensure posts contains each post_id first"
            ) from e
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to upsert links: {e}") from e

        return UpsertLinksResult(inserted=inserted, updated=updated)

    def patch_post_embedding(self, post_id: str, vector: Sequence[float]) -> None:
        self._execute_one(
            "UPDATE posts SET embedding_json = ?, processed_at = ? WHERE post_id = ?",
            (_vector_json(vector), _utc_now_iso(), post_id),
            what=f"post {post_id}",
        )

    def patch_link_metadata(self, link_id: int, metadata: LinkMetadata) -> None:
        failed = metadata.failed
        self._execute_one(
            """
            UPDATE links SET
              domain = COALESCE(?, domain),
              expanded_url = COALESCE(?, expanded_url),
              title = ?,
              description = ?,
              og_image = ?,
              content_type = ?,
              fetch_error = ?,
              fetched_at = ?
            WHERE id = ?
            """.strip(),
            (
                metadata.domain,
                metadata.expanded_url,
                None if failed else metadata.title,
                None if failed else metadata.description,
                None if failed else metadata.og_image,
                metadata.content_type,
                metadata.fetch_error,
                _utc_now_iso(),
                int(link_id),
            ),
            what=f"link {link_id}",
        )

    def patch_link_embedding(self, link_id: int, vector: Sequence[float]) -> None:
        self._execute_one(
            "UPDATE links SET embedding_json = ? WHERE id = ?",
            (_vector_json(vector), int(link_id)),
            what=f"link {link_id}",
        )

    def mark_links_extracted(self, post_ids: Sequence[str]) -> None:
        now = _utc_now_iso()
        try:
            with self._conn:
                self._conn.executemany(
                    "UPDATE posts SET links_extracted_at = ? WHERE post_id = ?",
                    [(now, pid) for pid in post_ids],
                )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to mark links extracted: {e}") from e

    def insert_sync_state(self, state: SyncState) -> SyncState:
        try:
            with self._conn:
                cur = self._conn.execute(
                    """
                    INSERT INTO sync_state(
                      last_sync_at, posts_added, links_processed, embeddings_generated,
                      sync_type, error_message, metadata_json
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """.strip(),
                    (
                        state.last_sync_at,
                        int(state.posts_added),
                        int(state.links_processed),
                        int(state.embeddings_generated),
                        state.sync_type,
                        state.error_message,
                        _json_dumps(dict(state.metadata or {})),
                    ),
                )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to insert sync state: {e}") from e

        row = self._conn.execute(
            "SELECT * FROM sync_state WHERE id = ?", (cur.lastrowid,)
        ).fetchone()
        if row is None:
            raise StorageError("Failed to read sync state after insert")
        return _sync_state_from_row(row)

    def _execute_one(self, sql: str, params: tuple[Any, ...], *, what: str) -> None:
        try:
            with self._conn:
                cur = self._conn.execute(sql, params)
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to update {what}: {e}") from e
        if cur.rowcount == 0:
            raise StorageError(f"Failed to update {what}: no such row")

    # -- queries --------------------------------------------------------------

    def query_posts_missing_embedding(self, limit: int) -> list[Post]:
        return self._posts(
            "WHERE embedding_json IS NULL ORDER BY fetched_at, post_id LIMIT ?", (int(limit),)
        )

    def query_posts_missing_links(self, limit: int) -> list[Post]:
        return self._posts(
            "WHERE links_extracted_at IS NULL ORDER BY fetched_at, post_id LIMIT ?",
            (int(limit),),
        )

    def query_links_missing_metadata(self, limit: int) -> list[Link]:
        return self._links(
            "WHERE fetched_at IS NULL AND fetch_error IS NULL ORDER BY id LIMIT ?", (int(limit),)
        )

    def query_links_missing_embedding(self, limit: int) -> list[Link]:
        return self._links(
            """
            WHERE embedding_json IS NULL AND fetched_at IS NOT NULL AND fetch_error IS NULL
              AND title IS NOT NULL
            ORDER BY id LIMIT ?
            """.strip(),
            (int(limit),),
        )

    def get_latest_sync_state(self) -> SyncState | None:
        row = self._conn.execute(
            "SELECT * FROM sync_state ORDER BY last_sync_at DESC, id DESC LIMIT 1"
        ).fetchone()
        return _sync_state_from_row(row) if row is not None else None

    def get_post(self, post_id: str) -> Post | None:
        posts = self._posts("WHERE post_id = ?", (post_id,))
        return posts[0] if posts else None

    def links_for_post(self, post_id: str) -> list[Link]:
        return self._links("WHERE post_id = ? ORDER BY id", (post_id,))

    def posts_by_author(self, username: str, *, limit: int = 50) -> list[Post]:
        handle = (username or "").strip().lstrip("@")
        return self._posts(
            "WHERE author_username = ? COLLATE NOCASE ORDER BY created_at DESC LIMIT ?",
            (handle, int(limit)),
        )

    def links_by_domain(self, domain: str, *, limit: int = 50) -> list[Link]:
        d = extract_domain(f"http://{(domain or '').strip()}") or ""
        return self._links("WHERE domain = ? ORDER BY id DESC LIMIT ?", (d, int(limit)))

    def stats(self, *, top_n: int = 10) -> VaultStats:
        def _count(sql: str) -> int:
            row = self._conn.execute(sql).fetchone()
            return int(row[0]) if row is not None else 0

        authors = self._conn.execute(
            """
            SELECT author_username, COUNT(1) AS n FROM posts
            GROUP BY author_username ORDER BY n DESC, author_username LIMIT ?
            """.strip(),
            (int(top_n),),
        ).fetchall()
        domains = self._conn.execute(
            """
            SELECT domain, COUNT(1) AS n FROM links WHERE domain IS NOT NULL
            GROUP BY domain ORDER BY n DESC, domain LIMIT ?
            """.strip(),
            (int(top_n),),
        ).fetchall()

        return VaultStats(
            total_posts=_count("SELECT COUNT(1) FROM posts"),
            total_links=_count("SELECT COUNT(1) FROM links"),
            posts_with_embeddings=_count(
                "SELECT COUNT(1) FROM posts WHERE embedding_json IS NOT NULL"
            ),
            links_with_embeddings=_count(
                "SELECT COUNT(1) FROM links WHERE embedding_json IS NOT NULL"
            ),
            links_with_errors=_count("SELECT COUNT(1) FROM links WHERE fetch_error IS NOT NULL"),
            top_authors=[(str(r[0]), int(r[1])) for r in authors],
            top_domains=[(str(r[0]), int(r[1])) for r in domains],
            last_sync=self.get_latest_sync_state(),
        )

    def _posts(self, where: str, params: tuple[Any, ...]) -> list[Post]:
        rows = self._conn.execute(f"SELECT {_POST_COLUMNS} FROM posts {where}", params).fetchall()
        return [_post_from_row(r) for r in rows]

    def _links(self, where: str, params: tuple[Any, ...]) -> list[Link]:
        rows = self._conn.execute(f"SELECT {_LINK_COLUMNS} FROM links {where}", params).fetchall()
        return [_link_from_row(r) for r in rows]
