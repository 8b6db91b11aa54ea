from __future__ import annotations

import sqlite3
from datetime import datetime, timezone

SCHEMA_VERSION = 2


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def initialize_sqlite(conn: sqlite3.Connection) -> None:
    """
    Create or upgrade the vault schema.

    Safe to call on every startup; applied versions are tracked in schema_migrations.
    """
    _configure_connection(conn)
    _apply_migrations(conn)


def _configure_connection(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA busy_timeout = 5000")

    # In-memory databases stay on the default journal.
    try:
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
    except sqlite3.DatabaseError:
        pass


_MIGRATIONS: dict[int, str] = {
    1: """
CREATE TABLE IF NOT EXISTS posts (
  post_id TEXT PRIMARY KEY,
  author_username TEXT NOT NULL,
  author_name TEXT,
  author_profile_image TEXT,
  content TEXT NOT NULL,
  created_at TEXT,
  media_urls_json TEXT NOT NULL DEFAULT '[]',
  metrics_json TEXT NOT NULL DEFAULT '{}',
  url_entities_json TEXT NOT NULL DEFAULT '[]',
  raw_json TEXT,
  fetched_at TEXT NOT NULL,
  processed_at TEXT,
  embedding_json TEXT
);

CREATE INDEX IF NOT EXISTS idx_posts_author
  ON posts(author_username);

CREATE TABLE IF NOT EXISTS links (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  post_id TEXT NOT NULL,
  url TEXT NOT NULL,
  expanded_url TEXT,
  display_url TEXT,
  domain TEXT,
  title TEXT,
  description TEXT,
  og_image TEXT,
  content_type TEXT,
  fetched_at TEXT,
  fetch_error TEXT,
  embedding_json TEXT,
  FOREIGN KEY (post_id) REFERENCES posts(post_id) ON DELETE CASCADE,
  UNIQUE (post_id, url)
);

CREATE INDEX IF NOT EXISTS idx_links_domain
  ON links(domain);

CREATE INDEX IF NOT EXISTS idx_links_fetched_at
  ON links(fetched_at);

CREATE TABLE IF NOT EXISTS sync_state (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  last_sync_at TEXT NOT NULL,
  posts_added INTEGER NOT NULL DEFAULT 0,
  links_processed INTEGER NOT NULL DEFAULT 0,
  embeddings_generated INTEGER NOT NULL DEFAULT 0,
  sync_type TEXT NOT NULL,
  error_message TEXT,
  metadata_json TEXT NOT NULL DEFAULT '{}'
);

CREATE INDEX IF NOT EXISTS idx_sync_state_last_sync_at
  ON sync_state(last_sync_at);
""".strip(),
    2: """
ALTER TABLE posts ADD COLUMN links_extracted_at TEXT;

CREATE INDEX IF NOT EXISTS idx_posts_links_extracted_at
  ON posts(links_extracted_at);
""".strip(),
}


def _apply_migrations(conn: sqlite3.Connection) -> None:
    with conn:
        conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)"
        )

    rows = conn.execute("SELECT version FROM schema_migrations").fetchall()
    applied: set[int] = {int(r[0]) for r in rows}

    for version in range(1, SCHEMA_VERSION + 1):
        if version in applied:
            continue

        script = _MIGRATIONS.get(version)
        if not script:
            raise RuntimeError(f"Missing migration script for version={version}")

        with conn:
            conn.executescript(script)
            conn.execute(
                "INSERT INTO schema_migrations(version, applied_at) VALUES (?, ?)",
                (version, _utc_now_iso()),
            )
