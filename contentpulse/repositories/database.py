from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import cast

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS link_assignments (
    owner_id TEXT NOT NULL,
    platform TEXT NOT NULL,
    links_json TEXT NOT NULL,
    last_refreshed_at TEXT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (owner_id, platform)
);

CREATE TABLE IF NOT EXISTS content_metrics (
    owner_id TEXT NOT NULL,
    platform TEXT NOT NULL,
    canonical_id TEXT NOT NULL,
    source_url TEXT NULL,
    title TEXT NULL,
    thumbnail_url TEXT NULL,
    caption TEXT NULL,
    username TEXT NULL,
    likes INTEGER NOT NULL,
    comments INTEGER NOT NULL,
    plays_or_views INTEGER NOT NULL,
    reshares INTEGER NOT NULL,
    posted_at TEXT NULL,
    last_fetched TEXT NOT NULL,
    error_message TEXT NULL,
    PRIMARY KEY (owner_id, platform, canonical_id)
);

CREATE INDEX IF NOT EXISTS idx_content_metrics_owner_last_fetched
ON content_metrics(owner_id, last_fetched DESC);

CREATE TABLE IF NOT EXISTS chat_usage (
    owner_id TEXT PRIMARY KEY,
    window_start TEXT NOT NULL,
    message_count INTEGER NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class Database:
    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Read-modify-write scope holding SQLite's write lock from the first read."""
        conn = sqlite3.connect(self._path, timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def initialize(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as conn:
            conn.executescript(SCHEMA_SQL)


def load_str_list(raw: object) -> list[str]:
    if not isinstance(raw, str):
        return []
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return []
    if not isinstance(parsed, list):
        return []
    values: list[str] = []
    for item in cast(list[object], parsed):
        if isinstance(item, str) and item:
            values.append(item)
    return values


def as_text_or_none(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped if stripped else None
    return str(value)
