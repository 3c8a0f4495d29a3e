from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from contentpulse.models.platforms import Platform
from contentpulse.repositories.common import parse_iso_utc, to_iso, utc_now
from contentpulse.repositories.database import Database, as_text_or_none

LOGGER = logging.getLogger("content_pulse.metrics_store")

_OPTIONAL_TEXT_FIELDS: tuple[str, ...] = (
    "source_url",
    "title",
    "thumbnail_url",
    "caption",
    "username",
    "posted_at",
)


@dataclass(frozen=True)
class ContentCounts:
    likes: int = 0
    comments: int = 0
    plays_or_views: int = 0
    reshares: int = 0


@dataclass(frozen=True)
class ContentMetricsUpdate:
    """One fetch attempt's worth of data for a cached record.

    Fields left as ``None`` keep whatever is stored. ``error_message`` is
    written on every upsert, so a successful fetch clears an earlier error.
    """

    canonical_id: str
    platform: Platform
    counts: ContentCounts | None = None
    posted_at: str | None = None
    source_url: str | None = None
    title: str | None = None
    thumbnail_url: str | None = None
    caption: str | None = None
    username: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class ContentMetricsRecord:
    owner_id: str
    platform: Platform
    canonical_id: str
    counts: ContentCounts
    posted_at: str | None
    last_fetched: datetime
    error_message: str | None
    source_url: str | None = None
    title: str | None = None
    thumbnail_url: str | None = None
    caption: str | None = None
    username: str | None = None


@dataclass(frozen=True)
class ReconcileResult:
    deleted: tuple[str, ...] = ()
    failed: tuple[str, ...] = ()
    kept: int = 0


class MetricsRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def upsert(self, *, owner_id: str, update: ContentMetricsUpdate) -> ContentMetricsRecord:
        write_time = utc_now()

        with self._db.transaction() as conn:
            existing = conn.execute(
                """
                SELECT *
                FROM content_metrics
                WHERE owner_id = ? AND platform = ? AND canonical_id = ?
                """,
                (owner_id, update.platform, update.canonical_id),
            ).fetchone()

            merged = _merge(existing, update)
            previous_fetch = parse_iso_utc(existing["last_fetched"]) if existing is not None else None
            last_fetched = (
                previous_fetch
                if previous_fetch is not None and previous_fetch > write_time
                else write_time
            )
            merged["last_fetched"] = to_iso(last_fetched)

            conn.execute(
                """
                INSERT INTO content_metrics (
                    owner_id, platform, canonical_id, source_url, title, thumbnail_url,
                    caption, username, likes, comments, plays_or_views, reshares,
                    posted_at, last_fetched, error_message
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(owner_id, platform, canonical_id) DO UPDATE SET
                    source_url = excluded.source_url,
                    title = excluded.title,
                    thumbnail_url = excluded.thumbnail_url,
                    caption = excluded.caption,
                    username = excluded.username,
                    likes = excluded.likes,
                    comments = excluded.comments,
                    plays_or_views = excluded.plays_or_views,
                    reshares = excluded.reshares,
                    posted_at = excluded.posted_at,
                    last_fetched = excluded.last_fetched,
                    error_message = excluded.error_message
                """,
                (
                    owner_id,
                    update.platform,
                    update.canonical_id,
                    merged["source_url"],
                    merged["title"],
                    merged["thumbnail_url"],
                    merged["caption"],
                    merged["username"],
                    merged["likes"],
                    merged["comments"],
                    merged["plays_or_views"],
                    merged["reshares"],
                    merged["posted_at"],
                    merged["last_fetched"],
                    update.error_message,
                ),
            )

            row = conn.execute(
                """
                SELECT *
                FROM content_metrics
                WHERE owner_id = ? AND platform = ? AND canonical_id = ?
                """,
                (owner_id, update.platform, update.canonical_id),
            ).fetchone()

        assert row is not None
        return _row_to_record(row)

    def get(
        self,
        *,
        owner_id: str,
        platform: Platform,
        canonical_id: str,
    ) -> ContentMetricsRecord | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT *
                FROM content_metrics
                WHERE owner_id = ? AND platform = ? AND canonical_id = ?
                """,
                (owner_id, platform, canonical_id),
            ).fetchone()
        if row is None:
            return None
        return _row_to_record(row)

    def list_all(
        self,
        *,
        owner_id: str,
        platform: Platform | None = None,
    ) -> list[ContentMetricsRecord]:
        query = "SELECT * FROM content_metrics WHERE owner_id = ?"
        params: tuple[str, ...] = (owner_id,)
        if platform is not None:
            query += " AND platform = ?"
            params = (owner_id, platform)
        query += " ORDER BY last_fetched DESC, canonical_id ASC"

        with self._db.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_record(row) for row in rows]

    def delete(self, *, owner_id: str, platform: Platform, canonical_id: str) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                DELETE FROM content_metrics
                WHERE owner_id = ? AND platform = ? AND canonical_id = ?
                """,
                (owner_id, platform, canonical_id),
            )

    def delete_owner(self, *, owner_id: str) -> int:
        with self._db.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM content_metrics WHERE owner_id = ?",
                (owner_id,),
            )
        return int(cursor.rowcount)

    def reconcile(
        self,
        *,
        owner_id: str,
        platform: Platform,
        valid_canonical_ids: Iterable[str],
    ) -> ReconcileResult:
        """Best-effort removal of records whose IDs left the owner's link set.

        Never raises for storage errors: an orphan that survives shows up
        again on the next pass.
        """
        valid = set(valid_canonical_ids)
        try:
            with self._db.connection() as conn:
                rows = conn.execute(
                    """
                    SELECT canonical_id
                    FROM content_metrics
                    WHERE owner_id = ? AND platform = ?
                    """,
                    (owner_id, platform),
                ).fetchall()
        except sqlite3.Error:
            LOGGER.warning(
                "metrics reconcile scan failed owner_id=%s platform=%s",
                owner_id,
                platform,
                exc_info=True,
            )
            return ReconcileResult()

        stored = [str(row["canonical_id"]) for row in rows]
        orphans = [canonical_id for canonical_id in stored if canonical_id not in valid]
        deleted: list[str] = []
        failed: list[str] = []
        for canonical_id in orphans:
            try:
                self.delete(owner_id=owner_id, platform=platform, canonical_id=canonical_id)
            except sqlite3.Error:
                LOGGER.warning(
                    "metrics reconcile delete failed owner_id=%s platform=%s canonical_id=%s",
                    owner_id,
                    platform,
                    canonical_id,
                    exc_info=True,
                )
                failed.append(canonical_id)
                continue
            deleted.append(canonical_id)

        if orphans:
            LOGGER.info(
                "metrics reconcile owner_id=%s platform=%s orphans=%s deleted=%s failed=%s",
                owner_id,
                platform,
                len(orphans),
                len(deleted),
                len(failed),
            )
        return ReconcileResult(
            deleted=tuple(deleted),
            failed=tuple(failed),
            kept=len(stored) - len(orphans),
        )


def _merge(existing: sqlite3.Row | None, update: ContentMetricsUpdate) -> dict[str, object]:
    merged: dict[str, object] = {}
    for field_name in _OPTIONAL_TEXT_FIELDS:
        incoming = as_text_or_none(getattr(update, field_name))
        if incoming is None and existing is not None:
            incoming = as_text_or_none(existing[field_name])
        merged[field_name] = incoming

    if update.counts is not None:
        counts = update.counts
    elif existing is not None:
        counts = ContentCounts(
            likes=int(existing["likes"]),
            comments=int(existing["comments"]),
            plays_or_views=int(existing["plays_or_views"]),
            reshares=int(existing["reshares"]),
        )
    else:
        counts = ContentCounts()

    merged["likes"] = max(0, counts.likes)
    merged["comments"] = max(0, counts.comments)
    merged["plays_or_views"] = max(0, counts.plays_or_views)
    merged["reshares"] = max(0, counts.reshares)
    return merged


def _row_to_record(row: sqlite3.Row) -> ContentMetricsRecord:
    last_fetched = parse_iso_utc(row["last_fetched"])
    assert last_fetched is not None
    platform: Platform = "youtube" if str(row["platform"]) == "youtube" else "instagram"
    return ContentMetricsRecord(
        owner_id=str(row["owner_id"]),
        platform=platform,
        canonical_id=str(row["canonical_id"]),
        counts=ContentCounts(
            likes=int(row["likes"]),
            comments=int(row["comments"]),
            plays_or_views=int(row["plays_or_views"]),
            reshares=int(row["reshares"]),
        ),
        posted_at=as_text_or_none(row["posted_at"]),
        last_fetched=last_fetched,
        error_message=as_text_or_none(row["error_message"]),
        source_url=as_text_or_none(row["source_url"]),
        title=as_text_or_none(row["title"]),
        thumbnail_url=as_text_or_none(row["thumbnail_url"]),
        caption=as_text_or_none(row["caption"]),
        username=as_text_or_none(row["username"]),
    )
