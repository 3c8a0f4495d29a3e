from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from contentpulse.models.platforms import Platform
from contentpulse.repositories.common import parse_iso_utc, utc_now_iso
from contentpulse.repositories.database import Database, load_str_list


@dataclass(frozen=True)
class LinkAssignment:
    owner_id: str
    platform: Platform
    links: tuple[str, ...]
    last_refreshed_at: datetime | None


@dataclass(frozen=True)
class AssignLinksResult:
    added_count: int
    links: tuple[str, ...]


class LinkRepository:
    """Authoritative set of raw links each owner wants tracked, per platform.

    Links are stored verbatim apart from surrounding whitespace; canonical IDs
    are derived downstream at resolve time.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    def assign(
        self,
        *,
        owner_id: str,
        platform: Platform,
        links: Iterable[str],
    ) -> AssignLinksResult:
        candidates = [link.strip() for link in links if isinstance(link, str)]
        now_iso = utc_now_iso()

        with self._db.transaction() as conn:
            existing = _load_links(conn, owner_id=owner_id, platform=platform)
            merged = list(existing)
            seen = set(existing)
            for link in candidates:
                if not link or link in seen:
                    continue
                seen.add(link)
                merged.append(link)

            added_count = len(merged) - len(existing)
            if added_count > 0:
                _store_links(
                    conn,
                    owner_id=owner_id,
                    platform=platform,
                    links=merged,
                    now_iso=now_iso,
                )

        return AssignLinksResult(added_count=added_count, links=tuple(merged))

    def get(self, *, owner_id: str, platform: Platform) -> LinkAssignment:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT links_json, last_refreshed_at
                FROM link_assignments
                WHERE owner_id = ? AND platform = ?
                """,
                (owner_id, platform),
            ).fetchone()

        if row is None:
            return LinkAssignment(
                owner_id=owner_id,
                platform=platform,
                links=(),
                last_refreshed_at=None,
            )
        return LinkAssignment(
            owner_id=owner_id,
            platform=platform,
            links=tuple(load_str_list(row["links_json"])),
            last_refreshed_at=parse_iso_utc(row["last_refreshed_at"]),
        )

    def remove(self, *, owner_id: str, platform: Platform, link: str) -> bool:
        target = link.strip()
        if not target:
            return False

        with self._db.transaction() as conn:
            existing = _load_links(conn, owner_id=owner_id, platform=platform)
            if target not in existing:
                return False
            remaining = [item for item in existing if item != target]
            _store_links(
                conn,
                owner_id=owner_id,
                platform=platform,
                links=remaining,
                now_iso=utc_now_iso(),
            )
        return True

    def touch_refresh_timestamp(self, *, owner_id: str, platform: Platform) -> datetime | None:
        """Stamp an existing assignment as refreshed; returns None when there is none."""
        now_iso = utc_now_iso()
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE link_assignments
                SET last_refreshed_at = ?, updated_at = ?
                WHERE owner_id = ? AND platform = ?
                """,
                (now_iso, now_iso, owner_id, platform),
            )
        if cursor.rowcount == 0:
            return None
        parsed = parse_iso_utc(now_iso)
        assert parsed is not None
        return parsed

    def list_assignments(self, *, platform: Platform | None = None) -> list[LinkAssignment]:
        query = """
            SELECT owner_id, platform, links_json, last_refreshed_at
            FROM link_assignments
        """
        params: tuple[str, ...] = ()
        if platform is not None:
            query += " WHERE platform = ?"
            params = (platform,)
        query += " ORDER BY owner_id, platform"

        with self._db.connection() as conn:
            rows = conn.execute(query, params).fetchall()

        assignments: list[LinkAssignment] = []
        for row in rows:
            raw_platform = str(row["platform"])
            if raw_platform not in ("youtube", "instagram"):
                continue
            assignments.append(
                LinkAssignment(
                    owner_id=str(row["owner_id"]),
                    platform="youtube" if raw_platform == "youtube" else "instagram",
                    links=tuple(load_str_list(row["links_json"])),
                    last_refreshed_at=parse_iso_utc(row["last_refreshed_at"]),
                )
            )
        return assignments

    def delete_owner(self, *, owner_id: str) -> int:
        with self._db.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM link_assignments WHERE owner_id = ?",
                (owner_id,),
            )
        return int(cursor.rowcount)


def _load_links(conn: sqlite3.Connection, *, owner_id: str, platform: Platform) -> list[str]:
    row = conn.execute(
        """
        SELECT links_json
        FROM link_assignments
        WHERE owner_id = ? AND platform = ?
        """,
        (owner_id, platform),
    ).fetchone()
    if row is None:
        return []
    return load_str_list(row["links_json"])


def _store_links(
    conn: sqlite3.Connection,
    *,
    owner_id: str,
    platform: Platform,
    links: list[str],
    now_iso: str,
) -> None:
    conn.execute(
        """
        INSERT INTO link_assignments (owner_id, platform, links_json, last_refreshed_at, updated_at)
        VALUES (?, ?, ?, NULL, ?)
        ON CONFLICT(owner_id, platform) DO UPDATE SET
            links_json = excluded.links_json,
            updated_at = excluded.updated_at
        """,
        (owner_id, platform, json.dumps(links, ensure_ascii=True), now_iso),
    )
