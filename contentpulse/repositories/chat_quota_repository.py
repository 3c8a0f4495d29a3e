from __future__ import annotations

import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from contentpulse.repositories.common import parse_iso_utc, to_iso, utc_now
from contentpulse.repositories.database import Database

DEFAULT_WINDOW_SECONDS = 24 * 60 * 60
_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


@dataclass(frozen=True)
class ChatQuotaSnapshot:
    allowed: bool
    remaining: int
    limit_reached: bool
    daily_limit: int
    messages_used: int
    window_start: datetime | None
    resets_at: datetime | None


@dataclass(frozen=True)
class _UsageCounter:
    window_start: datetime
    count: int
    exists: bool


class ChatQuotaRepository:
    """Rolling-window message counter per owner.

    The window opens at the first message after the previous one expired,
    not at a fixed clock boundary.
    """

    def __init__(
        self,
        db: Database,
        *,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._db = db
        self._window = timedelta(seconds=max(1, window_seconds))
        self._clock = clock

    def check_and_increment(self, *, owner_id: str, daily_limit: int) -> ChatQuotaSnapshot:
        limit = max(0, daily_limit)
        now = self._clock()

        with self._db.transaction() as conn:
            counter = self._effective_counter(_load_counter(conn, owner_id), now)

            if counter.count >= limit:
                return ChatQuotaSnapshot(
                    allowed=False,
                    remaining=0,
                    limit_reached=True,
                    daily_limit=limit,
                    messages_used=counter.count,
                    window_start=counter.window_start if counter.exists else None,
                    resets_at=counter.window_start + self._window if counter.exists else None,
                )

            new_count = counter.count + 1
            conn.execute(
                """
                INSERT INTO chat_usage (owner_id, window_start, message_count, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(owner_id) DO UPDATE SET
                    window_start = excluded.window_start,
                    message_count = excluded.message_count,
                    updated_at = excluded.updated_at
                """,
                (owner_id, to_iso(counter.window_start), new_count, to_iso(now)),
            )

        return ChatQuotaSnapshot(
            allowed=True,
            remaining=max(0, limit - new_count),
            limit_reached=new_count >= limit,
            daily_limit=limit,
            messages_used=new_count,
            window_start=counter.window_start,
            resets_at=counter.window_start + self._window,
        )

    def peek(self, *, owner_id: str, daily_limit: int) -> ChatQuotaSnapshot:
        limit = max(0, daily_limit)
        now = self._clock()

        with self._db.connection() as conn:
            counter = self._effective_counter(_load_counter(conn, owner_id), now)

        remaining = max(0, limit - counter.count)
        window_open = counter.exists and counter.count > 0
        return ChatQuotaSnapshot(
            allowed=remaining > 0,
            remaining=remaining,
            limit_reached=remaining == 0,
            daily_limit=limit,
            messages_used=counter.count,
            window_start=counter.window_start if window_open else None,
            resets_at=counter.window_start + self._window if window_open else None,
        )

    def _effective_counter(self, stored: _UsageCounter, now: datetime) -> _UsageCounter:
        if now - stored.window_start >= self._window:
            return _UsageCounter(window_start=now, count=0, exists=stored.exists)
        return stored


def _load_counter(conn: sqlite3.Connection, owner_id: str) -> _UsageCounter:
    row = conn.execute(
        """
        SELECT window_start, message_count
        FROM chat_usage
        WHERE owner_id = ?
        """,
        (owner_id,),
    ).fetchone()
    if row is None:
        return _UsageCounter(window_start=_EPOCH, count=0, exists=False)

    window_start = parse_iso_utc(row["window_start"]) or _EPOCH
    raw_count = row["message_count"]
    count = int(raw_count) if isinstance(raw_count, int) else 0
    return _UsageCounter(window_start=window_start, count=max(0, count), exists=True)
