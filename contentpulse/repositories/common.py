from __future__ import annotations

from datetime import UTC, datetime


def utc_now() -> datetime:
    return datetime.now(UTC)


def to_iso(value: datetime) -> str:
    # Fixed precision keeps stored timestamps lexicographically ordered.
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def utc_now_iso() -> str:
    return to_iso(utc_now())


def parse_iso_utc(raw_value: object) -> datetime | None:
    if not isinstance(raw_value, str):
        return None
    try:
        parsed = datetime.fromisoformat(raw_value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)
