from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol, cast
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from contentpulse.repositories.metrics_repository import ContentCounts
from contentpulse.services.identifier_resolver import resolve_canonical_id

LOGGER = logging.getLogger("content_pulse.providers")

YOUTUBE_MAX_IDS_PER_REQUEST = 50
_USER_AGENT = "content-pulse/0.1"


class MetricsProviderError(Exception):
    pass


@dataclass(frozen=True)
class BulkItemMetrics:
    canonical_id: str
    counts: ContentCounts
    posted_at: str | None = None
    title: str | None = None
    thumbnail_url: str | None = None


@dataclass(frozen=True)
class SingleItemResult:
    success: bool
    canonical_id: str | None = None
    counts: ContentCounts | None = None
    posted_at: str | None = None
    caption: str | None = None
    thumbnail_url: str | None = None
    username: str | None = None
    error_message: str | None = None


class BulkMetricsFetcher(Protocol):
    max_batch_size: int

    def fetch(self, canonical_ids: Sequence[str]) -> list[BulkItemMetrics]:
        ...


class SingleItemMetricsFetcher(Protocol):
    def fetch(self, raw_url: str) -> SingleItemResult:
        ...


class YouTubeMetricsClient:
    """Batch statistics lookup against the YouTube Data API ``videos`` endpoint."""

    max_batch_size = YOUTUBE_MAX_IDS_PER_REQUEST

    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str = "https://www.googleapis.com/youtube/v3",
        timeout_seconds: float = 30.0,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = max(1.0, timeout_seconds)

    def fetch(self, canonical_ids: Sequence[str]) -> list[BulkItemMetrics]:
        ids = [video_id for video_id in canonical_ids if video_id]
        if not ids:
            return []
        if self._api_key is None:
            raise MetricsProviderError("YouTube API key is not configured.")
        if len(ids) > self.max_batch_size:
            raise MetricsProviderError(
                f"YouTube videos.list accepts at most {self.max_batch_size} ids per call."
            )

        status_code, payload = _fetch_json(
            url=f"{self._base_url}/videos",
            params={"part": "snippet,statistics", "id": ",".join(ids), "key": self._api_key},
            headers={},
            timeout_seconds=self._timeout_seconds,
        )
        if status_code != 200:
            raise MetricsProviderError(
                f"YouTube API request failed with status {status_code}: "
                f"{_extract_youtube_error_message(payload) or 'no details'}"
            )

        items: list[BulkItemMetrics] = []
        for raw_item in _as_list(payload.get("items")):
            item = _as_dict(raw_item)
            video_id = _coerce_nonempty_string(item.get("id"))
            if video_id is None:
                continue
            snippet = _as_dict(item.get("snippet"))
            statistics = _as_dict(item.get("statistics"))
            items.append(
                BulkItemMetrics(
                    canonical_id=video_id,
                    counts=ContentCounts(
                        likes=_coerce_count(statistics.get("likeCount")),
                        comments=_coerce_count(statistics.get("commentCount")),
                        plays_or_views=_coerce_count(statistics.get("viewCount")),
                    ),
                    posted_at=_coerce_nonempty_string(snippet.get("publishedAt")),
                    title=_coerce_nonempty_string(snippet.get("title")),
                    thumbnail_url=_best_thumbnail_url(snippet),
                )
            )
        return items


class InstagramReelStatsClient:
    """Per-reel statistics via the RapidAPI Instagram scraper. Never raises."""

    def __init__(
        self,
        *,
        api_key: str | None,
        api_host: str = "instagram-api-fast-reliable-data-scraper.p.rapidapi.com",
        timeout_seconds: float = 30.0,
    ) -> None:
        self._api_key = api_key
        self._api_host = api_host.strip().rstrip("/")
        self._timeout_seconds = max(1.0, timeout_seconds)

    def fetch(self, raw_url: str) -> SingleItemResult:
        if self._api_key is None:
            return SingleItemResult(
                success=False,
                error_message="RapidAPI key for the Instagram scraper is not configured.",
            )

        shortcode = resolve_canonical_id("instagram", raw_url)
        if shortcode is None:
            return SingleItemResult(
                success=False,
                error_message=f"Could not extract shortcode from URL: {raw_url}",
            )

        try:
            status_code, payload = _fetch_json(
                url=f"https://{self._api_host}/post",
                params={"shortcode": shortcode},
                headers={
                    "X-RapidAPI-Key": self._api_key,
                    "X-RapidAPI-Host": self._api_host,
                },
                timeout_seconds=self._timeout_seconds,
            )
        except MetricsProviderError as exc:
            return SingleItemResult(success=False, canonical_id=shortcode, error_message=str(exc))

        if status_code != 200:
            details = json.dumps(payload, ensure_ascii=True)[:200] if payload else "no details"
            return SingleItemResult(
                success=False,
                canonical_id=shortcode,
                error_message=f"API request failed with status {status_code}. Details: {details}",
            )

        post = _as_dict(next(iter(_as_list(payload.get("data"))), None))
        if not post:
            LOGGER.warning(
                "instagram stats unexpected response shape shortcode=%s keys=%s",
                shortcode,
                sorted(payload.keys()),
            )
            return SingleItemResult(
                success=False,
                canonical_id=shortcode,
                error_message="Unexpected API response structure. Post data not found.",
            )

        plays = _coerce_count(post.get("play_count")) or _coerce_count(post.get("video_view_count"))
        return SingleItemResult(
            success=True,
            canonical_id=shortcode,
            counts=ContentCounts(
                likes=_coerce_count(post.get("like_count")),
                comments=_coerce_count(post.get("comment_count")),
                plays_or_views=plays,
                reshares=_coerce_count(post.get("reshare_count")),
            ),
            posted_at=_timestamp_to_iso(post.get("taken_at_timestamp")),
            caption=_extract_caption(post),
            thumbnail_url=_coerce_nonempty_string(post.get("display_url")),
            username=_coerce_nonempty_string(_as_dict(post.get("owner")).get("username")),
        )


def _fetch_json(
    *,
    url: str,
    params: dict[str, str],
    headers: dict[str, str],
    timeout_seconds: float,
) -> tuple[int, dict[str, Any]]:
    query = urlencode(params)
    request = Request(
        f"{url}?{query}" if query else url,
        headers={"accept": "application/json", "user-agent": _USER_AGENT, **headers},
        method="GET",
    )

    status_code = 0
    raw_body = ""
    try:
        with urlopen(request, timeout=timeout_seconds) as response:
            status_code = int(response.getcode() or 0)
            raw_body = response.read().decode("utf-8", errors="replace")
    except HTTPError as exc:
        status_code = int(exc.code)
        raw_body = exc.read().decode("utf-8", errors="replace")
    except (URLError, TimeoutError, OSError) as exc:
        raise MetricsProviderError(f"Metrics request failed: {exc}") from exc

    return status_code, _parse_json_dict(raw_body)


def _parse_json_dict(raw_body: str) -> dict[str, Any]:
    if not raw_body.strip():
        return {}
    try:
        parsed = json.loads(raw_body)
    except json.JSONDecodeError:
        return {}
    return _as_dict(parsed)


def _extract_youtube_error_message(payload: dict[str, Any]) -> str | None:
    error = _as_dict(payload.get("error"))
    return _coerce_nonempty_string(error.get("message"))


def _best_thumbnail_url(snippet: dict[str, Any]) -> str | None:
    thumbnails = _as_dict(snippet.get("thumbnails"))
    for size in ("high", "medium", "default"):
        url = _coerce_nonempty_string(_as_dict(thumbnails.get(size)).get("url"))
        if url is not None:
            return url
    return None


def _extract_caption(post: dict[str, Any]) -> str | None:
    edges = _as_list(_as_dict(post.get("edge_media_to_caption")).get("edges"))
    if not edges:
        return None
    node = _as_dict(_as_dict(edges[0]).get("node"))
    return _coerce_nonempty_string(node.get("text"))


def _timestamp_to_iso(raw_value: object) -> str | None:
    if isinstance(raw_value, bool) or not isinstance(raw_value, (int, float)):
        return None
    try:
        return datetime.fromtimestamp(float(raw_value), tz=UTC).isoformat()
    except (OverflowError, OSError, ValueError):
        return None


def _coerce_count(raw_value: object) -> int:
    if isinstance(raw_value, bool):
        return 0
    if isinstance(raw_value, int):
        return max(0, raw_value)
    if isinstance(raw_value, float):
        return max(0, int(raw_value))
    if isinstance(raw_value, str):
        try:
            return max(0, int(raw_value.strip()))
        except ValueError:
            return 0
    return 0


def _coerce_nonempty_string(raw_value: object) -> str | None:
    if isinstance(raw_value, str) and raw_value.strip():
        return raw_value.strip()
    return None


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        raw_dict = cast(dict[object, object], value)
        converted: dict[str, Any] = {}
        for key, item in raw_dict.items():
            if isinstance(key, str):
                converted[key] = item
        return converted
    return {}


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return list(cast(list[Any], value))
    return []
