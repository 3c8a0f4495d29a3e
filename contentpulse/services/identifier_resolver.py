from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal
from urllib.parse import parse_qs, urlparse

UnresolvableReason = Literal[
    "empty",
    "invalid_url",
    "unsupported_host",
    "unrecognized_path",
    "unsupported_platform",
]

_YOUTUBE_SHORT_HOSTS: frozenset[str] = frozenset({"youtu.be", "www.youtu.be", "m.youtu.be"})
_YOUTUBE_HOST_SUFFIXES: tuple[str, ...] = ("youtube.com", "youtube-nocookie.com")
_YOUTUBE_PATH_PREFIXES: tuple[str, ...] = ("embed/", "shorts/", "live/", "v/")
_YOUTUBE_BARE_ID = re.compile(r"[A-Za-z0-9_-]{11}")
_INSTAGRAM_HOST_SUFFIXES: tuple[str, ...] = ("instagram.com", "instagr.am")
_INSTAGRAM_PATH_PATTERN = re.compile(r"/(?:p|reel|reels|tv)/([A-Za-z0-9_-]+)")
_ID_TERMINATORS = re.compile(r"[?&#/]")


@dataclass(frozen=True)
class Resolved:
    canonical_id: str


@dataclass(frozen=True)
class Unresolvable:
    reason: UnresolvableReason


Resolution = Resolved | Unresolvable


def resolve(platform: str, raw_url: str) -> Resolution:
    """Map a raw link to its platform content ID. Never raises."""
    candidate = raw_url.strip() if isinstance(raw_url, str) else ""
    if not candidate:
        return Unresolvable("empty")
    if platform == "youtube" and _YOUTUBE_BARE_ID.fullmatch(candidate):
        return Resolved(candidate)

    try:
        parsed = urlparse(candidate)
    except ValueError:
        return Unresolvable("invalid_url")
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        return Unresolvable("invalid_url")

    host = (parsed.hostname or "").lower()
    if platform == "youtube":
        return _resolve_youtube(host, parsed.path, parsed.query)
    if platform == "instagram":
        return _resolve_instagram(host, parsed.path)
    return Unresolvable("unsupported_platform")


def resolve_canonical_id(platform: str, raw_url: str) -> str | None:
    resolution = resolve(platform, raw_url)
    if isinstance(resolution, Resolved):
        return resolution.canonical_id
    return None


def _resolve_youtube(host: str, path: str, query: str) -> Resolution:
    if host in _YOUTUBE_SHORT_HOSTS:
        return _as_resolution(path.strip("/").split("/", maxsplit=1)[0])

    if not _host_matches(host, _YOUTUBE_HOST_SUFFIXES):
        return Unresolvable("unsupported_host")

    trimmed_path = path.strip("/")
    if trimmed_path == "watch":
        query_video = parse_qs(query).get("v")
        if query_video:
            return _as_resolution(query_video[0])
        return Unresolvable("unrecognized_path")

    for prefix in _YOUTUBE_PATH_PREFIXES:
        if trimmed_path.startswith(prefix):
            return _as_resolution(trimmed_path[len(prefix) :])
    return Unresolvable("unrecognized_path")


def _resolve_instagram(host: str, path: str) -> Resolution:
    if not _host_matches(host, _INSTAGRAM_HOST_SUFFIXES):
        return Unresolvable("unsupported_host")
    match = _INSTAGRAM_PATH_PATTERN.search(path)
    if match is None:
        return Unresolvable("unrecognized_path")
    return _as_resolution(match.group(1))


def _host_matches(host: str, suffixes: tuple[str, ...]) -> bool:
    return any(host == suffix or host.endswith(f".{suffix}") for suffix in suffixes)


def _as_resolution(raw_id: str) -> Resolution:
    canonical_id = _ID_TERMINATORS.split(raw_id.strip(), maxsplit=1)[0].strip()
    if not canonical_id:
        return Unresolvable("unrecognized_path")
    return Resolved(canonical_id)
