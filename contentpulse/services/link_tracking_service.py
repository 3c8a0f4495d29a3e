from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass

from contentpulse.models.platforms import Platform
from contentpulse.repositories.link_repository import (
    AssignLinksResult,
    LinkAssignment,
    LinkRepository,
)
from contentpulse.repositories.metrics_repository import MetricsRepository
from contentpulse.services.identifier_resolver import resolve_canonical_id

LOGGER = logging.getLogger("content_pulse.links")


@dataclass(frozen=True)
class RemoveLinkResult:
    removed: bool
    links: tuple[str, ...]
    deleted_canonical_id: str | None = None


@dataclass(frozen=True)
class DeleteOwnerResult:
    assignments_deleted: int
    records_deleted: int


class LinkTrackingService:
    def __init__(
        self,
        *,
        link_repository: LinkRepository,
        metrics_repository: MetricsRepository,
    ) -> None:
        self._links = link_repository
        self._metrics = metrics_repository

    def assign_links(
        self,
        *,
        owner_id: str,
        platform: Platform,
        links: Iterable[str],
    ) -> AssignLinksResult:
        result = self._links.assign(owner_id=owner_id, platform=platform, links=links)
        LOGGER.info(
            "links assigned owner_id=%s platform=%s added=%s total=%s",
            owner_id,
            platform,
            result.added_count,
            len(result.links),
        )
        return result

    def list_links(self, *, owner_id: str, platform: Platform) -> LinkAssignment:
        return self._links.get(owner_id=owner_id, platform=platform)

    def remove_link(self, *, owner_id: str, platform: Platform, link: str) -> RemoveLinkResult:
        """Drop a link and, when no remaining link maps to the same content, its cached record."""
        removed = self._links.remove(owner_id=owner_id, platform=platform, link=link)
        remaining = self._links.get(owner_id=owner_id, platform=platform).links
        if not removed:
            return RemoveLinkResult(removed=False, links=remaining)

        canonical_id = resolve_canonical_id(platform, link)
        if canonical_id is None:
            return RemoveLinkResult(removed=True, links=remaining)

        still_tracked = any(
            resolve_canonical_id(platform, other) == canonical_id for other in remaining
        )
        if still_tracked:
            return RemoveLinkResult(removed=True, links=remaining)

        try:
            self._metrics.delete(owner_id=owner_id, platform=platform, canonical_id=canonical_id)
        except sqlite3.Error:
            LOGGER.warning(
                "cached record delete failed after link removal owner_id=%s platform=%s "
                "canonical_id=%s",
                owner_id,
                platform,
                canonical_id,
                exc_info=True,
            )
            return RemoveLinkResult(removed=True, links=remaining)

        LOGGER.info(
            "link removed owner_id=%s platform=%s canonical_id=%s remaining=%s",
            owner_id,
            platform,
            canonical_id,
            len(remaining),
        )
        return RemoveLinkResult(
            removed=True,
            links=remaining,
            deleted_canonical_id=canonical_id,
        )

    def delete_owner(self, *, owner_id: str) -> DeleteOwnerResult:
        records_deleted = self._metrics.delete_owner(owner_id=owner_id)
        assignments_deleted = self._links.delete_owner(owner_id=owner_id)
        LOGGER.info(
            "owner data deleted owner_id=%s assignments=%s records=%s",
            owner_id,
            assignments_deleted,
            records_deleted,
        )
        return DeleteOwnerResult(
            assignments_deleted=assignments_deleted,
            records_deleted=records_deleted,
        )
