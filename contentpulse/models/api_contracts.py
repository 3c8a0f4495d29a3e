from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from contentpulse.models.platforms import Platform
from contentpulse.repositories.chat_quota_repository import ChatQuotaSnapshot
from contentpulse.repositories.link_repository import LinkAssignment
from contentpulse.repositories.metrics_repository import ContentMetricsRecord
from contentpulse.services.sync_service import SyncProgress


class AssignLinksRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    links: list[str] = Field(min_length=1, max_length=500)

    @field_validator("links")
    @classmethod
    def _validate_links(cls, value: list[str]) -> list[str]:
        for link in value:
            if len(link) > 2048:
                raise ValueError("links must be at most 2048 characters each")
            if any(ord(character) < 32 for character in link.strip()):
                raise ValueError("links must not contain control characters")
        return value


class LinksResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    owner_id: str
    platform: Platform
    links: list[str]
    last_refreshed_at: datetime | None = None
    added_count: int | None = None

    @classmethod
    def from_assignment(
        cls,
        assignment: LinkAssignment,
        *,
        added_count: int | None = None,
    ) -> LinksResponse:
        return cls(
            owner_id=assignment.owner_id,
            platform=assignment.platform,
            links=list(assignment.links),
            last_refreshed_at=assignment.last_refreshed_at,
            added_count=added_count,
        )


class RemoveLinkResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    removed: bool
    links: list[str]
    deleted_canonical_id: str | None = None


class ContentMetricsResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    platform: Platform
    canonical_id: str
    likes: int
    comments: int
    plays_or_views: int
    reshares: int
    posted_at: str | None = None
    last_fetched: datetime
    error_message: str | None = None
    source_url: str | None = None
    title: str | None = None
    thumbnail_url: str | None = None
    caption: str | None = None
    username: str | None = None

    @classmethod
    def from_record(cls, record: ContentMetricsRecord) -> ContentMetricsResponse:
        return cls(
            platform=record.platform,
            canonical_id=record.canonical_id,
            likes=record.counts.likes,
            comments=record.counts.comments,
            plays_or_views=record.counts.plays_or_views,
            reshares=record.counts.reshares,
            posted_at=record.posted_at,
            last_fetched=record.last_fetched,
            error_message=record.error_message,
            source_url=record.source_url,
            title=record.title,
            thumbnail_url=record.thumbnail_url,
            caption=record.caption,
            username=record.username,
        )


class MetricsListResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    owner_id: str
    items: list[ContentMetricsResponse]


class SyncProgressResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    owner_id: str
    platform: Platform
    state: str
    total: int
    processed: int
    succeeded: int
    failed: int
    unresolved: int
    percent: float
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: str | None = None

    @classmethod
    def from_progress(cls, progress: SyncProgress) -> SyncProgressResponse:
        return cls(
            owner_id=progress.owner_id,
            platform=progress.platform,
            state=progress.state.value,
            total=progress.total,
            processed=progress.processed,
            succeeded=progress.succeeded,
            failed=progress.failed,
            unresolved=progress.unresolved,
            percent=progress.percent,
            started_at=progress.started_at,
            finished_at=progress.finished_at,
            error=progress.error,
        )


class SyncCancelResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    cancelled: bool


class ChatUsageResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    allowed: bool
    remaining: int
    limit_reached: bool
    daily_limit: int
    messages_used: int
    window_start: datetime | None = None
    resets_at: datetime | None = None

    @classmethod
    def from_snapshot(cls, snapshot: ChatQuotaSnapshot) -> ChatUsageResponse:
        return cls(
            allowed=snapshot.allowed,
            remaining=snapshot.remaining,
            limit_reached=snapshot.limit_reached,
            daily_limit=snapshot.daily_limit,
            messages_used=snapshot.messages_used,
            window_start=snapshot.window_start,
            resets_at=snapshot.resets_at,
        )
