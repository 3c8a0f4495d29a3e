from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from pydantic import BaseModel, ConfigDict
from structlog.contextvars import bind_contextvars, reset_contextvars

from contentpulse.dependencies import (
    get_chat_usage_service,
    get_link_tracking_service,
    get_metrics_repository,
    get_sync_service,
)
from contentpulse.models.api_contracts import (
    AssignLinksRequest,
    ChatUsageResponse,
    ContentMetricsResponse,
    LinksResponse,
    MetricsListResponse,
    RemoveLinkResponse,
    SyncCancelResponse,
    SyncProgressResponse,
)
from contentpulse.models.platforms import Platform
from contentpulse.repositories.metrics_repository import MetricsRepository
from contentpulse.services.chat_usage_service import ChatQuotaExceededError, ChatUsageService
from contentpulse.services.link_tracking_service import LinkTrackingService
from contentpulse.services.sync_service import (
    SyncAlreadyRunningError,
    SyncProgress,
    SyncService,
    SyncState,
)

router = APIRouter()

OwnerId = Annotated[
    str,
    Path(min_length=1, max_length=128, pattern=r"^[A-Za-z0-9._:@-]+$"),
]


class DeleteOwnerResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    assignments_deleted: int
    records_deleted: int


@router.get(
    "/owners/{owner_id}/links/{platform}",
    response_model=LinksResponse,
    tags=["links"],
    operation_id="list_links",
)
def list_links(
    owner_id: OwnerId,
    platform: Platform,
    service: Annotated[LinkTrackingService, Depends(get_link_tracking_service)],
) -> LinksResponse:
    return LinksResponse.from_assignment(service.list_links(owner_id=owner_id, platform=platform))


@router.post(
    "/owners/{owner_id}/links/{platform}",
    response_model=LinksResponse,
    tags=["links"],
    operation_id="assign_links",
)
def assign_links(
    owner_id: OwnerId,
    platform: Platform,
    request: AssignLinksRequest,
    service: Annotated[LinkTrackingService, Depends(get_link_tracking_service)],
) -> LinksResponse:
    result = service.assign_links(owner_id=owner_id, platform=platform, links=request.links)
    assignment = service.list_links(owner_id=owner_id, platform=platform)
    return LinksResponse.from_assignment(assignment, added_count=result.added_count)


@router.delete(
    "/owners/{owner_id}/links/{platform}",
    response_model=RemoveLinkResponse,
    tags=["links"],
    operation_id="remove_link",
)
def remove_link(
    owner_id: OwnerId,
    platform: Platform,
    link: Annotated[str, Query(min_length=1, max_length=2048)],
    service: Annotated[LinkTrackingService, Depends(get_link_tracking_service)],
) -> RemoveLinkResponse:
    result = service.remove_link(owner_id=owner_id, platform=platform, link=link)
    return RemoveLinkResponse(
        removed=result.removed,
        links=list(result.links),
        deleted_canonical_id=result.deleted_canonical_id,
    )


@router.delete(
    "/owners/{owner_id}",
    response_model=DeleteOwnerResponse,
    tags=["links"],
    operation_id="delete_owner",
)
def delete_owner(
    owner_id: OwnerId,
    service: Annotated[LinkTrackingService, Depends(get_link_tracking_service)],
    sync_service: Annotated[SyncService, Depends(get_sync_service)],
) -> DeleteOwnerResponse:
    try:
        with sync_service.owner_exclusive(owner_id=owner_id):
            result = service.delete_owner(owner_id=owner_id)
    except SyncAlreadyRunningError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return DeleteOwnerResponse(
        assignments_deleted=result.assignments_deleted,
        records_deleted=result.records_deleted,
    )


@router.get(
    "/owners/{owner_id}/metrics",
    response_model=MetricsListResponse,
    tags=["metrics"],
    operation_id="list_metrics",
)
def list_metrics(
    owner_id: OwnerId,
    repository: Annotated[MetricsRepository, Depends(get_metrics_repository)],
    platform: Platform | None = None,
) -> MetricsListResponse:
    records = repository.list_all(owner_id=owner_id, platform=platform)
    return MetricsListResponse(
        owner_id=owner_id,
        items=[ContentMetricsResponse.from_record(record) for record in records],
    )


@router.post(
    "/owners/{owner_id}/sync/{platform}",
    response_model=SyncProgressResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["sync"],
    operation_id="start_sync",
)
def start_sync(
    owner_id: OwnerId,
    platform: Platform,
    sync_service: Annotated[SyncService, Depends(get_sync_service)],
) -> SyncProgressResponse:
    context_tokens = bind_contextvars(sync_owner_id=owner_id, sync_platform=platform)
    try:
        progress = sync_service.start_background(owner_id=owner_id, platform=platform)
    except SyncAlreadyRunningError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    finally:
        reset_contextvars(**context_tokens)
    return SyncProgressResponse.from_progress(progress)


@router.get(
    "/owners/{owner_id}/sync/{platform}",
    response_model=SyncProgressResponse,
    tags=["sync"],
    operation_id="get_sync_progress",
)
def get_sync_progress(
    owner_id: OwnerId,
    platform: Platform,
    sync_service: Annotated[SyncService, Depends(get_sync_service)],
) -> SyncProgressResponse:
    progress = sync_service.get_progress(owner_id=owner_id, platform=platform)
    if progress is None:
        progress = SyncProgress(owner_id=owner_id, platform=platform, state=SyncState.IDLE)
    return SyncProgressResponse.from_progress(progress)


@router.post(
    "/owners/{owner_id}/sync/{platform}/cancel",
    response_model=SyncCancelResponse,
    tags=["sync"],
    operation_id="cancel_sync",
)
def cancel_sync(
    owner_id: OwnerId,
    platform: Platform,
    sync_service: Annotated[SyncService, Depends(get_sync_service)],
) -> SyncCancelResponse:
    return SyncCancelResponse(cancelled=sync_service.cancel(owner_id=owner_id, platform=platform))


@router.get(
    "/owners/{owner_id}/chat-usage",
    response_model=ChatUsageResponse,
    tags=["chat"],
    operation_id="get_chat_usage",
)
def get_chat_usage(
    owner_id: OwnerId,
    service: Annotated[ChatUsageService, Depends(get_chat_usage_service)],
) -> ChatUsageResponse:
    return ChatUsageResponse.from_snapshot(service.status(owner_id=owner_id))


@router.post(
    "/owners/{owner_id}/chat-usage/consume",
    response_model=ChatUsageResponse,
    tags=["chat"],
    operation_id="consume_chat_usage",
)
def consume_chat_usage(
    owner_id: OwnerId,
    service: Annotated[ChatUsageService, Depends(get_chat_usage_service)],
) -> ChatUsageResponse:
    try:
        snapshot = service.consume(owner_id=owner_id)
    except ChatQuotaExceededError as exc:
        denied = exc.snapshot
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "message": str(exc),
                "remaining": denied.remaining,
                "daily_limit": denied.daily_limit,
                "resets_at": denied.resets_at.isoformat() if denied.resets_at else None,
            },
        ) from exc
    return ChatUsageResponse.from_snapshot(snapshot)
