from __future__ import annotations

from functools import lru_cache

from contentpulse.config import AppSettings, load_settings
from contentpulse.repositories.chat_quota_repository import ChatQuotaRepository
from contentpulse.repositories.database import Database
from contentpulse.repositories.link_repository import LinkRepository
from contentpulse.repositories.metrics_repository import MetricsRepository
from contentpulse.services.chat_usage_service import ChatUsageService
from contentpulse.services.link_tracking_service import LinkTrackingService
from contentpulse.services.metrics_providers import InstagramReelStatsClient, YouTubeMetricsClient
from contentpulse.services.sync_service import SyncService
from contentpulse.telemetry import TelemetryClient, build_telemetry_client


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_database() -> Database:
    database = Database(get_settings().db_path)
    database.initialize()
    return database


@lru_cache(maxsize=1)
def get_link_repository() -> LinkRepository:
    return LinkRepository(get_database())


@lru_cache(maxsize=1)
def get_metrics_repository() -> MetricsRepository:
    return MetricsRepository(get_database())


@lru_cache(maxsize=1)
def get_link_tracking_service() -> LinkTrackingService:
    return LinkTrackingService(
        link_repository=get_link_repository(),
        metrics_repository=get_metrics_repository(),
    )


@lru_cache(maxsize=1)
def get_sync_service() -> SyncService:
    settings = get_settings()
    return SyncService(
        link_repository=get_link_repository(),
        metrics_repository=get_metrics_repository(),
        youtube_fetcher=YouTubeMetricsClient(
            api_key=settings.youtube_api_key,
            base_url=settings.youtube_api_base_url,
            timeout_seconds=settings.fetch_timeout_seconds,
        ),
        instagram_fetcher=InstagramReelStatsClient(
            api_key=settings.instagram_rapidapi_key,
            api_host=settings.instagram_rapidapi_host,
            timeout_seconds=settings.fetch_timeout_seconds,
        ),
        inter_request_delay_seconds=settings.sync_inter_request_delay_seconds,
        fetch_timeout_seconds=settings.fetch_timeout_seconds,
        youtube_batch_size=settings.youtube_batch_size,
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_chat_usage_service() -> ChatUsageService:
    settings = get_settings()
    return ChatUsageService(
        quota_repository=ChatQuotaRepository(
            get_database(),
            window_seconds=settings.chat_window_seconds,
        ),
        daily_limit=settings.chat_daily_limit,
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


def reset_cached_dependencies() -> None:
    if get_sync_service.cache_info().currsize:
        get_sync_service().shutdown()
    get_sync_service.cache_clear()
    get_chat_usage_service.cache_clear()
    get_link_tracking_service.cache_clear()
    get_metrics_repository.cache_clear()
    get_link_repository.cache_clear()
    get_database.cache_clear()
    get_telemetry.cache_clear()
    get_settings.cache_clear()
