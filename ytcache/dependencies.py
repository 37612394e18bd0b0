from __future__ import annotations

from functools import lru_cache
from zoneinfo import ZoneInfo

from ytcache.config import AppSettings, load_settings
from ytcache.repositories.cache_store import CacheStore
from ytcache.repositories.database import Database
from ytcache.repositories.quota_repository import QuotaRepository
from ytcache.services.call_history import CallHistoryLog
from ytcache.services.quota_tracker import QuotaTracker
from ytcache.services.request_coordinator import RequestCoordinator
from ytcache.services.youtube_service import YouTubeDataClient, YouTubeService
from ytcache.telemetry import TelemetryClient, build_telemetry_client


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


@lru_cache(maxsize=1)
def get_quota_repository() -> QuotaRepository | None:
    settings = get_settings()
    if not settings.quota_persistence_enabled:
        return None
    database = Database(settings.db_path)
    database.initialize()
    return QuotaRepository(database)


@lru_cache(maxsize=1)
def get_coordinator() -> RequestCoordinator:
    settings = get_settings()
    return RequestCoordinator(
        cache=CacheStore(
            settings.cache_dir,
            persistence_enabled=settings.cache_persistence_enabled,
        ),
        quota=QuotaTracker(
            timezone=ZoneInfo(settings.quota_timezone),
            warning_fraction=settings.youtube_quota_warning_percent,
            repository=get_quota_repository(),
        ),
        history=CallHistoryLog(max_entries=settings.history_max_entries),
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_youtube_service() -> YouTubeService:
    settings = get_settings()
    return YouTubeService(
        settings=settings,
        coordinator=get_coordinator(),
        client=YouTubeDataClient(
            api_key=settings.youtube_api_key,
            base_url=settings.youtube_api_base_url,
            timeout_seconds=settings.youtube_http_timeout_seconds,
        ),
    )


def reset_cached_dependencies() -> None:
    get_youtube_service.cache_clear()
    get_coordinator.cache_clear()
    get_quota_repository.cache_clear()
    get_telemetry.cache_clear()
    get_settings.cache_clear()
