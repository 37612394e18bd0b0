from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Annotated, Literal, NoReturn

from fastapi import APIRouter, Depends, HTTPException, Query
from structlog.contextvars import bind_contextvars, reset_contextvars

from ytcache.config import AppSettings
from ytcache.dependencies import get_coordinator, get_settings, get_youtube_service
from ytcache.models.contracts import (
    CacheMutationResponse,
    CacheStatsResponse,
    ChannelInfoResponse,
    ChannelVideosResponse,
    HistoryEntryModel,
    UsageHistoryResponse,
    UsageStatsResponse,
    VideoInfoResponse,
    YouTubeItemsResponse,
)
from ytcache.services.errors import (
    BatchItemMissingError,
    QuotaExceededError,
    UpstreamRequestError,
    YtCacheError,
)
from ytcache.services.request_coordinator import RequestCoordinator
from ytcache.services.youtube_service import YouTubeService, extract_video_id

LOGGER = logging.getLogger("ytcache.api")

router = APIRouter()

YouTubeServiceDep = Annotated[YouTubeService, Depends(get_youtube_service)]
CoordinatorDep = Annotated[RequestCoordinator, Depends(get_coordinator)]
SettingsDep = Annotated[AppSettings, Depends(get_settings)]


def _raise_http_error(exc: YtCacheError) -> NoReturn:
    if isinstance(exc, QuotaExceededError):
        raise HTTPException(status_code=429, detail=str(exc)) from exc
    if isinstance(exc, BatchItemMissingError):
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if isinstance(exc, UpstreamRequestError):
        if exc.is_quota_exceeded:
            raise HTTPException(status_code=429, detail=str(exc)) from exc
        LOGGER.warning(
            "upstream error surfaced to client status_code=%s reason=%s",
            exc.status_code,
            exc.reason,
        )
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    raise HTTPException(status_code=500, detail=str(exc)) from exc


@router.get(
    "/videos/info",
    response_model=VideoInfoResponse,
    tags=["videos"],
    operation_id="get_video_info",
)
async def get_video_info(
    service: YouTubeServiceDep,
    video_id: Annotated[str | None, Query()] = None,
    url: Annotated[str | None, Query()] = None,
) -> VideoInfoResponse:
    raw_value = video_id or url
    if raw_value is None or not raw_value.strip():
        raise HTTPException(status_code=400, detail="Either video_id or url is required.")
    resolved_id = extract_video_id(raw_value)
    if resolved_id is None:
        raise HTTPException(status_code=400, detail="Invalid YouTube URL or video ID.")

    context_tokens = bind_contextvars(video_id=resolved_id)
    try:
        result = await service.get_video_info(resolved_id)
    except YtCacheError as exc:
        _raise_http_error(exc)
    finally:
        reset_contextvars(**context_tokens)

    if not result.items:
        raise HTTPException(status_code=404, detail="Video not found.")
    return VideoInfoResponse(
        video=result.items[0],
        from_cache=result.from_cache,
        api_cost=result.api_cost,
    )


@router.get(
    "/videos/search",
    response_model=YouTubeItemsResponse,
    tags=["videos"],
    operation_id="search_videos",
)
async def search_videos(
    service: YouTubeServiceDep,
    q: Annotated[str, Query(min_length=1)],
    max_results: Annotated[int, Query(ge=1, le=50)] = 25,
) -> YouTubeItemsResponse:
    try:
        result = await service.search_videos(q, max_results=max_results)
    except YtCacheError as exc:
        _raise_http_error(exc)
    return YouTubeItemsResponse(
        items=result.items,
        total_results=result.total_results,
        next_page_token=result.next_page_token,
        from_cache=result.from_cache,
        api_cost=result.api_cost,
    )


@router.get(
    "/channels/info",
    response_model=ChannelInfoResponse,
    tags=["channels"],
    operation_id="get_channel_info",
)
async def get_channel_info(
    service: YouTubeServiceDep,
    channel_id: Annotated[str, Query(min_length=1)],
) -> ChannelInfoResponse:
    try:
        result = await service.get_channel_info(channel_id.strip())
    except YtCacheError as exc:
        _raise_http_error(exc)
    if not result.items:
        raise HTTPException(status_code=404, detail="Channel not found.")
    return ChannelInfoResponse(
        channel=result.items[0],
        from_cache=result.from_cache,
        api_cost=result.api_cost,
    )


@router.get(
    "/channels/search",
    response_model=YouTubeItemsResponse,
    tags=["channels"],
    operation_id="search_channels",
)
async def search_channels(
    service: YouTubeServiceDep,
    q: Annotated[str, Query(min_length=1)],
    max_results: Annotated[int, Query(ge=1, le=50)] = 5,
) -> YouTubeItemsResponse:
    try:
        result = await service.search_channels(q, max_results=max_results)
    except YtCacheError as exc:
        _raise_http_error(exc)
    return YouTubeItemsResponse(
        items=result.items,
        total_results=result.total_results,
        from_cache=result.from_cache,
        api_cost=result.api_cost,
    )


@router.get(
    "/channels/videos",
    response_model=ChannelVideosResponse,
    tags=["channels"],
    operation_id="get_channel_videos",
)
async def get_channel_videos(
    service: YouTubeServiceDep,
    channel_id: Annotated[str, Query(min_length=1)],
    page_token: Annotated[str | None, Query()] = None,
    sort_by: Annotated[Literal["date", "popularity"], Query()] = "date",
    min_duration: Annotated[int, Query(ge=0)] = 0,
    max_results: Annotated[int, Query(ge=1, le=50)] = 10,
) -> ChannelVideosResponse:
    try:
        result = await service.get_channel_videos(
            channel_id.strip(),
            page_token=page_token,
            sort_by=sort_by,
            min_duration_minutes=min_duration,
            max_results=max_results,
        )
    except YtCacheError as exc:
        _raise_http_error(exc)
    return ChannelVideosResponse(
        videos=result.videos,
        next_page_token=result.next_page_token,
        total_count=result.total_count,
        filtered_count=result.filtered_count,
        from_cache=result.from_cache,
        api_cost=result.api_cost,
    )


@router.get(
    "/cache/stats",
    response_model=CacheStatsResponse,
    tags=["cache"],
    operation_id="get_cache_stats",
)
async def get_cache_stats(coordinator: CoordinatorDep) -> CacheStatsResponse:
    stats = coordinator.cache.get_stats()
    return CacheStatsResponse(
        hits=stats.hits,
        misses=stats.misses,
        sets=stats.sets,
        deletes=stats.deletes,
        count=stats.count,
        total_size=stats.total_size,
        size_formatted=stats.size_formatted,
        keys=list(stats.keys),
        persistence_enabled=stats.persistence_enabled,
        inflight_keys=list(coordinator.inflight_keys()),
    )


@router.delete(
    "/cache",
    response_model=CacheMutationResponse,
    tags=["cache"],
    operation_id="clear_cache",
)
async def clear_cache(coordinator: CoordinatorDep) -> CacheMutationResponse:
    coordinator.cache.clear()
    LOGGER.info("cache cleared via api")
    return CacheMutationResponse(ok=True, message="Cache cleared.")


@router.delete(
    "/cache/{key:path}",
    response_model=CacheMutationResponse,
    tags=["cache"],
    operation_id="delete_cache_entry",
)
async def delete_cache_entry(key: str, coordinator: CoordinatorDep) -> CacheMutationResponse:
    if not coordinator.cache.delete(key):
        raise HTTPException(status_code=404, detail=f"Cache entry not found: {key}")
    return CacheMutationResponse(ok=True, message=f"Cache entry deleted: {key}")


@router.get(
    "/usage/stats",
    response_model=UsageStatsResponse,
    tags=["usage"],
    operation_id="get_usage_stats",
)
async def get_usage_stats(
    coordinator: CoordinatorDep,
    settings: SettingsDep,
) -> UsageStatsResponse:
    quota = coordinator.quota
    snapshot = quota.snapshot()
    limit = settings.youtube_daily_quota_limit
    return UsageStatsResponse(
        quota_day=snapshot.quota_day.isoformat(),
        daily_units=snapshot.daily_units,
        quota_limit=limit,
        remaining_units=max(0, limit - snapshot.daily_units),
        warning_fraction=quota.warning_fraction,
        approaching_limit=quota.is_approaching_limit(limit),
        exceeded=quota.has_exceeded_limit(limit),
        breakdown=snapshot.breakdown,
        costs={
            "search": settings.cost_search,
            "channel_info": settings.cost_channel_info,
            "video_info": settings.cost_video_info,
            "video_search": settings.cost_video_search,
        },
    )


@router.get(
    "/usage/history",
    response_model=UsageHistoryResponse,
    tags=["usage"],
    operation_id="get_usage_history",
)
async def get_usage_history(
    coordinator: CoordinatorDep,
    limit: Annotated[int | None, Query(ge=1)] = None,
) -> UsageHistoryResponse:
    entries = coordinator.history.entries(limit=limit)
    return UsageHistoryResponse(
        entries=[HistoryEntryModel(**asdict(entry)) for entry in entries],
        total=len(coordinator.history),
    )


@router.delete(
    "/usage/history",
    response_model=CacheMutationResponse,
    tags=["usage"],
    operation_id="clear_usage_history",
)
async def clear_usage_history(coordinator: CoordinatorDep) -> CacheMutationResponse:
    coordinator.history.clear()
    return CacheMutationResponse(ok=True, message="Call history cleared.")
