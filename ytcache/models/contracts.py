from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def _default_items() -> list[dict[str, Any]]:
    return []


class YouTubeItemsResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    items: list[dict[str, Any]] = Field(default_factory=_default_items)
    total_results: int
    next_page_token: str | None = None
    from_cache: bool
    api_cost: int


class VideoInfoResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    video: dict[str, Any]
    from_cache: bool
    api_cost: int


class ChannelInfoResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    channel: dict[str, Any]
    from_cache: bool
    api_cost: int


class ChannelVideosResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    videos: list[dict[str, Any]] = Field(default_factory=_default_items)
    next_page_token: str | None = None
    total_count: int
    filtered_count: int
    from_cache: bool
    api_cost: int


class CacheStatsResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    hits: int
    misses: int
    sets: int
    deletes: int
    count: int
    total_size: int
    size_formatted: str
    keys: list[str]
    persistence_enabled: bool
    inflight_keys: list[str]


class CacheMutationResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ok: bool
    message: str


class UsageStatsResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    quota_day: str
    daily_units: int
    quota_limit: int
    remaining_units: int
    warning_fraction: float
    approaching_limit: bool
    exceeded: bool
    breakdown: dict[str, int]
    costs: dict[str, int]


class HistoryEntryModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    timestamp: datetime
    endpoint: str
    params: dict[str, Any]
    cache_key: str
    quota_cost: int
    from_cache: bool
    status: str
    api_type: str
    duration_ms: int | None = None
    response_snapshot: str | None = None
    error_snapshot: dict[str, Any] | None = None


class UsageHistoryResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    entries: list[HistoryEntryModel]
    total: int
