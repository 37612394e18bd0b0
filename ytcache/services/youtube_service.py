from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, cast
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from ytcache.config import AppSettings
from ytcache.services.batch_coalescer import BatchCoalescer, BatchFamily
from ytcache.services.errors import BatchItemMissingError, UpstreamRequestError
from ytcache.services.request_coordinator import (
    CachedResponse,
    RequestCoordinator,
    RequestOptions,
)

LOGGER = logging.getLogger("ytcache.youtube")

ISO8601_DURATION_PATTERN = re.compile(
    r"^P(?:(?P<days>\d+)D)?(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$"
)
VIDEO_URL_PATTERN = re.compile(
    r"^.*((youtu\.be/)|(v/)|(/u/\w/)|(embed/)|(shorts/)|(watch\?))\??v?=?(?P<video_id>[^#&?/]*).*"
)
VIDEO_ID_LENGTH = 11
SHORT_MAX_SECONDS = 60
VIDEO_PARTS = "snippet,contentDetails,statistics"
CHANNEL_PARTS = "snippet,statistics,brandingSettings"
ERROR_BODY_MAX_CHARS = 500

VIDEO_DETAILS_FAMILY_NAME = "video_details"
CHANNEL_INFO_FAMILY_NAME = "channel_info"

RecordFormatter = Callable[[dict[str, Any]], dict[str, Any]]


@dataclass(frozen=True)
class YouTubeLookupResult:
    items: list[dict[str, Any]]
    total_results: int
    from_cache: bool
    api_cost: int
    next_page_token: str | None = None


@dataclass(frozen=True)
class ChannelVideosResult:
    videos: list[dict[str, Any]]
    next_page_token: str | None
    total_count: int
    filtered_count: int
    from_cache: bool
    api_cost: int


@dataclass(frozen=True)
class BatchLookupResult:
    items: list[dict[str, Any]]
    missing_ids: list[str]


class YouTubeDataClient:
    """Thin blocking client for the YouTube Data API v3; calls run in a worker thread."""

    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str,
        timeout_seconds: float,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds

    async def list_videos(self, video_ids: Sequence[str]) -> dict[str, Any]:
        return await self._get("videos", {"id": ",".join(video_ids), "part": VIDEO_PARTS})

    async def list_channels(self, channel_ids: Sequence[str]) -> dict[str, Any]:
        return await self._get("channels", {"id": ",".join(channel_ids), "part": CHANNEL_PARTS})

    async def search(self, **params: str | int | None) -> dict[str, Any]:
        query: dict[str, str | int] = {"part": "snippet"}
        query.update({name: value for name, value in params.items() if value is not None})
        return await self._get("search", query)

    async def _get(self, resource: str, params: dict[str, str | int]) -> dict[str, Any]:
        query = dict(params)
        if self._api_key is not None:
            query["key"] = self._api_key
        url = f"{self._base_url}/{resource}"
        status_code, payload, raw_body = await asyncio.to_thread(
            _fetch_youtube_json,
            url,
            params=query,
            timeout_seconds=self._timeout_seconds,
        )
        if status_code >= 400:
            raise _build_upstream_error(resource, status_code, payload, raw_body)
        return payload


class YouTubeService:
    """
    YouTube metadata lookups routed through the quota-governed request cache.

    Per-item video/channel lookups go through batch coalescers when batching is
    enabled, so a burst of single-id lookups costs one `videos.list` call.
    """

    def __init__(
        self,
        *,
        settings: AppSettings,
        coordinator: RequestCoordinator,
        client: YouTubeDataClient,
    ) -> None:
        self._settings = settings
        self._coordinator = coordinator
        self._client = client
        self._batching_enabled = settings.batch_requests_enabled
        delay_seconds = settings.batch_delay_ms / 1000
        self._video_batcher = BatchCoalescer(
            family=BatchFamily(
                name=VIDEO_DETAILS_FAMILY_NAME,
                endpoint="youtube/videos/batch",
                id_param="videoIds",
                api_type="videos",
                ttl_seconds=settings.cache_ttl_video_details_seconds,
                quota_cost=settings.cost_video_info,
            ),
            fetch_many=client.list_videos,
            coordinator=coordinator,
            quota_limit=settings.youtube_daily_quota_limit,
            max_batch_size=settings.batch_max_size,
            delay_seconds=delay_seconds,
        )
        self._channel_batcher = BatchCoalescer(
            family=BatchFamily(
                name=CHANNEL_INFO_FAMILY_NAME,
                endpoint="youtube/channels/batch",
                id_param="channelIds",
                api_type="channel_info",
                ttl_seconds=settings.cache_ttl_channel_info_seconds,
                quota_cost=settings.cost_channel_info,
            ),
            fetch_many=client.list_channels,
            coordinator=coordinator,
            quota_limit=settings.youtube_daily_quota_limit,
            max_batch_size=settings.batch_max_size,
            delay_seconds=delay_seconds,
        )

    @property
    def video_batcher(self) -> BatchCoalescer:
        return self._video_batcher

    @property
    def channel_batcher(self) -> BatchCoalescer:
        return self._channel_batcher

    async def aclose(self) -> None:
        await self._video_batcher.flush_now()
        await self._channel_batcher.flush_now()

    async def get_video_info(self, video_id: str) -> YouTubeLookupResult:
        if self._batching_enabled:
            try:
                batched = await self._video_batcher.enqueue_with_source(video_id)
            except BatchItemMissingError:
                return YouTubeLookupResult(items=[], total_results=0, from_cache=False, api_cost=0)
            return YouTubeLookupResult(
                items=[_format_video(batched.record)],
                total_results=1,
                from_cache=batched.from_cache,
                api_cost=batched.api_cost,
            )

        cost = self._settings.cost_video_info
        result = await self._coordinator.cached_request(
            lambda: self._client.list_videos([video_id]),
            "youtube/videos/info",
            {"videoId": video_id},
            self._options(
                ttl_seconds=self._settings.cache_ttl_video_details_seconds,
                quota_cost=cost,
                api_type="videos",
            ),
        )
        items = [_format_video(item) for item in _response_items(result.response)]
        return YouTubeLookupResult(
            items=items,
            total_results=len(items),
            from_cache=result.from_cache,
            api_cost=_charged_cost(result, cost),
        )

    async def search_videos(self, query: str, *, max_results: int = 25) -> YouTubeLookupResult:
        cost = self._settings.cost_video_search
        result = await self._coordinator.cached_request(
            lambda: self._client.search(q=query, type="video", maxResults=max_results),
            "youtube/search/videos",
            {"q": query, "maxResults": max_results},
            self._options(
                ttl_seconds=self._settings.cache_ttl_search_seconds,
                quota_cost=cost,
                api_type="search",
            ),
        )
        items = [_format_search_video(item) for item in _response_items(result.response)]
        return YouTubeLookupResult(
            items=items,
            total_results=_total_results(result.response, fallback=len(items)),
            from_cache=result.from_cache,
            api_cost=_charged_cost(result, cost),
            next_page_token=_coerce_nonempty_string(
                _as_dict(result.response).get("nextPageToken")
            ),
        )

    async def search_channels(self, query: str, *, max_results: int = 1) -> YouTubeLookupResult:
        cost = self._settings.cost_search
        result = await self._coordinator.cached_request(
            lambda: self._client.search(q=query, type="channel", maxResults=max_results),
            "youtube/search/channels",
            {"q": query, "maxResults": max_results},
            self._options(
                ttl_seconds=self._settings.cache_ttl_search_seconds,
                quota_cost=cost,
                api_type="search",
            ),
        )
        items = [_format_search_channel(item) for item in _response_items(result.response)]
        return YouTubeLookupResult(
            items=items,
            total_results=_total_results(result.response, fallback=len(items)),
            from_cache=result.from_cache,
            api_cost=_charged_cost(result, cost),
        )

    async def get_channel_info(self, channel_id: str) -> YouTubeLookupResult:
        resolved_channel_id = channel_id
        handle_cost = 0
        handle_from_cache = True
        if channel_id.startswith("@"):
            handle_result = await self.search_channels(channel_id)
            handle_cost = handle_result.api_cost
            handle_from_cache = handle_result.from_cache
            if not handle_result.items:
                return YouTubeLookupResult(
                    items=[],
                    total_results=0,
                    from_cache=handle_from_cache,
                    api_cost=handle_cost,
                )
            resolved_channel_id = str(handle_result.items[0]["channel_id"])

        if self._batching_enabled:
            try:
                batched = await self._channel_batcher.enqueue_with_source(resolved_channel_id)
            except BatchItemMissingError:
                return YouTubeLookupResult(
                    items=[],
                    total_results=0,
                    from_cache=False,
                    api_cost=handle_cost,
                )
            return YouTubeLookupResult(
                items=[_format_channel(batched.record)],
                total_results=1,
                from_cache=batched.from_cache and handle_from_cache,
                api_cost=batched.api_cost + handle_cost,
            )

        cost = self._settings.cost_channel_info
        result = await self._coordinator.cached_request(
            lambda: self._client.list_channels([resolved_channel_id]),
            "youtube/channels/info",
            {"channelId": resolved_channel_id},
            self._options(
                ttl_seconds=self._settings.cache_ttl_channel_info_seconds,
                quota_cost=cost,
                api_type="channel_info",
            ),
        )
        items = [_format_channel(item) for item in _response_items(result.response)]
        return YouTubeLookupResult(
            items=items,
            total_results=len(items),
            from_cache=result.from_cache and handle_from_cache,
            api_cost=_charged_cost(result, cost) + handle_cost,
        )

    async def get_video_details(self, video_ids: Sequence[str]) -> BatchLookupResult:
        if self._batching_enabled:
            return await _gather_batch(self._video_batcher, video_ids, _format_video)

        unique_ids = list(dict.fromkeys(video_ids))
        result = await self._coordinator.cached_request(
            lambda: self._client.list_videos(unique_ids),
            "youtube/videos/details",
            {"videoIds": ",".join(unique_ids)},
            self._options(
                ttl_seconds=self._settings.cache_ttl_video_details_seconds,
                quota_cost=self._settings.cost_video_info,
                api_type="videos",
            ),
        )
        return _split_batch_response(result.response, unique_ids, _format_video)

    async def get_channels_info(self, channel_ids: Sequence[str]) -> BatchLookupResult:
        if self._batching_enabled:
            return await _gather_batch(self._channel_batcher, channel_ids, _format_channel)

        unique_ids = list(dict.fromkeys(channel_ids))
        result = await self._coordinator.cached_request(
            lambda: self._client.list_channels(unique_ids),
            "youtube/channels/details",
            {"channelIds": ",".join(unique_ids)},
            self._options(
                ttl_seconds=self._settings.cache_ttl_channel_info_seconds,
                quota_cost=self._settings.cost_channel_info,
                api_type="channel_info",
            ),
        )
        return _split_batch_response(result.response, unique_ids, _format_channel)

    async def get_channel_videos(
        self,
        channel_id: str,
        *,
        page_token: str | None = None,
        sort_by: str = "date",
        min_duration_minutes: int = 0,
        max_results: int = 10,
    ) -> ChannelVideosResult:
        order = "viewCount" if sort_by == "popularity" else "date"
        search_cost = self._settings.cost_search
        search_result = await self._coordinator.cached_request(
            lambda: self._client.search(
                channelId=channel_id,
                type="video",
                order=order,
                maxResults=max_results,
                pageToken=page_token,
            ),
            "youtube/search/channel_videos",
            {
                "channelId": channel_id,
                "order": order,
                "pageToken": page_token or "null",
                "maxResults": max_results,
            },
            self._options(
                ttl_seconds=self._settings.cache_ttl_videos_seconds,
                quota_cost=search_cost,
                api_type="videos",
            ),
        )
        search_payload = _as_dict(search_result.response)
        search_items = _response_items(search_payload)
        next_page_token = _coerce_nonempty_string(search_payload.get("nextPageToken"))
        total_count = _total_results(search_payload, fallback=len(search_items))
        api_cost = _charged_cost(search_result, search_cost)

        snippets_by_id: dict[str, dict[str, Any]] = {}
        for item in search_items:
            video_id = _coerce_nonempty_string(_as_dict(item.get("id")).get("videoId"))
            if video_id is not None:
                snippets_by_id[video_id] = _as_dict(item.get("snippet"))

        if not snippets_by_id:
            return ChannelVideosResult(
                videos=[],
                next_page_token=next_page_token,
                total_count=total_count,
                filtered_count=0,
                from_cache=search_result.from_cache,
                api_cost=api_cost,
            )

        details = await self.get_video_details(list(snippets_by_id))
        videos: list[dict[str, Any]] = []
        filtered_count = 0
        for video in details.items:
            duration_seconds = video.get("duration_seconds")
            if isinstance(duration_seconds, int) and duration_seconds <= SHORT_MAX_SECONDS:
                filtered_count += 1
                continue
            if (
                min_duration_minutes > 0
                and isinstance(duration_seconds, int)
                and duration_seconds // 60 < min_duration_minutes
            ):
                filtered_count += 1
                continue
            videos.append(video)

        return ChannelVideosResult(
            videos=videos,
            next_page_token=next_page_token,
            total_count=total_count,
            filtered_count=filtered_count,
            from_cache=search_result.from_cache,
            api_cost=api_cost,
        )

    def _options(self, *, ttl_seconds: float, quota_cost: int, api_type: str) -> RequestOptions:
        return RequestOptions(
            ttl_seconds=ttl_seconds,
            quota_limit=self._settings.youtube_daily_quota_limit,
            quota_cost=quota_cost,
            api_type=api_type,
        )


def extract_video_id(raw_value: str) -> str | None:
    candidate = raw_value.strip()
    if len(candidate) == VIDEO_ID_LENGTH and re.fullmatch(r"[\w-]+", candidate):
        return candidate
    matched = VIDEO_URL_PATTERN.match(candidate)
    if matched is None:
        return None
    video_id = matched.group("video_id")
    if len(video_id) != VIDEO_ID_LENGTH:
        return None
    return video_id


async def _gather_batch(
    batcher: BatchCoalescer,
    item_ids: Sequence[str],
    formatter: RecordFormatter,
) -> BatchLookupResult:
    unique_ids = list(dict.fromkeys(item_ids))
    results = await asyncio.gather(
        *(batcher.enqueue(item_id) for item_id in unique_ids),
        return_exceptions=True,
    )
    items: list[dict[str, Any]] = []
    missing_ids: list[str] = []
    for item_id, outcome in zip(unique_ids, results, strict=True):
        if isinstance(outcome, BatchItemMissingError):
            missing_ids.append(item_id)
            continue
        if isinstance(outcome, BaseException):
            raise outcome
        items.append(formatter(outcome))
    return BatchLookupResult(items=items, missing_ids=missing_ids)


def _split_batch_response(
    response: Any,
    item_ids: Sequence[str],
    formatter: RecordFormatter,
) -> BatchLookupResult:
    records = {
        str(item.get("id")): item for item in _response_items(response) if item.get("id")
    }
    items = [formatter(records[item_id]) for item_id in item_ids if item_id in records]
    missing_ids = [item_id for item_id in item_ids if item_id not in records]
    return BatchLookupResult(items=items, missing_ids=missing_ids)


def _charged_cost(result: CachedResponse, cost: int) -> int:
    if result.from_cache or result.from_inflight:
        return 0
    return cost


def _format_video(item: dict[str, Any]) -> dict[str, Any]:
    snippet = _as_dict(item.get("snippet"))
    content_details = _as_dict(item.get("contentDetails"))
    statistics = _as_dict(item.get("statistics"))
    video_id = str(item.get("id", ""))
    duration = _coerce_nonempty_string(content_details.get("duration"))
    return {
        "id": video_id,
        "title": snippet.get("title"),
        "description": snippet.get("description"),
        "published_at": snippet.get("publishedAt"),
        "thumbnails": _extract_thumbnail_urls(snippet),
        "channel_id": snippet.get("channelId"),
        "channel_title": snippet.get("channelTitle"),
        "duration": duration,
        "duration_seconds": _parse_iso8601_duration_seconds(duration),
        "view_count": _coerce_int(statistics.get("viewCount")),
        "like_count": _coerce_int(statistics.get("likeCount")),
        "comment_count": _coerce_int(statistics.get("commentCount")),
        "url": f"https://www.youtube.com/watch?v={video_id}",
    }


def _format_search_video(item: dict[str, Any]) -> dict[str, Any]:
    snippet = _as_dict(item.get("snippet"))
    video_id = _coerce_nonempty_string(_as_dict(item.get("id")).get("videoId"))
    return {
        "id": video_id,
        "title": snippet.get("title"),
        "description": snippet.get("description"),
        "published_at": snippet.get("publishedAt"),
        "thumbnails": _extract_thumbnail_urls(snippet),
        "channel_id": snippet.get("channelId"),
        "channel_title": snippet.get("channelTitle"),
        "url": f"https://www.youtube.com/watch?v={video_id}" if video_id else None,
    }


def _format_search_channel(item: dict[str, Any]) -> dict[str, Any]:
    snippet = _as_dict(item.get("snippet"))
    channel_id = _coerce_nonempty_string(_as_dict(item.get("id")).get("channelId")) or (
        _coerce_nonempty_string(snippet.get("channelId"))
    )
    return {
        "channel_id": channel_id,
        "title": snippet.get("title") or snippet.get("channelTitle"),
        "description": snippet.get("description"),
        "thumbnails": _extract_thumbnail_urls(snippet),
    }


def _format_channel(item: dict[str, Any]) -> dict[str, Any]:
    snippet = _as_dict(item.get("snippet"))
    statistics = _as_dict(item.get("statistics"))
    branding = _as_dict(_as_dict(item.get("brandingSettings")).get("image"))
    return {
        "id": str(item.get("id", "")),
        "title": snippet.get("title"),
        "description": snippet.get("description"),
        "custom_url": snippet.get("customUrl"),
        "published_at": snippet.get("publishedAt"),
        "thumbnails": _extract_thumbnail_urls(snippet),
        "banner_url": _coerce_nonempty_string(branding.get("bannerExternalUrl")),
        "subscriber_count": _coerce_int(statistics.get("subscriberCount")),
        "video_count": _coerce_int(statistics.get("videoCount")),
        "view_count": _coerce_int(statistics.get("viewCount")),
    }


def _fetch_youtube_json(
    url: str,
    *,
    params: dict[str, str | int],
    timeout_seconds: float,
) -> tuple[int, dict[str, Any], str]:
    query = urlencode(params)
    request = Request(
        f"{url}?{query}" if query else url,
        headers={"accept": "application/json", "user-agent": "ytcache/0.1"},
        method="GET",
    )

    try:
        with urlopen(request, timeout=timeout_seconds) as response:
            status_code = int(response.getcode() or 0)
            raw_body = response.read().decode("utf-8", errors="replace")
    except HTTPError as exc:
        status_code = int(exc.code)
        raw_body = exc.read().decode("utf-8", errors="replace")
    except (URLError, TimeoutError, OSError) as exc:
        raise UpstreamRequestError(f"YouTube request failed: {exc}") from exc

    if status_code < 400:
        try:
            parsed = json.loads(raw_body)
        except json.JSONDecodeError as exc:
            raise UpstreamRequestError(
                "YouTube returned a non-JSON response.",
                status_code=status_code,
                body=raw_body[:ERROR_BODY_MAX_CHARS],
            ) from exc
        if not isinstance(parsed, dict):
            raise UpstreamRequestError(
                "YouTube returned an unexpected JSON payload.",
                status_code=status_code,
                body=raw_body[:ERROR_BODY_MAX_CHARS],
            )
        return status_code, _as_dict(parsed), raw_body

    return status_code, _parse_json_dict(raw_body), raw_body


def _build_upstream_error(
    resource: str,
    status_code: int,
    payload: dict[str, Any],
    raw_body: str,
) -> UpstreamRequestError:
    error = _as_dict(payload.get("error"))
    reason: str | None = None
    for detail in _as_list(error.get("errors")):
        reason = _coerce_nonempty_string(_as_dict(detail).get("reason"))
        if reason is not None:
            break
    message = _coerce_nonempty_string(error.get("message")) or f"HTTP {status_code}"
    LOGGER.warning(
        "youtube request rejected resource=%s status_code=%s reason=%s",
        resource,
        status_code,
        reason,
    )
    return UpstreamRequestError(
        f"YouTube {resource} request failed: {message}",
        status_code=status_code,
        reason=reason,
        body=raw_body[:ERROR_BODY_MAX_CHARS],
    )


def _parse_json_dict(raw_body: str) -> dict[str, Any]:
    if not raw_body.strip():
        return {}
    try:
        parsed = json.loads(raw_body)
    except json.JSONDecodeError:
        return {}
    return _as_dict(parsed)


def _response_items(response: Any) -> list[dict[str, Any]]:
    return [_as_dict(item) for item in _as_list(_as_dict(response).get("items"))]


def _total_results(response: Any, *, fallback: int) -> int:
    page_info = _as_dict(_as_dict(response).get("pageInfo"))
    total = _coerce_int(page_info.get("totalResults"))
    return total if total is not None else fallback


def _parse_iso8601_duration_seconds(raw_value: object) -> int | None:
    if not isinstance(raw_value, str):
        return None
    matched = ISO8601_DURATION_PATTERN.match(raw_value.strip())
    if matched is None:
        return None

    days = int(matched.group("days") or 0)
    hours = int(matched.group("hours") or 0)
    minutes = int(matched.group("minutes") or 0)
    seconds = int(matched.group("seconds") or 0)
    return days * 86_400 + hours * 3_600 + minutes * 60 + seconds


def _extract_thumbnail_urls(snippet: dict[str, Any]) -> dict[str, str]:
    thumbnails = _as_dict(snippet.get("thumbnails"))
    urls: dict[str, str] = {}
    for quality, payload in thumbnails.items():
        url_value = _as_dict(payload).get("url")
        if isinstance(url_value, str) and url_value.strip():
            urls[quality] = url_value
    return urls


def _coerce_nonempty_string(raw_value: object) -> str | None:
    if isinstance(raw_value, str) and raw_value.strip():
        return raw_value
    return None


def _coerce_int(raw_value: object) -> int | None:
    if isinstance(raw_value, bool):
        return int(raw_value)
    if isinstance(raw_value, int):
        return raw_value
    if isinstance(raw_value, float):
        return int(raw_value)
    if isinstance(raw_value, str):
        try:
            return int(raw_value)
        except ValueError:
            return None
    return None


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        raw_dict = cast(dict[object, object], value)
        return {key: item for key, item in raw_dict.items() if isinstance(key, str)}
    return {}


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return list(cast(list[Any], value))
    return []
