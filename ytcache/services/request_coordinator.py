from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from time import perf_counter
from typing import Any

from ytcache.repositories.cache_store import CacheStore, generate_key
from ytcache.services.call_history import (
    CallHistoryLog,
    CallStatus,
    error_snapshot,
    truncate_snapshot,
)
from ytcache.services.errors import QuotaExceededError
from ytcache.services.quota_tracker import QuotaTracker
from ytcache.telemetry import TelemetryClient

LOGGER = logging.getLogger("ytcache.requests")

DEFAULT_TTL_SECONDS = 60 * 60
DEFAULT_QUOTA_LIMIT = 10_000
QUOTA_EXCEEDED_MESSAGE = "YouTube API quota exceeded. Please try again tomorrow."

RequestFn = Callable[[], Awaitable[Any]]


@dataclass(frozen=True)
class RequestOptions:
    ttl_seconds: float | None = DEFAULT_TTL_SECONDS
    bypass_cache: bool = False
    quota_limit: int = DEFAULT_QUOTA_LIMIT
    quota_cost: int = 1
    force_network: bool = False
    api_type: str = "other"


@dataclass(frozen=True)
class CachedResponse:
    response: Any
    from_cache: bool
    from_inflight: bool = False


class RequestCoordinator:
    """
    Single entry point for metered upstream calls.

    Each call is resolved by exactly one of: quota hard stop, stale cache under
    quota pressure, normal cache hit, joining an identical in-flight call, or a
    new network call. Shared maps are only touched between awaits, so one event
    loop gives at most one live upstream call per cache key without locking.
    """

    def __init__(
        self,
        *,
        cache: CacheStore,
        quota: QuotaTracker,
        history: CallHistoryLog,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._cache = cache
        self._quota = quota
        self._history = history
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._inflight: dict[str, asyncio.Task[Any]] = {}

    @property
    def cache(self) -> CacheStore:
        return self._cache

    @property
    def quota(self) -> QuotaTracker:
        return self._quota

    @property
    def history(self) -> CallHistoryLog:
        return self._history

    def inflight_keys(self) -> tuple[str, ...]:
        return tuple(self._inflight)

    async def cached_request(
        self,
        request_fn: RequestFn,
        endpoint: str,
        params: Mapping[str, Any] | None = None,
        options: RequestOptions | None = None,
    ) -> CachedResponse:
        resolved_options = options if options is not None else RequestOptions()
        resolved_params = dict(params) if params else {}
        cache_key = generate_key(endpoint, resolved_params)

        if not resolved_options.force_network and self._quota.has_exceeded_limit(
            resolved_options.quota_limit
        ):
            daily_units = self._quota.daily_units
            LOGGER.warning(
                "quota exceeded; refusing network call endpoint=%s daily_units=%s limit=%s",
                endpoint,
                daily_units,
                resolved_options.quota_limit,
            )
            self._telemetry.emit(
                "ytcache.request.quota_exceeded",
                endpoint=endpoint,
                api_type=resolved_options.api_type,
                daily_units=daily_units,
                quota_limit=resolved_options.quota_limit,
            )
            raise QuotaExceededError(
                QUOTA_EXCEEDED_MESSAGE,
                daily_units=daily_units,
                quota_limit=resolved_options.quota_limit,
            )

        if not resolved_options.force_network and self._quota.is_approaching_limit(
            resolved_options.quota_limit
        ):
            # Freshness is not checked here: under quota pressure any cached value wins.
            cached = self._cache.get_including_expired(cache_key)
            if cached is not None:
                self._record_shortcut(
                    status="cache_hit_quota_limit",
                    endpoint=endpoint,
                    params=resolved_params,
                    cache_key=cache_key,
                    options=resolved_options,
                    from_cache=True,
                )
                LOGGER.info("quota pressure cache hit endpoint=%s key=%s", endpoint, cache_key)
                return CachedResponse(response=cached, from_cache=True)
            LOGGER.warning(
                "approaching quota limit with no cached value; using network "
                "endpoint=%s daily_units=%s limit=%s",
                endpoint,
                self._quota.daily_units,
                resolved_options.quota_limit,
            )

        if not resolved_options.bypass_cache:
            cached = self._cache.get(cache_key)
            if cached is not None:
                self._record_shortcut(
                    status="cache_hit",
                    endpoint=endpoint,
                    params=resolved_params,
                    cache_key=cache_key,
                    options=resolved_options,
                    from_cache=True,
                )
                LOGGER.info("cache hit endpoint=%s key=%s", endpoint, cache_key)
                return CachedResponse(response=cached, from_cache=True)

        existing = self._inflight.get(cache_key)
        if existing is not None:
            self._record_shortcut(
                status="in_flight_reuse",
                endpoint=endpoint,
                params=resolved_params,
                cache_key=cache_key,
                options=resolved_options,
                from_cache=False,
            )
            LOGGER.info("joining in-flight request endpoint=%s key=%s", endpoint, cache_key)
            response = await asyncio.shield(existing)
            return CachedResponse(response=response, from_cache=False, from_inflight=True)

        task = asyncio.ensure_future(
            self._execute(
                request_fn,
                endpoint=endpoint,
                params=resolved_params,
                cache_key=cache_key,
                options=resolved_options,
            )
        )
        self._inflight[cache_key] = task
        # A caller that stops waiting must not cancel the call other waiters share.
        response = await asyncio.shield(task)
        return CachedResponse(response=response, from_cache=False)

    async def _execute(
        self,
        request_fn: RequestFn,
        *,
        endpoint: str,
        params: dict[str, Any],
        cache_key: str,
        options: RequestOptions,
    ) -> Any:
        started_at = datetime.now(UTC)
        started = perf_counter()
        status: CallStatus = "success"
        response: Any = None
        failure: Exception | None = None

        try:
            LOGGER.info(
                "network request endpoint=%s quota_cost=%s api_type=%s",
                endpoint,
                options.quota_cost,
                options.api_type,
            )
            response = await request_fn()
            self._quota.update(options.quota_cost, options.api_type)
            self._cache.set(cache_key, response, options.ttl_seconds)
            return response
        except Exception as exc:
            status = "error"
            failure = exc
            LOGGER.warning(
                "network request failed endpoint=%s error_type=%s error=%s",
                endpoint,
                type(exc).__name__,
                exc,
            )
            raise
        finally:
            self._inflight.pop(cache_key, None)
            duration_ms = int((perf_counter() - started) * 1000)
            self._history.record(
                endpoint=endpoint,
                params=params,
                cache_key=cache_key,
                quota_cost=options.quota_cost,
                from_cache=False,
                status=status,
                api_type=options.api_type,
                timestamp=started_at,
                duration_ms=duration_ms,
                response_snapshot=truncate_snapshot(response) if failure is None else None,
                error_snapshot=error_snapshot(failure) if failure is not None else None,
            )
            self._telemetry.emit(
                "ytcache.request",
                status=status,
                endpoint=endpoint,
                api_type=options.api_type,
                quota_cost=options.quota_cost if failure is None else 0,
                duration_ms=duration_ms,
                error_type=type(failure).__name__ if failure is not None else None,
            )

    def _record_shortcut(
        self,
        *,
        status: CallStatus,
        endpoint: str,
        params: dict[str, Any],
        cache_key: str,
        options: RequestOptions,
        from_cache: bool,
    ) -> None:
        self._history.record(
            endpoint=endpoint,
            params=params,
            cache_key=cache_key,
            quota_cost=0,
            from_cache=from_cache,
            status=status,
            api_type=options.api_type,
        )
        self._telemetry.emit(
            "ytcache.request",
            status=status,
            endpoint=endpoint,
            api_type=options.api_type,
            quota_cost=0,
        )
