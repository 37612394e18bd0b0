from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, cast

from ytcache.repositories.cache_store import generate_key
from ytcache.services.errors import BatchItemMissingError
from ytcache.services.request_coordinator import RequestCoordinator, RequestOptions

LOGGER = logging.getLogger("ytcache.batch")

DEFAULT_MAX_BATCH_SIZE = 50
DEFAULT_BATCH_DELAY_SECONDS = 0.05

BatchFetchFn = Callable[[tuple[str, ...]], Awaitable[Any]]
ItemsExtractor = Callable[[Any], Iterable[Mapping[str, Any]]]


@dataclass(frozen=True)
class BatchFamily:
    name: str
    endpoint: str
    id_param: str
    api_type: str
    ttl_seconds: float | None
    quota_cost: int = 1


@dataclass(frozen=True)
class BatchItemResult:
    record: dict[str, Any]
    from_cache: bool
    api_cost: int


@dataclass
class _BatchQueue:
    pending: dict[str, list[asyncio.Future[BatchItemResult]]] = field(default_factory=dict)
    timer: asyncio.TimerHandle | None = None


def extract_items(response: Any) -> list[Mapping[str, Any]]:
    if not isinstance(response, Mapping):
        return []
    raw_items = cast(Mapping[str, Any], response).get("items")
    if not isinstance(raw_items, list):
        return []
    return [cast(Mapping[str, Any], item) for item in raw_items if isinstance(item, Mapping)]


class BatchCoalescer:
    """
    Merges single-item lookups that arrive within one window into a multi-id call.

    A window closes when `max_batch_size` distinct ids are queued or when the
    single-shot timer fires, whichever comes first. The combined response is split
    back out by record `id`; an id missing from it only fails its own callers.
    """

    def __init__(
        self,
        *,
        family: BatchFamily,
        fetch_many: BatchFetchFn,
        coordinator: RequestCoordinator,
        quota_limit: int,
        max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
        delay_seconds: float = DEFAULT_BATCH_DELAY_SECONDS,
        items_extractor: ItemsExtractor = extract_items,
    ) -> None:
        self._family = family
        self._fetch_many = fetch_many
        self._coordinator = coordinator
        self._quota_limit = quota_limit
        self._max_batch_size = max(1, max_batch_size)
        self._delay_seconds = max(0.0, delay_seconds)
        self._items_extractor = items_extractor
        self._queue = _BatchQueue()
        self._flush_tasks: set[asyncio.Task[None]] = set()

    @property
    def family(self) -> BatchFamily:
        return self._family

    @property
    def pending_count(self) -> int:
        return len(self._queue.pending)

    async def enqueue(self, item_id: str) -> dict[str, Any]:
        result = await self.enqueue_with_source(item_id)
        return result.record

    async def enqueue_with_source(self, item_id: str) -> BatchItemResult:
        """Like `enqueue`, but also reports whether the batch was served from cache."""
        loop = asyncio.get_running_loop()
        waiter: asyncio.Future[BatchItemResult] = loop.create_future()
        queue = self._queue
        queue.pending.setdefault(item_id, []).append(waiter)

        if len(queue.pending) >= self._max_batch_size:
            LOGGER.debug(
                "batch full; flushing now family=%s size=%s",
                self._family.name,
                len(queue.pending),
            )
            self._start_flush()
        elif queue.timer is None:
            queue.timer = loop.call_later(self._delay_seconds, self._start_flush)

        return await waiter

    async def flush_now(self) -> None:
        self._start_flush()
        if self._flush_tasks:
            await asyncio.gather(*self._flush_tasks, return_exceptions=True)

    def _start_flush(self) -> None:
        queue = self._queue
        self._queue = _BatchQueue()
        if queue.timer is not None:
            queue.timer.cancel()
        if not queue.pending:
            return

        task = asyncio.get_running_loop().create_task(self._flush(queue.pending))
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_tasks.discard)

    async def _flush(self, pending: dict[str, list[asyncio.Future[BatchItemResult]]]) -> None:
        item_ids = tuple(pending)
        params = {self._family.id_param: ",".join(item_ids)}
        from_cache = True
        api_cost = 0

        try:
            response = self._coordinator.cache.get(generate_key(self._family.endpoint, params))
            if response is not None:
                LOGGER.info(
                    "batch served from cache family=%s size=%s",
                    self._family.name,
                    len(item_ids),
                )
            else:
                LOGGER.info(
                    "batch request family=%s size=%s quota_cost=%s",
                    self._family.name,
                    len(item_ids),
                    self._family.quota_cost,
                )
                result = await self._coordinator.cached_request(
                    lambda: self._fetch_many(item_ids),
                    self._family.endpoint,
                    params,
                    RequestOptions(
                        ttl_seconds=self._family.ttl_seconds,
                        quota_limit=self._quota_limit,
                        quota_cost=self._family.quota_cost,
                        api_type=self._family.api_type,
                    ),
                )
                response = result.response
                from_cache = result.from_cache
                if not result.from_cache and not result.from_inflight:
                    api_cost = self._family.quota_cost
        except Exception as exc:
            LOGGER.warning(
                "batch request failed family=%s size=%s error_type=%s",
                self._family.name,
                len(item_ids),
                type(exc).__name__,
            )
            for waiters in pending.values():
                for waiter in waiters:
                    if not waiter.done():
                        waiter.set_exception(exc)
            return

        records: dict[str, dict[str, Any]] = {}
        for item in self._items_extractor(response):
            record_id = item.get("id")
            if isinstance(record_id, str):
                records[record_id] = dict(item)

        for item_id, waiters in pending.items():
            record = records.get(item_id)
            if record is None:
                LOGGER.info(
                    "batch item missing family=%s item_id=%s", self._family.name, item_id
                )
            for waiter in waiters:
                if waiter.done():
                    continue
                if record is None:
                    waiter.set_exception(
                        BatchItemMissingError(
                            f"{self._family.name} item {item_id} not found in batch response",
                            item_id=item_id,
                            family=self._family.name,
                        )
                    )
                else:
                    waiter.set_result(
                        BatchItemResult(record=record, from_cache=from_cache, api_cost=api_cost)
                    )
