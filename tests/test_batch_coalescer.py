from __future__ import annotations

import asyncio
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import pytest

from ytcache.repositories.cache_store import CacheStore, generate_key
from ytcache.services.batch_coalescer import BatchCoalescer, BatchFamily
from ytcache.services.call_history import CallHistoryLog
from ytcache.services.errors import BatchItemMissingError, UpstreamRequestError
from ytcache.services.quota_tracker import QuotaTracker
from ytcache.services.request_coordinator import RequestCoordinator

VIDEO_FAMILY = BatchFamily(
    name="video_details",
    endpoint="youtube/videos/batch",
    id_param="videoIds",
    api_type="videos",
    ttl_seconds=3600,
    quota_cost=1,
)


class _FetchMany:
    def __init__(self, *, omit: Sequence[str] = (), error: Exception | None = None) -> None:
        self.calls: list[tuple[str, ...]] = []
        self.omit = set(omit)
        self.error = error

    async def __call__(self, ids: tuple[str, ...]) -> dict[str, Any]:
        self.calls.append(tuple(ids))
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return {
            "items": [
                {"id": item_id, "snippet": {"title": f"title {item_id}"}}
                for item_id in ids
                if item_id not in self.omit
            ]
        }


def _coordinator(tmp_path: Path) -> RequestCoordinator:
    return RequestCoordinator(
        cache=CacheStore(tmp_path / "cache"),
        quota=QuotaTracker(),
        history=CallHistoryLog(),
    )


def _coalescer(
    coordinator: RequestCoordinator,
    fetch_many: _FetchMany,
    *,
    max_batch_size: int = 50,
    delay_seconds: float = 0.02,
) -> BatchCoalescer:
    return BatchCoalescer(
        family=VIDEO_FAMILY,
        fetch_many=fetch_many,
        coordinator=coordinator,
        quota_limit=10_000,
        max_batch_size=max_batch_size,
        delay_seconds=delay_seconds,
    )


def test_ids_within_delay_share_one_call(tmp_path: Path) -> None:
    coordinator = _coordinator(tmp_path)
    fetch_many = _FetchMany()
    coalescer = _coalescer(coordinator, fetch_many)

    async def _run() -> list[dict[str, Any]]:
        return await asyncio.gather(*(coalescer.enqueue(i) for i in ("a", "b", "c")))

    records = asyncio.run(_run())

    assert fetch_many.calls == [("a", "b", "c")]
    assert [record["id"] for record in records] == ["a", "b", "c"]
    assert coordinator.quota.snapshot().breakdown["videos"] == 1
    assert coalescer.pending_count == 0


def test_full_batch_flushes_without_waiting_for_timer(tmp_path: Path) -> None:
    coordinator = _coordinator(tmp_path)
    fetch_many = _FetchMany()
    coalescer = _coalescer(coordinator, fetch_many, max_batch_size=3, delay_seconds=30)

    async def _run() -> list[dict[str, Any]]:
        return await asyncio.wait_for(
            asyncio.gather(*(coalescer.enqueue(i) for i in ("a", "b", "c"))),
            timeout=1,
        )

    records = asyncio.run(_run())

    assert len(records) == 3
    assert fetch_many.calls == [("a", "b", "c")]


def test_overflow_starts_a_new_batch(tmp_path: Path) -> None:
    coordinator = _coordinator(tmp_path)
    fetch_many = _FetchMany()
    coalescer = _coalescer(coordinator, fetch_many, max_batch_size=2)

    async def _run() -> list[dict[str, Any]]:
        return await asyncio.gather(*(coalescer.enqueue(i) for i in ("a", "b", "c")))

    asyncio.run(_run())

    assert fetch_many.calls == [("a", "b"), ("c",)]
    assert coordinator.quota.daily_units == 2


def test_missing_id_fails_only_its_own_caller(tmp_path: Path) -> None:
    coordinator = _coordinator(tmp_path)
    fetch_many = _FetchMany(omit=("b",))
    coalescer = _coalescer(coordinator, fetch_many)

    async def _run() -> list[Any]:
        return await asyncio.gather(
            *(coalescer.enqueue(i) for i in ("a", "b", "c")),
            return_exceptions=True,
        )

    first, missing, third = asyncio.run(_run())

    assert first["id"] == "a"
    assert third["id"] == "c"
    assert isinstance(missing, BatchItemMissingError)
    assert missing.item_id == "b"
    assert missing.family == "video_details"


def test_duplicate_ids_resolve_every_waiter(tmp_path: Path) -> None:
    coordinator = _coordinator(tmp_path)
    fetch_many = _FetchMany()
    coalescer = _coalescer(coordinator, fetch_many)

    async def _run() -> list[dict[str, Any]]:
        return await asyncio.gather(*(coalescer.enqueue(i) for i in ("a", "a", "b")))

    records = asyncio.run(_run())

    assert fetch_many.calls == [("a", "b")]
    assert [record["id"] for record in records] == ["a", "a", "b"]


def test_cached_combined_response_skips_network(tmp_path: Path) -> None:
    coordinator = _coordinator(tmp_path)
    coordinator.cache.set(
        generate_key("youtube/videos/batch", {"videoIds": "a,b"}),
        {"items": [{"id": "a"}, {"id": "b"}]},
    )
    fetch_many = _FetchMany()
    coalescer = _coalescer(coordinator, fetch_many)

    async def _run() -> list[Any]:
        return await asyncio.gather(
            coalescer.enqueue_with_source("a"),
            coalescer.enqueue_with_source("b"),
        )

    results = asyncio.run(_run())

    assert fetch_many.calls == []
    assert all(result.from_cache for result in results)
    assert all(result.api_cost == 0 for result in results)
    assert coordinator.quota.daily_units == 0


def test_network_batch_reports_cost(tmp_path: Path) -> None:
    coordinator = _coordinator(tmp_path)
    coalescer = _coalescer(coordinator, _FetchMany())

    result = asyncio.run(coalescer.enqueue_with_source("a"))

    assert result.record["id"] == "a"
    assert result.from_cache is False
    assert result.api_cost == 1


def test_upstream_failure_rejects_whole_batch(tmp_path: Path) -> None:
    coordinator = _coordinator(tmp_path)
    fetch_many = _FetchMany(error=UpstreamRequestError("boom", status_code=500))
    coalescer = _coalescer(coordinator, fetch_many)

    async def _run() -> list[Any]:
        return await asyncio.gather(
            *(coalescer.enqueue(i) for i in ("a", "b")),
            return_exceptions=True,
        )

    results = asyncio.run(_run())

    assert all(isinstance(result, UpstreamRequestError) for result in results)
    assert coordinator.quota.daily_units == 0


def test_flush_now_settles_pending_ids(tmp_path: Path) -> None:
    coordinator = _coordinator(tmp_path)
    fetch_many = _FetchMany()
    coalescer = _coalescer(coordinator, fetch_many, delay_seconds=30)

    async def _run() -> dict[str, Any]:
        waiter = asyncio.ensure_future(coalescer.enqueue("a"))
        await asyncio.sleep(0)
        assert coalescer.pending_count == 1
        await coalescer.flush_now()
        return await waiter

    record = asyncio.run(_run())

    assert record["id"] == "a"
    assert fetch_many.calls == [("a",)]


@pytest.mark.parametrize("max_batch_size", [0, -3])
def test_batch_size_is_at_least_one(tmp_path: Path, max_batch_size: int) -> None:
    coordinator = _coordinator(tmp_path)
    fetch_many = _FetchMany()
    coalescer = _coalescer(coordinator, fetch_many, max_batch_size=max_batch_size)

    async def _run() -> list[dict[str, Any]]:
        return await asyncio.gather(*(coalescer.enqueue(i) for i in ("a", "b")))

    asyncio.run(_run())

    assert fetch_many.calls == [("a",), ("b",)]
