from __future__ import annotations

import json
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Literal
from uuid import uuid4

CallStatus = Literal[
    "success",
    "error",
    "cache_hit",
    "cache_hit_quota_limit",
    "in_flight_reuse",
]

DEFAULT_MAX_ENTRIES = 100
SNAPSHOT_MAX_CHARS = 500


@dataclass(frozen=True)
class HistoryEntry:
    id: str
    timestamp: datetime
    endpoint: str
    params: dict[str, Any]
    cache_key: str
    quota_cost: int
    from_cache: bool
    status: CallStatus
    api_type: str
    duration_ms: int | None = None
    response_snapshot: str | None = None
    error_snapshot: dict[str, Any] | None = None


class CallHistoryLog:
    """Bounded, most-recent-first ledger of every attempted call."""

    def __init__(self, *, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        self._entries: deque[HistoryEntry] = deque(maxlen=max(1, max_entries))

    def record(
        self,
        *,
        endpoint: str,
        params: Mapping[str, Any],
        cache_key: str,
        quota_cost: int,
        from_cache: bool,
        status: CallStatus,
        api_type: str,
        timestamp: datetime | None = None,
        duration_ms: int | None = None,
        response_snapshot: str | None = None,
        error_snapshot: dict[str, Any] | None = None,
    ) -> HistoryEntry:
        entry = HistoryEntry(
            id=uuid4().hex,
            timestamp=timestamp if timestamp is not None else datetime.now(UTC),
            endpoint=endpoint,
            params=dict(params),
            cache_key=cache_key,
            quota_cost=quota_cost,
            from_cache=from_cache,
            status=status,
            api_type=api_type,
            duration_ms=duration_ms,
            response_snapshot=response_snapshot,
            error_snapshot=error_snapshot,
        )
        # Newest first; deque(maxlen) drops from the right.
        self._entries.appendleft(entry)
        return entry

    def entries(self, *, limit: int | None = None) -> list[HistoryEntry]:
        items = list(self._entries)
        if limit is not None:
            return items[: max(0, limit)]
        return items

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def truncate_snapshot(value: Any, *, max_chars: int = SNAPSHOT_MAX_CHARS) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        text = value
    else:
        try:
            text = json.dumps(value, default=str)
        except (TypeError, ValueError):
            text = repr(value)
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}..."


def error_snapshot(exc: BaseException) -> dict[str, Any]:
    snapshot: dict[str, Any] = {
        "type": type(exc).__name__,
        "message": truncate_snapshot(str(exc)),
    }
    status_code = getattr(exc, "status_code", None)
    if isinstance(status_code, int):
        snapshot["status_code"] = status_code
    reason = getattr(exc, "reason", None)
    if isinstance(reason, str):
        snapshot["reason"] = reason
    body = getattr(exc, "body", None)
    if body is not None:
        snapshot["body"] = truncate_snapshot(body)
    return snapshot
