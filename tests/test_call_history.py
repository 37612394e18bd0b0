from __future__ import annotations

from ytcache.services.call_history import CallHistoryLog, error_snapshot, truncate_snapshot
from ytcache.services.errors import UpstreamRequestError


def _record(log: CallHistoryLog, index: int) -> None:
    log.record(
        endpoint="youtube/videos/info",
        params={"videoId": f"vid{index}"},
        cache_key=f"youtube/videos/info:{index}",
        quota_cost=1,
        from_cache=False,
        status="success",
        api_type="videos",
    )


def test_history_keeps_newest_entries_first_and_caps_size() -> None:
    log = CallHistoryLog(max_entries=3)
    for index in range(5):
        _record(log, index)

    entries = log.entries()
    assert len(log) == 3
    assert [entry.params["videoId"] for entry in entries] == ["vid4", "vid3", "vid2"]
    assert [entry.params["videoId"] for entry in log.entries(limit=1)] == ["vid4"]


def test_history_clear() -> None:
    log = CallHistoryLog()
    _record(log, 1)
    log.clear()

    assert log.entries() == []


def test_truncate_snapshot_limits_length() -> None:
    text = truncate_snapshot({"items": ["x" * 1000]})

    assert text is not None
    assert len(text) == 503
    assert text.endswith("...")
    assert truncate_snapshot(None) is None
    assert truncate_snapshot("short") == "short"


def test_error_snapshot_captures_upstream_details() -> None:
    exc = UpstreamRequestError(
        "YouTube search request failed: quota",
        status_code=403,
        reason="quotaExceeded",
        body="{}",
    )

    snapshot = error_snapshot(exc)

    assert snapshot == {
        "type": "UpstreamRequestError",
        "message": "YouTube search request failed: quota",
        "status_code": 403,
        "reason": "quotaExceeded",
        "body": "{}",
    }
    assert error_snapshot(ValueError("bad")) == {"type": "ValueError", "message": "bad"}
