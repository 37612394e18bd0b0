from __future__ import annotations

import logging
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient

from ytcache.dependencies import reset_cached_dependencies
from ytcache.main import create_app
from ytcache.services import youtube_service

KNOWN_VIDEOS: dict[str, dict[str, Any]] = {
    "dQw4w9WgXcQ": {
        "id": "dQw4w9WgXcQ",
        "snippet": {
            "title": "Long Form Talk",
            "description": "A long talk.",
            "publishedAt": "2024-01-01T00:00:00Z",
            "channelId": "UC_test_channel",
            "channelTitle": "Test Channel",
            "thumbnails": {"default": {"url": "https://i.ytimg.com/vi/dQw4w9WgXcQ/default.jpg"}},
        },
        "contentDetails": {"duration": "PT12M30S"},
        "statistics": {"viewCount": "1200", "likeCount": "80", "commentCount": "7"},
    },
    "shortVid001": {
        "id": "shortVid001",
        "snippet": {"title": "A Short", "channelId": "UC_test_channel"},
        "contentDetails": {"duration": "PT45S"},
        "statistics": {"viewCount": "10"},
    },
    "mediumVid01": {
        "id": "mediumVid01",
        "snippet": {"title": "Medium Clip", "channelId": "UC_test_channel"},
        "contentDetails": {"duration": "PT4M"},
        "statistics": {"viewCount": "55"},
    },
}

KNOWN_CHANNELS: dict[str, dict[str, Any]] = {
    "UC_test_channel": {
        "id": "UC_test_channel",
        "snippet": {"title": "Test Channel", "customUrl": "@testchannel"},
        "statistics": {"subscriberCount": "1000", "videoCount": "3", "viewCount": "1265"},
    },
}


class FakeYouTubeApi:
    """Stands in for the HTTP layer; answers from the fixtures above and counts calls."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.fail_with: tuple[int, dict[str, Any]] | None = None

    def count(self, resource: str) -> int:
        return sum(1 for name, _ in self.calls if name == resource)

    def __call__(
        self,
        url: str,
        *,
        params: dict[str, Any],
        timeout_seconds: float,
    ) -> tuple[int, dict[str, Any], str]:
        _ = timeout_seconds
        resource = url.rsplit("/", 1)[-1]
        self.calls.append((resource, dict(params)))
        if self.fail_with is not None:
            status_code, payload = self.fail_with
            return status_code, payload, str(payload)

        if resource == "videos":
            ids = str(params["id"]).split(",")
            return 200, {"items": [KNOWN_VIDEOS[i] for i in ids if i in KNOWN_VIDEOS]}, ""
        if resource == "channels":
            ids = str(params["id"]).split(",")
            return 200, {"items": [KNOWN_CHANNELS[i] for i in ids if i in KNOWN_CHANNELS]}, ""
        if resource == "search" and params.get("type") == "channel":
            return 200, {
                "items": [
                    {
                        "id": {"channelId": "UC_test_channel"},
                        "snippet": {"title": "Test Channel", "channelId": "UC_test_channel"},
                    }
                ],
                "pageInfo": {"totalResults": 1},
            }, ""
        if resource == "search":
            return 200, {
                "items": [
                    {"id": {"videoId": video_id}, "snippet": {"title": video["snippet"]["title"]}}
                    for video_id, video in KNOWN_VIDEOS.items()
                ],
                "nextPageToken": "NEXT",
                "pageInfo": {"totalResults": 42},
            }, ""
        return 404, {}, ""


@pytest.fixture(autouse=True)
def _restore_ytcache_logger() -> Iterator[None]:  # pyright: ignore[reportUnusedFunction]
    yield
    logger = logging.getLogger("ytcache")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    telemetry_logger = logging.getLogger("ytcache.telemetry")
    for handler in list(telemetry_logger.handlers):
        telemetry_logger.removeHandler(handler)
        handler.close()
    telemetry_logger.propagate = True


@pytest.fixture
def ytcache_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    data_dir = tmp_path / "runtime-data"
    data_dir.mkdir(parents=True, exist_ok=True)
    monkeypatch.setenv("YTCACHE_DATA_DIR", str(data_dir))
    monkeypatch.setenv("YTCACHE_YOUTUBE_API_KEY", "test-api-key")
    monkeypatch.setenv("YTCACHE_BATCH_DELAY_MS", "5")
    monkeypatch.setenv("YTCACHE_TELEMETRY_SINK", "none")
    reset_cached_dependencies()
    yield data_dir
    reset_cached_dependencies()


@pytest.fixture
def fake_youtube(monkeypatch: pytest.MonkeyPatch) -> FakeYouTubeApi:
    fake = FakeYouTubeApi()
    monkeypatch.setattr(youtube_service, "_fetch_youtube_json", fake)
    return fake


@pytest.fixture
def client(ytcache_env: Path, fake_youtube: FakeYouTubeApi) -> Iterator[TestClient]:
    _ = (ytcache_env, fake_youtube)
    app = create_app()
    with TestClient(app) as test_client:
        yield test_client
