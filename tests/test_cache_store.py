from __future__ import annotations

import hashlib
import json
from pathlib import Path

from ytcache.repositories.cache_store import CacheStore, format_size, generate_key


class _Clock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def test_generate_key_sorts_params() -> None:
    first = generate_key("youtube/search", {"q": "soup", "maxResults": 5})
    second = generate_key("youtube/search", {"maxResults": 5, "q": "soup"})

    assert first == second
    assert first == 'youtube/search:{"maxResults":5,"q":"soup"}'
    assert generate_key("youtube/search", None) == "youtube/search:{}"


def test_entry_is_served_until_ttl_then_evicted(tmp_path: Path) -> None:
    clock = _Clock()
    store = CacheStore(tmp_path / "cache", clock=clock)

    store.set("k", {"data": 1}, ttl_seconds=0.1)
    assert store.get("k") == {"data": 1}

    clock.advance(0.15)
    assert store.get("k") is None

    stats = store.get_stats()
    assert stats.count == 0
    assert "k" not in stats.keys
    assert stats.hits == 1
    assert stats.misses == 1


def test_entry_without_ttl_never_expires(tmp_path: Path) -> None:
    clock = _Clock()
    store = CacheStore(tmp_path / "cache", clock=clock)

    store.set("forever", "value")
    clock.advance(10 * 365 * 24 * 60 * 60)

    assert store.get("forever") == "value"


def test_get_including_expired_keeps_stale_entry(tmp_path: Path) -> None:
    clock = _Clock()
    store = CacheStore(tmp_path / "cache", clock=clock)
    store.set("stale", [1, 2, 3], ttl_seconds=1)
    clock.advance(5)

    assert store.get_including_expired("stale") == [1, 2, 3]
    assert store.get_stats().count == 1
    assert store.get_including_expired("absent") is None


def test_persistence_round_trip_across_instances(tmp_path: Path) -> None:
    cache_dir = tmp_path / "cache"
    clock = _Clock()
    first = CacheStore(cache_dir, clock=clock)
    first.set("youtube/videos/info:{}", {"items": [{"id": "abc"}]}, ttl_seconds=60)

    path = cache_dir / f"{hashlib.md5(b'youtube/videos/info:{}').hexdigest()}.json"
    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload == {
        "originalKey": "youtube/videos/info:{}",
        "value": {"items": [{"id": "abc"}]},
        "createdAt": 1_700_000_000_000,
        "expiresAt": 1_700_000_060_000,
    }

    restarted = CacheStore(cache_dir, clock=clock)
    assert restarted.get_stats().keys == ("youtube/videos/info:{}",)
    assert restarted.get("youtube/videos/info:{}") == {"items": [{"id": "abc"}]}


def test_expired_entries_are_purged_on_restart(tmp_path: Path) -> None:
    cache_dir = tmp_path / "cache"
    clock = _Clock()
    first = CacheStore(cache_dir, clock=clock)
    first.set("short", "gone", ttl_seconds=1)
    first.set("long", "kept", ttl_seconds=3600)
    clock.advance(2)

    restarted = CacheStore(cache_dir, clock=clock)

    assert restarted.get("short") is None
    assert restarted.get("long") == "kept"
    assert len(list(cache_dir.glob("*.json"))) == 1


def test_unreadable_cache_file_is_discarded(tmp_path: Path) -> None:
    cache_dir = tmp_path / "cache"
    cache_dir.mkdir()
    broken = cache_dir / "deadbeef.json"
    broken.write_text("{not json", encoding="utf-8")

    store = CacheStore(cache_dir)

    assert store.get_stats().count == 0
    assert not broken.exists()


def test_delete_and_clear_remove_files(tmp_path: Path) -> None:
    cache_dir = tmp_path / "cache"
    store = CacheStore(cache_dir)
    store.set("a", 1)
    store.set("b", 2)

    assert store.delete("a") is True
    assert store.delete("a") is False
    assert store.get("a") is None
    assert len(list(cache_dir.glob("*.json"))) == 1

    store.clear()
    assert store.get_stats().count == 0
    assert list(cache_dir.glob("*.json")) == []


def test_persistence_disabled_writes_nothing(tmp_path: Path) -> None:
    cache_dir = tmp_path / "cache"
    store = CacheStore(cache_dir, persistence_enabled=False)
    store.set("a", 1)

    assert store.get("a") == 1
    assert store.persistence_enabled is False
    assert not cache_dir.exists()


def test_unserializable_value_stays_in_memory(tmp_path: Path) -> None:
    cache_dir = tmp_path / "cache"
    store = CacheStore(cache_dir)
    value = {"payload": object()}

    store.set("odd", value)

    assert store.get("odd") is value
    assert list(cache_dir.glob("*.json")) == []
    assert list(cache_dir.glob("*.tmp")) == []


def test_format_size() -> None:
    assert format_size(0) == "0 Bytes"
    assert format_size(512) == "512 Bytes"
    assert format_size(2048) == "2 KB"
    assert format_size(1536) == "1.5 KB"
