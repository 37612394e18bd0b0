from __future__ import annotations

import hashlib
import json
import logging
import math
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, cast

LOGGER = logging.getLogger("ytcache.cache")

CACHE_FILE_SUFFIX = ".json"
_SIZE_UNITS: tuple[str, ...] = ("Bytes", "KB", "MB", "GB", "TB")


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    created_at: float
    expires_at: float | None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at <= now


@dataclass(frozen=True)
class CacheStats:
    hits: int
    misses: int
    sets: int
    deletes: int
    count: int
    total_size: int
    size_formatted: str
    keys: tuple[str, ...]
    persistence_enabled: bool


def generate_key(endpoint: str, params: Mapping[str, Any] | None) -> str:
    sorted_params = {name: params[name] for name in sorted(params)} if params else {}
    return f"{endpoint}:{json.dumps(sorted_params, separators=(',', ':'), default=str)}"


class CacheStore:
    """
    Two-tier key/value cache with per-entry expiry.

    The in-memory map is authoritative for the running process. When persistence
    is enabled every entry is mirrored to `<cache_dir>/<md5(key)>.json`, holding the
    original key next to the value so the map can be rebuilt on startup.
    Disk failures are logged and never reach callers.
    """

    def __init__(
        self,
        cache_dir: Path | None,
        *,
        persistence_enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._cache_dir = cache_dir
        self._clock = clock
        self._memory: dict[str, CacheEntry] = {}
        self._hits = 0
        self._misses = 0
        self._sets = 0
        self._deletes = 0
        self._persistence_enabled = persistence_enabled and cache_dir is not None

        if self._persistence_enabled:
            assert self._cache_dir is not None
            try:
                self._cache_dir.mkdir(parents=True, exist_ok=True)
            except OSError:
                LOGGER.exception(
                    "cache dir unavailable; disabling persistence path=%s", self._cache_dir
                )
                self._persistence_enabled = False

        self._load_from_disk()

    @property
    def persistence_enabled(self) -> bool:
        return self._persistence_enabled

    def get(self, key: str) -> Any | None:
        now = self._clock()
        entry = self._memory.get(key)
        if entry is None and self._persistence_enabled:
            entry = self._read_entry_file(self._path_for(key))
            if entry is not None:
                self._memory[key] = entry

        if entry is None:
            self._misses += 1
            LOGGER.debug("cache miss key=%s", key)
            return None

        if entry.is_expired(now):
            LOGGER.debug("cache expired key=%s", key)
            self.delete(key)
            self._misses += 1
            return None

        self._hits += 1
        LOGGER.debug("cache hit key=%s", key)
        return entry.value

    def get_including_expired(self, key: str) -> Any | None:
        entry = self._memory.get(key)
        if entry is None and self._persistence_enabled:
            entry = self._read_entry_file(self._path_for(key))
        if entry is None:
            return None
        return entry.value

    def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        now = self._clock()
        entry = CacheEntry(
            value=value,
            created_at=now,
            expires_at=now + ttl_seconds if ttl_seconds is not None else None,
        )
        self._memory[key] = entry
        self._sets += 1
        LOGGER.debug("cache store key=%s ttl_seconds=%s", key, ttl_seconds)

        if self._persistence_enabled:
            self._write_entry_file(key, entry)

    def delete(self, key: str) -> bool:
        removed = self._memory.pop(key, None) is not None
        if self._persistence_enabled:
            removed = self._delete_entry_file(self._path_for(key)) or removed
        if removed:
            self._deletes += 1
        return removed

    def clear(self) -> None:
        self._memory.clear()
        if not self._persistence_enabled:
            return
        assert self._cache_dir is not None
        try:
            for path in self._cache_dir.glob(f"*{CACHE_FILE_SUFFIX}"):
                path.unlink(missing_ok=True)
        except OSError:
            LOGGER.exception("failed to clear disk cache path=%s", self._cache_dir)

    def get_stats(self) -> CacheStats:
        total_size = 0
        for entry in self._memory.values():
            total_size += len(json.dumps(_entry_payload(None, entry), default=str))
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            sets=self._sets,
            deletes=self._deletes,
            count=len(self._memory),
            total_size=total_size,
            size_formatted=format_size(total_size),
            keys=tuple(self._memory.keys()),
            persistence_enabled=self._persistence_enabled,
        )

    def _path_for(self, key: str) -> Path:
        assert self._cache_dir is not None
        digest = hashlib.md5(key.encode("utf-8")).hexdigest()
        return self._cache_dir / f"{digest}{CACHE_FILE_SUFFIX}"

    def _write_entry_file(self, key: str, entry: CacheEntry) -> None:
        path = self._path_for(key)
        temp_path = path.with_suffix(".tmp")
        try:
            temp_path.write_text(
                json.dumps(_entry_payload(key, entry)),
                encoding="utf-8",
            )
            temp_path.replace(path)
        except (OSError, TypeError, ValueError):
            LOGGER.exception("failed to save cache entry to disk key=%s", key)
            temp_path.unlink(missing_ok=True)

    def _read_entry_file(self, path: Path) -> CacheEntry | None:
        payload = self._read_payload(path)
        if payload is None:
            return None
        return _entry_from_payload(payload)

    def _read_payload(self, path: Path) -> dict[str, Any] | None:
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError:
            LOGGER.exception("failed to read cache file path=%s", path)
            return None

        try:
            parsed = cast(object, json.loads(raw))
        except json.JSONDecodeError:
            LOGGER.warning("discarding unreadable cache file path=%s", path)
            self._delete_entry_file(path)
            return None
        if not isinstance(parsed, dict):
            LOGGER.warning("discarding malformed cache file path=%s", path)
            self._delete_entry_file(path)
            return None
        return cast(dict[str, Any], parsed)

    def _delete_entry_file(self, path: Path) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError:
            LOGGER.exception("failed to delete cache file path=%s", path)
            return False
        return True

    def _load_from_disk(self) -> None:
        if not self._persistence_enabled:
            return
        assert self._cache_dir is not None

        now = self._clock()
        loaded = 0
        purged = 0
        try:
            paths = sorted(self._cache_dir.glob(f"*{CACHE_FILE_SUFFIX}"))
        except OSError:
            LOGGER.exception("failed to scan disk cache path=%s", self._cache_dir)
            return

        for path in paths:
            payload = self._read_payload(path)
            if payload is None:
                continue
            entry = _entry_from_payload(payload)
            if entry.is_expired(now):
                self._delete_entry_file(path)
                purged += 1
                continue

            original_key = payload.get("originalKey")
            key = original_key if isinstance(original_key, str) else path.stem
            self._memory[key] = entry
            loaded += 1

        LOGGER.info(
            "disk cache loaded path=%s entries=%s purged_expired=%s",
            self._cache_dir,
            loaded,
            purged,
        )


def format_size(size_bytes: int) -> str:
    if size_bytes <= 0:
        return "0 Bytes"
    exponent = min(int(math.log(size_bytes, 1024)), len(_SIZE_UNITS) - 1)
    scaled = round(size_bytes / (1024**exponent), 2)
    return f"{scaled:g} {_SIZE_UNITS[exponent]}"


def _entry_payload(key: str | None, entry: CacheEntry) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    if key is not None:
        payload["originalKey"] = key
    payload["value"] = entry.value
    payload["createdAt"] = _to_epoch_ms(entry.created_at)
    payload["expiresAt"] = _to_epoch_ms(entry.expires_at) if entry.expires_at is not None else None
    return payload


def _entry_from_payload(payload: Mapping[str, Any]) -> CacheEntry:
    created_at = _from_epoch_ms(payload.get("createdAt"))
    return CacheEntry(
        value=payload.get("value"),
        created_at=created_at if created_at is not None else 0.0,
        expires_at=_from_epoch_ms(payload.get("expiresAt")),
    )


def _to_epoch_ms(seconds: float) -> int:
    return int(round(seconds * 1000))


def _from_epoch_ms(raw_value: object) -> float | None:
    if isinstance(raw_value, bool) or not isinstance(raw_value, int | float):
        return None
    return float(raw_value) / 1000
