from __future__ import annotations

from pathlib import Path
from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DATA_DIR = ".ytcache"
_DATA_DIR_RELATIVE_DEFAULTS: tuple[tuple[str, Path], ...] = (
    ("cache_dir", Path("cache")),
    ("db_path", Path("state.db")),
    ("log_dir", Path("logs")),
)
_PATH_FIELDS: tuple[str, ...] = (
    "data_dir",
    *(field_name for field_name, _ in _DATA_DIR_RELATIVE_DEFAULTS),
)
_BOOLEAN_COERCION_FIELDS: tuple[str, ...] = (
    "cache_persistence_enabled",
    "quota_persistence_enabled",
    "batch_requests_enabled",
    "telemetry_enabled",
)


def _default_in_data_dir(relative_path: Path) -> Path:
    return Path(DEFAULT_DATA_DIR) / relative_path


def _data_dir_default_note(relative_path: Path) -> str:
    return f"Defaults to `${{YTCACHE_DATA_DIR}}/{relative_path}` when not explicitly set."


def _resolve_path(value: str | Path) -> Path:
    return Path(value).expanduser().resolve()


def _parse_bool_with_default(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value == 1:
            return True
        if value == 0:
            return False
        return default
    if not isinstance(value, str):
        return default

    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _normalize_optional_text(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    if normalized:
        return normalized
    return None


class AppSettings(BaseSettings):
    """
    Canonical runtime configuration.

    Every knob of the cache and quota layer lives here:
    - what each option controls,
    - where it comes from (`YTCACHE_*`),
    - and what its default is.
    """

    model_config = SettingsConfigDict(
        env_prefix="YTCACHE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Core paths.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory for the disk cache, quota state and logs.",
    )
    cache_dir: Path = Field(
        default=_default_in_data_dir(Path("cache")),
        description=f"Directory holding one JSON file per cache entry. {_data_dir_default_note(Path('cache'))}",
    )
    db_path: Path = Field(
        default=_default_in_data_dir(Path("state.db")),
        description=f"SQLite database used for quota persistence. {_data_dir_default_note(Path('state.db'))}",
    )
    cache_persistence_enabled: bool = Field(
        default=True,
        description="Mirror cache entries to disk so they survive a restart.",
    )

    # YouTube Data API access.
    youtube_api_key: str | None = Field(
        default=None,
        description="API key sent with every YouTube Data API request.",
    )
    youtube_api_base_url: str = Field(
        default="https://www.googleapis.com/youtube/v3",
        description="YouTube Data API base URL.",
    )
    youtube_http_timeout_seconds: float = Field(
        default=15.0,
        description="HTTP timeout applied by the YouTube request functions.",
    )

    # Quota guardrails.
    youtube_daily_quota_limit: int = Field(
        default=10_000,
        description="Daily YouTube Data API quota budget. Calls are refused once it is used up.",
    )
    youtube_quota_warning_percent: float = Field(
        default=0.8,
        gt=0,
        le=1,
        description="Prefer cached data once daily usage exceeds this fraction of the limit.",
    )
    quota_timezone: str = Field(
        default="UTC",
        description="Timezone whose calendar day defines the quota reset boundary.",
    )
    quota_persistence_enabled: bool = Field(
        default=True,
        description="Persist today's quota usage to SQLite so restarts keep counting.",
    )

    # Cache TTLs per endpoint family.
    cache_ttl_search_seconds: int = Field(
        default=24 * 60 * 60,
        description="TTL for search results (videos and channels).",
    )
    cache_ttl_channel_info_seconds: int = Field(
        default=24 * 60 * 60,
        description="TTL for channel info lookups.",
    )
    cache_ttl_videos_seconds: int = Field(
        default=6 * 60 * 60,
        description="TTL for channel video listings.",
    )
    cache_ttl_video_details_seconds: int = Field(
        default=24 * 60 * 60,
        description="TTL for video detail lookups.",
    )

    # Quota cost per request family.
    cost_search: int = Field(default=100, ge=0, description="Quota units for a channel search.")
    cost_channel_info: int = Field(default=1, ge=0, description="Quota units for channel info.")
    cost_video_info: int = Field(default=1, ge=0, description="Quota units for video details.")
    cost_video_search: int = Field(default=100, ge=0, description="Quota units for a video search.")

    # Batch coalescing.
    batch_requests_enabled: bool = Field(
        default=True,
        description="Coalesce per-item video/channel lookups into multi-id requests.",
    )
    batch_max_size: int = Field(
        default=50,
        ge=1,
        le=50,
        description="Flush a batch immediately once this many ids are queued (API max is 50).",
    )
    batch_delay_ms: int = Field(
        default=50,
        ge=0,
        description="How long a batch window stays open before flushing.",
    )

    # Call history.
    history_max_entries: int = Field(
        default=100,
        ge=1,
        description="Number of most recent calls kept in the call history log.",
    )

    # Logging.
    log_dir: Path = Field(
        default=_default_in_data_dir(Path("logs")),
        description=f"Directory for log files. {_data_dir_default_note(Path('logs'))}",
    )
    log_level: str = Field(
        default="INFO",
        description="Console log level (stdout).",
    )

    # Telemetry.
    telemetry_enabled: bool = Field(
        default=True,
        description="Enable lightweight internal telemetry events.",
    )
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description=(
            "Telemetry sink backend. `log` emits structured telemetry locally; "
            "`none` disables sink output."
        ),
    )

    @field_validator("telemetry_sink", mode="before")
    @classmethod
    def _normalize_telemetry_sink(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("YTCACHE_TELEMETRY_SINK must be a string.")
        normalized = value.strip().lower()
        if normalized in {"none", "log"}:
            return normalized
        raise ValueError("YTCACHE_TELEMETRY_SINK must be set to: none, log.")

    @field_validator("youtube_api_base_url", mode="before")
    @classmethod
    def _normalize_api_base_url(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("YTCACHE_YOUTUBE_API_BASE_URL must be a string.")
        normalized = value.strip().rstrip("/")
        if not normalized:
            raise ValueError("YTCACHE_YOUTUBE_API_BASE_URL must not be empty.")
        return normalized

    @field_validator("quota_timezone", mode="before")
    @classmethod
    def _validate_quota_timezone(cls, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("YTCACHE_QUOTA_TIMEZONE must be a non-empty string.")
        normalized = value.strip()
        try:
            ZoneInfo(normalized)
        except ZoneInfoNotFoundError as exc:
            raise ValueError(f"Unknown timezone for YTCACHE_QUOTA_TIMEZONE: {normalized}") from exc
        return normalized

    @field_validator(*_PATH_FIELDS, mode="before")
    @classmethod
    def _normalize_paths(cls, value: Any) -> Any:
        if value is None:
            return None
        return _resolve_path(value)

    @field_validator(*_BOOLEAN_COERCION_FIELDS, mode="before")
    @classmethod
    def _normalize_booleans(cls, value: Any, info: ValidationInfo) -> bool:
        field_name = info.field_name
        assert field_name is not None
        default_value = cls.model_fields[field_name].default
        assert isinstance(default_value, bool)
        return _parse_bool_with_default(value, default=default_value)

    @field_validator("youtube_api_key", mode="before")
    @classmethod
    def _normalize_optional_strings(cls, value: Any) -> str | None:
        return _normalize_optional_text(value)


def _apply_path_defaults(settings: AppSettings) -> AppSettings:
    updates: dict[str, Path] = {}
    for field_name, relative_default in _DATA_DIR_RELATIVE_DEFAULTS:
        if field_name in settings.model_fields_set:
            continue
        updates[field_name] = settings.data_dir / relative_default
    if not updates:
        return settings
    return settings.model_copy(update=updates)


def _resolve_path_fields(settings: AppSettings) -> AppSettings:
    resolved_updates = {
        field_name: _resolve_path(getattr(settings, field_name))
        for field_name in _PATH_FIELDS
    }
    return settings.model_copy(update=resolved_updates)


def load_settings() -> AppSettings:
    settings = AppSettings()
    settings = _apply_path_defaults(settings)
    return _resolve_path_fields(settings)
