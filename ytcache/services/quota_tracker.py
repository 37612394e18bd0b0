from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, tzinfo

from ytcache.repositories.quota_repository import QuotaRepository

LOGGER = logging.getLogger("ytcache.quota")

DEFAULT_CATEGORIES: tuple[str, ...] = ("search", "channel_info", "videos", "other")
DEFAULT_WARNING_FRACTION = 0.8


@dataclass
class QuotaState:
    daily_units: int
    last_reset_day: date
    breakdown: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class QuotaSnapshot:
    quota_day: date
    daily_units: int
    breakdown: dict[str, int]


def _empty_breakdown() -> dict[str, int]:
    return {category: 0 for category in DEFAULT_CATEGORIES}


def _utc_now() -> datetime:
    return datetime.now(UTC)


class QuotaTracker:
    """
    Counts metered quota units consumed on the current quota day.

    Only successful network calls are recorded. The first access on a new calendar
    day (in `timezone`) zeroes the counters before anything else happens. When a
    repository is given, usage is written through and today's totals are restored
    on construction.
    """

    def __init__(
        self,
        *,
        timezone: tzinfo = UTC,
        warning_fraction: float = DEFAULT_WARNING_FRACTION,
        repository: QuotaRepository | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._timezone = timezone
        self._warning_fraction = warning_fraction
        self._repository = repository
        self._clock = clock
        self._state = QuotaState(
            daily_units=0,
            last_reset_day=self._today(),
            breakdown=_empty_breakdown(),
        )
        self._restore_persisted_day()

    @property
    def warning_fraction(self) -> float:
        return self._warning_fraction

    @property
    def daily_units(self) -> int:
        self._roll_over_if_needed()
        return self._state.daily_units

    def update(self, cost: int, category: str) -> None:
        self._roll_over_if_needed()
        units = max(0, int(cost))
        normalized_category = category.strip() or "other"

        self._state.daily_units += units
        self._state.breakdown[normalized_category] = (
            self._state.breakdown.get(normalized_category, 0) + units
        )
        LOGGER.info(
            "quota units recorded units=%s category=%s daily_units=%s",
            units,
            normalized_category,
            self._state.daily_units,
        )

        if self._repository is not None and units > 0:
            try:
                self._repository.record_usage(
                    quota_day=self._state.last_reset_day,
                    category=normalized_category,
                    units=units,
                )
            except sqlite3.Error:
                LOGGER.exception(
                    "failed to persist quota usage category=%s units=%s",
                    normalized_category,
                    units,
                )

    def is_approaching_limit(self, limit: int) -> bool:
        return self.daily_units > limit * self._warning_fraction

    def has_exceeded_limit(self, limit: int) -> bool:
        return self.daily_units >= limit

    def snapshot(self) -> QuotaSnapshot:
        self._roll_over_if_needed()
        return QuotaSnapshot(
            quota_day=self._state.last_reset_day,
            daily_units=self._state.daily_units,
            breakdown=dict(self._state.breakdown),
        )

    def _today(self) -> date:
        return self._clock().astimezone(self._timezone).date()

    def _roll_over_if_needed(self) -> None:
        today = self._today()
        if today == self._state.last_reset_day:
            return
        LOGGER.info(
            "quota day rollover previous_day=%s previous_units=%s new_day=%s",
            self._state.last_reset_day.isoformat(),
            self._state.daily_units,
            today.isoformat(),
        )
        self._state = QuotaState(
            daily_units=0,
            last_reset_day=today,
            breakdown=_empty_breakdown(),
        )

    def _restore_persisted_day(self) -> None:
        if self._repository is None:
            return
        try:
            persisted = self._repository.load_day(self._state.last_reset_day)
        except sqlite3.Error:
            LOGGER.exception("failed to restore persisted quota usage")
            return
        if not persisted.breakdown:
            return
        breakdown = _empty_breakdown()
        breakdown.update(persisted.breakdown)
        self._state.breakdown = breakdown
        self._state.daily_units = sum(breakdown.values())
        LOGGER.info(
            "quota usage restored quota_day=%s daily_units=%s",
            persisted.quota_day.isoformat(),
            self._state.daily_units,
        )
