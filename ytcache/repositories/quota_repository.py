from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from ytcache.repositories.common import utc_now_iso
from ytcache.repositories.database import Database


@dataclass(frozen=True)
class PersistedQuotaDay:
    quota_day: date
    units_used: int
    calls: int
    breakdown: dict[str, int]


class QuotaRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def record_usage(self, *, quota_day: date, category: str, units: int) -> None:
        units_this_call = max(0, units)
        day_text = quota_day.isoformat()
        now_iso = utc_now_iso()

        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO quota_daily (quota_day, units_used, calls, updated_at)
                VALUES (?, ?, 1, ?)
                ON CONFLICT(quota_day) DO UPDATE SET
                    units_used = quota_daily.units_used + excluded.units_used,
                    calls = quota_daily.calls + 1,
                    updated_at = excluded.updated_at
                """,
                (day_text, units_this_call, now_iso),
            )
            conn.execute(
                """
                INSERT INTO quota_by_category_daily
                (quota_day, category, units_used, calls, updated_at)
                VALUES (?, ?, ?, 1, ?)
                ON CONFLICT(quota_day, category) DO UPDATE SET
                    units_used = quota_by_category_daily.units_used + excluded.units_used,
                    calls = quota_by_category_daily.calls + 1,
                    updated_at = excluded.updated_at
                """,
                (day_text, category, units_this_call, now_iso),
            )

    def load_day(self, quota_day: date) -> PersistedQuotaDay:
        day_text = quota_day.isoformat()
        with self._db.connection() as conn:
            daily_row = conn.execute(
                """
                SELECT units_used, calls
                FROM quota_daily
                WHERE quota_day = ?
                """,
                (day_text,),
            ).fetchone()
            category_rows = conn.execute(
                """
                SELECT category, units_used
                FROM quota_by_category_daily
                WHERE quota_day = ?
                ORDER BY category
                """,
                (day_text,),
            ).fetchall()

        breakdown = {str(row["category"]): int(row["units_used"]) for row in category_rows}
        return PersistedQuotaDay(
            quota_day=quota_day,
            units_used=int(daily_row["units_used"]) if daily_row is not None else 0,
            calls=int(daily_row["calls"]) if daily_row is not None else 0,
            breakdown=breakdown,
        )
