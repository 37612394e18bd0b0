from __future__ import annotations


class YtCacheError(Exception):
    pass


class QuotaExceededError(YtCacheError):
    def __init__(self, message: str, *, daily_units: int, quota_limit: int) -> None:
        super().__init__(message)
        self.daily_units = daily_units
        self.quota_limit = quota_limit


class UpstreamRequestError(YtCacheError):
    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        reason: str | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.reason = reason
        self.body = body

    @property
    def is_quota_exceeded(self) -> bool:
        return self.reason in {"quotaExceeded", "dailyLimitExceeded"}


class BatchItemMissingError(YtCacheError):
    def __init__(self, message: str, *, item_id: str, family: str) -> None:
        super().__init__(message)
        self.item_id = item_id
        self.family = family
