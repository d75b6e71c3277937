"""
Per-provider request accounting and throttle backoff.

Counters live in Redis keyed by provider, operation and window so every
running instance shares them:

    rate_limit:{provider}:{operation}:{YYYY-MM-DDTHH}   hourly window
    rate_limit:{provider}:{operation}:{YYYY-MM-DD}      daily window

The provider-wide "all" operation is what quotas are checked against. High
priority operations (uploads, token refresh, folder create, deletes) are
never refused; they only warn past the quota. Best-effort sync polling is
refused once usage reaches SYNC_QUOTA_SHARE of a window, so it cannot starve
uploads. When Redis is unavailable admission fails open.
"""
import enum
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TypeVar

import redis

from gallery_storage.config import (
    BACKOFF_BASE_SECONDS,
    BACKOFF_MAX_SECONDS,
    DEFAULT_QUOTA,
    PROVIDER_QUOTAS,
    QUOTA_WARNING_PERCENT,
    SYNC_QUOTA_SHARE,
)
from gallery_storage.errors import RateLimitedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

ALL_OPERATIONS = "all"
HOUR_SECONDS = 3600
DAY_SECONDS = 86400


class OperationClass(str, enum.Enum):
    UPLOAD = "upload"
    TOKEN_REFRESH = "token_refresh"
    FOLDER_CREATE = "folder_create"
    FILE_DELETE = "file_delete"
    METADATA = "metadata"
    SYNC = "sync"


HIGH_PRIORITY = frozenset({
    OperationClass.UPLOAD,
    OperationClass.TOKEN_REFRESH,
    OperationClass.FOLDER_CREATE,
    OperationClass.FILE_DELETE,
})


def backoff_duration(streak: int) -> int:
    """Seconds to back off after `streak` earlier consecutive throttles (0-based)."""
    if streak < 0:
        streak = 0
    # Cap the exponent; 2**64 seconds is already far beyond any max
    return min(BACKOFF_BASE_SECONDS * (2 ** min(streak, 64)), BACKOFF_MAX_SECONDS)


def quota_for(provider: str) -> dict[str, int]:
    return PROVIDER_QUOTAS.get(provider, DEFAULT_QUOTA)


class RateGovernor:
    def __init__(self, client: redis.Redis, clock: Callable[[], datetime] | None = None):
        self.redis = client
        self.clock = clock or (lambda: datetime.now(UTC))

    # --- Keys ---

    def _window_keys(self, provider: str, operation: str) -> tuple[str, str]:
        now = self.clock()
        return (
            f"rate_limit:{provider}:{operation}:{now.strftime('%Y-%m-%dT%H')}",
            f"rate_limit:{provider}:{operation}:{now.strftime('%Y-%m-%d')}",
        )

    @staticmethod
    def _backoff_key(provider: str) -> str:
        return f"rate_limit:{provider}:backoff_until"

    @staticmethod
    def _streak_key(provider: str) -> str:
        return f"rate_limit:{provider}:throttle_streak"

    def _counts(self, provider: str, operation: str = ALL_OPERATIONS) -> tuple[int, int]:
        hour_key, day_key = self._window_keys(provider, operation)
        return int(self.redis.get(hour_key) or 0), int(self.redis.get(day_key) or 0)

    # --- Admission ---

    def can_make_request(self, provider: str, operation: OperationClass = OperationClass.METADATA) -> bool:
        """
        True if a call of this class may go out now. Does not check backoff;
        see is_in_backoff.
        """
        quota = quota_for(provider)
        try:
            hourly, daily = self._counts(provider)
        except redis.RedisError as e:
            logger.warning("Rate counters unavailable for %s, allowing request: %s", provider, e)
            return True

        hour_limit = quota["requests_per_hour"]
        day_limit = quota["requests_per_day"]
        if operation == OperationClass.SYNC:
            hour_limit = int(hour_limit * SYNC_QUOTA_SHARE)
            day_limit = int(day_limit * SYNC_QUOTA_SHARE)

        if hourly < hour_limit and daily < day_limit:
            return True
        if operation in HIGH_PRIORITY:
            logger.warning(
                "%s over quota (%d/h, %d/day) but allowing %s",
                provider,
                hourly,
                daily,
                operation.value,
            )
            return True
        logger.info("Refusing %s request to %s: %d/%d this hour, %d/%d today",
                    operation.value, provider, hourly, hour_limit, daily, day_limit)
        return False

    def record_request(self, provider: str, operation: OperationClass = OperationClass.METADATA) -> None:
        """Count one successful call and clear the throttle streak."""
        try:
            # Counters and their TTLs go in one MULTI/EXEC
            with self.redis.pipeline() as pipe:
                for op in (operation.value, ALL_OPERATIONS):
                    hour_key, day_key = self._window_keys(provider, op)
                    pipe.incr(hour_key)
                    pipe.expire(hour_key, HOUR_SECONDS)
                    pipe.incr(day_key)
                    pipe.expire(day_key, DAY_SECONDS)
                pipe.delete(self._streak_key(provider))
                pipe.execute()
            hourly, daily = self._counts(provider)
        except redis.RedisError as e:
            logger.warning("Failed to record %s request for %s: %s", operation.value, provider, e)
            return

        quota = quota_for(provider)
        hour_pct = hourly / quota["requests_per_hour"] * 100
        day_pct = daily / quota["requests_per_day"] * 100
        if max(hour_pct, day_pct) >= QUOTA_WARNING_PERCENT:
            logger.warning(
                "%s quota usage high: %.1f%% hourly (%d/%d), %.1f%% daily (%d/%d)",
                provider,
                hour_pct,
                hourly,
                quota["requests_per_hour"],
                day_pct,
                daily,
                quota["requests_per_day"],
            )

    # --- Backoff ---

    def backoff_until(self, provider: str) -> datetime | None:
        try:
            raw = self.redis.get(self._backoff_key(provider))
        except redis.RedisError as e:
            logger.warning("Backoff state unavailable for %s: %s", provider, e)
            return None
        if not raw:
            return None
        until = datetime.fromisoformat(raw)
        return until if until > self.clock() else None

    def is_in_backoff(self, provider: str) -> bool:
        return self.backoff_until(provider) is not None

    def record_throttle(self, provider: str, retry_after: int | None = None) -> int:
        """
        Register a provider throttle signal. Returns the backoff in seconds,
        which grows with each consecutive throttle up to BACKOFF_MAX_SECONDS.
        """
        try:
            streak = int(self.redis.incr(self._streak_key(provider))) - 1
            self.redis.expire(self._streak_key(provider), DAY_SECONDS)
        except redis.RedisError as e:
            logger.warning("Failed to record throttle for %s: %s", provider, e)
            return backoff_duration(0)

        seconds = max(backoff_duration(streak), retry_after or 0)
        until = self.clock() + timedelta(seconds=seconds)
        try:
            self.redis.set(self._backoff_key(provider), until.isoformat(), ex=seconds)
        except redis.RedisError as e:
            logger.warning("Failed to store backoff for %s: %s", provider, e)
        logger.warning("%s throttled (streak %d); backing off %ds", provider, streak + 1, seconds)
        return seconds

    # --- Wrappers ---

    def execute(self, provider: str, operation: OperationClass, fn: Callable[[], T]) -> T:
        """
        Run fn under admission control. Backoff or a refused admission raises
        RateLimitedError without calling fn; a RateLimitedError from fn starts
        (or extends) a backoff before propagating.
        """
        until = self.backoff_until(provider)
        if until is not None:
            remaining = max(1, int((until - self.clock()).total_seconds()))
            raise RateLimitedError(f"{provider} is backing off", provider=provider, retry_after=remaining)
        if not self.can_make_request(provider, operation):
            raise RateLimitedError(f"{provider} quota reserved for priority operations", provider=provider)
        try:
            result = fn()
        except RateLimitedError as e:
            self.record_throttle(provider, e.retry_after)
            raise
        self.record_request(provider, operation)
        return result

    # --- Reporting ---

    def get_usage(self, provider: str) -> dict:
        quota = quota_for(provider)
        try:
            hourly, daily = self._counts(provider)
        except redis.RedisError as e:
            logger.warning("Rate counters unavailable for %s: %s", provider, e)
            hourly, daily = 0, 0
        until = self.backoff_until(provider)
        return {
            "provider": provider,
            "requests_this_hour": hourly,
            "requests_today": daily,
            "hourly_limit": quota["requests_per_hour"],
            "daily_limit": quota["requests_per_day"],
            "hourly_percent": round(hourly / quota["requests_per_hour"] * 100, 1),
            "daily_percent": round(daily / quota["requests_per_day"] * 100, 1),
            "in_backoff": until is not None,
            "backoff_until": until.isoformat() if until else None,
        }

    def get_rate_usage(self, providers: list[str]) -> dict[str, dict]:
        """Usage snapshot per provider with status normal | warning | backoff."""
        snapshot = {}
        for provider in providers:
            usage = self.get_usage(provider)
            if usage["in_backoff"]:
                usage["status"] = "backoff"
            elif max(usage["hourly_percent"], usage["daily_percent"]) >= QUOTA_WARNING_PERCENT:
                usage["status"] = "warning"
            else:
                usage["status"] = "normal"
            snapshot[provider] = usage
        return snapshot
