"""
OPTCG Market — Request Quota Limiter

Owns the process-local request counters for one upstream source:
minimum spacing between request starts and a daily request budget that
resets at local midnight. The reset is evaluated lazily whenever the
limiter is consulted; there is no background timer.

Counters are not persisted. A restart starts a fresh day budget.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, time as dt_time
from typing import Any, Awaitable, Callable, TypeVar

import structlog

from src.config import settings
from src.pipeline.errors import QuotaExceeded

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class QuotaStatus:
    """Snapshot for rate-limit reporting."""
    daily_limit: int
    daily_used: int
    daily_remaining: int
    next_request_available_seconds: float


class QuotaLimiter:
    """
    Spacing + daily budget guard around upstream calls.

    Usage:
        limiter = QuotaLimiter()
        data = await limiter.call(lambda: client.get("/sets"))

    Args:
        min_interval: Seconds required between successive call starts.
        daily_limit: Calls allowed per local calendar day.
        clock: Wall-clock source (local time) for the daily boundary.
        monotonic: Monotonic seconds source for spacing.
        sleep: Coroutine used to wait out the spacing.
    """

    def __init__(
        self,
        min_interval: float | None = None,
        daily_limit: int | None = None,
        clock: Callable[[], datetime] = datetime.now,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._min_interval = (
            min_interval if min_interval is not None else settings.JUSTTCG_REQUEST_DELAY_SECONDS
        )
        self._daily_limit = (
            daily_limit if daily_limit is not None else settings.JUSTTCG_DAILY_REQUEST_LIMIT
        )
        self._clock = clock
        self._monotonic = monotonic
        self._sleep = sleep

        self._last_request_at: float | None = None
        self._daily_count = 0
        self._last_reset: datetime = clock()

    @property
    def daily_limit(self) -> int:
        return self._daily_limit

    @property
    def daily_count(self) -> int:
        self._check_daily_reset()
        return self._daily_count

    def _check_daily_reset(self) -> None:
        """Zero the counter if local midnight passed since the last reset."""
        now = self._clock()
        midnight = datetime.combine(now.date(), dt_time.min, tzinfo=now.tzinfo)
        if self._last_reset < midnight:
            logger.info(
                "quota_daily_reset",
                previous_count=self._daily_count,
                reset_at=now.isoformat(),
            )
            self._daily_count = 0
            self._last_reset = now

    def remaining_quota(self) -> int:
        self._check_daily_reset()
        return max(0, self._daily_limit - self._daily_count)

    def next_available_delay(self) -> float:
        """Seconds until the spacing rule allows another call (0.0 if now)."""
        if self._last_request_at is None:
            return 0.0
        elapsed = self._monotonic() - self._last_request_at
        return max(0.0, self._min_interval - elapsed)

    def status(self) -> QuotaStatus:
        remaining = self.remaining_quota()
        return QuotaStatus(
            daily_limit=self._daily_limit,
            daily_used=self._daily_count,
            daily_remaining=remaining,
            next_request_available_seconds=self.next_available_delay(),
        )

    async def call(self, request_fn: Callable[[], Awaitable[T]]) -> T:
        """
        Run one upstream request under the quota rules.

        Raises QuotaExceeded without invoking request_fn when the daily
        budget is spent. Otherwise waits out the spacing, then counts the
        call before awaiting it: a request that fails was still sent.
        """
        while True:
            self._check_daily_reset()

            if self._daily_count >= self._daily_limit:
                logger.warning(
                    "quota_exceeded",
                    daily_limit=self._daily_limit,
                    daily_used=self._daily_count,
                )
                raise QuotaExceeded(self._daily_limit)

            delay = self.next_available_delay()
            if delay <= 0:
                break
            # Re-checked after waking: another caller may have gone first
            logger.debug("quota_spacing_wait", wait_seconds=round(delay, 3))
            await self._sleep(delay)

        self._last_request_at = self._monotonic()
        self._daily_count += 1

        return await request_fn()
