"""Rate limiter - per-phone and global send quotas over minute/hour/day windows."""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.dialects import postgresql, sqlite

from database.db import db
from database.models import RateLimitCounter, SystemConfig
from orchestrator.utils.datetime_utils import utcnow, window_start

logger = logging.getLogger(__name__)

WINDOWS = (("minute", 60), ("hour", 3600), ("day", 86400))
COUNTER_RETENTION = timedelta(days=7)

DEFAULT_LIMITS = {
    "rate_limit_per_phone_per_minute": 10,
    "rate_limit_per_phone_per_hour": 100,
    "rate_limit_per_phone_per_day": 500,
    "global_rate_limit_per_minute": 100,
    "global_rate_limit_per_hour": 1000,
    "global_rate_limit_per_day": 5000,
}


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of a quota check. Denials are values, not exceptions."""

    allowed: bool
    window: Optional[str] = None
    current: int = 0
    limit: int = 0
    reset_at: Optional[datetime] = None
    retry_after_seconds: int = 0
    error: Optional[str] = None


ALLOWED = RateLimitDecision(allowed=True)


class RateLimiter:
    """
    Multi-window send limiter shared by programs, agents and broadcasts.

    Counters live in `rate_limits`, one row per (phone, window, window_start).
    Limits come from `system_config` and are re-read by `load_config()`.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self.limits: Dict[str, int] = dict(DEFAULT_LIMITS)
        self.lock = asyncio.Lock()

    def _phone_limit(self, window: str) -> int:
        return self.limits[f"rate_limit_per_phone_per_{window}"]

    def _global_limit(self, window: str) -> int:
        return self.limits[f"global_rate_limit_per_{window}"]

    async def load_config(self) -> Dict[str, int]:
        """Reload limits from `system_config`; missing or malformed keys keep their default."""
        limits = dict(DEFAULT_LIMITS)
        async with db.session() as session:
            result = await session.execute(
                select(SystemConfig).where(SystemConfig.config_key.in_(list(DEFAULT_LIMITS)))
            )
            for row in result.scalars().all():
                try:
                    value = int(row.config_value)
                except (TypeError, ValueError):
                    logger.warning(f"Ignoring invalid rate limit {row.config_key}={row.config_value!r}")
                    continue
                if value > 0:
                    limits[row.config_key] = value
        self.limits = limits
        logger.info(f"Rate limits loaded: {limits}")
        return limits

    async def update_config(self, **values: int) -> Dict[str, int]:
        """
        Persist new limits and apply them immediately.

        Raises:
            ValueError: unknown key or non-positive value
        """
        for key, value in values.items():
            if key not in DEFAULT_LIMITS:
                raise ValueError(f"Unknown rate limit setting: {key}")
            if int(value) <= 0:
                raise ValueError(f"{key} must be positive")

        async with db.session() as session:
            for key, value in values.items():
                result = await session.execute(select(SystemConfig).where(SystemConfig.config_key == key))
                row = result.scalar_one_or_none()
                if row:
                    row.config_value = str(int(value))
                else:
                    session.add(SystemConfig(config_key=key, config_value=str(int(value))))
        return await self.load_config()

    async def _count(self, session, phone: Optional[str], window: str, start: datetime) -> int:
        query = select(func.coalesce(func.sum(RateLimitCounter.count), 0)).where(
            RateLimitCounter.window == window,
            RateLimitCounter.window_start == start,
        )
        if phone is not None:
            query = query.where(RateLimitCounter.phone == phone)
        return int((await session.execute(query)).scalar() or 0)

    async def _check(self, phone: Optional[str]) -> RateLimitDecision:
        now = self.clock()
        try:
            async with db.session() as session:
                for window, duration in WINDOWS:
                    start = window_start(now, duration)
                    current = await self._count(session, phone, window, start)
                    limit = self._phone_limit(window) if phone is not None else self._global_limit(window)
                    if current >= limit:
                        reset_at = start + timedelta(seconds=duration)
                        return RateLimitDecision(
                            allowed=False,
                            window=window if phone is not None else f"global_{window}",
                            current=current,
                            limit=limit,
                            reset_at=reset_at,
                            retry_after_seconds=max(0, int((reset_at - now).total_seconds())),
                        )
        except Exception as e:
            logger.error(f"Rate limit check failed for {phone or 'global'}: {e}")
            return RateLimitDecision(allowed=False, window="unavailable", error=str(e))
        return ALLOWED

    async def check_phone(self, phone: str) -> RateLimitDecision:
        """Check the per-phone quota, minute then hour then day."""
        return await self._check(phone)

    async def check_global(self) -> RateLimitDecision:
        """Check the system-wide quota summed over every phone."""
        return await self._check(None)

    async def record_send(self, phone: str) -> None:
        """Count one send against every window of `phone`."""
        now = self.clock()
        dialect = sqlite if db.is_sqlite else postgresql
        async with self.lock:
            async with db.session() as session:
                for window, duration in WINDOWS:
                    stmt = dialect.insert(RateLimitCounter).values(
                        phone=phone,
                        window=window,
                        window_start=window_start(now, duration),
                        count=1,
                        updated_at=now,
                    )
                    stmt = stmt.on_conflict_do_update(
                        index_elements=["phone", "window", "window_start"],
                        set_={"count": RateLimitCounter.count + 1, "updated_at": now},
                    )
                    await session.execute(stmt)

    async def status(self, phone: str) -> Dict[str, dict]:
        """Usage of `phone` in each current window."""
        now = self.clock()
        report = {}
        async with db.session() as session:
            for window, duration in WINDOWS:
                start = window_start(now, duration)
                current = await self._count(session, phone, window, start)
                limit = self._phone_limit(window)
                report[window] = {
                    "current": current,
                    "limit": limit,
                    "remaining": max(0, limit - current),
                    "reset_at": start + timedelta(seconds=duration),
                }
        return report

    async def reclaim(self) -> int:
        """Delete counters whose window started more than a week ago."""
        cutoff = self.clock() - COUNTER_RETENTION
        async with db.session() as session:
            result = await session.execute(delete(RateLimitCounter).where(RateLimitCounter.window_start < cutoff))
            removed = result.rowcount or 0
        if removed:
            logger.info(f"Reclaimed {removed} expired rate-limit counters")
        return removed
