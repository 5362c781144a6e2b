"""
Quota Tracker - Per-provider free-tier counters in the database.

Counters live in one row per (provider, month); the daily counter resets
when the stored day key changes. Increments are single conditional UPDATE
statements, so concurrent instances never push a hard-limited counter
past its ceiling.
"""

from collections.abc import Callable
from datetime import UTC, datetime

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credit_engine.db.models import ProviderQuotaUsage
from credit_engine.models.domain import ProviderQuota, ProviderUsage
from credit_engine.observability import get_logger

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class QuotaTracker:
    """Atomic provider usage counters with daily and monthly periods."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    def _period(self) -> tuple[str, str]:
        now = self._clock()
        return now.strftime("%Y-%m"), now.strftime("%Y-%m-%d")

    async def get_usage(self, provider: str) -> ProviderUsage:
        """Current counters; a row from a previous day reports zero requests today."""
        month, day = self._period()
        async with self._session_factory() as session:
            row = await session.get(ProviderQuotaUsage, (provider, month))

        if row is None:
            return ProviderUsage(provider=provider, today_requests=0, month_requests=0, month_credits=0)
        return ProviderUsage(
            provider=provider,
            today_requests=row.daily_requests if row.usage_day == day else 0,
            month_requests=row.monthly_requests,
            month_credits=row.monthly_credits,
        )

    async def has_capacity(self, provider: str, quota: ProviderQuota, credits: int = 1) -> bool:
        """False only when a hard-limited quota would be exceeded by one more request."""
        if not quota.hard_limit:
            return True
        usage = await self.get_usage(provider)
        if quota.daily_requests is not None and usage.today_requests + 1 > quota.daily_requests:
            return False
        if quota.monthly_requests is not None and usage.month_requests + 1 > quota.monthly_requests:
            return False
        if quota.monthly_credits is not None and usage.month_credits + credits > quota.monthly_credits:
            return False
        return True

    async def increment(self, provider: str, credits: int, quota: ProviderQuota) -> bool:
        """
        Count one request and its credits.

        Returns False when a hard limit blocked the increment.
        """
        month, day = self._period()
        await self._ensure_row(provider, month, day)

        async with self._session_factory() as session:
            async with session.begin():
                daily_now = case(
                    (ProviderQuotaUsage.usage_day == day, ProviderQuotaUsage.daily_requests),
                    else_=0,
                )
                conditions = [
                    ProviderQuotaUsage.provider == provider,
                    ProviderQuotaUsage.usage_month == month,
                ]
                if quota.hard_limit:
                    if quota.daily_requests is not None:
                        conditions.append(daily_now + 1 <= quota.daily_requests)
                    if quota.monthly_requests is not None:
                        conditions.append(
                            ProviderQuotaUsage.monthly_requests + 1 <= quota.monthly_requests
                        )
                    if quota.monthly_credits is not None:
                        conditions.append(
                            ProviderQuotaUsage.monthly_credits + credits <= quota.monthly_credits
                        )

                result = await session.execute(
                    update(ProviderQuotaUsage)
                    .where(*conditions)
                    .values(
                        usage_day=day,
                        daily_requests=daily_now + 1,
                        monthly_requests=ProviderQuotaUsage.monthly_requests + 1,
                        monthly_credits=ProviderQuotaUsage.monthly_credits + credits,
                        updated_at=self._clock(),
                    )
                    .execution_options(synchronize_session=False)
                )

        if result.rowcount != 1:
            logger.warning("provider_quota_limit_reached", provider=provider, month=month, day=day)
            return False

        logger.debug("provider_quota_incremented", provider=provider, credits=credits)
        return True

    async def _ensure_row(self, provider: str, month: str, day: str) -> None:
        """Create the monthly row once; losing an insert race is fine."""
        async with self._session_factory() as session:
            existing = await session.scalar(
                select(ProviderQuotaUsage.provider).where(
                    ProviderQuotaUsage.provider == provider,
                    ProviderQuotaUsage.usage_month == month,
                )
            )
            if existing is not None:
                return
            try:
                session.add(
                    ProviderQuotaUsage(
                        provider=provider,
                        usage_month=month,
                        usage_day=day,
                        daily_requests=0,
                        monthly_requests=0,
                        monthly_credits=0,
                    )
                )
                await session.commit()
            except IntegrityError:
                await session.rollback()
