"""
Persistence of daily provider usage and spend.
"""
from datetime import date, datetime, timezone
from typing import Dict, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from llm_failover.core.logger import get_logger
from llm_failover.models.usage import ProviderUsage
from llm_failover.services.performance import RequestOutcome

logger = get_logger(__name__)


class UsageStore:
    """
    Daily per-provider usage table.

    Writes happen after a request outcome is reported; a failed write is
    logged and rolled back so routing is never affected by the database.
    """

    def __init__(self, sessionmaker: async_sessionmaker):
        """
        Initialize usage store.

        Args:
            sessionmaker: Async session factory
        """
        self.sessionmaker = sessionmaker

    async def record(
        self,
        provider_id: str,
        outcome: RequestOutcome,
        cost_usd: float,
        at: Optional[datetime] = None
    ) -> bool:
        """
        Add one request outcome to today's row for the provider.

        Args:
            provider_id: Provider that served the request
            outcome: Reported outcome
            cost_usd: Cost already computed for the outcome
            at: Timestamp (UTC), defaults to now

        Returns:
            True if the row was written
        """
        at = at or datetime.now(timezone.utc)
        day = at.date()

        async with self.sessionmaker() as session:
            try:
                query = select(ProviderUsage).where(
                    ProviderUsage.provider_id == provider_id,
                    ProviderUsage.date == day
                )
                usage = (await session.execute(query)).scalar_one_or_none()
                if usage is None:
                    usage = ProviderUsage(
                        provider_id=provider_id,
                        date=day,
                        total_requests=0,
                        success_requests=0,
                        failed_requests=0,
                        prompt_tokens=0,
                        completion_tokens=0,
                        cost_usd=0.0,
                        avg_response_time=0.0
                    )
                    session.add(usage)

                # Running average of response time
                usage.avg_response_time = (
                    (usage.avg_response_time * usage.total_requests + outcome.latency_ms)
                    / (usage.total_requests + 1)
                )
                usage.total_requests += 1
                if outcome.success:
                    usage.success_requests += 1
                else:
                    usage.failed_requests += 1
                usage.prompt_tokens += outcome.prompt_tokens
                usage.completion_tokens += outcome.completion_tokens
                usage.cost_usd += cost_usd
                usage.last_used_at = at.replace(tzinfo=None)

                await session.commit()
                return True
            except SQLAlchemyError as e:
                logger.error(f"Failed to record usage: {str(e)}", provider=provider_id)
                await session.rollback()
                return False

    async def spend_for_day(self, day: date) -> Tuple[float, Dict[str, float]]:
        """
        Total spend recorded for ``day``.

        Returns:
            (total, spend per provider)
        """
        async with self.sessionmaker() as session:
            try:
                query = select(ProviderUsage).where(ProviderUsage.date == day)
                rows = (await session.execute(query)).scalars().all()
            except SQLAlchemyError as e:
                logger.error(f"Failed to load usage: {str(e)}", day=str(day))
                return 0.0, {}

        by_provider = {row.provider_id: row.cost_usd or 0.0 for row in rows}
        return sum(by_provider.values()), by_provider

    async def usage_for_day(self, day: date) -> Dict[str, Dict[str, float]]:
        """Per-provider totals for ``day``."""
        async with self.sessionmaker() as session:
            try:
                query = (
                    select(ProviderUsage)
                    .where(ProviderUsage.date == day)
                    .order_by(ProviderUsage.provider_id)
                )
                rows = (await session.execute(query)).scalars().all()
            except SQLAlchemyError as e:
                logger.error(f"Failed to load usage: {str(e)}", day=str(day))
                return {}

        return {
            row.provider_id: {
                "total_requests": row.total_requests,
                "success_requests": row.success_requests,
                "failed_requests": row.failed_requests,
                "prompt_tokens": row.prompt_tokens,
                "completion_tokens": row.completion_tokens,
                "cost_usd": row.cost_usd,
                "avg_response_time": row.avg_response_time,
            }
            for row in rows
        }
