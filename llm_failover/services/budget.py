"""
Daily spend accounting for cloud providers.
"""
import time
from datetime import date, datetime, timezone
from typing import Callable, Dict, Optional

from llm_failover.core.config import Settings, settings
from llm_failover.core.logger import get_logger
from llm_failover.providers.base import Provider
from llm_failover.services.performance import RequestOutcome

logger = get_logger(__name__)


def utc_day(at: float) -> date:
    return datetime.fromtimestamp(at, tz=timezone.utc).date()


def estimate_cost(provider: Provider, outcome: RequestOutcome) -> float:
    """
    Cost of one request in USD.

    An explicit ``cost_usd`` wins; otherwise token counts are priced with
    the provider's per-million rates. Local providers cost nothing.
    """
    if provider.is_local:
        return 0.0
    if outcome.cost_usd is not None:
        return max(0.0, outcome.cost_usd)
    return (
        outcome.prompt_tokens * provider.input_cost_per_million
        + outcome.completion_tokens * provider.output_cost_per_million
    ) / 1_000_000


class BudgetTracker:
    """
    Tracks spend per UTC day against an optional ceiling.

    Only the current day is kept; the first charge on a new day starts a
    fresh total.
    """

    def __init__(
        self,
        daily_limit: Optional[float] = None,
        clock: Callable[[], float] = time.time,
        config: Optional[Settings] = None
    ):
        """Initialize tracker; an unset limit comes from ``config`` (or settings)."""
        config = config or settings
        self.daily_limit = config.daily_budget_limit if daily_limit is None else daily_limit
        self._clock = clock
        self._day: date = utc_day(clock())
        self._spent: float = 0.0
        self._by_provider: Dict[str, float] = {}

    def _roll(self, at: float) -> None:
        day = utc_day(at)
        if day != self._day:
            logger.info("Budget day rolled over", previous_day=str(self._day), spent=round(self._spent, 4))
            self._day = day
            self._spent = 0.0
            self._by_provider = {}

    def seed(self, amount: float, day: date, by_provider: Optional[Dict[str, float]] = None) -> None:
        """Restore a persisted total for ``day`` (ignored if it is not today)."""
        if day != utc_day(self._clock()):
            return
        self._day = day
        self._spent = max(0.0, amount)
        self._by_provider = dict(by_provider or {})

    def add(self, provider_id: str, amount: float, at: Optional[float] = None) -> float:
        """
        Charge ``amount`` USD to today's total.

        Returns:
            Today's total after the charge
        """
        at = self._clock() if at is None else at
        self._roll(at)
        if amount <= 0:
            return self._spent

        was_exceeded = self.exceeded(at)
        self._spent += amount
        self._by_provider[provider_id] = self._by_provider.get(provider_id, 0.0) + amount
        if not was_exceeded and self.exceeded(at):
            logger.warning(
                "Daily budget exceeded; cloud providers will be demoted",
                spent=round(self._spent, 4),
                limit=self.daily_limit
            )
        return self._spent

    def spent_today(self, at: Optional[float] = None) -> float:
        at = self._clock() if at is None else at
        return self._spent if utc_day(at) == self._day else 0.0

    def spent_by_provider(self) -> Dict[str, float]:
        return dict(self._by_provider)

    def exceeded(self, at: Optional[float] = None) -> bool:
        if self.daily_limit is None:
            return False
        return self.spent_today(at) >= self.daily_limit

    def remaining(self, at: Optional[float] = None) -> Optional[float]:
        if self.daily_limit is None:
            return None
        return max(0.0, self.daily_limit - self.spent_today(at))
