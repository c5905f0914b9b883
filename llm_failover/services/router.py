"""
Routing service wiring health, discovery, metrics and selection together.
"""
import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from llm_failover.core.cache import RedisCache
from llm_failover.core.config import Settings, settings
from llm_failover.core.errors import ConfigurationInvalid, ProbeErrorKind
from llm_failover.core.logger import get_logger
from llm_failover.providers.base import Provider
from llm_failover.providers.factory import ProviderFactory
from llm_failover.services.budget import BudgetTracker, estimate_cost, utc_day
from llm_failover.services.discovery import DiscoveredModel, DiscoveryCatalog, ModelDiscoveryService
from llm_failover.services.health_check import HealthMonitor, HealthStatus, ProviderHealth
from llm_failover.services.patterns import PatternInsight, UsagePatternLearner
from llm_failover.services.performance import (
    AlertThresholds,
    BenchmarkReport,
    BenchmarkTargets,
    PerformanceTracker,
    ProviderMetrics,
    Recommendation,
    RequestOutcome,
)
from llm_failover.services.selector import (
    BackoffPolicy,
    FallbackStrategy,
    ProviderSelector,
    RetryState,
    SelectionDecision,
    SelectionRequest,
)
from llm_failover.services.usage_store import UsageStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProviderReport:
    """Everything known about one provider, for status output."""
    provider: Provider
    status: HealthStatus
    health: Optional[ProviderHealth]
    metrics: ProviderMetrics
    retry: RetryState
    recommendations: Tuple[Recommendation, ...] = ()


class RoutingService:
    """
    Facade over the failover engine.

    Features:
    - Model listing and discovery rounds
    - Per-provider health and performance reports
    - Provider selection
    - Outcome feedback into metrics, retry state, patterns, budget and usage
    - Background health checks
    """

    def __init__(
        self,
        providers: List[Provider],
        monitor: Optional[HealthMonitor] = None,
        discovery: Optional[ModelDiscoveryService] = None,
        tracker: Optional[PerformanceTracker] = None,
        patterns: Optional[UsagePatternLearner] = None,
        budget: Optional[BudgetTracker] = None,
        selector: Optional[ProviderSelector] = None,
        cache: Optional[RedisCache] = None,
        usage_store: Optional[UsageStore] = None,
        feed_outcomes_to_health: Optional[bool] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize routing service.

        Collaborators that are not passed in are built from settings.
        """
        self._clock = clock
        self.monitor = monitor or HealthMonitor(clock=clock)
        self.discovery = discovery or ModelDiscoveryService(
            self.monitor, providers, cache=cache, clock=clock
        )
        self.tracker = tracker or PerformanceTracker(clock=clock)
        self.patterns = patterns or UsagePatternLearner(clock=clock)
        self.budget = budget or BudgetTracker(clock=clock)
        self.selector = selector or ProviderSelector(
            self.discovery,
            self.monitor,
            self.tracker,
            patterns=self.patterns,
            budget=self.budget,
            clock=clock
        )
        self.cache = cache
        self.usage_store = usage_store
        self.feed_outcomes_to_health = (
            settings.feed_outcomes_to_health if feed_outcomes_to_health is None
            else feed_outcomes_to_health
        )
        self._health_task: Optional["asyncio.Task[None]"] = None

    @classmethod
    def from_settings(
        cls,
        config: Optional[Settings] = None,
        cache: Optional[RedisCache] = None,
        usage_store: Optional[UsageStore] = None
    ) -> "RoutingService":
        """
        Build the service and every collaborator from ``config``.

        Args:
            config: Settings to use, the process-wide settings when omitted
            cache: Optional Redis cache for catalog publication
            usage_store: Optional persistent usage store

        Raises:
            ConfigurationInvalid: If provider definitions are unusable
        """
        config = config or settings
        providers = ProviderFactory.load_providers(config.providers)

        monitor = HealthMonitor(
            failure_threshold=config.health_failure_threshold,
            success_threshold=config.health_success_threshold,
            probe_timeout=config.probe_timeout,
            outer_timeout=config.probe_outer_timeout,
            history_size=config.health_history_size,
            check_interval=config.health_check_interval,
            max_concurrency=config.health_max_concurrency,
        )
        discovery = ModelDiscoveryService(
            monitor,
            providers,
            cache=cache,
            ttl=config.discovery_ttl,
            ceiling=config.discovery_ceiling,
            max_concurrency=config.discovery_max_concurrency,
            auto_discovery=config.auto_discovery_enabled,
            auto_hosts=config.auto_discovery_hosts,
            auto_ports=config.auto_discovery_ports,
        )
        tracker = PerformanceTracker(
            alpha=config.ewma_alpha,
            trend_window=config.trend_window,
            trend_multiplier=config.trend_multiplier,
            trend_min_baseline=config.trend_min_baseline,
            thresholds=AlertThresholds.from_settings(config),
            targets=BenchmarkTargets.from_settings(config),
        )
        patterns = UsagePatternLearner(
            enabled=config.pattern_learning_enabled,
            window_days=config.pattern_window_days,
        )
        budget = BudgetTracker(config=config)
        selector = ProviderSelector(
            discovery,
            monitor,
            tracker,
            patterns=patterns,
            budget=budget,
            strategy=FallbackStrategy(config.fallback_strategy),
            cost_ranking=config.cloud_cost_ranking,
            prefer_local=config.prefer_local,
            auto_return=config.auto_return_to_local,
            recovery_delay=config.local_recovery_delay,
            preemptive=config.preemptive_fallback,
            backoff=BackoffPolicy.from_settings(config),
        )

        logger.info(
            f"Loaded {len(providers)} providers",
            providers=[p.id for p in providers],
            strategy=selector.strategy.value
        )
        return cls(
            providers,
            monitor=monitor,
            discovery=discovery,
            tracker=tracker,
            patterns=patterns,
            budget=budget,
            selector=selector,
            cache=cache,
            usage_store=usage_store,
            feed_outcomes_to_health=config.feed_outcomes_to_health,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def seed_budget(self) -> None:
        """Restore today's spend from the usage store."""
        if self.usage_store is None:
            return
        today = utc_day(self._clock())
        total, by_provider = await self.usage_store.spend_for_day(today)
        self.budget.seed(total, today, by_provider)
        logger.info("Budget seeded from usage store", spent=round(total, 4), day=str(today))

    def start(self) -> None:
        """Start the background health loop."""
        if self._health_task is not None and not self._health_task.done():
            return
        self._health_task = asyncio.create_task(self.monitor.start())
        logger.info("Health check service started")

    async def stop(self) -> None:
        """Stop the background health loop."""
        task = self._health_task
        self._health_task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            logger.info("Health check service stopped")

    async def close(self) -> None:
        await self.stop()
        await self.discovery.close()
        await self.monitor.close()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def list_models(self, available_only: bool = True) -> List[DiscoveredModel]:
        """Models in the current catalog; never probes."""
        return self.discovery.list_models(available_only=available_only)

    @property
    def catalog(self) -> DiscoveryCatalog:
        return self.discovery.catalog

    async def discover(self) -> DiscoveryCatalog:
        return await self.discovery.discover()

    async def refresh(self) -> DiscoveryCatalog:
        return await self.discovery.refresh()

    def health(self) -> List[ProviderReport]:
        """Per-provider status, check statistics, request metrics and recommendations."""
        advice: Dict[str, List[Recommendation]] = {}
        for recommendation in self.tracker.recommendations():
            advice.setdefault(recommendation.provider_id, []).append(recommendation)
        return [
            ProviderReport(
                provider=provider,
                status=self.monitor.status(provider.id),
                health=self.monitor.health(provider.id),
                metrics=self.tracker.metrics(provider.id),
                retry=self.selector.retry_state(provider.id),
                recommendations=tuple(advice.get(provider.id, ())),
            )
            for provider in self.discovery.providers
        ]

    def recommendations(self) -> List[Recommendation]:
        return self.tracker.recommendations()

    def benchmark(self) -> BenchmarkReport:
        return self.tracker.benchmark()

    def insights(self) -> List[PatternInsight]:
        return self.patterns.insights()

    def select(self, request: SelectionRequest) -> SelectionDecision:
        return self.selector.select(request)

    @property
    def strategy(self) -> FallbackStrategy:
        return self.selector.strategy

    def _provider(self, provider_id: str) -> Provider:
        for provider in self.discovery.providers:
            if provider.id == provider_id:
                return provider
        raise ConfigurationInvalid(f"Unknown provider: {provider_id}")

    async def record_outcome(self, provider_id: str, outcome: RequestOutcome) -> ProviderMetrics:
        """
        Feed a completed request back into the engine.

        Args:
            provider_id: Provider that served the request
            outcome: Reported outcome

        Returns:
            Updated metrics for the provider

        Raises:
            ConfigurationInvalid: If the provider is unknown
        """
        provider = self._provider(provider_id)
        now = self._clock()
        metrics = self.tracker.record(provider_id, outcome)

        if outcome.success:
            self.selector.note_success(provider_id)
            self.patterns.observe(provider_id, outcome.model, outcome.workload, at=now)
        else:
            self.selector.note_failure(provider_id, at=now)

        cost = estimate_cost(provider, outcome)
        if cost > 0:
            self.budget.add(provider_id, cost, at=now)

        if self.feed_outcomes_to_health:
            self.monitor.record_result(
                provider_id,
                success=outcome.success,
                latency_ms=outcome.latency_ms,
                error_kind=None if outcome.success else _error_kind(outcome.error_kind),
                error=None if outcome.success else (outcome.error_kind or "request failed")
            )

        if self.usage_store is not None:
            await self.usage_store.record(
                provider_id,
                outcome,
                cost,
                at=datetime.fromtimestamp(now, tz=timezone.utc)
            )

        return metrics

    def budget_status(self) -> Dict[str, Optional[float]]:
        return {
            "daily_limit": self.budget.daily_limit,
            "spent_today": self.budget.spent_today(),
            "remaining": self.budget.remaining(),
        }


def _error_kind(value: Optional[str]) -> ProbeErrorKind:
    try:
        return ProbeErrorKind(value)
    except ValueError:
        return ProbeErrorKind.PROTOCOL_ERROR
