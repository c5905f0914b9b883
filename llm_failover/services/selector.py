"""
Provider selection and fallback.

Selection is synchronous and reads only in-memory snapshots (catalog,
health, metrics, patterns, budget); it never waits on a provider.
"""
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from llm_failover.core.config import Settings, settings
from llm_failover.core.errors import ConfigurationInvalid, NoProviderAvailable, Rejection
from llm_failover.core.logger import get_logger
from llm_failover.providers.base import Provider
from llm_failover.services.budget import BudgetTracker
from llm_failover.services.discovery import ModelDiscoveryService
from llm_failover.services.health_check import HealthMonitor, HealthStatus
from llm_failover.services.patterns import UsagePatternLearner
from llm_failover.services.performance import PerformanceTracker

logger = get_logger(__name__)


class FallbackStrategy(str, Enum):
    """How the selector treats providers that are not fully healthy."""
    GRACEFUL = "graceful"
    IMMEDIATE = "immediate"
    MANUAL = "manual"
    NONE = "none"


@dataclass(frozen=True)
class SelectionRequest:
    """What the caller needs from a provider."""
    model: Optional[str] = None
    provider: Optional[str] = None
    requires_streaming: bool = False
    requires_tools: bool = False
    workload: Optional[str] = None


@dataclass(frozen=True)
class Candidate:
    """A ranked provider/model pair."""
    provider_id: str
    model: str
    status: HealthStatus
    is_local: bool


@dataclass(frozen=True)
class SelectionDecision:
    """Routing decision for one request."""
    provider: Provider
    model: str
    strategy: FallbackStrategy
    reason: str
    warnings: Tuple[str, ...] = ()
    is_fallback: bool = False
    requires_confirmation: bool = False
    alternatives: Tuple[Candidate, ...] = ()
    rejections: Tuple[Rejection, ...] = ()

    @property
    def provider_id(self) -> str:
        return self.provider.id


@dataclass(frozen=True)
class BackoffPolicy:
    """Bounded exponential backoff policy."""
    max_retries: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter_ratio: float = 0.1

    def __post_init__(self):
        if self.max_retries < 0:
            raise ConfigurationInvalid("max_retries must be >= 0")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ConfigurationInvalid("retry delays must be >= 0")
        if self.multiplier < 1.0:
            raise ConfigurationInvalid("multiplier must be >= 1.0")
        if self.base_delay > self.max_delay:
            raise ConfigurationInvalid("base_delay must be <= max_delay")
        if not (0.0 <= self.jitter_ratio <= 1.0):
            raise ConfigurationInvalid("jitter_ratio must be between 0.0 and 1.0")

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "BackoffPolicy":
        config = config or settings
        return cls(
            max_retries=config.max_retry_count,
            base_delay=config.retry_base_delay,
            multiplier=config.retry_multiplier,
            max_delay=config.retry_max_delay,
            jitter_ratio=config.retry_jitter,
        )


def compute_backoff_delay(
    retry_number: int,
    policy: BackoffPolicy,
    random_fn: Callable[[], float] = random.random
) -> float:
    """Bounded exponential backoff delay for retry attempt N (1-based)."""
    if retry_number <= 0:
        raise ValueError("retry_number must be > 0")

    delay = min(policy.base_delay * (policy.multiplier ** (retry_number - 1)), policy.max_delay)
    if policy.jitter_ratio == 0.0:
        return delay

    jitter = (random_fn() * 2.0 - 1.0) * delay * policy.jitter_ratio
    return max(0.0, min(policy.max_delay, delay + jitter))


@dataclass(frozen=True)
class RetryState:
    """Failure streak of one provider as reported by callers."""
    consecutive_failures: int = 0
    last_failure_at: Optional[float] = None
    next_retry_at: Optional[float] = None

    def exhausted(self, max_retries: int) -> bool:
        return self.consecutive_failures >= max_retries


@dataclass
class _RouteState:
    """Which provider a model is being served from."""
    current: Optional[str] = None
    fallback_since: Optional[float] = None
    primary_back_since: Optional[float] = None


@dataclass
class _Ranked:
    provider: Provider
    model: str
    status: HealthStatus
    key: Tuple = field(default_factory=tuple)

    def candidate(self) -> Candidate:
        return Candidate(
            provider_id=self.provider.id,
            model=self.model,
            status=self.status,
            is_local=self.provider.is_local
        )


class ProviderSelector:
    """
    Chooses a provider/model pair for each request.

    Ranking (ascending): budget demotion, latency-trend demotion, locality,
    cost rank, learned preference, configuration order, id.
    """

    def __init__(
        self,
        discovery: ModelDiscoveryService,
        monitor: HealthMonitor,
        tracker: PerformanceTracker,
        patterns: Optional[UsagePatternLearner] = None,
        budget: Optional[BudgetTracker] = None,
        strategy: Optional[FallbackStrategy] = None,
        cost_ranking: Optional[List[str]] = None,
        prefer_local: Optional[bool] = None,
        auto_return: Optional[bool] = None,
        recovery_delay: Optional[float] = None,
        preemptive: Optional[bool] = None,
        backoff: Optional[BackoffPolicy] = None,
        clock: Callable[[], float] = time.time,
        random_fn: Callable[[], float] = random.random
    ):
        """Initialize selector; unset values come from settings."""
        self.discovery = discovery
        self.monitor = monitor
        self.tracker = tracker
        self.patterns = patterns or UsagePatternLearner(enabled=False)
        self.budget = budget or BudgetTracker(daily_limit=None)
        self.strategy = FallbackStrategy(strategy or settings.fallback_strategy)
        self.cost_ranking = list(settings.cloud_cost_ranking if cost_ranking is None else cost_ranking)
        self.prefer_local = settings.prefer_local if prefer_local is None else prefer_local
        self.auto_return = settings.auto_return_to_local if auto_return is None else auto_return
        self.recovery_delay = settings.local_recovery_delay if recovery_delay is None else recovery_delay
        self.preemptive = settings.preemptive_fallback if preemptive is None else preemptive
        self.backoff = backoff or BackoffPolicy.from_settings()
        self._clock = clock
        self._random = random_fn

        self._retry: Dict[str, RetryState] = {}
        self._routes: Dict[Optional[str], _RouteState] = {}
        self._current: Optional[str] = None

    # ------------------------------------------------------------------
    # Retry state
    # ------------------------------------------------------------------

    def note_failure(self, provider_id: str, at: Optional[float] = None) -> RetryState:
        """
        Register a failed request and schedule the next allowed attempt.

        Returns:
            Updated retry state
        """
        at = self._clock() if at is None else at
        previous = self._retry.get(provider_id, RetryState())
        failures = previous.consecutive_failures + 1
        delay = compute_backoff_delay(failures, self.backoff, self._random)
        state = RetryState(
            consecutive_failures=failures,
            last_failure_at=at,
            next_retry_at=at + delay
        )
        self._retry[provider_id] = state

        if state.exhausted(self.backoff.max_retries):
            logger.warning(
                f"Retry limit reached for {provider_id}",
                provider=provider_id,
                failures=failures
            )
        else:
            logger.info(
                f"Backing off {provider_id} for {delay:.2f}s",
                provider=provider_id,
                failures=failures
            )
        return state

    def note_success(self, provider_id: str) -> None:
        if self._retry.pop(provider_id, None) is not None:
            logger.info(f"Provider {provider_id} cleared its retry backoff", provider=provider_id)

    def retry_state(self, provider_id: str) -> RetryState:
        return self._retry.get(provider_id, RetryState())

    @property
    def current_provider(self) -> Optional[str]:
        """Provider chosen by the most recent automatic decision."""
        return self._current

    # ------------------------------------------------------------------
    # Eligibility and ranking
    # ------------------------------------------------------------------

    def _model_for(self, provider: Provider, request: SelectionRequest) -> Optional[str]:
        models = self.discovery.provider_models(provider.id)
        if request.model is None:
            return models[0] if models else None
        return request.model if request.model in models else None

    def _capability_gap(self, provider: Provider, model: str, request: SelectionRequest) -> Optional[str]:
        if request.requires_streaming and not provider.supports_streaming:
            return "does not support streaming"
        if request.requires_tools:
            if not provider.supports_tools:
                return "does not support tool calling"
            for entry in self.discovery.catalog.models_named(model):
                if entry.provider_id == provider.id and entry.supports_tools is False:
                    return f"model {model} does not support tool calling"
        return None

    def _static_gap(self, provider: Provider, request: SelectionRequest) -> Tuple[Optional[str], Optional[str]]:
        """(model, reason) where reason is set when the provider can never serve the request."""
        if not provider.enabled:
            return None, "disabled"
        model = self._model_for(provider, request)
        if model is None:
            if request.model is None:
                return None, "offers no models"
            return None, f"does not offer model {request.model}"
        return model, self._capability_gap(provider, model, request)

    def _health_gap(self, provider: Provider) -> Tuple[HealthStatus, Optional[str]]:
        status = self.monitor.status(provider.id)
        if status != HealthStatus.UNHEALTHY:
            return status, None
        if self.monitor.health(provider.id) is None:
            return status, "not yet probed"
        return status, "unhealthy"

    def _retry_gap(self, provider_id: str, now: float) -> Optional[str]:
        state = self._retry.get(provider_id)
        if state is None or state.consecutive_failures == 0:
            return None

        health = self.monitor.health(provider_id)
        if (
            health is not None
            and health.last_success is not None
            and state.last_failure_at is not None
            and health.last_success > state.last_failure_at
        ):
            return None

        if state.exhausted(self.backoff.max_retries):
            return f"retry limit reached after {state.consecutive_failures} failures"
        if state.next_retry_at is not None and now < state.next_retry_at:
            return f"in retry backoff for {state.next_retry_at - now:.1f}s"
        return None

    def _cost_rank(self, provider: Provider) -> int:
        if provider.is_local:
            return 0
        if provider.id in self.cost_ranking:
            return self.cost_ranking.index(provider.id) + 1
        return len(self.cost_ranking) + 1

    def _static_key(self, provider: Provider, order: int) -> Tuple:
        locality = 0 if (provider.is_local or not self.prefer_local) else 1
        return (locality, self._cost_rank(provider), order, provider.id)

    def _rank_key(self, provider: Provider, order: int, request: SelectionRequest, now: float) -> Tuple:
        budget_demoted = provider.is_cloud and self.budget.exceeded(now)
        trend_demoted = (
            self.preemptive and self.tracker.metrics(provider.id).latency_trend_rising
        )
        locality, cost, _, _ = self._static_key(provider, order)
        preference = self.patterns.score(provider.id, request.model, request.workload, at=now)
        return (
            int(budget_demoted),
            int(trend_demoted),
            locality,
            cost,
            -preference,
            order,
            provider.id,
        )

    def primary_for(self, request: SelectionRequest) -> Optional[Provider]:
        """Top provider by static preference among those able to serve the request, health ignored."""
        best = None
        for order, provider in enumerate(self.discovery.providers):
            _, gap = self._static_gap(provider, request)
            if gap is not None:
                continue
            key = self._static_key(provider, order)
            if best is None or key < best[0]:
                best = (key, provider)
        return best[1] if best else None

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def select(self, request: SelectionRequest) -> SelectionDecision:
        """
        Choose a provider and model for a request.

        Args:
            request: Caller requirements

        Returns:
            Selection decision

        Raises:
            NoProviderAvailable: If every candidate was rejected
        """
        now = self._clock()
        rejections: List[Rejection] = []
        providers = self.discovery.providers

        if request.provider:
            decision = self._try_override(request, providers, rejections)
            if decision is not None:
                self._log_decision(decision)
                return decision

        if self.strategy == FallbackStrategy.NONE:
            decision = self._select_primary_only(request, rejections, now)
            self._remember(request, decision, now)
            self._log_decision(decision)
            return decision

        ranked: List[_Ranked] = []
        for order, provider in enumerate(providers):
            model, gap = self._static_gap(provider, request)
            if gap is not None:
                rejections.append(Rejection(provider.id, gap))
                continue
            status, gap = self._health_gap(provider)
            if gap is None and status == HealthStatus.DEGRADED and self.strategy == FallbackStrategy.IMMEDIATE:
                gap = "degraded (immediate strategy skips non-healthy providers)"
            if gap is None:
                gap = self._retry_gap(provider.id, now)
            if gap is not None:
                rejections.append(Rejection(provider.id, gap))
                continue
            ranked.append(_Ranked(
                provider=provider,
                model=model,
                status=status,
                key=self._rank_key(provider, order, request, now)
            ))

        if not ranked:
            subject = f"model {request.model}" if request.model else "this request"
            logger.warning(
                f"No provider available for {subject}",
                rejections=[str(r) for r in rejections]
            )
            raise NoProviderAvailable(f"No provider available for {subject}", rejections)

        ranked.sort(key=lambda r: r.key)
        primary = self.primary_for(request)

        if self.strategy == FallbackStrategy.MANUAL:
            decision = self._manual_decision(ranked, primary, rejections, now)
            if not decision.requires_confirmation:
                self._remember(request, decision, now)
            self._log_decision(decision)
            return decision

        chosen, reason = self._apply_auto_return(request, ranked, primary, now)
        decision = self._decision(chosen, ranked, primary, reason, rejections, now)
        self._remember(request, decision, now)
        self._log_decision(decision)
        return decision

    def _try_override(
        self,
        request: SelectionRequest,
        providers: List[Provider],
        rejections: List[Rejection]
    ) -> Optional[SelectionDecision]:
        provider = next((p for p in providers if p.id == request.provider), None)
        if provider is None:
            rejections.append(Rejection(request.provider, "override rejected: unknown provider"))
            return None

        model, gap = self._static_gap(provider, request)
        status = self.monitor.status(provider.id)
        if gap is None:
            status, gap = self._health_gap(provider)
        if gap is not None:
            rejections.append(Rejection(provider.id, f"override rejected: {gap}"))
            return None

        warnings = self._status_warnings(provider, status)
        return SelectionDecision(
            provider=provider,
            model=model,
            strategy=self.strategy,
            reason="explicit override",
            warnings=warnings,
        )

    def _select_primary_only(
        self,
        request: SelectionRequest,
        rejections: List[Rejection],
        now: float
    ) -> SelectionDecision:
        primary = self.primary_for(request)
        if primary is None:
            for provider in self.discovery.providers:
                _, gap = self._static_gap(provider, request)
                rejections.append(Rejection(provider.id, gap or "not eligible"))
            raise NoProviderAvailable("No provider can serve this request", rejections)

        status = self.monitor.status(primary.id)
        gap = None
        if status != HealthStatus.HEALTHY:
            gap = f"{status.value} and fallback is disabled"
        else:
            gap = self._retry_gap(primary.id, now)
        if gap is not None:
            rejections.append(Rejection(primary.id, gap))
            raise NoProviderAvailable(f"Primary provider {primary.id} is unavailable", rejections)

        return SelectionDecision(
            provider=primary,
            model=self._model_for(primary, request),
            strategy=self.strategy,
            reason=f"primary provider {primary.id}",
            rejections=tuple(rejections),
        )

    def _manual_decision(
        self,
        ranked: List[_Ranked],
        primary: Optional[Provider],
        rejections: List[Rejection],
        now: float
    ) -> SelectionDecision:
        top = ranked[0]
        automatic = (
            primary is not None
            and top.provider.id == primary.id
            and top.status == HealthStatus.HEALTHY
        )
        if automatic:
            return self._decision(top, ranked, primary, f"primary provider {primary.id}", rejections, now)

        reason = (
            f"primary provider {primary.id} is not available; confirm a fallback"
            if primary is not None and top.provider.id != primary.id
            else f"provider {top.provider.id} is {top.status.value}; confirm before use"
        )
        decision = self._decision(top, ranked, primary, reason, rejections, now)
        return SelectionDecision(
            provider=decision.provider,
            model=decision.model,
            strategy=decision.strategy,
            reason=decision.reason,
            warnings=decision.warnings,
            is_fallback=decision.is_fallback,
            requires_confirmation=True,
            alternatives=decision.alternatives,
            rejections=decision.rejections,
        )

    def _apply_auto_return(
        self,
        request: SelectionRequest,
        ranked: List[_Ranked],
        primary: Optional[Provider],
        now: float
    ) -> Tuple[_Ranked, str]:
        """Pick between the top candidate and the fallback currently in use."""
        top = ranked[0]
        route = self._routes.get(request.model)
        on_fallback = (
            route is not None
            and route.current is not None
            and route.fallback_since is not None
            and route.current != top.provider.id
        )

        if not on_fallback or primary is None or top.provider.id != primary.id:
            if route is not None:
                route.primary_back_since = None
            if primary is not None and top.provider.id != primary.id:
                return top, f"fallback from {primary.id}"
            return top, self._preferred_reason(top)

        current = next((r for r in ranked if r.provider.id == route.current), None)
        if current is None:
            return top, f"returned to preferred provider {top.provider.id}"

        if not self.auto_return:
            return current, f"staying on fallback {current.provider.id}; auto-return is disabled"

        back_since = route.primary_back_since if route.primary_back_since is not None else now
        route.primary_back_since = back_since
        waited = now - back_since
        if waited < self.recovery_delay:
            return current, (
                f"staying on fallback {current.provider.id} until {top.provider.id} "
                f"has been usable for {self.recovery_delay:.0f}s"
            )

        return top, f"returned to preferred provider {top.provider.id} after fallback to {current.provider.id}"

    def _preferred_reason(self, top: _Ranked) -> str:
        if top.provider.is_local and self.prefer_local:
            return f"preferred local provider {top.provider.id}"
        return f"highest ranked provider {top.provider.id}"

    def _status_warnings(self, provider: Provider, status: HealthStatus) -> Tuple[str, ...]:
        if status == HealthStatus.DEGRADED:
            return (f"provider {provider.id} is degraded; responses may be slow or fail",)
        return ()

    def _decision(
        self,
        chosen: _Ranked,
        ranked: List[_Ranked],
        primary: Optional[Provider],
        reason: str,
        rejections: List[Rejection],
        now: float
    ) -> SelectionDecision:
        warnings = list(self._status_warnings(chosen.provider, chosen.status))
        if self.preemptive and self.tracker.metrics(chosen.provider.id).latency_trend_rising:
            warnings.append(f"latency of {chosen.provider.id} is trending upward")
        if self.budget.exceeded(now):
            if chosen.provider.is_cloud:
                warnings.append("daily budget exceeded; no local provider is available")
            else:
                warnings.append("daily budget exceeded; cloud providers demoted")

        return SelectionDecision(
            provider=chosen.provider,
            model=chosen.model,
            strategy=self.strategy,
            reason=reason,
            warnings=tuple(warnings),
            is_fallback=primary is not None and chosen.provider.id != primary.id,
            alternatives=tuple(r.candidate() for r in ranked if r is not chosen),
            rejections=tuple(rejections),
        )

    def _remember(self, request: SelectionRequest, decision: SelectionDecision, now: float) -> None:
        route = self._routes.setdefault(request.model, _RouteState())
        if decision.is_fallback:
            if route.fallback_since is None:
                route.fallback_since = now
            if route.current != decision.provider_id:
                logger.warning(
                    f"Falling back to {decision.provider_id}",
                    provider=decision.provider_id,
                    model=decision.model,
                    reason=decision.reason
                )
        else:
            route.fallback_since = None
            route.primary_back_since = None
        route.current = decision.provider_id
        self._current = decision.provider_id

    def _log_decision(self, decision: SelectionDecision) -> None:
        logger.info(
            f"Selected provider: {decision.provider_id}",
            provider=decision.provider_id,
            model=decision.model,
            strategy=decision.strategy.value,
            reason=decision.reason,
            fallback=decision.is_fallback,
            requires_confirmation=decision.requires_confirmation,
            warnings=list(decision.warnings)
        )
