"""
Per-provider request performance tracking.
"""
import time
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from llm_failover.core.config import Settings, settings
from llm_failover.core.errors import ConfigurationInvalid
from llm_failover.core.logger import get_logger

logger = get_logger(__name__)


class Priority(str, Enum):
    """Urgency of a recommendation."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


_PRIORITY_ORDER = {
    Priority.CRITICAL: 0,
    Priority.HIGH: 1,
    Priority.MEDIUM: 2,
    Priority.LOW: 3,
}


class RecommendationType(str, Enum):
    LATENCY = "latency"
    RELIABILITY = "reliability"
    LATENCY_TREND = "latency_trend"


@dataclass(frozen=True)
class AlertThresholds:
    """Limits beyond which a provider gets a recommendation."""
    max_latency_ms: float = 5000.0
    min_success_rate: float = 0.95
    # Providers with fewer requests are not judged yet
    min_requests: int = 5

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "AlertThresholds":
        config = config or settings
        return cls(
            max_latency_ms=config.alert_max_latency_ms,
            min_success_rate=config.alert_min_success_rate,
            min_requests=config.alert_min_requests,
        )


@dataclass(frozen=True)
class BenchmarkTargets:
    """Latency and success rate a provider is expected to reach."""
    latency_ms: float = 500.0
    success_rate: float = 0.99

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "BenchmarkTargets":
        config = config or settings
        return cls(latency_ms=config.target_latency_ms, success_rate=config.target_success_rate)


@dataclass(frozen=True)
class Recommendation:
    """Something an operator should look at for one provider."""
    provider_id: str
    type: RecommendationType
    priority: Priority
    description: str
    suggested_action: str


@dataclass(frozen=True)
class BenchmarkComparison:
    """
    One provider measured against the targets.

    Ratios above 1.0 beat the target.
    """
    provider_id: str
    latency_ratio: float
    success_ratio: float
    meets_targets: bool

    @property
    def score(self) -> float:
        return 0.5 * self.latency_ratio + 0.5 * self.success_ratio


@dataclass(frozen=True)
class BenchmarkReport:
    comparisons: Tuple[BenchmarkComparison, ...]
    overall_score: float
    created_at: float


@dataclass(frozen=True)
class RequestOutcome:
    """Result of one completed request, reported by the caller."""
    success: bool
    latency_ms: float
    error_kind: Optional[str] = None
    model: Optional[str] = None
    workload: Optional[str] = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost_usd: Optional[float] = None


@dataclass(frozen=True)
class ProviderMetrics:
    """Rolling request metrics for one provider."""
    provider_id: str
    total_requests: int = 0
    failed_requests: int = 0
    avg_latency_ms: float = 0.0
    success_rate: float = 1.0
    min_latency_ms: Optional[float] = None
    max_latency_ms: Optional[float] = None
    consecutive_failures: int = 0
    last_success: Optional[bool] = None
    last_failure_at: Optional[float] = None
    last_updated: Optional[float] = None
    recent_latencies: Tuple[float, ...] = ()
    latency_sum: float = 0.0
    baseline_latency_ms: Optional[float] = None
    latency_trend_rising: bool = False

    @property
    def successful_requests(self) -> int:
        return self.total_requests - self.failed_requests

    @property
    def recent_avg_latency_ms(self) -> Optional[float]:
        if not self.recent_latencies:
            return None
        return sum(self.recent_latencies) / len(self.recent_latencies)

    @property
    def failure_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.failed_requests / self.total_requests


class PerformanceTracker:
    """
    Records request outcomes and exposes rolling aggregates.

    Latency and success rate are exponentially weighted. The last
    ``trend_window`` latencies are compared against the average of all older
    samples; a recent average above ``trend_multiplier`` times that baseline
    flags a rising trend.
    """

    def __init__(
        self,
        alpha: Optional[float] = None,
        trend_window: Optional[int] = None,
        trend_multiplier: Optional[float] = None,
        trend_min_baseline: Optional[int] = None,
        thresholds: Optional[AlertThresholds] = None,
        targets: Optional[BenchmarkTargets] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize tracker; unset values come from settings.

        Raises:
            ConfigurationInvalid: If a smoothing or trend parameter is out of range
        """
        self.alpha = settings.ewma_alpha if alpha is None else alpha
        self.trend_window = settings.trend_window if trend_window is None else trend_window
        self.trend_multiplier = settings.trend_multiplier if trend_multiplier is None else trend_multiplier
        self.trend_min_baseline = (
            settings.trend_min_baseline if trend_min_baseline is None else trend_min_baseline
        )
        self.thresholds = thresholds or AlertThresholds.from_settings()
        self.targets = targets or BenchmarkTargets.from_settings()
        self._clock = clock

        if not (0.0 < self.alpha <= 1.0):
            raise ConfigurationInvalid("alpha must be in (0, 1]")
        if self.trend_window < 1 or self.trend_min_baseline < 1:
            raise ConfigurationInvalid("trend_window and trend_min_baseline must be at least 1")
        if self.trend_multiplier <= 1.0:
            raise ConfigurationInvalid("trend_multiplier must be greater than 1")

        self._metrics: Mapping[str, ProviderMetrics] = MappingProxyType({})

    def record(self, provider_id: str, outcome: RequestOutcome) -> ProviderMetrics:
        """
        Record a completed request.

        Args:
            provider_id: Provider that served the request
            outcome: Request outcome

        Returns:
            Updated metrics for the provider
        """
        now = self._clock()
        current = self._metrics.get(provider_id) or ProviderMetrics(provider_id=provider_id)
        latency = max(0.0, float(outcome.latency_ms))
        total = current.total_requests + 1

        if current.total_requests == 0:
            avg_latency = latency
            success_rate = 1.0 if outcome.success else 0.0
        else:
            avg_latency = self.alpha * latency + (1 - self.alpha) * current.avg_latency_ms
            success_rate = (
                self.alpha * (1.0 if outcome.success else 0.0)
                + (1 - self.alpha) * current.success_rate
            )

        recent = (current.recent_latencies + (latency,))[-self.trend_window:]
        latency_sum = current.latency_sum + latency
        baseline = self._baseline(latency_sum, total, recent)
        rising = (
            baseline is not None
            and len(recent) == self.trend_window
            and sum(recent) / len(recent) > self.trend_multiplier * baseline
        )

        updated = ProviderMetrics(
            provider_id=provider_id,
            total_requests=total,
            failed_requests=current.failed_requests + (0 if outcome.success else 1),
            avg_latency_ms=avg_latency,
            success_rate=success_rate,
            min_latency_ms=latency if current.min_latency_ms is None else min(current.min_latency_ms, latency),
            max_latency_ms=latency if current.max_latency_ms is None else max(current.max_latency_ms, latency),
            consecutive_failures=0 if outcome.success else current.consecutive_failures + 1,
            last_success=outcome.success,
            last_failure_at=current.last_failure_at if outcome.success else now,
            last_updated=now,
            recent_latencies=recent,
            latency_sum=latency_sum,
            baseline_latency_ms=baseline,
            latency_trend_rising=rising,
        )

        if rising and not current.latency_trend_rising:
            logger.warning(
                f"Latency trend rising for {provider_id}",
                provider=provider_id,
                recent_avg_ms=round(updated.recent_avg_latency_ms or 0.0, 1),
                baseline_ms=round(baseline or 0.0, 1)
            )

        metrics = dict(self._metrics)
        metrics[provider_id] = updated
        self._metrics = MappingProxyType(metrics)
        return updated

    def _baseline(self, latency_sum: float, total: int, recent: Tuple[float, ...]) -> Optional[float]:
        """Average of all samples older than the recent window."""
        older = total - len(recent)
        if older < self.trend_min_baseline:
            return None
        return (latency_sum - sum(recent)) / older

    def metrics(self, provider_id: str) -> ProviderMetrics:
        """Metrics for a provider; zeroed metrics if nothing was recorded."""
        return self._metrics.get(provider_id) or ProviderMetrics(provider_id=provider_id)

    def snapshot(self) -> Mapping[str, ProviderMetrics]:
        return self._metrics

    def reset(self, provider_id: str) -> None:
        metrics = dict(self._metrics)
        metrics.pop(provider_id, None)
        self._metrics = MappingProxyType(metrics)

    def summary(self) -> Dict[str, float]:
        """Aggregate figures across all providers."""
        metrics = list(self._metrics.values())
        total = sum(m.total_requests for m in metrics)
        failed = sum(m.failed_requests for m in metrics)
        active = [m for m in metrics if m.total_requests > 0]
        return {
            "total_providers": len(metrics),
            "active_providers": len(active),
            "total_requests": total,
            "failed_requests": failed,
            "overall_success_rate": (total - failed) / total if total else 0.0,
            "overall_avg_latency_ms": (
                sum(m.avg_latency_ms for m in active) / len(active) if active else 0.0
            ),
        }

    def recommendations(self) -> List[Recommendation]:
        """
        Threshold-based advice for every provider with enough traffic.

        Slow and failing providers are judged once they have served
        ``thresholds.min_requests`` requests; a rising latency trend is
        reported whenever it is flagged. Most urgent first.
        """
        found: List[Recommendation] = []
        limits = self.thresholds
        for metrics in self._metrics.values():
            if metrics.total_requests >= limits.min_requests:
                if metrics.avg_latency_ms > limits.max_latency_ms:
                    found.append(Recommendation(
                        provider_id=metrics.provider_id,
                        type=RecommendationType.LATENCY,
                        priority=Priority.HIGH,
                        description=(
                            f"Average latency {metrics.avg_latency_ms:.0f}ms exceeds "
                            f"{limits.max_latency_ms:.0f}ms"
                        ),
                        suggested_action="Check the network path or rank a faster provider ahead of it",
                    ))
                if metrics.success_rate < limits.min_success_rate:
                    found.append(Recommendation(
                        provider_id=metrics.provider_id,
                        type=RecommendationType.RELIABILITY,
                        priority=Priority.CRITICAL,
                        description=(
                            f"Success rate {metrics.success_rate:.1%} is below "
                            f"{limits.min_success_rate:.1%}"
                        ),
                        suggested_action="Check provider health and keep a fallback provider configured",
                    ))
            if metrics.latency_trend_rising:
                found.append(Recommendation(
                    provider_id=metrics.provider_id,
                    type=RecommendationType.LATENCY_TREND,
                    priority=Priority.MEDIUM,
                    description=(
                        f"Recent latency {metrics.recent_avg_latency_ms or 0.0:.0f}ms is rising "
                        f"against a {metrics.baseline_latency_ms or 0.0:.0f}ms baseline"
                    ),
                    suggested_action="Requests are being steered away; check the provider's load",
                ))

        found.sort(key=lambda r: (_PRIORITY_ORDER[r.priority], r.provider_id))
        return found

    def benchmark(self) -> BenchmarkReport:
        """Compare every provider with traffic against the benchmark targets."""
        targets = self.targets
        comparisons = []
        for metrics in sorted(self._metrics.values(), key=lambda m: m.provider_id):
            if metrics.total_requests == 0:
                continue
            latency_ratio = (
                targets.latency_ms / metrics.avg_latency_ms if metrics.avg_latency_ms > 0 else 1.0
            )
            comparisons.append(BenchmarkComparison(
                provider_id=metrics.provider_id,
                latency_ratio=latency_ratio,
                success_ratio=metrics.success_rate / targets.success_rate,
                meets_targets=(
                    metrics.avg_latency_ms <= targets.latency_ms
                    and metrics.success_rate >= targets.success_rate
                ),
            ))

        overall = sum(c.score for c in comparisons) / len(comparisons) if comparisons else 0.0
        return BenchmarkReport(
            comparisons=tuple(comparisons),
            overall_score=overall,
            created_at=self._clock(),
        )
