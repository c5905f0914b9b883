"""
Health monitoring for providers.
"""
import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional, Tuple, TypeVar

from llm_failover.core.config import settings
from llm_failover.core.deadline import run_with_deadline
from llm_failover.core.errors import ConfigurationInvalid, ProbeErrorKind, classify_exception
from llm_failover.core.logger import get_logger
from llm_failover.providers.base import BaseProvider, ProbeInfo, Provider
from llm_failover.providers.factory import ProviderFactory

logger = get_logger(__name__)


class HealthStatus(str, Enum):
    """Provider health classification."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


_STATUS_ORDER = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.DEGRADED: 1,
    HealthStatus.UNHEALTHY: 2,
}


@dataclass(frozen=True)
class HealthCheckResult:
    """Outcome of one probe."""
    timestamp: float
    success: bool
    latency_ms: float
    error_kind: Optional[ProbeErrorKind] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class ProviderHealth:
    """Immutable health snapshot for one provider."""
    provider_id: str
    status: HealthStatus
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    # Same-direction results since the last status change
    transition_progress: int = 0
    history: Tuple[HealthCheckResult, ...] = ()
    last_checked: Optional[float] = None
    last_success: Optional[float] = None
    last_error: Optional[str] = None

    @property
    def is_usable(self) -> bool:
        return self.status != HealthStatus.UNHEALTHY

    @property
    def success_rate(self) -> float:
        if not self.history:
            return 0.0
        return sum(1 for r in self.history if r.success) / len(self.history)

    @property
    def avg_latency_ms(self) -> float:
        if not self.history:
            return 0.0
        return sum(r.latency_ms for r in self.history) / len(self.history)


@dataclass(frozen=True)
class ProbeResult:
    """What a single probe observed and the status it led to."""
    provider_id: str
    success: bool
    latency_ms: float
    status: HealthStatus
    error_kind: Optional[ProbeErrorKind] = None
    error: Optional[str] = None
    info: Optional[ProbeInfo] = None


def advance_health(
    current: Optional[ProviderHealth],
    provider_id: str,
    result: HealthCheckResult,
    failure_threshold: int,
    success_threshold: int,
    history_size: int
) -> ProviderHealth:
    """
    Apply one check result to the health state machine.

    The first result seeds the state (success -> healthy, failure ->
    unhealthy). After that, status moves one step at a time:
    healthy -> degraded -> unhealthy after ``failure_threshold`` consecutive
    failures per step, and back after ``success_threshold`` consecutive
    successes per step.

    Args:
        current: Previous snapshot, None if never checked
        provider_id: Provider identifier
        result: New check result
        failure_threshold: Failures needed per downward step
        success_threshold: Successes needed per upward step
        history_size: Ring buffer capacity

    Returns:
        New snapshot
    """
    if current is None:
        return ProviderHealth(
            provider_id=provider_id,
            status=HealthStatus.HEALTHY if result.success else HealthStatus.UNHEALTHY,
            consecutive_failures=0 if result.success else 1,
            consecutive_successes=1 if result.success else 0,
            history=(result,),
            last_checked=result.timestamp,
            last_success=result.timestamp if result.success else None,
            last_error=result.error,
        )

    same_direction = bool(current.history) and current.history[-1].success == result.success
    progress = current.transition_progress + 1 if same_direction else 1
    status = current.status

    if result.success:
        consecutive_successes = current.consecutive_successes + 1
        consecutive_failures = 0
        if status != HealthStatus.HEALTHY and progress >= success_threshold:
            status = (
                HealthStatus.DEGRADED if status == HealthStatus.UNHEALTHY
                else HealthStatus.HEALTHY
            )
    else:
        consecutive_failures = current.consecutive_failures + 1
        consecutive_successes = 0
        if status != HealthStatus.UNHEALTHY and progress >= failure_threshold:
            status = (
                HealthStatus.DEGRADED if status == HealthStatus.HEALTHY
                else HealthStatus.UNHEALTHY
            )

    if status != current.status:
        progress = 0

    return ProviderHealth(
        provider_id=provider_id,
        status=status,
        consecutive_failures=consecutive_failures,
        consecutive_successes=consecutive_successes,
        transition_progress=progress,
        history=(current.history + (result,))[-history_size:],
        last_checked=result.timestamp,
        last_success=result.timestamp if result.success else current.last_success,
        last_error=result.error if not result.success else current.last_error,
    )


T = TypeVar("T")


def _pick(value: Optional[T], default: T) -> T:
    """Explicit value when given (zero included), else the configured default."""
    return default if value is None else value


class HealthMonitor:
    """
    Probes providers and tracks their health.

    Features:
    - Double-guarded probes (client timeout + supervisory deadline)
    - Healthy/degraded/unhealthy state machine with hysteresis
    - Bounded rolling check history
    - Copy-then-swap snapshots for lock-free readers
    - Optional periodic background checks
    """

    def __init__(
        self,
        failure_threshold: Optional[int] = None,
        success_threshold: Optional[int] = None,
        probe_timeout: Optional[float] = None,
        outer_timeout: Optional[float] = None,
        history_size: Optional[int] = None,
        check_interval: Optional[int] = None,
        max_concurrency: Optional[int] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize health monitor; unset values come from settings.

        Raises:
            ConfigurationInvalid: If a threshold or timeout is out of range
        """
        self.failure_threshold = _pick(failure_threshold, settings.health_failure_threshold)
        self.success_threshold = _pick(success_threshold, settings.health_success_threshold)
        self.probe_timeout = _pick(probe_timeout, settings.probe_timeout)
        self.outer_timeout = _pick(outer_timeout, settings.probe_outer_timeout)
        self.history_size = _pick(history_size, settings.health_history_size)
        self.check_interval = _pick(check_interval, settings.health_check_interval)
        self.max_concurrency = _pick(max_concurrency, settings.health_max_concurrency)
        self._clock = clock

        if self.failure_threshold < 1 or self.success_threshold < 1:
            raise ConfigurationInvalid("health thresholds must be at least 1")
        if self.probe_timeout <= 0:
            raise ConfigurationInvalid("probe_timeout must be positive")
        if self.outer_timeout < self.probe_timeout:
            raise ConfigurationInvalid("outer_timeout must be >= probe_timeout")
        if self.history_size < 1 or self.check_interval < 1 or self.max_concurrency < 1:
            raise ConfigurationInvalid("history_size, check_interval and max_concurrency must be at least 1")

        self._providers: Dict[str, Provider] = {}
        self._clients: Dict[str, BaseProvider] = {}
        self._health: Mapping[str, ProviderHealth] = MappingProxyType({})
        self._next_due: Dict[str, float] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, provider: Provider, client: Optional[BaseProvider] = None) -> BaseProvider:
        """
        Register a provider (idempotent) and return its client.

        Args:
            provider: Provider descriptor
            client: Client to use; created through the factory when omitted
        """
        if provider.id in self._clients and client is None:
            return self._clients[provider.id]
        self._providers[provider.id] = provider
        self._clients[provider.id] = client or ProviderFactory.create_client(provider)
        return self._clients[provider.id]

    async def unregister(self, provider_id: str) -> None:
        """Stop tracking a provider and close its client."""
        self._providers.pop(provider_id, None)
        self.reset(provider_id)
        client = self._clients.pop(provider_id, None)
        if client is not None:
            try:
                await client.close()
            except Exception as e:
                logger.warning("Failed to close provider client", provider=provider_id, error=str(e))

    def client(self, provider_id: str) -> Optional[BaseProvider]:
        return self._clients.get(provider_id)

    @property
    def providers(self) -> List[Provider]:
        return list(self._providers.values())

    # ------------------------------------------------------------------
    # Probing
    # ------------------------------------------------------------------

    async def probe(self, provider: Provider) -> ProbeResult:
        """
        Probe a single provider.

        Never raises for provider-side failures: timeouts, refused
        connections and protocol errors are recorded into health state.

        Args:
            provider: Provider to probe

        Returns:
            Probe result including the resulting status
        """
        client = self.register(provider)
        start = time.monotonic()
        info: Optional[ProbeInfo] = None
        error_kind: Optional[ProbeErrorKind] = None
        error: Optional[str] = None

        try:
            info = await run_with_deadline(
                client.probe(timeout=self.probe_timeout),
                self.outer_timeout
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error_kind = classify_exception(e)
            error = str(e) or type(e).__name__

        latency_ms = (time.monotonic() - start) * 1000
        health = self.record_result(
            provider.id,
            success=error_kind is None,
            latency_ms=latency_ms,
            error_kind=error_kind,
            error=error
        )

        if error_kind is None:
            logger.debug("Probe succeeded", provider=provider.id, latency_ms=round(latency_ms, 1))
        else:
            logger.warning(
                f"Probe failed for {provider.id}: {error}",
                provider=provider.id,
                error_kind=error_kind.value,
                latency_ms=round(latency_ms, 1)
            )

        return ProbeResult(
            provider_id=provider.id,
            success=error_kind is None,
            latency_ms=latency_ms,
            status=health.status,
            error_kind=error_kind,
            error=error,
            info=info
        )

    def record_result(
        self,
        provider_id: str,
        success: bool,
        latency_ms: float,
        error_kind: Optional[ProbeErrorKind] = None,
        error: Optional[str] = None
    ) -> ProviderHealth:
        """
        Feed one check result through the state machine and publish a new snapshot.

        Args:
            provider_id: Provider identifier
            success: Whether the check succeeded
            latency_ms: Observed latency, recorded for failures as well
            error_kind: Failure classification
            error: Failure message

        Returns:
            Updated health snapshot
        """
        provider = self._providers.get(provider_id)
        failure_threshold = (provider and provider.failure_threshold) or self.failure_threshold
        success_threshold = (provider and provider.success_threshold) or self.success_threshold

        result = HealthCheckResult(
            timestamp=self._clock(),
            success=success,
            latency_ms=latency_ms,
            error_kind=error_kind,
            error=error
        )

        current = self._health.get(provider_id)
        updated = advance_health(
            current,
            provider_id,
            result,
            failure_threshold=failure_threshold,
            success_threshold=success_threshold,
            history_size=self.history_size
        )

        health = dict(self._health)
        health[provider_id] = updated
        self._health = MappingProxyType(health)

        previous = current.status if current else None
        if previous != updated.status:
            self._log_transition(provider_id, previous, updated)

        return updated

    def _log_transition(
        self,
        provider_id: str,
        previous: Optional[HealthStatus],
        updated: ProviderHealth
    ) -> None:
        fields = {
            "provider": provider_id,
            "from_status": previous.value if previous else None,
            "to_status": updated.status.value,
            "consecutive_failures": updated.consecutive_failures,
            "consecutive_successes": updated.consecutive_successes,
        }
        if previous is not None and _STATUS_ORDER[updated.status] > _STATUS_ORDER[previous]:
            logger.warning(f"Provider {provider_id} is now {updated.status.value}", **fields)
        else:
            logger.info(f"Provider {provider_id} is now {updated.status.value}", **fields)

    async def check_all(self) -> Dict[str, ProbeResult]:
        """
        Probe every registered, enabled provider concurrently.

        Returns:
            Probe results keyed by provider id
        """
        providers = [p for p in self._providers.values() if p.enabled]
        if not providers:
            logger.debug("No enabled providers to check")
            return {}

        return await self._probe_many(providers)

    async def check_due(self) -> Dict[str, ProbeResult]:
        """Probe providers whose per-provider interval has elapsed."""
        now = self._clock()
        due = [
            p for p in self._providers.values()
            if p.enabled and self._next_due.get(p.id, 0.0) <= now
        ]
        if not due:
            return {}

        for provider in due:
            self._next_due[provider.id] = now + (provider.health_check_interval or self.check_interval)

        return await self._probe_many(due)

    async def _probe_many(self, providers: List[Provider]) -> Dict[str, ProbeResult]:
        """Probe providers as independent tasks, at most ``max_concurrency`` at a time."""
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def bounded(provider: Provider) -> ProbeResult:
            async with semaphore:
                return await self.probe(provider)

        results = await asyncio.gather(*(bounded(p) for p in providers))
        return {result.provider_id: result for result in results}

    async def start(self) -> None:
        """Run periodic health checks until cancelled."""
        logger.info(f"Starting health monitor (interval: {self.check_interval}s)")

        while True:
            try:
                await self.check_due()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Health check loop error: {str(e)}", exc_info=True)

            await asyncio.sleep(self._tick())

    def _tick(self) -> float:
        """Seconds until the next provider is due, clamped to [1, interval]."""
        if not self._next_due:
            return float(self.check_interval)
        wait = min(self._next_due.values()) - self._clock()
        return min(max(wait, 1.0), float(self.check_interval))

    # ------------------------------------------------------------------
    # Readers (no I/O)
    # ------------------------------------------------------------------

    def snapshot(self) -> Mapping[str, ProviderHealth]:
        """Current immutable health table."""
        return self._health

    def health(self, provider_id: str) -> Optional[ProviderHealth]:
        return self._health.get(provider_id)

    def status(self, provider_id: str) -> HealthStatus:
        """
        Current status for a provider.

        Providers that have never been probed are reported unhealthy.
        """
        health = self._health.get(provider_id)
        return health.status if health else HealthStatus.UNHEALTHY

    def is_usable(self, provider_id: str) -> bool:
        return self.status(provider_id) != HealthStatus.UNHEALTHY

    def providers_by_health(self) -> List[Tuple[str, HealthStatus]]:
        """Known providers sorted healthy first, then degraded, then unhealthy."""
        entries = [(pid, self.status(pid)) for pid in self._providers]
        return sorted(entries, key=lambda entry: _STATUS_ORDER[entry[1]])

    def reset(self, provider_id: str) -> None:
        """Forget a provider's health history."""
        health = dict(self._health)
        health.pop(provider_id, None)
        self._health = MappingProxyType(health)
        self._next_due.pop(provider_id, None)

    async def close(self) -> None:
        """Close all provider clients."""
        for client in self._clients.values():
            try:
                await client.close()
            except Exception as e:
                logger.warning("Failed to close provider client", provider=client.name, error=str(e))
