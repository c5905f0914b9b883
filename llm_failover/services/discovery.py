"""
Model discovery across configured and auto-detected providers.

A discovery round probes every candidate through the health monitor,
lists models from the reachable ones and commits an immutable catalog.
Readers only ever see a complete catalog.
"""
import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from llm_failover.core.cache import RedisCache, health_cache_key, model_list_cache_key
from llm_failover.core.config import settings
from llm_failover.core.deadline import abandon, run_with_deadline
from llm_failover.core.errors import ConfigurationInvalid, ModelNotFound, ProbeErrorKind
from llm_failover.core.logger import get_logger
from llm_failover.providers.base import ModelInfo, Provider, ProviderKind
from llm_failover.services.health_check import HealthMonitor, HealthStatus, ProbeResult

logger = get_logger(__name__)


@dataclass(frozen=True)
class DiscoveredModel:
    """A model offered by one provider at discovery time."""
    name: str
    provider_id: str
    provider_kind: ProviderKind
    provider_status: HealthStatus
    context_length: Optional[int] = None
    supports_tools: Optional[bool] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def available(self) -> bool:
        return self.provider_status != HealthStatus.UNHEALTHY

    @property
    def reduced_confidence(self) -> bool:
        return self.provider_status == HealthStatus.DEGRADED


@dataclass(frozen=True)
class ProviderEntry:
    """Discovery outcome for one provider."""
    provider_id: str
    kind: ProviderKind
    status: HealthStatus
    endpoint: str
    models: Tuple[str, ...] = ()
    latency_ms: Optional[float] = None
    error: Optional[str] = None
    auto_discovered: bool = False
    warnings: Tuple[str, ...] = ()

    @property
    def model_count(self) -> int:
        return len(self.models)


@dataclass(frozen=True)
class DiscoveryStats:
    """Figures derived from a catalog."""
    total_providers: int
    healthy_providers: int
    degraded_providers: int
    unhealthy_providers: int
    total_models: int
    available_models: int
    availability_ratio: float
    models_per_provider: Dict[str, int]


@dataclass(frozen=True)
class DiscoveryCatalog:
    """Immutable result of one discovery round."""
    models: Tuple[DiscoveredModel, ...]
    providers: Tuple[ProviderEntry, ...]
    created_at: float
    ttl: float
    generation: int
    duration_ms: float = 0.0
    warnings: Tuple[str, ...] = ()

    def is_fresh(self, now: float) -> bool:
        return now - self.created_at < self.ttl

    def available_models(self) -> List[DiscoveredModel]:
        return [m for m in self.models if m.available]

    def models_named(self, name: str) -> List[DiscoveredModel]:
        return [m for m in self.models if m.name == name]

    def provider(self, provider_id: str) -> Optional[ProviderEntry]:
        for entry in self.providers:
            if entry.provider_id == provider_id:
                return entry
        return None

    def stats(self) -> DiscoveryStats:
        statuses = [entry.status for entry in self.providers]
        available = len(self.available_models())
        return DiscoveryStats(
            total_providers=len(self.providers),
            healthy_providers=statuses.count(HealthStatus.HEALTHY),
            degraded_providers=statuses.count(HealthStatus.DEGRADED),
            unhealthy_providers=statuses.count(HealthStatus.UNHEALTHY),
            total_models=len(self.models),
            available_models=available,
            availability_ratio=available / len(self.models) if self.models else 0.0,
            models_per_provider={e.provider_id: e.model_count for e in self.providers},
        )


def _empty_catalog(ttl: float) -> DiscoveryCatalog:
    return DiscoveryCatalog(models=(), providers=(), created_at=0.0, ttl=ttl, generation=0)


def _port(provider: Provider) -> str:
    return provider.endpoint.rsplit(":", 1)[-1]


class ModelDiscoveryService:
    """
    Builds and caches the model catalog.

    Features:
    - Concurrent probes bounded by a semaphore
    - Overall wall-clock ceiling per round; stragglers are abandoned
    - TTL cache with join-in-flight and last-writer-wins commits
    - Auto-detection of local Ollama servers
    - Optional catalog publication to Redis
    """

    def __init__(
        self,
        monitor: HealthMonitor,
        providers: List[Provider],
        cache: Optional[RedisCache] = None,
        ttl: Optional[float] = None,
        ceiling: Optional[float] = None,
        max_concurrency: Optional[int] = None,
        auto_discovery: Optional[bool] = None,
        auto_hosts: Optional[List[str]] = None,
        auto_ports: Optional[List[int]] = None,
        clock: Callable[[], float] = time.time
    ):
        """Initialize discovery service; unset values come from settings."""
        self.monitor = monitor
        self.cache = cache
        self.ttl = settings.discovery_ttl if ttl is None else ttl
        self.ceiling = settings.discovery_ceiling if ceiling is None else ceiling
        self.max_concurrency = (
            settings.discovery_max_concurrency if max_concurrency is None else max_concurrency
        )
        if self.max_concurrency < 1:
            raise ConfigurationInvalid("max_concurrency must be at least 1")
        self.auto_discovery = (
            settings.auto_discovery_enabled if auto_discovery is None else auto_discovery
        )
        self.auto_hosts = settings.auto_discovery_hosts if auto_hosts is None else auto_hosts
        self.auto_ports = settings.auto_discovery_ports if auto_ports is None else auto_ports
        self._clock = clock

        self._providers: List[Provider] = list(providers)
        self._catalog: Optional[DiscoveryCatalog] = None
        self._detected: Tuple[Provider, ...] = ()
        self._generation = 0
        self._inflight: Optional["asyncio.Task[DiscoveryCatalog]"] = None
        self._background: Set["asyncio.Task[None]"] = set()

        for provider in self._providers:
            if provider.enabled:
                self.monitor.register(provider)

    # ------------------------------------------------------------------
    # Candidates
    # ------------------------------------------------------------------

    @property
    def providers(self) -> List[Provider]:
        """Configured providers in configuration order, then auto-detected ones."""
        return list(self._providers) + list(self._detected)

    def auto_candidates(self) -> List[Provider]:
        """
        Well-known local endpoints, tried only without explicit local configuration.

        A port whose server was already detected is represented by that
        provider alone; its other host aliases are not probed again.
        """
        if not self.auto_discovery or any(p.is_local for p in self._providers):
            return []
        configured = {p.id for p in self._providers}
        known = {_port(p): p for p in self._detected}
        candidates = []
        for port in self.auto_ports:
            if str(port) in known:
                candidates.append(known[str(port)])
                continue
            for host in self.auto_hosts:
                provider_id = f"ollama-auto-{host}-{port}"
                if provider_id in configured:
                    continue
                candidates.append(Provider(
                    id=provider_id,
                    kind=ProviderKind.LOCAL,
                    endpoint=f"http://{host}:{port}",
                    provider_type="ollama",
                    auto_discovered=True,
                ))
        return candidates

    def candidate_providers(self) -> List[Provider]:
        """Enabled configured providers followed by auto-detection candidates."""
        return [p for p in self._providers if p.enabled] + self.auto_candidates()

    # ------------------------------------------------------------------
    # Rounds
    # ------------------------------------------------------------------

    async def discover(self) -> DiscoveryCatalog:
        """
        Return the cached catalog while fresh, join a running round, or start one.

        Returns:
            Current catalog
        """
        catalog = self._catalog
        if catalog is not None and catalog.is_fresh(self._clock()):
            return catalog
        if self._inflight is not None and not self._inflight.done():
            return await self._follow(self._inflight)
        return await self.refresh()

    async def refresh(self) -> DiscoveryCatalog:
        """
        Force a new discovery round.

        Only the most recently started round commits; a superseded caller
        receives the newest catalog.
        """
        self._generation += 1
        task = asyncio.ensure_future(self._run_round(self._generation))
        self._inflight = task
        return await self._follow(task)

    async def _follow(self, task: "asyncio.Task[DiscoveryCatalog]") -> DiscoveryCatalog:
        catalog = await asyncio.shield(task)
        while self._inflight is not None and self._inflight is not task:
            task = self._inflight
            catalog = await asyncio.shield(task)
        return catalog

    async def _run_round(self, generation: int) -> DiscoveryCatalog:
        start = time.monotonic()
        candidates = self.candidate_providers()
        logger.info(
            "Starting discovery round",
            generation=generation,
            candidates=len(candidates)
        )

        semaphore = asyncio.Semaphore(self.max_concurrency)
        probes: Dict[str, ProbeResult] = {}
        tasks = {
            asyncio.ensure_future(self._discover_provider(p, semaphore, probes)): p
            for p in candidates
        }

        entries: Dict[str, ProviderEntry] = {}
        models: Dict[str, Tuple[DiscoveredModel, ...]] = {}
        if tasks:
            done, pending = await asyncio.wait(tasks.keys(), timeout=self.ceiling)
            for task in done:
                provider = tasks[task]
                if task.exception() is not None:
                    logger.error(
                        f"Discovery failed for {provider.id}",
                        provider=provider.id,
                        error=str(task.exception())
                    )
                    entries[provider.id] = self._failed_entry(provider, str(task.exception()))
                    continue
                entry, found = task.result()
                entries[provider.id] = entry
                models[provider.id] = found
            for task in pending:
                abandon(task)
                provider = tasks[task]
                entry, found = self._straggler(provider, probes.get(provider.id))
                entries[provider.id] = entry
                models[provider.id] = found
            if pending:
                logger.warning(
                    "Discovery ceiling reached; abandoned slow providers",
                    ceiling=self.ceiling,
                    abandoned=[tasks[t].id for t in pending]
                )

        ordered_entries, ordered_models, detected = await self._assemble(candidates, entries, models)
        warnings = tuple(
            f"{entry.provider_id}: {warning}"
            for entry in ordered_entries for warning in entry.warnings
        )
        catalog = DiscoveryCatalog(
            models=ordered_models,
            providers=ordered_entries,
            created_at=self._clock(),
            ttl=self.ttl,
            generation=generation,
            duration_ms=(time.monotonic() - start) * 1000,
            warnings=warnings,
        )

        if generation == self._generation:
            self._catalog = catalog
            self._detected = detected
            stats = catalog.stats()
            logger.info(
                "Discovery round committed",
                generation=generation,
                providers=stats.total_providers,
                healthy=stats.healthy_providers,
                available_models=stats.available_models,
                duration_ms=round(catalog.duration_ms, 1)
            )
            self._schedule_publish(catalog)
        else:
            logger.info(
                "Discarding superseded discovery round",
                generation=generation,
                latest=self._generation
            )
        return catalog

    async def _discover_provider(
        self,
        provider: Provider,
        semaphore: asyncio.Semaphore,
        probes: Dict[str, ProbeResult]
    ) -> Tuple[ProviderEntry, Tuple[DiscoveredModel, ...]]:
        async with semaphore:
            result = await self.monitor.probe(provider)
            probes[provider.id] = result
            if not result.success:
                return self._build(provider, result.status, provider.models, result, ())

            warnings: Tuple[str, ...] = ()
            listed: List[ModelInfo] = []
            try:
                client = self.monitor.register(provider)
                listed = await run_with_deadline(
                    client.list_models(timeout=self.monitor.probe_timeout),
                    self.monitor.outer_timeout
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                warnings = (f"model listing failed ({e or type(e).__name__}); using configured models",)
                logger.warning(
                    f"Model listing failed for {provider.id}",
                    provider=provider.id,
                    error=str(e)
                )
            else:
                if not listed:
                    warnings = ("provider reported no models; using configured models",)

            if listed:
                return self._build(provider, self.monitor.status(provider.id), listed, result, warnings)
            return self._build(provider, self.monitor.status(provider.id), provider.models, result, warnings)

    def _build(
        self,
        provider: Provider,
        status: HealthStatus,
        models,
        result: Optional[ProbeResult],
        warnings: Tuple[str, ...]
    ) -> Tuple[ProviderEntry, Tuple[DiscoveredModel, ...]]:
        discovered = []
        seen = set()
        for model in models:
            info = model if isinstance(model, ModelInfo) else ModelInfo(name=model)
            if info.name in seen:
                continue
            seen.add(info.name)
            discovered.append(DiscoveredModel(
                name=info.name,
                provider_id=provider.id,
                provider_kind=provider.kind,
                provider_status=status,
                context_length=info.context_length,
                supports_tools=info.supports_tools,
                metadata=dict(info.metadata),
            ))

        entry = ProviderEntry(
            provider_id=provider.id,
            kind=provider.kind,
            status=status,
            endpoint=provider.endpoint,
            models=tuple(m.name for m in discovered),
            latency_ms=result.latency_ms if result else None,
            error=result.error if result else None,
            auto_discovered=provider.auto_discovered,
            warnings=warnings,
        )
        return entry, tuple(discovered)

    def _straggler(
        self,
        provider: Provider,
        probe: Optional[ProbeResult]
    ) -> Tuple[ProviderEntry, Tuple[DiscoveredModel, ...]]:
        """Entry for a provider whose discovery task hit the round ceiling."""
        if probe is None:
            self.monitor.record_result(
                provider.id,
                success=False,
                latency_ms=self.ceiling * 1000,
                error_kind=ProbeErrorKind.PROBE_TIMEOUT,
                error="Discovery ceiling reached before the probe finished"
            )
            status = self.monitor.status(provider.id)
            return self._build(provider, status, provider.models, None, ("probe abandoned at discovery ceiling",))

        status = self.monitor.status(provider.id)
        return self._build(
            provider,
            status,
            provider.models,
            probe,
            ("model listing abandoned at discovery ceiling; using configured models",)
        )

    def _failed_entry(self, provider: Provider, error: str) -> ProviderEntry:
        return ProviderEntry(
            provider_id=provider.id,
            kind=provider.kind,
            status=self.monitor.status(provider.id),
            endpoint=provider.endpoint,
            error=error,
            auto_discovered=provider.auto_discovered,
            warnings=("discovery failed",),
        )

    async def _assemble(
        self,
        candidates: List[Provider],
        entries: Dict[str, ProviderEntry],
        models: Dict[str, Tuple[DiscoveredModel, ...]]
    ) -> Tuple[Tuple[ProviderEntry, ...], Tuple[DiscoveredModel, ...], Tuple[Provider, ...]]:
        """
        Order results by candidate order and drop auto candidates that never answered.

        The same server usually answers on every host alias, so only the first
        responding host is kept per port. A server detected in an earlier round
        stays listed whatever this round's probe says; the health state machine
        classifies it from then on.
        """
        ordered_entries: List[ProviderEntry] = []
        ordered_models: List[DiscoveredModel] = []
        detected: List[Provider] = []
        known = {p.id for p in self._detected}
        detected_ports: Set[str] = {_port(p) for p in self._detected}

        for provider in candidates:
            entry = entries.get(provider.id)
            if entry is None:
                continue
            if provider.auto_discovered:
                if provider.id in known:
                    detected.append(provider)
                else:
                    port = _port(provider)
                    if entry.error is not None or entry.latency_ms is None or port in detected_ports:
                        await self.monitor.unregister(provider.id)
                        continue
                    detected_ports.add(port)
                    detected.append(provider)
                    logger.info("Auto-detected local provider", provider=provider.id, endpoint=provider.endpoint)
            ordered_entries.append(entry)
            ordered_models.extend(models.get(provider.id, ()))

        return tuple(ordered_entries), tuple(ordered_models), tuple(detected)

    # ------------------------------------------------------------------
    # Publication
    # ------------------------------------------------------------------

    def _schedule_publish(self, catalog: DiscoveryCatalog) -> None:
        if self.cache is None or not self.cache.available:
            return
        task = asyncio.ensure_future(self._publish(catalog))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _publish(self, catalog: DiscoveryCatalog) -> None:
        """Write the catalog summary to Redis for other processes."""
        models = [
            {
                "name": m.name,
                "provider": m.provider_id,
                "status": m.provider_status.value,
                "available": m.available,
            }
            for m in catalog.models
        ]
        try:
            await run_with_deadline(
                self.cache.set(model_list_cache_key(), models, ttl=int(self.ttl)),
                settings.redis_timeout
            )
            for entry in catalog.providers:
                await run_with_deadline(
                    self.cache.set(
                        health_cache_key(entry.provider_id),
                        {"status": entry.status.value, "models": entry.model_count},
                        ttl=int(self.ttl)
                    ),
                    settings.redis_timeout
                )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Failed to publish discovery catalog", error=str(e))

    # ------------------------------------------------------------------
    # Readers (no I/O)
    # ------------------------------------------------------------------

    @property
    def catalog(self) -> DiscoveryCatalog:
        """Last committed catalog; empty until the first round commits."""
        return self._catalog or _empty_catalog(self.ttl)

    def is_model_available(self, name: str) -> bool:
        return any(m.available for m in self.catalog.models_named(name))

    def list_models(self, available_only: bool = True) -> List[DiscoveredModel]:
        catalog = self.catalog
        return catalog.available_models() if available_only else list(catalog.models)

    def get_model(self, name: str) -> DiscoveredModel:
        """
        Best entry for a model name: an available provider first.

        Raises:
            ModelNotFound: If no provider offers the model
        """
        entries = self.catalog.models_named(name)
        if not entries:
            raise ModelNotFound(name)
        available = [m for m in entries if m.available]
        return (available or entries)[0]

    def providers_for_model(self, name: str) -> List[str]:
        return [m.provider_id for m in self.catalog.models_named(name)]

    def provider_models(self, provider_id: str) -> Tuple[str, ...]:
        """Models a provider offers according to the catalog, else its configuration."""
        entry = self.catalog.provider(provider_id)
        if entry is not None:
            return entry.models
        for provider in self.providers:
            if provider.id == provider_id:
                return provider.models
        return ()

    def stats(self) -> DiscoveryStats:
        return self.catalog.stats()

    async def close(self) -> None:
        """Cancel background publication tasks."""
        for task in list(self._background):
            task.cancel()
        if self._inflight is not None and not self._inflight.done():
            abandon(self._inflight)
