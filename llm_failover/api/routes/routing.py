"""
Routing API routes: health, discovery, selection and outcome feedback.
"""
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, status

from llm_failover.api.dependencies import get_routing_service
from llm_failover.api.schemas import (
    BudgetStatus,
    DiscoveryResponse,
    ErrorResponse,
    HealthResponse,
    OutcomeRequest,
    OutcomeResponse,
    PerformanceResponse,
    ProbeResponse,
    ProviderHealthStatus,
    ProviderMetricsResponse,
    RecommendationResponse,
    SelectionRequestBody,
    SelectionResponse,
)
from llm_failover.core.errors import ConfigurationInvalid
from llm_failover.core.logger import get_logger
from llm_failover.services.health_check import HealthStatus
from llm_failover.services.performance import RequestOutcome
from llm_failover.services.router import RoutingService
from llm_failover.services.selector import SelectionRequest

logger = get_logger(__name__)

router = APIRouter(tags=["routing"])


# ============================================================================
# Health
# ============================================================================

@router.get("/health", response_model=HealthResponse)
async def get_health(routing: RoutingService = Depends(get_routing_service)):
    """
    Per-provider health, check statistics and request metrics.

    Overall status is healthy when every enabled provider is healthy,
    unhealthy when none is usable, degraded otherwise.
    """
    providers = [ProviderHealthStatus.from_report(r) for r in routing.health()]
    statuses = [p.status for p in providers if p.enabled]

    if statuses and all(s == HealthStatus.HEALTHY for s in statuses):
        overall = "healthy"
    elif any(s != HealthStatus.UNHEALTHY for s in statuses):
        overall = "degraded"
    else:
        overall = "unhealthy"

    return HealthResponse(
        status=overall,
        timestamp=datetime.now(timezone.utc),
        strategy=routing.strategy.value,
        providers=providers,
        budget=BudgetStatus(**routing.budget_status()),
        recommendations=[RecommendationResponse.from_recommendation(r) for r in routing.recommendations()],
    )


@router.post(
    "/health/{provider_id}/check",
    response_model=ProbeResponse,
    responses={400: {"model": ErrorResponse}}
)
async def check_provider(
    provider_id: str,
    routing: RoutingService = Depends(get_routing_service)
):
    """Probe one provider now."""
    provider = next((p for p in routing.discovery.providers if p.id == provider_id), None)
    if provider is None:
        raise ConfigurationInvalid(f"Unknown provider: {provider_id}")

    result = await routing.monitor.probe(provider)
    return ProbeResponse.from_result(result)


# ============================================================================
# Discovery
# ============================================================================

@router.get("/discovery", response_model=DiscoveryResponse)
async def get_discovery(routing: RoutingService = Depends(get_routing_service)):
    """Cached catalog, refreshed only when its TTL has expired."""
    catalog = await routing.discover()
    return DiscoveryResponse.from_catalog(catalog)


@router.post("/discovery/refresh", response_model=DiscoveryResponse)
async def refresh_discovery(routing: RoutingService = Depends(get_routing_service)):
    """Force a new discovery round."""
    logger.info("Discovery refresh requested")
    catalog = await routing.refresh()
    return DiscoveryResponse.from_catalog(catalog)


# ============================================================================
# Selection
# ============================================================================

@router.post(
    "/select",
    response_model=SelectionResponse,
    responses={503: {"model": ErrorResponse}}
)
async def select_provider(
    body: SelectionRequestBody,
    routing: RoutingService = Depends(get_routing_service)
):
    """
    Routing decision for a pending request.

    Responds 503 with every candidate's rejection when nothing is usable.
    """
    decision = routing.select(SelectionRequest(
        model=body.model,
        provider=body.provider,
        requires_streaming=body.requires_streaming,
        requires_tools=body.requires_tools,
        workload=body.workload,
    ))
    return SelectionResponse.from_decision(decision)


# ============================================================================
# Outcomes
# ============================================================================

@router.post(
    "/outcomes",
    response_model=OutcomeResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}}
)
async def record_outcome(
    body: OutcomeRequest,
    routing: RoutingService = Depends(get_routing_service)
):
    """Report a completed request back to the engine."""
    metrics = await routing.record_outcome(
        body.provider_id,
        RequestOutcome(
            success=body.success,
            latency_ms=body.latency_ms,
            error_kind=body.error_kind,
            model=body.model,
            workload=body.workload,
            prompt_tokens=body.prompt_tokens,
            completion_tokens=body.completion_tokens,
            cost_usd=body.cost_usd,
        )
    )
    return OutcomeResponse(
        provider_id=body.provider_id,
        metrics=ProviderMetricsResponse.from_metrics(metrics),
        budget=BudgetStatus(**routing.budget_status()),
    )


# ============================================================================
# Performance
# ============================================================================

@router.get("/performance", response_model=PerformanceResponse)
async def get_performance(routing: RoutingService = Depends(get_routing_service)):
    """Request metrics summary, benchmark comparison, recommendations and learned patterns."""
    targets = routing.tracker.targets
    return PerformanceResponse.build(
        summary=routing.tracker.summary(),
        report=routing.benchmark(),
        target_latency_ms=targets.latency_ms,
        target_success_rate=targets.success_rate,
        recommendations=routing.recommendations(),
        insights=routing.insights(),
    )
