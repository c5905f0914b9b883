"""
API request/response schemas using Pydantic models.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from llm_failover.core.errors import Rejection
from llm_failover.services.discovery import DiscoveredModel, DiscoveryCatalog, ProviderEntry
from llm_failover.services.health_check import HealthStatus, ProbeResult
from llm_failover.services.patterns import PatternInsight
from llm_failover.services.performance import (
    BenchmarkComparison,
    BenchmarkReport,
    Priority,
    ProviderMetrics,
    Recommendation,
    RecommendationType,
)
from llm_failover.services.router import ProviderReport
from llm_failover.services.selector import Candidate, SelectionDecision


def _timestamp(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


# ============================================================================
# Models Schemas (OpenAI compatible)
# ============================================================================

class Model(BaseModel):
    """Model information."""
    id: str
    object: str = "model"
    created: Optional[int] = None
    owned_by: Optional[str] = None
    providers: List[str] = Field(default_factory=list)
    available: bool = True
    reduced_confidence: bool = False
    context_length: Optional[int] = None

    @classmethod
    def from_entries(cls, name: str, entries: List[DiscoveredModel], created: Optional[float]) -> "Model":
        """Merge the catalog entries of one model across providers."""
        available = [e for e in entries if e.available]
        lengths = [e.context_length for e in entries if e.context_length]
        return cls(
            id=name,
            created=int(created) if created else None,
            owned_by=entries[0].provider_id if len(entries) == 1 else "failover",
            providers=[e.provider_id for e in entries],
            available=bool(available),
            reduced_confidence=bool(available) and all(e.reduced_confidence for e in available),
            context_length=max(lengths) if lengths else None,
        )


class ModelsListResponse(BaseModel):
    """Models list response."""
    object: str = "list"
    data: List[Model]


# ============================================================================
# Health Schemas
# ============================================================================

class ProviderMetricsResponse(BaseModel):
    """Request metrics for one provider."""
    total_requests: int
    failed_requests: int
    success_rate: float
    avg_latency_ms: float
    recent_avg_latency_ms: Optional[float] = None
    baseline_latency_ms: Optional[float] = None
    latency_trend_rising: bool = False
    consecutive_failures: int = 0

    @classmethod
    def from_metrics(cls, metrics: ProviderMetrics) -> "ProviderMetricsResponse":
        return cls(
            total_requests=metrics.total_requests,
            failed_requests=metrics.failed_requests,
            success_rate=metrics.success_rate,
            avg_latency_ms=metrics.avg_latency_ms,
            recent_avg_latency_ms=metrics.recent_avg_latency_ms,
            baseline_latency_ms=metrics.baseline_latency_ms,
            latency_trend_rising=metrics.latency_trend_rising,
            consecutive_failures=metrics.consecutive_failures,
        )


class RecommendationResponse(BaseModel):
    """Operator advice derived from request metrics."""
    provider_id: str
    type: RecommendationType
    priority: Priority
    description: str
    suggested_action: str

    @classmethod
    def from_recommendation(cls, recommendation: Recommendation) -> "RecommendationResponse":
        return cls(
            provider_id=recommendation.provider_id,
            type=recommendation.type,
            priority=recommendation.priority,
            description=recommendation.description,
            suggested_action=recommendation.suggested_action,
        )


class RetryStateResponse(BaseModel):
    """Retry backoff state for one provider."""
    consecutive_failures: int = 0
    next_retry_at: Optional[datetime] = None


class ProviderHealthStatus(BaseModel):
    """Provider health status."""
    provider_id: str
    kind: str
    provider_type: str
    endpoint: str
    enabled: bool
    auto_discovered: bool = False
    status: HealthStatus
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    success_rate: float = 0.0
    avg_latency_ms: float = 0.0
    last_checked: Optional[datetime] = None
    last_error: Optional[str] = None
    metrics: ProviderMetricsResponse
    retry: RetryStateResponse
    recommendations: List[RecommendationResponse] = Field(default_factory=list)

    @classmethod
    def from_report(cls, report: ProviderReport) -> "ProviderHealthStatus":
        provider = report.provider
        health = report.health
        return cls(
            provider_id=provider.id,
            kind=provider.kind.value,
            provider_type=provider.provider_type,
            endpoint=provider.endpoint,
            enabled=provider.enabled,
            auto_discovered=provider.auto_discovered,
            status=report.status,
            consecutive_failures=health.consecutive_failures if health else 0,
            consecutive_successes=health.consecutive_successes if health else 0,
            success_rate=health.success_rate if health else 0.0,
            avg_latency_ms=health.avg_latency_ms if health else 0.0,
            last_checked=_timestamp(health.last_checked) if health else None,
            last_error=health.last_error if health else None,
            metrics=ProviderMetricsResponse.from_metrics(report.metrics),
            retry=RetryStateResponse(
                consecutive_failures=report.retry.consecutive_failures,
                next_retry_at=_timestamp(report.retry.next_retry_at),
            ),
            recommendations=[
                RecommendationResponse.from_recommendation(r) for r in report.recommendations
            ],
        )


class BudgetStatus(BaseModel):
    """Daily spend against the configured ceiling."""
    daily_limit: Optional[float] = None
    spent_today: float = 0.0
    remaining: Optional[float] = None


class HealthResponse(BaseModel):
    """Overall health response."""
    status: str  # "healthy", "degraded", "unhealthy"
    timestamp: datetime
    strategy: str
    providers: List[ProviderHealthStatus]
    budget: BudgetStatus
    recommendations: List[RecommendationResponse] = Field(default_factory=list)


class ProbeResponse(BaseModel):
    """Result of a manual probe."""
    provider_id: str
    success: bool
    status: HealthStatus
    latency_ms: float
    error_kind: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_result(cls, result: ProbeResult) -> "ProbeResponse":
        return cls(
            provider_id=result.provider_id,
            success=result.success,
            status=result.status,
            latency_ms=result.latency_ms,
            error_kind=result.error_kind.value if result.error_kind else None,
            error=result.error,
        )


# ============================================================================
# Performance Schemas
# ============================================================================

class BenchmarkComparisonResponse(BaseModel):
    """One provider against the benchmark targets; ratios above 1.0 beat them."""
    provider_id: str
    latency_ratio: float
    success_ratio: float
    score: float
    meets_targets: bool

    @classmethod
    def from_comparison(cls, comparison: BenchmarkComparison) -> "BenchmarkComparisonResponse":
        return cls(
            provider_id=comparison.provider_id,
            latency_ratio=comparison.latency_ratio,
            success_ratio=comparison.success_ratio,
            score=comparison.score,
            meets_targets=comparison.meets_targets,
        )


class BenchmarkResponse(BaseModel):
    target_latency_ms: float
    target_success_rate: float
    overall_score: float
    providers: List[BenchmarkComparisonResponse]


class PatternInsightResponse(BaseModel):
    """Provider that most often served a model or workload."""
    dimension: str
    value: str
    provider_id: str
    share: float
    weight: float

    @classmethod
    def from_insight(cls, insight: PatternInsight) -> "PatternInsightResponse":
        return cls(
            dimension=insight.dimension,
            value=insight.value,
            provider_id=insight.provider_id,
            share=insight.share,
            weight=insight.weight,
        )


class PerformanceResponse(BaseModel):
    """Aggregate metrics, benchmark comparison, recommendations and learned patterns."""
    summary: Dict[str, float]
    benchmark: BenchmarkResponse
    recommendations: List[RecommendationResponse]
    insights: List[PatternInsightResponse]

    @classmethod
    def build(
        cls,
        summary: Dict[str, float],
        report: BenchmarkReport,
        target_latency_ms: float,
        target_success_rate: float,
        recommendations: List[Recommendation],
        insights: List[PatternInsight]
    ) -> "PerformanceResponse":
        return cls(
            summary=summary,
            benchmark=BenchmarkResponse(
                target_latency_ms=target_latency_ms,
                target_success_rate=target_success_rate,
                overall_score=report.overall_score,
                providers=[BenchmarkComparisonResponse.from_comparison(c) for c in report.comparisons],
            ),
            recommendations=[RecommendationResponse.from_recommendation(r) for r in recommendations],
            insights=[PatternInsightResponse.from_insight(i) for i in insights],
        )


# ============================================================================
# Discovery Schemas
# ============================================================================

class DiscoveredModelResponse(BaseModel):
    """One model offered by one provider."""
    name: str
    provider_id: str
    provider_kind: str
    provider_status: HealthStatus
    available: bool
    reduced_confidence: bool
    context_length: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_model(cls, model: DiscoveredModel) -> "DiscoveredModelResponse":
        return cls(
            name=model.name,
            provider_id=model.provider_id,
            provider_kind=model.provider_kind.value,
            provider_status=model.provider_status,
            available=model.available,
            reduced_confidence=model.reduced_confidence,
            context_length=model.context_length,
            metadata=model.metadata,
        )


class ProviderEntryResponse(BaseModel):
    """Discovery outcome for one provider."""
    provider_id: str
    kind: str
    status: HealthStatus
    endpoint: str
    model_count: int
    models: List[str]
    latency_ms: Optional[float] = None
    error: Optional[str] = None
    auto_discovered: bool = False
    warnings: List[str] = Field(default_factory=list)

    @classmethod
    def from_entry(cls, entry: ProviderEntry) -> "ProviderEntryResponse":
        return cls(
            provider_id=entry.provider_id,
            kind=entry.kind.value,
            status=entry.status,
            endpoint=entry.endpoint,
            model_count=entry.model_count,
            models=list(entry.models),
            latency_ms=entry.latency_ms,
            error=entry.error,
            auto_discovered=entry.auto_discovered,
            warnings=list(entry.warnings),
        )


class DiscoveryStatsResponse(BaseModel):
    """Derived discovery statistics."""
    total_providers: int
    healthy_providers: int
    degraded_providers: int
    unhealthy_providers: int
    total_models: int
    available_models: int
    availability_ratio: float
    models_per_provider: Dict[str, int]


class DiscoveryResponse(BaseModel):
    """Discovery catalog."""
    generation: int
    created_at: Optional[datetime] = None
    ttl: float
    duration_ms: float
    providers: List[ProviderEntryResponse]
    models: List[DiscoveredModelResponse]
    stats: DiscoveryStatsResponse
    warnings: List[str] = Field(default_factory=list)

    @classmethod
    def from_catalog(cls, catalog: DiscoveryCatalog) -> "DiscoveryResponse":
        stats = catalog.stats()
        return cls(
            generation=catalog.generation,
            created_at=_timestamp(catalog.created_at) if catalog.generation else None,
            ttl=catalog.ttl,
            duration_ms=catalog.duration_ms,
            providers=[ProviderEntryResponse.from_entry(e) for e in catalog.providers],
            models=[DiscoveredModelResponse.from_model(m) for m in catalog.models],
            stats=DiscoveryStatsResponse(
                total_providers=stats.total_providers,
                healthy_providers=stats.healthy_providers,
                degraded_providers=stats.degraded_providers,
                unhealthy_providers=stats.unhealthy_providers,
                total_models=stats.total_models,
                available_models=stats.available_models,
                availability_ratio=stats.availability_ratio,
                models_per_provider=stats.models_per_provider,
            ),
            warnings=list(catalog.warnings),
        )


# ============================================================================
# Selection Schemas
# ============================================================================

class SelectionRequestBody(BaseModel):
    """Routing request."""
    model: Optional[str] = Field(None, description="Requested model")
    provider: Optional[str] = Field(None, description="Explicit provider override")
    requires_streaming: bool = False
    requires_tools: bool = False
    workload: Optional[str] = Field(None, description="Logical workload tag")


class CandidateResponse(BaseModel):
    """Ranked alternative."""
    provider_id: str
    model: str
    status: HealthStatus
    is_local: bool

    @classmethod
    def from_candidate(cls, candidate: Candidate) -> "CandidateResponse":
        return cls(
            provider_id=candidate.provider_id,
            model=candidate.model,
            status=candidate.status,
            is_local=candidate.is_local,
        )


class RejectionResponse(BaseModel):
    """Why a provider was not selected."""
    provider_id: str
    reason: str

    @classmethod
    def from_rejection(cls, rejection: Rejection) -> "RejectionResponse":
        return cls(provider_id=rejection.provider_id, reason=rejection.reason)


class SelectionResponse(BaseModel):
    """Routing decision."""
    provider_id: str
    provider_kind: str
    endpoint: str
    model: str
    strategy: str
    reason: str
    warnings: List[str] = Field(default_factory=list)
    is_fallback: bool = False
    requires_confirmation: bool = False
    alternatives: List[CandidateResponse] = Field(default_factory=list)
    rejections: List[RejectionResponse] = Field(default_factory=list)

    @classmethod
    def from_decision(cls, decision: SelectionDecision) -> "SelectionResponse":
        return cls(
            provider_id=decision.provider_id,
            provider_kind=decision.provider.kind.value,
            endpoint=decision.provider.endpoint,
            model=decision.model,
            strategy=decision.strategy.value,
            reason=decision.reason,
            warnings=list(decision.warnings),
            is_fallback=decision.is_fallback,
            requires_confirmation=decision.requires_confirmation,
            alternatives=[CandidateResponse.from_candidate(c) for c in decision.alternatives],
            rejections=[RejectionResponse.from_rejection(r) for r in decision.rejections],
        )


# ============================================================================
# Outcome Schemas
# ============================================================================

class OutcomeRequest(BaseModel):
    """Completed request reported back by the caller."""
    provider_id: str
    success: bool
    latency_ms: float = Field(..., ge=0)
    error_kind: Optional[str] = None
    model: Optional[str] = None
    workload: Optional[str] = None
    prompt_tokens: int = Field(0, ge=0)
    completion_tokens: int = Field(0, ge=0)
    cost_usd: Optional[float] = Field(None, ge=0)


class OutcomeResponse(BaseModel):
    """Metrics after recording an outcome."""
    provider_id: str
    metrics: ProviderMetricsResponse
    budget: BudgetStatus


# ============================================================================
# Error Response Schemas
# ============================================================================

class ErrorDetail(BaseModel):
    """Error detail."""
    code: str
    message: str
    details: Optional[Dict[str, Any]] = None


class ErrorResponse(BaseModel):
    """Error response."""
    error: ErrorDetail
