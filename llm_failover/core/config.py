"""
Configuration management using Pydantic Settings.
"""
from typing import Optional, Literal, List
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProviderDefinition(BaseModel):
    """A provider entry as it appears in configuration."""

    id: str = Field(min_length=1)
    kind: Literal["local", "cloud"] = "cloud"
    provider_type: Literal["ollama", "openai", "anthropic", "gemini"] = "openai"
    endpoint: Optional[str] = Field(
        default=None,
        description="Base URL; the client default is used when omitted"
    )
    api_key: Optional[str] = None
    credential_required: bool = False
    enabled: bool = True
    models: List[str] = Field(default_factory=list)

    # Per-provider health overrides (fall back to the global values)
    health_check_interval: Optional[int] = Field(default=None, ge=1)
    failure_threshold: Optional[int] = Field(default=None, ge=1)
    success_threshold: Optional[int] = Field(default=None, ge=1)

    supports_streaming: bool = True
    supports_tools: bool = True

    # Pricing used for spend accounting (USD per million tokens)
    input_cost_per_million: float = Field(default=0.0, ge=0)
    output_cost_per_million: float = Field(default=0.0, ge=0)


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True
    )

    # Application Configuration
    app_name: str = Field(default="llm-failover", alias="APP_NAME")
    app_host: str = Field(default="127.0.0.1", alias="APP_HOST")
    app_port: int = Field(default=8000, alias="APP_PORT")
    app_env: Literal["development", "production", "testing"] = Field(
        default="development", alias="APP_ENV"
    )
    app_debug: bool = Field(default=False, alias="APP_DEBUG")

    # Database Configuration (daily usage and spend)
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/llm_failover.db",
        alias="DATABASE_URL"
    )
    usage_persistence_enabled: bool = Field(default=True, alias="USAGE_PERSISTENCE_ENABLED")

    # Redis Configuration (optional snapshot publication)
    redis_enabled: bool = Field(default=False, alias="REDIS_ENABLED")
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")
    redis_cache_ttl: int = Field(default=300, alias="REDIS_CACHE_TTL")
    redis_timeout: float = Field(default=2.0, gt=0, alias="REDIS_TIMEOUT")

    # Logging Configuration
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_file: str = Field(default="", alias="LOG_FILE")
    log_format: Literal["json", "text"] = Field(default="text", alias="LOG_FORMAT")

    # Providers
    providers: List[ProviderDefinition] = Field(default_factory=list, alias="PROVIDERS")

    # Health Check Configuration
    health_check_enabled: bool = Field(default=True, alias="HEALTH_CHECK_ENABLED")
    health_check_interval: int = Field(default=60, ge=1, alias="HEALTH_CHECK_INTERVAL")
    health_failure_threshold: int = Field(default=3, ge=1, alias="HEALTH_FAILURE_THRESHOLD")
    health_success_threshold: int = Field(default=3, ge=1, alias="HEALTH_SUCCESS_THRESHOLD")
    health_history_size: int = Field(default=20, ge=1, alias="HEALTH_HISTORY_SIZE")
    probe_timeout: float = Field(default=5.0, gt=0, alias="PROBE_TIMEOUT")
    probe_outer_timeout: float = Field(default=7.0, gt=0, alias="PROBE_OUTER_TIMEOUT")
    health_max_concurrency: int = Field(default=8, ge=1, alias="HEALTH_MAX_CONCURRENCY")
    feed_outcomes_to_health: bool = Field(default=False, alias="FEED_OUTCOMES_TO_HEALTH")

    # Discovery Configuration
    discovery_ttl: float = Field(default=300.0, gt=0, alias="DISCOVERY_TTL")
    discovery_ceiling: float = Field(default=10.0, gt=0, alias="DISCOVERY_CEILING")
    discovery_max_concurrency: int = Field(default=8, ge=1, alias="DISCOVERY_MAX_CONCURRENCY")
    auto_discovery_enabled: bool = Field(default=True, alias="AUTO_DISCOVERY_ENABLED")
    auto_discovery_hosts: List[str] = Field(
        default_factory=lambda: ["localhost", "127.0.0.1"],
        alias="AUTO_DISCOVERY_HOSTS"
    )
    auto_discovery_ports: List[int] = Field(
        default_factory=lambda: [11434, 11435, 11436],
        alias="AUTO_DISCOVERY_PORTS"
    )

    # Fallback Configuration
    fallback_strategy: Literal["graceful", "immediate", "manual", "none"] = Field(
        default="graceful", alias="FALLBACK_STRATEGY"
    )
    cloud_cost_ranking: List[str] = Field(default_factory=list, alias="CLOUD_COST_RANKING")
    prefer_local: bool = Field(default=True, alias="PREFER_LOCAL")
    auto_return_to_local: bool = Field(default=True, alias="AUTO_RETURN_TO_LOCAL")
    local_recovery_delay: float = Field(default=0.0, ge=0, alias="LOCAL_RECOVERY_DELAY")

    # Smart retry
    max_retry_count: int = Field(default=3, ge=0, alias="MAX_RETRY_COUNT")
    retry_base_delay: float = Field(default=1.0, ge=0, alias="RETRY_BASE_DELAY")
    retry_multiplier: float = Field(default=2.0, ge=1.0, alias="RETRY_MULTIPLIER")
    retry_max_delay: float = Field(default=30.0, ge=0, alias="RETRY_MAX_DELAY")
    retry_jitter: float = Field(default=0.1, ge=0, le=1, alias="RETRY_JITTER")

    # Budget (USD per UTC day, cloud providers only)
    daily_budget_limit: Optional[float] = Field(default=None, ge=0, alias="DAILY_BUDGET_LIMIT")

    # Performance tracking and preemptive fallback
    ewma_alpha: float = Field(default=0.2, gt=0, le=1, alias="EWMA_ALPHA")
    preemptive_fallback: bool = Field(default=True, alias="PREEMPTIVE_FALLBACK")
    trend_window: int = Field(default=5, ge=1, alias="TREND_WINDOW")
    trend_multiplier: float = Field(default=2.0, gt=1.0, alias="TREND_MULTIPLIER")
    trend_min_baseline: int = Field(default=10, ge=1, alias="TREND_MIN_BASELINE")

    # Performance alerts and benchmark targets
    alert_max_latency_ms: float = Field(default=5000.0, gt=0, alias="ALERT_MAX_LATENCY_MS")
    alert_min_success_rate: float = Field(default=0.95, ge=0, le=1, alias="ALERT_MIN_SUCCESS_RATE")
    alert_min_requests: int = Field(default=5, ge=1, alias="ALERT_MIN_REQUESTS")
    target_latency_ms: float = Field(default=500.0, gt=0, alias="TARGET_LATENCY_MS")
    target_success_rate: float = Field(default=0.99, gt=0, le=1, alias="TARGET_SUCCESS_RATE")

    # Pattern learning
    pattern_learning_enabled: bool = Field(default=True, alias="PATTERN_LEARNING_ENABLED")
    pattern_window_days: float = Field(default=7.0, gt=0, alias="PATTERN_WINDOW_DAYS")

    # CORS Configuration
    cors_origins: str = Field(default="*", alias="CORS_ORIGINS")

    @model_validator(mode="after")
    def check_timeouts(self) -> "Settings":
        if self.probe_outer_timeout < self.probe_timeout:
            raise ValueError("probe_outer_timeout must be >= probe_timeout")
        if self.retry_base_delay > self.retry_max_delay:
            raise ValueError("retry_base_delay must be <= retry_max_delay")
        return self

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.app_env == "development"

    @property
    def cors_origins_list(self) -> list[str]:
        """Get CORS origins as a list."""
        if self.cors_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def host(self) -> str:
        return self.app_host

    @property
    def port(self) -> int:
        return self.app_port

    @property
    def debug(self) -> bool:
        return self.app_debug

    @property
    def environment(self) -> str:
        return self.app_env


# Global settings instance
settings = Settings()
