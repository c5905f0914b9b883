"""
Base provider abstract class and provider descriptors.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any, Tuple
import httpx

from llm_failover.core.errors import ConfigurationInvalid, ServiceUnreachable
from llm_failover.core.logger import get_logger

logger = get_logger(__name__)


class ProviderKind(str, Enum):
    """Where a provider runs."""
    LOCAL = "local"
    CLOUD = "cloud"


def validate_endpoint(endpoint: str) -> str:
    """
    Validate a provider endpoint URL.

    Args:
        endpoint: Base URL to validate

    Returns:
        Endpoint without a trailing slash

    Raises:
        ConfigurationInvalid: If the endpoint is not an absolute http(s) URL
    """
    try:
        url = httpx.URL(endpoint)
    except (httpx.InvalidURL, TypeError) as e:
        raise ConfigurationInvalid(f"Malformed endpoint {endpoint!r}: {e}") from e

    if url.scheme not in ("http", "https") or not url.host:
        raise ConfigurationInvalid(
            f"Malformed endpoint {endpoint!r}: expected an absolute http(s) URL"
        )
    return endpoint.rstrip("/")


@dataclass(frozen=True)
class Provider:
    """Immutable description of one configured or discovered endpoint."""

    id: str
    kind: ProviderKind
    endpoint: str
    provider_type: str = "openai"
    credential_required: bool = False
    api_key: Optional[str] = field(default=None, repr=False)
    enabled: bool = True
    models: Tuple[str, ...] = ()
    health_check_interval: Optional[int] = None
    failure_threshold: Optional[int] = None
    success_threshold: Optional[int] = None
    supports_streaming: bool = True
    supports_tools: bool = True
    input_cost_per_million: float = 0.0
    output_cost_per_million: float = 0.0
    auto_discovered: bool = False

    def __post_init__(self):
        if not self.id:
            raise ConfigurationInvalid("Provider id must not be empty")
        object.__setattr__(self, "endpoint", validate_endpoint(self.endpoint))
        object.__setattr__(self, "models", tuple(self.models))
        if self.credential_required and not self.api_key:
            raise ConfigurationInvalid(
                f"Provider {self.id} requires a credential but none is configured"
            )

    @property
    def is_local(self) -> bool:
        return self.kind == ProviderKind.LOCAL

    @property
    def is_cloud(self) -> bool:
        return self.kind == ProviderKind.CLOUD


@dataclass(frozen=True)
class ModelInfo:
    """A model as reported by a provider."""
    name: str
    context_length: Optional[int] = None
    supports_tools: Optional[bool] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProbeInfo:
    """Successful probe payload."""
    models_available: Optional[int] = None
    version: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class BaseProvider(ABC):
    """
    Abstract base class for provider clients.

    Clients only implement the capability checks the failover engine needs;
    every call takes an explicit timeout.
    """

    def __init__(self, provider: Provider):
        """
        Initialize provider client.

        Args:
            provider: Provider descriptor
        """
        self.provider = provider
        self._client: Optional[httpx.AsyncClient] = None

    @property
    @abstractmethod
    def provider_type(self) -> str:
        """Provider type identifier (e.g., 'openai', 'ollama')."""
        pass

    @property
    def name(self) -> str:
        return self.provider.id

    @property
    def kind(self) -> ProviderKind:
        return self.provider.kind

    @property
    def base_url(self) -> str:
        return self.provider.endpoint

    async def get_client(self) -> httpx.AsyncClient:
        """
        Get or create HTTP client with connection pooling.

        Returns:
            Async HTTP client
        """
        if self._client is None:
            self._client = httpx.AsyncClient(
                limits=httpx.Limits(
                    max_keepalive_connections=5,
                    max_connections=10,
                    keepalive_expiry=30.0
                )
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client and cleanup resources."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def prepare_headers(self) -> Dict[str, str]:
        """
        Prepare common request headers.

        Returns:
            Headers dictionary
        """
        return {
            "Accept": "application/json",
            "User-Agent": "llm-failover/1.0"
        }

    async def _get_json(
        self,
        url: str,
        timeout: float,
        params: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        """
        Issue a GET request and decode the JSON body.

        Raises:
            ServiceUnreachable: If the endpoint cannot be connected to
            httpx.TimeoutException: If the request exceeds ``timeout``
            httpx.HTTPStatusError: On a non-2xx response
        """
        client = await self.get_client()
        try:
            response = await client.get(
                url,
                headers=self.prepare_headers(),
                params=params,
                timeout=httpx.Timeout(timeout)
            )
        except httpx.ConnectError as e:
            raise ServiceUnreachable(self.base_url, str(e)) from e
        response.raise_for_status()
        return response.json()

    @abstractmethod
    async def list_models(self, timeout: float) -> list[ModelInfo]:
        """
        Get available models from provider.

        Args:
            timeout: Per-call timeout in seconds

        Returns:
            List of models
        """
        pass

    async def probe(self, timeout: float) -> ProbeInfo:
        """
        Reachability/capability check.

        The default probe lists models, which proves both that the endpoint
        answers and that the credential is accepted.

        Args:
            timeout: Per-call timeout in seconds

        Returns:
            Probe information
        """
        models = await self.list_models(timeout)
        return ProbeInfo(models_available=len(models))

    async def __aenter__(self):
        """Async context manager entry."""
        await self.get_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()
