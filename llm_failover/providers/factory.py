"""
Provider factory for creating provider clients.
"""
from typing import Dict, Iterable, List, Type

from pydantic import ValidationError

from llm_failover.core.config import ProviderDefinition
from llm_failover.core.errors import ConfigurationInvalid
from llm_failover.providers.base import BaseProvider, Provider, ProviderKind
from llm_failover.providers.ollama import OllamaProvider
from llm_failover.providers.openai import OpenAIProvider
from llm_failover.providers.anthropic import AnthropicProvider
from llm_failover.providers.gemini import GeminiProvider
from llm_failover.core.logger import get_logger

logger = get_logger(__name__)


DEFAULT_ENDPOINTS: Dict[str, str] = {
    "ollama": "http://localhost:11434",
    "openai": "https://api.openai.com/v1",
    "anthropic": "https://api.anthropic.com",
    "gemini": "https://generativelanguage.googleapis.com",
}


class ProviderFactory:
    """Factory for creating provider clients."""

    # Registry of provider types
    _providers: Dict[str, Type[BaseProvider]] = {
        "ollama": OllamaProvider,
        "openai": OpenAIProvider,
        "anthropic": AnthropicProvider,
        "gemini": GeminiProvider,
    }

    @classmethod
    def create_client(cls, provider: Provider) -> BaseProvider:
        """
        Create a client for a provider descriptor.

        Args:
            provider: Provider descriptor

        Returns:
            Provider client

        Raises:
            ConfigurationInvalid: If provider type is not supported
        """
        if provider.provider_type not in cls._providers:
            raise ConfigurationInvalid(
                f"Unsupported provider type: {provider.provider_type}. "
                f"Available types: {', '.join(cls._providers.keys())}"
            )

        client = cls._providers[provider.provider_type](provider)

        logger.debug(
            "Created provider client",
            provider=provider.id,
            provider_type=provider.provider_type,
            endpoint=provider.endpoint
        )
        return client

    @classmethod
    def provider_from_definition(cls, definition: ProviderDefinition) -> Provider:
        """
        Build a provider descriptor from a configuration entry.

        Args:
            definition: Validated configuration entry

        Returns:
            Provider descriptor

        Raises:
            ConfigurationInvalid: If the endpoint or credentials are unusable
        """
        endpoint = definition.endpoint or DEFAULT_ENDPOINTS.get(definition.provider_type)
        if not endpoint:
            raise ConfigurationInvalid(f"Provider {definition.id} has no endpoint")

        return Provider(
            id=definition.id,
            kind=ProviderKind(definition.kind),
            endpoint=endpoint,
            provider_type=definition.provider_type,
            credential_required=definition.credential_required,
            api_key=definition.api_key,
            enabled=definition.enabled,
            models=tuple(definition.models),
            health_check_interval=definition.health_check_interval,
            failure_threshold=definition.failure_threshold,
            success_threshold=definition.success_threshold,
            supports_streaming=definition.supports_streaming,
            supports_tools=definition.supports_tools,
            input_cost_per_million=definition.input_cost_per_million,
            output_cost_per_million=definition.output_cost_per_million,
        )

    @classmethod
    def load_providers(cls, definitions: Iterable) -> List[Provider]:
        """
        Build provider descriptors from raw or validated definitions.

        Args:
            definitions: ProviderDefinition instances or plain dicts

        Returns:
            Provider descriptors in configuration order

        Raises:
            ConfigurationInvalid: On malformed entries or duplicate ids
        """
        providers: List[Provider] = []
        seen = set()
        for raw in definitions:
            try:
                definition = (
                    raw if isinstance(raw, ProviderDefinition)
                    else ProviderDefinition.model_validate(raw)
                )
            except ValidationError as e:
                raise ConfigurationInvalid(f"Invalid provider definition: {e}") from e

            if definition.id in seen:
                raise ConfigurationInvalid(f"Duplicate provider id: {definition.id}")
            seen.add(definition.id)
            providers.append(cls.provider_from_definition(definition))
        return providers

    @classmethod
    def register_provider(
        cls,
        provider_type: str,
        provider_class: Type[BaseProvider]
    ) -> None:
        """
        Register a new provider type.

        Args:
            provider_type: Provider type identifier
            provider_class: Provider client class
        """
        cls._providers[provider_type] = provider_class
        logger.info("Registered provider type", provider_type=provider_type)

    @classmethod
    def get_supported_types(cls) -> list[str]:
        """
        Get list of supported provider types.

        Returns:
            List of provider type identifiers
        """
        return list(cls._providers.keys())
