"""
Anthropic provider client.
"""
from typing import Dict

from llm_failover.providers.base import BaseProvider, ModelInfo
from llm_failover.core.logger import get_logger

logger = get_logger(__name__)


class AnthropicProvider(BaseProvider):
    """Anthropic API client."""

    api_version = "2023-06-01"

    @property
    def provider_type(self) -> str:
        return "anthropic"

    def prepare_headers(self) -> Dict[str, str]:
        """Prepare Anthropic-specific headers."""
        headers = super().prepare_headers()
        headers["anthropic-version"] = self.api_version
        if self.provider.api_key:
            headers["x-api-key"] = self.provider.api_key
        return headers

    async def list_models(self, timeout: float) -> list[ModelInfo]:
        """
        Get available models from ``/v1/models``.

        Args:
            timeout: Per-call timeout in seconds

        Returns:
            List of models
        """
        data = await self._get_json(f"{self.base_url}/v1/models", timeout)
        return [
            ModelInfo(
                name=model["id"],
                supports_tools=True,
                metadata={"display_name": model["display_name"]} if model.get("display_name") else {}
            )
            for model in data.get("data", [])
        ]
