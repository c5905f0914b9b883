"""
OpenAI (and OpenAI-compatible) provider client.
"""
from typing import Dict

from llm_failover.providers.base import BaseProvider, ModelInfo
from llm_failover.core.logger import get_logger

logger = get_logger(__name__)


class OpenAIProvider(BaseProvider):
    """
    OpenAI API client.

    Also serves OpenAI-compatible local servers (LM Studio, llama.cpp, vLLM)
    that expose ``/models``.
    """

    @property
    def provider_type(self) -> str:
        return "openai"

    def prepare_headers(self) -> Dict[str, str]:
        """Prepare OpenAI-specific headers."""
        headers = super().prepare_headers()
        if self.provider.api_key:
            headers["Authorization"] = f"Bearer {self.provider.api_key}"
        return headers

    async def list_models(self, timeout: float) -> list[ModelInfo]:
        """
        Get available models from ``/models``.

        Args:
            timeout: Per-call timeout in seconds

        Returns:
            List of models
        """
        data = await self._get_json(f"{self.base_url}/models", timeout)
        return [
            ModelInfo(
                name=model["id"],
                context_length=model.get("context_length") or model.get("max_context_length"),
                metadata={"owned_by": model["owned_by"]} if model.get("owned_by") else {}
            )
            for model in data.get("data", [])
        ]
