"""
Google Gemini provider client.
"""
from llm_failover.providers.base import BaseProvider, ModelInfo
from llm_failover.core.logger import get_logger

logger = get_logger(__name__)


class GeminiProvider(BaseProvider):
    """
    Google Gemini API client.

    The API key travels as a query parameter rather than a header.
    """

    api_version = "v1beta"

    @property
    def provider_type(self) -> str:
        return "gemini"

    async def list_models(self, timeout: float) -> list[ModelInfo]:
        """
        Get models that support ``generateContent``.

        Args:
            timeout: Per-call timeout in seconds

        Returns:
            List of models
        """
        params = {"key": self.provider.api_key} if self.provider.api_key else None
        data = await self._get_json(
            f"{self.base_url}/{self.api_version}/models",
            timeout,
            params=params
        )

        models = []
        for model in data.get("models", []):
            methods = model.get("supportedGenerationMethods", [])
            if methods and "generateContent" not in methods:
                continue
            # "models/gemini-1.5-pro" -> "gemini-1.5-pro"
            name = model["name"].split("/", 1)[-1]
            models.append(
                ModelInfo(
                    name=name,
                    context_length=model.get("inputTokenLimit"),
                    metadata={"display_name": model["displayName"]} if model.get("displayName") else {}
                )
            )
        return models
