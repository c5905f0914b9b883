"""
Ollama provider client.
"""
from llm_failover.providers.base import BaseProvider, ModelInfo, ProbeInfo
from llm_failover.core.logger import get_logger

logger = get_logger(__name__)


class OllamaProvider(BaseProvider):
    """Local Ollama server client."""

    @property
    def provider_type(self) -> str:
        return "ollama"

    async def list_models(self, timeout: float) -> list[ModelInfo]:
        """
        List locally pulled models via ``/api/tags``.

        Args:
            timeout: Per-call timeout in seconds

        Returns:
            List of models
        """
        data = await self._get_json(f"{self.base_url}/api/tags", timeout)
        models = []
        for entry in data.get("models", []):
            details = entry.get("details") or {}
            models.append(
                ModelInfo(
                    name=entry.get("name") or entry["model"],
                    metadata={
                        key: value for key, value in {
                            "family": details.get("family"),
                            "parameter_size": details.get("parameter_size"),
                            "quantization_level": details.get("quantization_level"),
                            "size": entry.get("size"),
                        }.items() if value is not None
                    }
                )
            )
        return models

    async def probe(self, timeout: float) -> ProbeInfo:
        """
        Check the server version endpoint; it answers even with no models pulled.

        Args:
            timeout: Per-call timeout in seconds

        Returns:
            Probe information
        """
        data = await self._get_json(f"{self.base_url}/api/version", timeout)
        return ProbeInfo(version=data.get("version"))
