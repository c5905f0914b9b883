"""
Provider clients with a unified probe/list-models interface.
"""
from llm_failover.providers.base import (
    BaseProvider,
    ModelInfo,
    ProbeInfo,
    Provider,
    ProviderKind,
)
from llm_failover.providers.factory import ProviderFactory

__all__ = [
    "BaseProvider",
    "ModelInfo",
    "ProbeInfo",
    "Provider",
    "ProviderKind",
    "ProviderFactory",
]
