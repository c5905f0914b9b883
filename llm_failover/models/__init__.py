"""
Database models for provider usage accounting.
"""
from llm_failover.models.usage import ProviderUsage

__all__ = [
    "ProviderUsage",
]
