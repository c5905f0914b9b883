"""
Provider health monitoring, model discovery and failover routing for LLM backends.
"""
__version__ = "1.0.0"
