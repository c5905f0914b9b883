"""
FastAPI dependencies for dependency injection.
"""
from fastapi import HTTPException, Request, status

from llm_failover.core.logger import get_logger
from llm_failover.services.router import RoutingService

logger = get_logger(__name__)


# ============================================================================
# Routing Service Dependency
# ============================================================================

async def get_routing_service(request: Request) -> RoutingService:
    """
    Get the routing service created during application startup.

    Raises:
        HTTPException: If the service is not initialized
    """
    service = getattr(request.app.state, "routing", None)
    if service is None:
        logger.error("Routing service requested before startup completed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Routing service is not initialized",
        )
    return service
