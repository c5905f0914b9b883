"""
Models API routes (OpenAI compatible).
"""
from typing import Dict, List

from fastapi import APIRouter, Depends, Query

from llm_failover.api.dependencies import get_routing_service
from llm_failover.api.schemas import Model, ModelsListResponse, ErrorResponse
from llm_failover.core.errors import ModelNotFound
from llm_failover.core.logger import get_logger
from llm_failover.services.discovery import DiscoveredModel
from llm_failover.services.router import RoutingService

logger = get_logger(__name__)

router = APIRouter(prefix="/v1", tags=["models"])


# ============================================================================
# Models List Endpoint
# ============================================================================

@router.get(
    "/models",
    response_model=ModelsListResponse,
    responses={
        500: {"model": ErrorResponse},
    }
)
async def list_models(
    include_unavailable: bool = Query(False, description="Also list models of unhealthy providers"),
    routing: RoutingService = Depends(get_routing_service)
):
    """
    List available models (OpenAI compatible).

    Reads the current discovery catalog; never probes providers.
    Models offered by several providers are merged into one entry.
    """
    catalog = routing.catalog
    grouped: Dict[str, List[DiscoveredModel]] = {}
    for entry in routing.list_models(available_only=not include_unavailable):
        grouped.setdefault(entry.name, []).append(entry)

    models = [
        Model.from_entries(name, entries, catalog.created_at)
        for name, entries in grouped.items()
    ]

    logger.info(f"Returning {len(models)} models", generation=catalog.generation)
    return ModelsListResponse(data=models)


# ============================================================================
# Model Retrieve Endpoint
# ============================================================================

@router.get(
    "/models/{model_id:path}",
    response_model=Model,
    responses={
        404: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    }
)
async def retrieve_model(
    model_id: str,
    routing: RoutingService = Depends(get_routing_service)
):
    """
    Retrieve a model (OpenAI compatible).

    Raises:
        ModelNotFound: If no provider in the catalog offers the model
    """
    logger.info(f"Model retrieve requested: {model_id}")

    entries = routing.catalog.models_named(model_id)
    if not entries:
        raise ModelNotFound(model_id)

    return Model.from_entries(model_id, entries, routing.catalog.created_at)
