"""
Main FastAPI application entry point.
"""
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from llm_failover import __version__
from llm_failover.core.cache import cache
from llm_failover.core.config import settings
from llm_failover.core.database import AsyncSessionLocal, close_db, init_db
from llm_failover.core.logger import get_logger
from llm_failover.api.middleware import setup_middleware
from llm_failover.api.routes import models, routing
from llm_failover.services.router import RoutingService
from llm_failover.services.usage_store import UsageStore

logger = get_logger(__name__)


# ============================================================================
# Application Lifespan
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    # Startup
    logger.info("Starting LLM failover service")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Debug mode: {settings.debug}")

    await cache.connect()

    usage_store = None
    if settings.usage_persistence_enabled:
        try:
            await init_db()
            usage_store = UsageStore(AsyncSessionLocal)
            logger.info("Database initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize database: {str(e)}", exc_info=True)
            raise

    service: Optional[RoutingService] = getattr(app.state, "routing", None)
    if service is None:
        service = RoutingService.from_settings(cache=cache, usage_store=usage_store)
        app.state.routing = service

    await service.seed_budget()

    catalog = await service.discover()
    logger.info(
        "Initial discovery complete",
        providers=len(catalog.providers),
        available_models=len(catalog.available_models())
    )

    if settings.health_check_enabled:
        service.start()

    logger.info("Application startup complete")

    yield

    # Shutdown
    logger.info("Shutting down LLM failover service")
    await service.close()
    await cache.disconnect()
    if usage_store is not None:
        await close_db()


# ============================================================================
# Application Factory
# ============================================================================

def create_app(service: Optional[RoutingService] = None) -> FastAPI:
    """
    Create and configure FastAPI application.

    Args:
        service: Pre-built routing service; built from settings at startup when omitted

    Returns:
        Configured FastAPI application instance
    """
    app = FastAPI(
        title=settings.app_name,
        description="Provider health monitoring, model discovery and failover routing",
        version=__version__,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan
    )
    if service is not None:
        app.state.routing = service

    # Setup middleware
    setup_middleware(app)

    app.include_router(routing.router, prefix="/api")
    app.include_router(models.router)

    @app.get("/health", tags=["root"])
    @app.get("/healthz", tags=["root"])
    async def health_check():
        """Liveness endpoint for load balancers."""
        return {
            "status": "healthy",
            "service": settings.app_name
        }

    @app.get("/version", tags=["root"])
    async def version():
        """Version information."""
        return {
            "version": __version__,
            "api_version": "v1",
            "environment": settings.environment
        }

    @app.exception_handler(404)
    async def not_found_handler(request, exc):
        """Handle 404 errors."""
        return JSONResponse(
            status_code=404,
            content={
                "error": {
                    "code": "not_found",
                    "message": getattr(exc, "detail", None) or "The requested resource was not found",
                    "path": str(request.url.path)
                }
            }
        )

    @app.exception_handler(405)
    async def method_not_allowed_handler(request, exc):
        """Handle 405 errors."""
        return JSONResponse(
            status_code=405,
            content={
                "error": {
                    "code": "method_not_allowed",
                    "message": f"Method {request.method} not allowed for this endpoint",
                    "path": str(request.url.path)
                }
            }
        )

    logger.info("Routes registered")

    return app


# ============================================================================
# Application Instance
# ============================================================================

app = create_app()


def run() -> None:
    """Run the development server."""
    import uvicorn

    uvicorn.run(
        "llm_failover.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
        access_log=True,
    )


if __name__ == "__main__":
    run()
