"""
FastAPI middleware for logging, error handling, and CORS.
"""
import time
import uuid
from typing import Callable

from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.cors import CORSMiddleware

from llm_failover.core.errors import ConfigurationInvalid, ModelNotFound, NoProviderAvailable
from llm_failover.core.logger import get_logger
from llm_failover.core.config import settings

logger = get_logger(__name__)


# ============================================================================
# Request Logging Middleware
# ============================================================================

class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log all incoming requests and responses."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """
        Process request and log details.

        Args:
            request: Incoming request
            call_next: Next middleware/endpoint

        Returns:
            Response from endpoint
        """
        # Generate request ID
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        start_time = time.time()

        logger.info(
            "Request started",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else None
        )

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = int((time.time() - start_time) * 1000)
            logger.error(
                "Request failed",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                error=str(e),
                duration_ms=duration_ms,
                exc_info=True
            )
            # Re-raise to be handled by error handler
            raise

        duration_ms = int((time.time() - start_time) * 1000)
        logger.info(
            "Request completed",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=duration_ms
        )

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = str(duration_ms)
        return response


# ============================================================================
# Error Handling Middleware
# ============================================================================

class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Middleware to handle uncaught exceptions."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """
        Process request and handle errors.

        Args:
            request: Incoming request
            call_next: Next middleware/endpoint

        Returns:
            Response from endpoint or error response
        """
        try:
            return await call_next(request)

        except Exception as e:
            request_id = getattr(request.state, "request_id", None)

            logger.error(
                f"Unhandled exception: {str(e)}",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                error_type=type(e).__name__,
                exc_info=True
            )

            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "error": {
                        "code": "internal_error",
                        "message": "An internal error occurred",
                        "details": {
                            "request_id": request_id,
                            "type": type(e).__name__,
                        }
                    }
                },
                headers={
                    "X-Request-ID": request_id or "unknown"
                }
            )


# ============================================================================
# Engine Error Handlers
# ============================================================================

def _error_response(status_code: int, code: str, message: str, details=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "code": code,
                "message": message,
                "details": details,
            }
        }
    )


async def no_provider_handler(request: Request, exc: NoProviderAvailable) -> JSONResponse:
    """Map a terminal selection failure to 503 with every rejection."""
    logger.warning("No provider available", path=request.url.path, reason=exc.reason)
    return _error_response(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "no_provider_available",
        exc.reason,
        {"rejections": [
            {"provider_id": r.provider_id, "reason": r.reason} for r in exc.rejections
        ]}
    )


async def model_not_found_handler(request: Request, exc: ModelNotFound) -> JSONResponse:
    return _error_response(
        status.HTTP_404_NOT_FOUND,
        "model_not_found",
        str(exc),
        {"model": exc.model}
    )


async def configuration_invalid_handler(request: Request, exc: ConfigurationInvalid) -> JSONResponse:
    logger.warning("Invalid configuration in request", path=request.url.path, error=str(exc))
    return _error_response(status.HTTP_400_BAD_REQUEST, "configuration_invalid", str(exc))


def setup_exception_handlers(app: FastAPI) -> None:
    """Register handlers for engine errors."""
    app.add_exception_handler(NoProviderAvailable, no_provider_handler)
    app.add_exception_handler(ModelNotFound, model_not_found_handler)
    app.add_exception_handler(ConfigurationInvalid, configuration_invalid_handler)


# ============================================================================
# CORS Configuration
# ============================================================================

def setup_cors(app: FastAPI) -> None:
    """
    Setup CORS middleware.

    Args:
        app: FastAPI application instance
    """
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time"],
    )

    logger.info("CORS configured", allowed_origins=settings.cors_origins_list)


# ============================================================================
# Middleware Setup
# ============================================================================

def setup_middleware(app: FastAPI) -> None:
    """
    Setup all middleware for the application.

    Args:
        app: FastAPI application instance
    """
    # Middleware added later wraps middleware added earlier

    # 1. Error handling
    app.add_middleware(ErrorHandlingMiddleware)

    # 2. Request logging
    app.add_middleware(RequestLoggingMiddleware)

    # 3. CORS
    setup_cors(app)

    setup_exception_handlers(app)

    logger.info("Middleware setup completed")
