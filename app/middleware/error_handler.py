"""
Global Error Handler Middleware
Turns exceptions that escape a route into structured JSON responses
"""
import logging
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.services.sync.errors import (
    ConnectionInactiveError,
    ConnectionNotFoundError,
    ProviderError,
    SyncAlreadyInProgressError,
    SyncError,
)

logger = logging.getLogger(__name__)


def status_for(exc: Exception) -> int:
    """HTTP status for an uncaught exception."""
    if isinstance(exc, ConnectionNotFoundError):
        return 404
    if isinstance(exc, ConnectionInactiveError):
        return 400
    if isinstance(exc, SyncAlreadyInProgressError):
        return 409
    if isinstance(exc, ProviderError):
        return 502
    return 500


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Global error handler middleware.
    Sync domain errors keep their meaning; anything else is a 500.
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as exc:
            status_code = status_for(exc)
            logger.error(
                f"Unhandled {type(exc).__name__} during {request.method} {request.url.path}",
                exc_info=status_code == 500,
                extra={
                    "path": request.url.path,
                    "method": request.method,
                    "request_id": getattr(request.state, "request_id", None),
                }
            )

            return JSONResponse(
                status_code=status_code,
                content={
                    "detail": str(exc) if isinstance(exc, SyncError) else "Internal server error",
                    "error_type": type(exc).__name__,
                    "path": request.url.path
                }
            )
