"""
Global Error Handler Middleware
Turns unhandled exceptions into structured JSON responses
"""
import logging
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from backup_sync.core.errors import SyncError

logger = logging.getLogger(__name__)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Sync errors that escape a route become 502 (the PBX or Supabase failed us);
    anything else is a 500.
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except SyncError as exc:
            logger.error(f"❌ {exc.code} during {request.method} {request.url.path}: {exc.message}")
            return JSONResponse(
                status_code=502,
                content={"detail": exc.message, "error_type": exc.code, "path": request.url.path},
            )
        except Exception as exc:
            logger.error(
                "Unhandled exception during request",
                exc_info=True,
                extra={"path": request.url.path, "method": request.method},
            )
            return JSONResponse(
                status_code=500,
                content={
                    "detail": "Internal server error",
                    "error_type": type(exc).__name__,
                    "path": request.url.path,
                },
            )
