"""
Security
API key authentication for operator endpoints

Endpoints that change sync state or open SSH sessions (circuit reset,
manual trigger, connection test) require the X-API-Key header.
Read-only status endpoints stay open for the dashboard and health checks.
"""
import hmac
import logging
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader

from backup_sync.core.config import settings

logger = logging.getLogger(__name__)

api_key_scheme = APIKeyHeader(name="X-API-Key", auto_error=False)


async def require_api_key(api_key: Optional[str] = Depends(api_key_scheme)) -> bool:
    """
    Verify the operator API key.

    Raises:
        HTTPException 500 if OPS_API_KEY is not configured,
        401 if the header is missing or wrong
    """
    if not settings.ops_api_key:
        logger.error("Operator endpoint called but OPS_API_KEY not configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="API key authentication not configured",
        )

    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required (X-API-Key header)",
        )

    # Timing-safe comparison
    if not hmac.compare_digest(api_key, settings.ops_api_key):
        logger.warning(f"Invalid API key attempt: {api_key[:4]}...")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )

    return True
