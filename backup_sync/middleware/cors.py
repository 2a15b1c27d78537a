"""
CORS Configuration
Origins for the dashboard that calls the ops API
"""
import logging
from fastapi.middleware.cors import CORSMiddleware

from backup_sync.core.config import settings

logger = logging.getLogger(__name__)


def get_cors_middleware():
    """Returns (middleware class, options) built from CORS_ALLOWED_ORIGINS."""
    origins = [o.strip() for o in settings.cors_allowed_origins.split(",") if o.strip()]
    if "null" in origins:
        logger.warning("⚠️  CORS: dropping 'null' origin")
        origins.remove("null")
    logger.info(f"🌐 CORS allowed origins: {origins}")

    return CORSMiddleware, {
        "allow_origins": origins,
        "allow_credentials": True,
        "allow_methods": ["GET", "POST", "OPTIONS"],
        "allow_headers": ["Content-Type", "Authorization", "X-Request-ID"],
        "expose_headers": ["X-Request-ID"],
        "max_age": 600,
    }
