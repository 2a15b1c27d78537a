"""
Unified Configuration
All environment variables and settings in one place

ARCHITECTURE:
- ONE Supabase project holds tenants, sync status, backed-up metadata and blobs
- Each tenant's PBX is reached ONLY through an SSH tunnel opened by this service
- Cadences, breaker thresholds and tunnel timeouts are all tunable per deployment

SECURITY:
- All secrets loaded from environment variables
- No hardcoded credentials
- Tenant credentials live in the tenants table, never in env
"""
from typing import Optional
import logging
from pydantic_settings import BaseSettings
from pydantic import Field, model_validator

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Unified application settings.
    Validates all environment variables at startup.
    """

    # ============================================================================
    # SERVER
    # ============================================================================

    environment: str = Field(default="production", description="Environment: development/staging/production")
    port: int = Field(default=8080, description="Ops API port")
    debug: bool = Field(default=False, description="Debug mode")

    # ============================================================================
    # DESTINATION (Supabase) - metadata store, checkpoint store, blob store
    # ============================================================================

    supabase_url: str = Field(description="Supabase project URL")
    supabase_service_key: str = Field(description="Supabase service key (sync service writes with service role)")
    storage_bucket: str = Field(default="backups", description="Storage bucket for backed-up media")

    # ============================================================================
    # SCHEDULER CADENCES
    # ============================================================================

    scheduler_enabled: bool = Field(default=True, description="Run the cadence scheduler inside this process")
    sync_interval_chat_seconds: int = Field(default=20, description="Chat messages cadence (seconds)")
    sync_interval_cdr_minutes: int = Field(default=5, description="Call detail records cadence (minutes)")
    sync_interval_media_minutes: int = Field(default=5, description="Chat media + voicemails cadence (minutes)")
    sync_interval_recordings_minutes: int = Field(default=15, description="Recordings, meetings and faxes cadence (minutes)")
    sync_interval_extensions_minutes: int = Field(default=60, description="Directory/extensions cadence (minutes)")
    sync_interval_background_minutes: int = Field(default=30, description="Background sweep for inactive tenants (minutes)")
    manual_trigger_window_seconds: int = Field(default=120, description="Manual triggers older than this are ignored")
    user_activity_window_minutes: int = Field(default=30, description="Tenants with user activity inside this window get the fast cadences")

    # ============================================================================
    # CIRCUIT BREAKER
    # ============================================================================

    circuit_failure_threshold: int = Field(default=3, description="Consecutive failures before a tenant circuit opens")
    circuit_success_threshold: int = Field(default=2, description="Consecutive half-open successes before it closes")
    circuit_cooldown_seconds: int = Field(default=300, description="Time after last failure before probing (half-open)")
    circuit_reset_seconds: int = Field(default=600, description="Failure count resets after this long without failures")
    circuit_reset_on_startup: bool = Field(default=True, description="Clear all circuit state when the process starts")

    # ============================================================================
    # SSH TUNNELS
    # ============================================================================

    tunnel_dns_timeout: float = Field(default=10.0, description="DNS resolution timeout (seconds)")
    tunnel_tcp_timeout: float = Field(default=15.0, description="TCP preflight timeout (seconds)")
    tunnel_handshake_timeout: float = Field(default=60.0, description="SSH handshake/login timeout (seconds)")
    tunnel_handshake_attempts: int = Field(default=3, description="SSH handshake attempts per acquisition")
    tunnel_retry_delay: float = Field(default=5.0, description="Fixed delay between handshake attempts (seconds)")
    tunnel_keepalive_interval: float = Field(default=10.0, description="SSH keepalive interval (seconds)")

    # ============================================================================
    # SOURCE DATABASE (per-tenant pool through the tunnel)
    # ============================================================================

    source_pool_min_size: int = Field(default=1, description="Minimum connections per tenant pool")
    source_pool_max_size: int = Field(default=3, description="Maximum connections per tenant pool")
    source_connect_timeout: float = Field(default=15.0, description="Pool open timeout (seconds)")

    # ============================================================================
    # PIPELINES
    # ============================================================================

    sync_batch_size: int = Field(default=100, description="Records fetched per page")
    tenant_run_timeout_seconds: float = Field(default=600.0, description="Wall-clock budget for one tenant run")
    buffer_threshold_bytes: int = Field(default=25 * 1024 * 1024, description="Files above this are streamed instead of buffered")
    max_file_size_bytes: int = Field(default=500 * 1024 * 1024, description="Files above this are skipped as too large")
    status_error_limit: int = Field(default=5, description="How many item errors are shown in a status record")

    # ============================================================================
    # MEDIA COMPRESSION
    # ============================================================================

    compression_enabled: bool = Field(default=True, description="Compress images/audio/video below the buffer threshold")
    image_max_dimension: int = Field(default=1920, description="Max image width/height after compression")
    image_quality: int = Field(default=80, description="WebP quality (1-100)")
    audio_bitrate: str = Field(default="128k", description="MP3 bitrate for audio")
    video_bitrate: str = Field(default="1500k", description="H.264 bitrate for video")
    video_max_height: int = Field(default=720, description="Max video height")
    ffmpeg_binary: str = Field(default="ffmpeg", description="ffmpeg executable")

    # ============================================================================
    # PRODUCTION INFRASTRUCTURE
    # ============================================================================

    # Operator endpoints (circuit reset, manual trigger, connection test)
    ops_api_key: Optional[str] = Field(default=None, description="API key required in X-API-Key for operator endpoints")

    # Error tracking (Sentry)
    sentry_dsn: Optional[str] = Field(default=None, description="Sentry DSN for error tracking")

    # CORS for the ops API
    cors_allowed_origins: str = Field(default="http://localhost:3000", description="Comma-separated list of allowed CORS origins")

    @model_validator(mode='after')
    def validate_settings(self):
        """
        Validate critical settings at startup.

        CHECKS:
        - Warn if running in production without Sentry
        - Warn if debug mode enabled in production
        - Warn if operator endpoints have no API key
        - Reject inverted size limits
        """
        if self.environment == "production":
            if self.debug:
                logger.warning("⚠️  DEBUG MODE ENABLED IN PRODUCTION! This is insecure.")

            if not self.sentry_dsn:
                logger.warning("⚠️  Sentry not configured in production. Error tracking disabled.")

            if not self.ops_api_key:
                logger.warning("⚠️  OPS_API_KEY not set. Operator endpoints will refuse every request.")

        if self.buffer_threshold_bytes > self.max_file_size_bytes:
            raise ValueError("buffer_threshold_bytes must not exceed max_file_size_bytes")

        logger.info("=" * 80)
        logger.info("Backup Sync Configuration Loaded")
        logger.info("=" * 80)
        logger.info(f"Environment: {self.environment}")
        logger.info(f"Debug: {self.debug}")
        logger.info(f"Supabase URL: {self.supabase_url}")
        logger.info(f"Storage bucket: {self.storage_bucket}")
        logger.info(f"Scheduler: {'✅ Enabled' if self.scheduler_enabled else '❌ Disabled'}")
        logger.info(f"Chat cadence: {self.sync_interval_chat_seconds}s")
        logger.info(f"Circuit breaker: open after {self.circuit_failure_threshold} failures, cooldown {self.circuit_cooldown_seconds}s")
        logger.info(f"Ops API key: {'✅ Configured' if self.ops_api_key else '❌ Not configured'}")
        logger.info(f"Sentry: {'✅ Configured' if self.sentry_dsn else '❌ Not configured'}")
        logger.info(f"Compression: {'✅ Enabled' if self.compression_enabled else '❌ Disabled'}")
        logger.info("=" * 80)

        return self

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


# Global settings instance
settings = Settings()
