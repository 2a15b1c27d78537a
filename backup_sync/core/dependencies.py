"""
Dependency Injection
Builds the long-lived service graph once and hands it to routes and the worker.

DEPENDENCIES:
- Supabase async client (metadata, checkpoints, storage, tenants)
- Tunnel manager, source pool registry, circuit breakers (in-memory, per process)
- Orchestrator + scheduler
"""
import logging
from dataclasses import dataclass
from typing import Optional

from supabase import AsyncClient, acreate_client

from backup_sync.core.circuit_breakers import CircuitBreakerRegistry
from backup_sync.core.config import Settings, settings
from backup_sync.services.source.pools import SourcePoolRegistry
from backup_sync.services.sync import (
    BlobStore,
    CheckpointStore,
    MediaTranscoder,
    MetadataStore,
    SyncOrchestrator,
    SyncScheduler,
    build_cadences,
)
from backup_sync.services.tenant import TenantRepository
from backup_sync.services.tunnel.manager import TunnelManager

logger = logging.getLogger(__name__)


@dataclass
class Services:
    tenants: TenantRepository
    checkpoints: CheckpointStore
    metadata: MetadataStore
    blobs: BlobStore
    breakers: CircuitBreakerRegistry
    tunnels: TunnelManager
    pools: SourcePoolRegistry
    orchestrator: SyncOrchestrator
    scheduler: SyncScheduler


# ============================================================================
# GLOBAL CLIENTS (initialized once, reused across requests)
# ============================================================================

_supabase_client: Optional[AsyncClient] = None
_services: Optional[Services] = None


def build_services(client, config: Settings) -> Services:
    """Wire every component from one Supabase client and the settings."""
    tenants = TenantRepository(client)
    checkpoints = CheckpointStore(client)
    metadata = MetadataStore(client)
    blobs = BlobStore(client, config.storage_bucket)
    transcoder = MediaTranscoder(
        enabled=config.compression_enabled,
        image_max_dimension=config.image_max_dimension,
        image_quality=config.image_quality,
        audio_bitrate=config.audio_bitrate,
        video_bitrate=config.video_bitrate,
        video_max_height=config.video_max_height,
        ffmpeg_binary=config.ffmpeg_binary,
    )
    breakers = CircuitBreakerRegistry(
        failure_threshold=config.circuit_failure_threshold,
        success_threshold=config.circuit_success_threshold,
        cooldown_seconds=config.circuit_cooldown_seconds,
        reset_seconds=config.circuit_reset_seconds,
    )
    tunnels = TunnelManager(
        dns_timeout=config.tunnel_dns_timeout,
        tcp_timeout=config.tunnel_tcp_timeout,
        handshake_timeout=config.tunnel_handshake_timeout,
        handshake_attempts=config.tunnel_handshake_attempts,
        retry_delay=config.tunnel_retry_delay,
        keepalive_interval=config.tunnel_keepalive_interval,
    )
    pools = SourcePoolRegistry(
        tunnels,
        min_size=config.source_pool_min_size,
        max_size=config.source_pool_max_size,
        connect_timeout=config.source_connect_timeout,
    )
    orchestrator = SyncOrchestrator(
        tunnels=tunnels,
        pools=pools,
        breakers=breakers,
        checkpoints=checkpoints,
        metadata=metadata,
        blobs=blobs,
        transcoder=transcoder,
        batch_size=config.sync_batch_size,
        run_timeout_seconds=config.tenant_run_timeout_seconds,
        error_limit=config.status_error_limit,
        buffer_threshold_bytes=config.buffer_threshold_bytes,
        max_file_size_bytes=config.max_file_size_bytes,
    )
    scheduler = SyncScheduler(
        orchestrator=orchestrator,
        tenants=tenants,
        checkpoints=checkpoints,
        cadences=build_cadences(config),
        trigger_window_seconds=config.manual_trigger_window_seconds,
        activity_window_minutes=config.user_activity_window_minutes,
    )
    return Services(
        tenants=tenants,
        checkpoints=checkpoints,
        metadata=metadata,
        blobs=blobs,
        breakers=breakers,
        tunnels=tunnels,
        pools=pools,
        orchestrator=orchestrator,
        scheduler=scheduler,
    )


# ============================================================================
# INITIALIZATION (called on startup)
# ============================================================================

async def initialize_clients(start_scheduler: Optional[bool] = None):
    """
    Create the Supabase client and the service graph.

    Called from main.py lifespan and from worker.py.
    """
    global _supabase_client, _services

    logger.info("Initializing global clients...")

    try:
        _supabase_client = await acreate_client(settings.supabase_url, settings.supabase_service_key)
        logger.info("✅ Supabase client initialized")
    except Exception as e:
        logger.error(f"❌ Failed to initialize Supabase: {e}")
        raise

    _services = build_services(_supabase_client, settings)

    if settings.circuit_reset_on_startup:
        _services.breakers.reset_all()
        logger.info("🔌 Circuit breakers reset on startup")

    if settings.scheduler_enabled if start_scheduler is None else start_scheduler:
        _services.scheduler.start()
    else:
        logger.info("ℹ️  Scheduler disabled in this process")

    logger.info("✅ All clients initialized successfully")


async def shutdown_clients():
    """Stop the scheduler, close pools and tunnels."""
    global _supabase_client, _services

    logger.info("Shutting down global clients...")

    if _services:
        await _services.scheduler.stop()
        try:
            await _services.pools.close_all()
            logger.info("✅ Source pools closed")
        except Exception as e:
            logger.error(f"Error closing source pools: {e}")
        try:
            await _services.tunnels.release_all()
            logger.info("✅ SSH tunnels closed")
        except Exception as e:
            logger.error(f"Error closing SSH tunnels: {e}")

    _services = None
    _supabase_client = None

    logger.info("✅ All clients shutdown complete")


def set_services(services: Optional[Services]):
    """Install a prebuilt service graph (used by tests)."""
    global _services
    _services = services


# ============================================================================
# DEPENDENCY FUNCTIONS (injected into routes)
# ============================================================================

def get_supabase() -> AsyncClient:
    if _supabase_client is None:
        logger.error("Supabase client not initialized")
        raise RuntimeError("Supabase client not initialized. Call initialize_clients() first.")
    return _supabase_client


def get_services() -> Services:
    """
    Get the service graph for dependency injection.

    Usage:
        @router.get("/example")
        async def example(services: Services = Depends(get_services)):
            return services.breakers.all_states()
    """
    if _services is None:
        logger.error("Services not initialized")
        raise RuntimeError("Services not initialized. Call initialize_clients() first.")
    return _services
