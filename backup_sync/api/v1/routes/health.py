"""
Health Check Routes
Process liveness plus scheduler and circuit diagnostics
"""
import logging
from fastapi import APIRouter, Depends

from backup_sync.core.circuit_breakers import CircuitState
from backup_sync.core.dependencies import Services, get_services
from backup_sync.models.schemas import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

VERSION = "1.0.0"


@router.get("/health", response_model=HealthResponse)
async def health_check(services: Services = Depends(get_services)):
    """Healthy while the scheduler runs; degraded when it should but does not."""
    open_circuits = sorted(
        tenant_id
        for tenant_id, circuit in services.breakers.all_states().items()
        if circuit.state == CircuitState.OPEN
    )
    scheduler = services.scheduler
    return HealthResponse(
        status="healthy" if scheduler.is_running else "degraded",
        version=VERSION,
        scheduler_running=scheduler.is_running,
        running_cadences=scheduler.running_cadences,
        open_circuits=open_circuits,
    )


@router.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": "PBX Backup Sync",
        "version": VERSION,
        "endpoints": {
            "health": "/health",
            "status": "/sync/status/{tenant_id}",
            "circuits": "/sync/circuits",
            "trigger": "/sync/trigger/{tenant_id}",
            "test_connection": "/tenants/{tenant_id}/test-connection",
        },
    }
