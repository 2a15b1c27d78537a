"""
Sync Routes
Status, circuit state and manual triggers for the dashboard
"""
import logging
from fastapi import APIRouter, Depends, HTTPException, Request

from backup_sync.core.dependencies import Services, get_services
from backup_sync.core.security import require_api_key
from backup_sync.middleware.rate_limit import limiter
from backup_sync.models.schemas import CircuitListResponse, SyncStatusResponse, TriggerResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


@router.get("/status/{tenant_id}", response_model=SyncStatusResponse)
async def sync_status(tenant_id: str, services: Services = Depends(get_services)):
    """Per-entity checkpoint records plus the tenant's circuit."""
    records = await services.checkpoints.list_status(tenant_id)
    return SyncStatusResponse(
        tenant_id=tenant_id,
        entities=records,
        circuit=services.breakers.get_state(tenant_id).to_dict(),
    )


@router.get("/circuits", response_model=CircuitListResponse)
async def list_circuits(services: Services = Depends(get_services)):
    circuits = [info.to_dict() for info in services.breakers.all_states().values()]
    return CircuitListResponse(circuits=circuits, total=len(circuits))


@router.post("/circuits/{tenant_id}/reset", dependencies=[Depends(require_api_key)])
async def reset_circuit(tenant_id: str, services: Services = Depends(get_services)):
    services.breakers.reset(tenant_id)
    logger.info(f"🔌 Circuit reset by operator for tenant {tenant_id}")
    return {"success": True, "tenant_id": tenant_id}


@router.post("/trigger/{tenant_id}", response_model=TriggerResponse, dependencies=[Depends(require_api_key)])
@limiter.limit("6/minute")
async def trigger_sync(request: Request, tenant_id: str, services: Services = Depends(get_services)):
    """
    Ask for a full sync of one tenant.

    Only the marker is written here; the chat cadence picks it up on its
    next tick and clears it.
    """
    tenant = await services.tenants.get(tenant_id)
    if tenant is None:
        raise HTTPException(status_code=404, detail=f"Tenant {tenant_id} not found")
    if not (tenant.is_active and tenant.sync_enabled):
        raise HTTPException(status_code=409, detail=f"Sync is disabled for tenant {tenant.slug}")

    requested_at = await services.checkpoints.request_trigger(tenant_id)
    return TriggerResponse(
        success=True,
        tenant_id=tenant_id,
        trigger_requested_at=requested_at,
        message="Sync requested; it starts on the next chat tick",
    )
