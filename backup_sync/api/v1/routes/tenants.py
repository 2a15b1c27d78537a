"""
Tenant Routes
Operator tooling for a single tenant
"""
import logging
from fastapi import APIRouter, Depends, HTTPException

from backup_sync.core.dependencies import Services, get_services
from backup_sync.core.security import require_api_key
from backup_sync.models.schemas import ConnectionTestResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tenants", tags=["tenants"])


@router.post(
    "/{tenant_id}/test-connection",
    response_model=ConnectionTestResponse,
    dependencies=[Depends(require_api_key)],
)
async def test_connection(tenant_id: str, services: Services = Depends(get_services)):
    """Walk DNS, TCP, SSH, forwarding and SELECT 1; report the first stage that fails."""
    tenant = await services.tenants.get(tenant_id)
    if tenant is None:
        raise HTTPException(status_code=404, detail=f"Tenant {tenant_id} not found")
    return await services.orchestrator.test_connection(tenant)
