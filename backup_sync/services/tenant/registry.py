"""
Tenant Registry
Loads tenant rows from Supabase.

AUDIENCES:
- Active: every enabled tenant with sync turned on
- Recently active: a user opened the dashboard within the activity window
- Inactive: everyone else, picked up by the background sweep
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from backup_sync.models.schemas.tenant import Tenant
from backup_sync.services.sync.persistence import execute, parse_timestamp

logger = logging.getLogger(__name__)


class TenantRepository:
    def __init__(self, client):
        self._client = client

    async def list_active(self) -> List[Tenant]:
        response = await execute(
            self._client.table("tenants").select("*").eq("is_active", True).eq("sync_enabled", True).order("slug"),
            "list tenants",
        )
        tenants = []
        for row in response.data or []:
            try:
                tenants.append(Tenant(**row))
            except ValueError as e:
                logger.error(f"❌ Skipping malformed tenant row {row.get('id')}: {e}")
        return tenants

    async def list_recently_active(self, window_minutes: int) -> List[Tenant]:
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=window_minutes)
        return [t for t in await self.list_active() if _active_since(t, cutoff)]

    async def list_inactive(self, window_minutes: int) -> List[Tenant]:
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=window_minutes)
        return [t for t in await self.list_active() if not _active_since(t, cutoff)]

    async def get(self, tenant_id: str) -> Optional[Tenant]:
        response = await execute(
            self._client.table("tenants").select("*").eq("id", tenant_id).limit(1),
            "read tenant",
        )
        return Tenant(**response.data[0]) if response.data else None


def _active_since(tenant: Tenant, cutoff: datetime) -> bool:
    seen = parse_timestamp(tenant.last_user_activity_at)
    return seen is not None and seen >= cutoff
