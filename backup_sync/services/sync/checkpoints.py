"""
Checkpoint Store
Per (tenant, entity type) sync position and status, in the sync_status table.

RULES:
- Position is the source timestamp of the last committed record plus
  POSITION_EPSILON, and it only ever moves forward
- A failed run keeps whatever progress was committed before the failure
- trigger_requested_at is set by operators and cleared once honoured
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from backup_sync.models.schemas.sync import CheckpointRecord, SyncStatus
from backup_sync.services.sync.persistence import execute, parse_timestamp, utcnow_iso

logger = logging.getLogger(__name__)

# Smallest step PostgreSQL timestamps resolve
POSITION_EPSILON = timedelta(microseconds=1)

TABLE = "sync_status"


def advance(timestamp: datetime) -> datetime:
    """Checkpoint position for a record with this source timestamp."""
    return parse_timestamp(timestamp) + POSITION_EPSILON


class CheckpointStore:
    """Supabase-backed checkpoint store."""

    def __init__(self, client):
        self._client = client

    async def _upsert(self, tenant_id: str, sync_type: str, fields: Dict[str, Any]):
        record = {
            "tenant_id": tenant_id,
            "sync_type": sync_type,
            "updated_at": utcnow_iso(),
            **fields,
        }
        await execute(
            self._client.table(TABLE).upsert(record, on_conflict="tenant_id,sync_type"),
            f"update {sync_type} status",
        )

    # ------------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------------

    async def get(self, tenant_id: str, sync_type: str) -> Optional[CheckpointRecord]:
        response = await execute(
            self._client.table(TABLE).select("*").eq("tenant_id", tenant_id).eq("sync_type", sync_type).limit(1),
            f"read {sync_type} status",
        )
        return CheckpointRecord(**response.data[0]) if response.data else None

    async def get_position(self, tenant_id: str, sync_type: str) -> Optional[datetime]:
        record = await self.get(tenant_id, sync_type)
        if not record:
            return None
        return parse_timestamp(record.last_synced_message_at)

    async def list_status(self, tenant_id: str) -> List[CheckpointRecord]:
        response = await execute(
            self._client.table(TABLE).select("*").eq("tenant_id", tenant_id).order("sync_type"),
            "list sync status",
        )
        return [CheckpointRecord(**row) for row in response.data or []]

    # ------------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------------

    async def mark_running(self, tenant_id: str, sync_type: str):
        await self._upsert(tenant_id, sync_type, {
            "status": SyncStatus.RUNNING.value,
            "last_sync_at": utcnow_iso(),
        })

    async def save_progress(
        self,
        tenant_id: str,
        sync_type: str,
        position: Optional[datetime],
        items_synced: int,
    ) -> bool:
        """
        Persist a page's progress. Returns False when the position would
        not move forward (nothing is written in that case).
        """
        if position is None:
            return False
        current = await self.get_position(tenant_id, sync_type)
        if current is not None and position <= current:
            return False
        await self._upsert(tenant_id, sync_type, {
            "last_synced_message_at": position.isoformat(),
            "items_synced": items_synced,
        })
        return True

    async def mark_success(
        self,
        tenant_id: str,
        sync_type: str,
        items_synced: int,
        notes: Optional[str] = None,
    ):
        now = utcnow_iso()
        await self._upsert(tenant_id, sync_type, {
            "status": SyncStatus.SUCCESS.value,
            "last_sync_at": now,
            "last_success_at": now,
            "last_error": None,
            "items_synced": items_synced,
            "notes": notes,
        })

    async def mark_error(
        self,
        tenant_id: str,
        sync_type: str,
        error: str,
        items_synced: int = 0,
        notes: Optional[str] = None,
    ):
        now = utcnow_iso()
        await self._upsert(tenant_id, sync_type, {
            "status": SyncStatus.ERROR.value,
            "last_sync_at": now,
            "last_error_at": now,
            "last_error": error,
            "items_synced": items_synced,
            "notes": notes,
        })

    async def mark_skipped(self, tenant_id: str, sync_type: str, reason: str):
        """Record that a run never started (circuit open) without touching status."""
        await self._upsert(tenant_id, sync_type, {"notes": f"Skipped: {reason}"})

    # ------------------------------------------------------------------------
    # Manual triggers
    # ------------------------------------------------------------------------

    async def request_trigger(self, tenant_id: str) -> datetime:
        now = datetime.now(timezone.utc)
        response = await execute(
            self._client.table(TABLE).update({"trigger_requested_at": now.isoformat()}).eq("tenant_id", tenant_id),
            "request sync trigger",
        )
        if not response.data:
            # First sync for this tenant: no status rows yet
            await self._upsert(tenant_id, "messages", {"trigger_requested_at": now.isoformat()})
        logger.info(f"📣 Manual sync requested for tenant {tenant_id}")
        return now

    async def pending_triggers(self, window_seconds: int) -> List[str]:
        """Tenant ids with a trigger newer than the window."""
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=window_seconds)
        response = await execute(
            self._client.table(TABLE).select("tenant_id, trigger_requested_at").gt("trigger_requested_at", cutoff.isoformat()),
            "read sync triggers",
        )
        seen: List[str] = []
        for row in response.data or []:
            if row["tenant_id"] not in seen:
                seen.append(row["tenant_id"])
        return seen

    async def clear_trigger(self, tenant_id: str):
        await execute(
            self._client.table(TABLE).update({"trigger_requested_at": None}).eq("tenant_id", tenant_id),
            "clear sync trigger",
        )
