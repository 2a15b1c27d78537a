"""
Sync Schemas
Models for sync results, checkpoint records and ops API responses
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


class EntityType(str, Enum):
    EXTENSIONS = "extensions"
    MESSAGES = "messages"
    CDR = "cdr"
    CHAT_MEDIA = "chat_media"
    VOICEMAILS = "voicemails"
    RECORDINGS = "recordings"
    FAXES = "faxes"
    MEETINGS = "meetings"


# Light types first so a slow file transfer never delays chat or CDR
ENTITY_RUN_ORDER: List[EntityType] = [
    EntityType.EXTENSIONS,
    EntityType.MESSAGES,
    EntityType.CDR,
    EntityType.CHAT_MEDIA,
    EntityType.VOICEMAILS,
    EntityType.RECORDINGS,
    EntityType.FAXES,
    EntityType.MEETINGS,
]


class SyncStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class ItemError(BaseModel):
    item_id: str
    error: str


class EntityResult(BaseModel):
    """Outcome of one pipeline run for one tenant."""
    entity_type: EntityType
    synced: int = 0
    skipped: int = 0
    too_large: int = 0
    errors: List[ItemError] = Field(default_factory=list)
    failed: bool = False
    failure: Optional[str] = None
    notes: Optional[str] = None

    def add_error(self, item_id: Any, error: Any):
        self.errors.append(ItemError(item_id=str(item_id), error=str(error)))

    @property
    def ok(self) -> bool:
        return not self.failed and not self.errors


class TenantSyncResult(BaseModel):
    """
    Aggregate of one orchestrator invocation for one tenant.

    Persisted only as a sync_logs row.
    """
    tenant_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    entities: Dict[str, EntityResult] = Field(default_factory=dict)
    maintenance: Dict[str, int] = Field(default_factory=dict)
    new_media_messages: int = 0
    skipped_by_circuit: bool = False
    timed_out: bool = False
    error: Optional[str] = None

    @property
    def duration_seconds(self) -> float:
        if not self.finished_at:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def partial(self) -> bool:
        return any(not r.ok for r in self.entities.values())

    @property
    def success(self) -> bool:
        return not (self.skipped_by_circuit or self.timed_out or self.error or self.partial)

    def totals(self) -> Dict[str, int]:
        return {
            "synced": sum(r.synced for r in self.entities.values()),
            "skipped": sum(r.skipped for r in self.entities.values()),
            "too_large": sum(r.too_large for r in self.entities.values()),
            "errors": sum(len(r.errors) for r in self.entities.values()),
        }


class SyncOptions(BaseModel):
    """
    What to run for a tenant.

    entity_types=None means every type the tenant has enabled.
    """
    entity_types: Optional[List[EntityType]] = None
    run_maintenance: bool = True
    reason: str = "scheduled"


class CheckpointRecord(BaseModel):
    """One sync_status row (per tenant, per entity type)."""
    tenant_id: str
    sync_type: str
    status: SyncStatus = SyncStatus.IDLE
    last_sync_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_error_at: Optional[datetime] = None
    last_synced_message_at: Optional[datetime] = None
    items_synced: int = 0
    last_error: Optional[str] = None
    notes: Optional[str] = None
    trigger_requested_at: Optional[datetime] = None

    class Config:
        extra = "ignore"


class SyncStatusResponse(BaseModel):
    tenant_id: str
    entities: List[CheckpointRecord]
    circuit: Dict[str, Any]


class TriggerResponse(BaseModel):
    success: bool
    tenant_id: str
    trigger_requested_at: datetime
    message: str


class ConnectionTestResponse(BaseModel):
    """Result of probing one tenant stage by stage."""
    tenant_id: str
    success: bool
    stages: Dict[str, bool]
    failed_stage: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
