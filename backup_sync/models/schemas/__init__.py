"""
Pydantic Schemas
Domain models and request/response models for the ops API
"""

# Health check schemas
from .health import HealthResponse, CircuitListResponse

# Sync schemas
from .sync import (
    EntityType,
    ENTITY_RUN_ORDER,
    SyncStatus,
    ItemError,
    EntityResult,
    TenantSyncResult,
    SyncOptions,
    CheckpointRecord,
    SyncStatusResponse,
    TriggerResponse,
    ConnectionTestResponse,
)

# Tenant schemas
from .tenant import Tenant

__all__ = [
    # Health
    "HealthResponse",
    "CircuitListResponse",
    # Sync
    "EntityType",
    "ENTITY_RUN_ORDER",
    "SyncStatus",
    "ItemError",
    "EntityResult",
    "TenantSyncResult",
    "SyncOptions",
    "CheckpointRecord",
    "SyncStatusResponse",
    "TriggerResponse",
    "ConnectionTestResponse",
    # Tenant
    "Tenant",
]
