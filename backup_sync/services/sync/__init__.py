"""
Sync Engine
Checkpoints, destination stores, entity pipelines, orchestrator and scheduler
"""
from backup_sync.services.sync.checkpoints import POSITION_EPSILON, CheckpointStore
from backup_sync.services.sync.orchestrator import SyncOrchestrator
from backup_sync.services.sync.persistence import MetadataStore
from backup_sync.services.sync.scheduler import Cadence, SyncScheduler, build_cadences
from backup_sync.services.sync.storage import BlobStore
from backup_sync.services.sync.transcoder import MediaTranscoder

__all__ = [
    "POSITION_EPSILON",
    "CheckpointStore",
    "MetadataStore",
    "BlobStore",
    "MediaTranscoder",
    "SyncOrchestrator",
    "SyncScheduler",
    "Cadence",
    "build_cadences",
]
