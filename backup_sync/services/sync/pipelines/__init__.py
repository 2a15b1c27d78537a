"""
Sync Pipelines
One pipeline class per entity type.
"""
from backup_sync.models.schemas.sync import EntityType
from backup_sync.services.sync.pipelines.base import IncrementalPipeline, PipelineContext
from backup_sync.services.sync.pipelines.cdr import CallRecordsPipeline
from backup_sync.services.sync.pipelines.extensions import ExtensionsPipeline
from backup_sync.services.sync.pipelines.maintenance import Maintenance
from backup_sync.services.sync.pipelines.messages import MessagesPipeline
from backup_sync.services.sync.pipelines.recordings import RecordingsPipeline
from backup_sync.services.sync.pipelines.remote_files import (
    ChatMediaPipeline,
    FaxesPipeline,
    MeetingsPipeline,
    VoicemailsPipeline,
)

PIPELINES = {
    EntityType.EXTENSIONS: ExtensionsPipeline,
    EntityType.MESSAGES: MessagesPipeline,
    EntityType.CDR: CallRecordsPipeline,
    EntityType.CHAT_MEDIA: ChatMediaPipeline,
    EntityType.VOICEMAILS: VoicemailsPipeline,
    EntityType.RECORDINGS: RecordingsPipeline,
    EntityType.FAXES: FaxesPipeline,
    EntityType.MEETINGS: MeetingsPipeline,
}

__all__ = [
    "PIPELINES",
    "IncrementalPipeline",
    "PipelineContext",
    "Maintenance",
]
