"""
File-Listing Pipelines
Chat media, voicemails, faxes and meetings live only as files on the PBX.

The folder is discovered once per run (custom path, then defaults), the
listing is ordered by (modified time, relative path) and paged like any
other source. The relative path is the record's source id.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from backup_sync.core.errors import DuplicateRecordError
from backup_sync.models.schemas.sync import EntityResult, EntityType
from backup_sync.services.source.files import RemoteFile
from backup_sync.services.sync.normalize import parse_fax_path, parse_meeting_filename, parse_voicemail_path
from backup_sync.services.sync.pipelines.base import SYNCED, IncrementalPipeline, PipelineContext
from backup_sync.services.sync.pipelines.paths import FILE_EXTENSIONS, candidate_paths
from backup_sync.services.sync.pipelines.transfer import TransferResult, transfer_file

logger = logging.getLogger(__name__)


class RemoteFilePipeline(IncrementalPipeline):
    category: str
    storage_category: str
    table: str
    key_column: str

    def __init__(self):
        super().__init__()
        self.root: Optional[str] = None
        self.tried: List[str] = []
        self._listing: List[RemoteFile] = []

    async def prepare(self, ctx: PipelineContext, result: EntityResult):
        files = await ctx.remote_files()
        self.tried = candidate_paths(self.category, ctx.tenant.custom_paths().get(self.category))
        self.root, self._listing = await files.discover(self.tried, FILE_EXTENSIONS.get(self.category))
        if not self._listing:
            self.notes = f"No files found. Checked: {', '.join(self.tried)}"
            logger.info(f"📁 No {self.category} files for {ctx.tenant.slug} (checked {len(self.tried)} paths)")
        else:
            self.notes = f"Source folder: {self.root}"

    async def fetch_page(self, ctx, since, after, limit):
        # SFTP mtimes are whole seconds; a file landing later in the same second
        # as the last synced one still has to be listed. Dedupe skips the rest.
        floor = since.replace(microsecond=0) if since is not None else None
        page = []
        for remote in self._listing:
            if floor is not None and remote.modified_at < floor:
                continue
            if after is not None and (remote.modified_at, remote.relative_path) <= after:
                continue
            page.append(remote)
            if len(page) >= limit:
                break
        return page

    def item_key(self, item: RemoteFile):
        return item.modified_at, item.relative_path

    def parse(self, remote: RemoteFile) -> Dict[str, Any]:
        return {}

    def timestamp_of(self, remote: RemoteFile, meta: Dict[str, Any]) -> datetime:
        return remote.modified_at

    def build_row(self, remote: RemoteFile, stored: TransferResult, meta: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    async def process(self, ctx: PipelineContext, item: RemoteFile, result: EntityResult) -> str:
        if await ctx.metadata.record_exists(self.table, ctx.tenant_id, item.relative_path):
            raise DuplicateRecordError(f"{item.relative_path} already synced")

        meta = self.parse(item)
        stored = await transfer_file(ctx, item, self.storage_category, self.timestamp_of(item, meta))
        row = {
            self.key_column: item.relative_path,
            "storage_path": stored.storage_path,
            "mime_type": stored.mime_type,
            "file_size": stored.size,
            "original_size": stored.original_size,
            "compressed": stored.compressed,
            **self.build_row(item, stored, meta),
        }
        await ctx.metadata.insert_record(self.table, ctx.tenant_id, row)
        return SYNCED


# ============================================================================
# CHAT MEDIA
# ============================================================================

class ChatMediaPipeline(RemoteFilePipeline):
    entity_type = EntityType.CHAT_MEDIA
    category = "chat_media"
    storage_category = "chat-media"
    table = "media_files"
    key_column = "source_path"

    def build_row(self, remote, stored, meta):
        return {
            "file_name": remote.filename,
            "file_type": stored.file_type,
        }


# ============================================================================
# VOICEMAILS
# ============================================================================

class VoicemailsPipeline(RemoteFilePipeline):
    entity_type = EntityType.VOICEMAILS
    category = "voicemails"
    storage_category = "voicemails"
    table = "voicemails"
    key_column = "threecx_voicemail_id"

    def parse(self, remote):
        return parse_voicemail_path(remote.relative_path)

    def timestamp_of(self, remote, meta):
        return meta.get("recorded_at") or remote.modified_at

    def build_row(self, remote, stored, meta):
        return {
            "extension": meta.get("extension"),
            "original_filename": remote.filename,
            "is_urgent": meta.get("is_urgent", False),
            "received_at": self.timestamp_of(remote, meta).isoformat(),
        }


# ============================================================================
# FAXES
# ============================================================================

class FaxesPipeline(RemoteFilePipeline):
    entity_type = EntityType.FAXES
    category = "faxes"
    storage_category = "faxes"
    table = "faxes"
    key_column = "threecx_fax_id"

    def parse(self, remote):
        return parse_fax_path(remote.relative_path)

    def timestamp_of(self, remote, meta):
        return meta.get("received_at") or remote.modified_at

    def build_row(self, remote, stored, meta):
        return {
            "direction": meta.get("direction"),
            "remote_number": meta.get("remote_number"),
            "original_filename": remote.filename,
            "received_at": self.timestamp_of(remote, meta).isoformat(),
        }


# ============================================================================
# MEETINGS
# ============================================================================

class MeetingsPipeline(RemoteFilePipeline):
    entity_type = EntityType.MEETINGS
    category = "meetings"
    storage_category = "meetings"
    table = "meeting_recordings"
    key_column = "threecx_meeting_id"

    def parse(self, remote):
        return parse_meeting_filename(remote.filename)

    def timestamp_of(self, remote, meta):
        return meta.get("recorded_at") or remote.modified_at

    def build_row(self, remote, stored, meta):
        return {
            "meeting_name": meta.get("meeting_name"),
            "host_extension": meta.get("host_extension"),
            "original_filename": remote.filename,
            "recorded_at": self.timestamp_of(remote, meta).isoformat(),
        }
