"""
Call Recordings Pipeline
Recording rows come from the database; the audio itself is fetched over SFTP.
"""
import logging
import posixpath
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from backup_sync.core.errors import DuplicateRecordError, TransformError
from backup_sync.models.schemas.sync import EntityResult, EntityType
from backup_sync.services.sync.normalize import ensure_utc, iso_or_none
from backup_sync.services.sync.pipelines.base import SKIPPED, SYNCED, IncrementalPipeline, PipelineContext
from backup_sync.services.sync.pipelines.paths import DEFAULT_PATHS
from backup_sync.services.sync.pipelines.transfer import transfer_file

logger = logging.getLogger(__name__)


def resolve_recording_path(recording_url: str, root: str) -> str:
    """Absolute SFTP path for a recording_url (absolute path, relative path or URL)."""
    if "://" in recording_url:
        # Web URLs carry the path relative to the recordings folder
        return posixpath.join(root, urlparse(recording_url).path.lstrip("/"))
    if recording_url.startswith("/"):
        return recording_url
    return posixpath.join(root, recording_url)


class RecordingsPipeline(IncrementalPipeline):
    entity_type = EntityType.RECORDINGS

    def __init__(self):
        super().__init__()
        self.without_file = 0

    def _root(self, ctx: PipelineContext) -> str:
        return ctx.tenant.threecx_recordings_path or DEFAULT_PATHS["recordings"][0]

    async def fetch_page(self, ctx, since, after, limit):
        return await ctx.source.fetch_recordings(since, after, limit)

    def item_key(self, item):
        return item["start_time"], item["recording_id"]

    def describe(self) -> Optional[str]:
        return f"{self.without_file} rows without a file" if self.without_file else None

    async def process(self, ctx: PipelineContext, item: Dict[str, Any], result: EntityResult) -> str:
        recording_id = str(item["recording_id"])
        if not item.get("recording_url"):
            self.without_file += 1
            return SKIPPED
        if await ctx.metadata.record_exists("call_recordings", ctx.tenant_id, recording_id):
            raise DuplicateRecordError(f"recording {recording_id} already synced")
        if item.get("start_time") is None:
            raise TransformError(f"recording {recording_id} has no start time")

        files = await ctx.remote_files()
        root = self._root(ctx)
        remote = await files.stat(resolve_recording_path(item["recording_url"], root), root)
        started = ensure_utc(item["start_time"])
        stored = await transfer_file(ctx, remote, "recordings", started)

        duration = item.get("duration_seconds")
        if duration is None and item.get("end_time"):
            duration = int((ensure_utc(item["end_time"]) - started).total_seconds())

        await ctx.metadata.insert_record("call_recordings", ctx.tenant_id, {
            "threecx_recording_id": recording_id,
            "extension": item.get("extension_number"),
            "caller_number": item.get("caller_number"),
            "callee_number": item.get("callee_number"),
            "original_filename": remote.filename,
            "file_size": stored.size,
            "original_size": stored.original_size,
            "storage_path": stored.storage_path,
            "mime_type": stored.mime_type,
            "compressed": stored.compressed,
            "duration_seconds": duration,
            "transcription": item.get("transcription"),
            "recorded_at": started.isoformat(),
            "call_started_at": started.isoformat(),
            "call_ended_at": iso_or_none(item.get("end_time")),
        })
        return SYNCED
