"""
Pipeline Base
The incremental loop every entity pipeline shares.

FLOW:
1. Mark the checkpoint running and read its position
2. Fetch pages since the position, ordered by (source timestamp, source id)
3. Normalize + idempotent upsert each record
4. Persist the position (last processed timestamp + epsilon) after every page
5. Mark success, or mark error with progress kept and re-raise
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from backup_sync.core.errors import (
    DuplicateRecordError,
    FileTooLargeError,
    RemoteFileError,
    TransformError,
)
from backup_sync.models.schemas.sync import EntityResult, EntityType
from backup_sync.models.schemas.tenant import Tenant
from backup_sync.services.sync.checkpoints import advance

logger = logging.getLogger(__name__)

# Errors that only affect the record being processed
ITEM_ERRORS = (TransformError, RemoteFileError)

SYNCED = "synced"
SKIPPED = "skipped"
TOO_LARGE = "too_large"


@dataclass
class PipelineContext:
    """Everything a pipeline needs for one tenant run."""
    tenant: Tenant
    checkpoints: Any
    metadata: Any
    blobs: Any = None
    transcoder: Any = None
    source: Any = None
    files_opener: Optional[Callable[[], Awaitable[Any]]] = None
    batch_size: int = 100
    error_limit: int = 5
    buffer_threshold_bytes: int = 25 * 1024 * 1024
    max_file_size_bytes: int = 500 * 1024 * 1024
    new_media_messages: int = 0
    _files: Any = field(default=None, repr=False)

    @property
    def tenant_id(self) -> str:
        return self.tenant.id

    async def remote_files(self):
        """SFTP access, opened on first use and shared by all file pipelines."""
        if self._files is None:
            if self.files_opener is None:
                raise RuntimeError("No remote file access configured for this run")
            self._files = await self.files_opener()
        return self._files

    def close(self):
        if self._files is not None:
            self._files.close()
            self._files = None


def summarize(result: EntityResult, extra: Optional[str] = None) -> str:
    parts = [f"Synced {result.synced}", f"skipped {result.skipped}"]
    if result.too_large:
        parts.append(f"too large {result.too_large}")
    if result.errors:
        parts.append(f"errors {len(result.errors)}")
    notes = ", ".join(parts)
    if extra:
        notes = f"{notes}. {extra}"
    return notes


class IncrementalPipeline:
    """
    Subclasses implement fetch_page, item_key and process.

    One instance serves one tenant run, so subclasses may keep per-run state.
    """

    entity_type: EntityType

    def __init__(self):
        self.fetches = 0
        self.notes: Optional[str] = None
        self.result: Optional[EntityResult] = None

    # ------------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------------

    async def prepare(self, ctx: PipelineContext, result: EntityResult):
        """Runs once before the first page."""

    async def fetch_page(
        self,
        ctx: PipelineContext,
        since: Optional[datetime],
        after: Optional[Tuple[datetime, Any]],
        limit: int,
    ) -> List[Any]:
        raise NotImplementedError

    def item_key(self, item: Any) -> Tuple[datetime, Any]:
        """(source timestamp, source id) of an item."""
        raise NotImplementedError

    async def process(self, ctx: PipelineContext, item: Any, result: EntityResult) -> str:
        """Write one item. Returns SYNCED, SKIPPED or TOO_LARGE."""
        raise NotImplementedError

    def describe(self) -> Optional[str]:
        """Extra text for the status notes."""
        return self.notes

    # ------------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------------

    async def _process_one(self, ctx: PipelineContext, item: Any, item_id: Any, result: EntityResult) -> bool:
        """False when the item failed and has to be retried on a later run."""
        try:
            outcome = await self.process(ctx, item, result)
        except DuplicateRecordError:
            outcome = SKIPPED
        except FileTooLargeError as e:
            logger.warning(f"⚠️  {self.entity_type.value} {item_id} too large for {ctx.tenant.slug}: {e}")
            outcome = TOO_LARGE
        except ITEM_ERRORS as e:
            logger.error(f"❌ Failed to sync {self.entity_type.value} {item_id} for {ctx.tenant.slug}: {e}")
            result.add_error(item_id, e)
            return False

        if outcome == SYNCED:
            result.synced += 1
        elif outcome == TOO_LARGE:
            result.too_large += 1
        else:
            result.skipped += 1
        return True

    async def run(self, ctx: PipelineContext) -> EntityResult:
        entity = self.entity_type.value
        tenant_id = ctx.tenant_id
        result = EntityResult(entity_type=self.entity_type)
        self.result = result

        await ctx.checkpoints.mark_running(tenant_id, entity)
        position = await ctx.checkpoints.get_position(tenant_id, entity)
        logger.info(f"🔄 {entity} sync for {ctx.tenant.slug} since {position.isoformat() if position else 'beginning'}")

        committed: Optional[datetime] = None
        blocked = False
        saved: Optional[datetime] = None
        after: Optional[Tuple[datetime, Any]] = None

        try:
            await self.prepare(ctx, result)
            while True:
                page = await self.fetch_page(ctx, position, after, ctx.batch_size)
                self.fetches += 1

                for item in page:
                    timestamp, item_id = self.item_key(item)
                    handled = await self._process_one(ctx, item, item_id, result)
                    # The position never moves past an item that still has to be retried
                    blocked = blocked or not handled
                    if not blocked and timestamp is not None:
                        candidate = advance(timestamp)
                        if committed is None or candidate > committed:
                            committed = candidate
                    after = (timestamp, item_id)

                if committed is not None and committed != saved:
                    await ctx.checkpoints.save_progress(tenant_id, entity, committed, result.synced)
                    saved = committed

                if len(page) < ctx.batch_size:
                    break

        except asyncio.CancelledError:
            await self._record_failure(ctx, result, committed, saved, "cancelled: tenant run budget exceeded")
            raise
        except Exception as e:
            await self._record_failure(ctx, result, committed, saved, str(e))
            raise

        notes = summarize(result, self.describe())
        result.notes = notes
        if result.errors:
            shown = "; ".join(f"{err.item_id}: {err.error}" for err in result.errors[:ctx.error_limit])
            await ctx.checkpoints.mark_error(tenant_id, entity, shown, result.synced, notes)
            logger.warning(f"⚠️  {entity} sync for {ctx.tenant.slug} finished with {len(result.errors)} errors")
        else:
            await ctx.checkpoints.mark_success(tenant_id, entity, result.synced, notes)
            logger.info(f"✅ {entity} sync for {ctx.tenant.slug}: {notes}")
        return result

    async def _record_failure(
        self,
        ctx: PipelineContext,
        result: EntityResult,
        committed: Optional[datetime],
        saved: Optional[datetime],
        message: str,
    ):
        entity = self.entity_type.value
        result.failed = True
        result.failure = message
        result.notes = summarize(result, self.describe())
        logger.error(f"❌ {entity} sync failed for {ctx.tenant.slug}: {message}")
        try:
            if committed is not None and committed != saved:
                await ctx.checkpoints.save_progress(ctx.tenant_id, entity, committed, result.synced)
            await ctx.checkpoints.mark_error(ctx.tenant_id, entity, message, result.synced, result.notes)
        except Exception as e:
            logger.error(f"Could not record {entity} failure for {ctx.tenant.slug}: {e}")
