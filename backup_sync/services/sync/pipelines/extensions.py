"""
Extensions Pipeline
The extension directory is small, so every run takes a full snapshot.
A display name that changed is pushed onto participants and message senders.
"""
import logging
from typing import Any, Dict, Optional

from backup_sync.core.errors import DestinationWriteError
from backup_sync.models.schemas.sync import EntityResult, EntityType
from backup_sync.services.sync.pipelines.base import PipelineContext, summarize

logger = logging.getLogger(__name__)


def display_name(row: Dict[str, Any]) -> str:
    name = " ".join(part for part in (row.get("firstname"), row.get("lastname")) if part).strip()
    return name or str(row["extension_number"])


class ExtensionsPipeline:
    entity_type = EntityType.EXTENSIONS

    def __init__(self):
        self.fetches = 0
        self.names_cascaded = 0
        self.result: Optional[EntityResult] = None

    def describe(self) -> Optional[str]:
        return f"{self.names_cascaded} names updated" if self.names_cascaded else None

    async def run(self, ctx: PipelineContext) -> EntityResult:
        entity = self.entity_type.value
        result = EntityResult(entity_type=self.entity_type)
        self.result = result
        await ctx.checkpoints.mark_running(ctx.tenant_id, entity)

        try:
            rows = await ctx.source.fetch_extensions()
            self.fetches += 1
            for row in rows:
                number = str(row["extension_number"])
                name = display_name(row)
                try:
                    changed, extension_id = await ctx.metadata.upsert_extension(ctx.tenant_id, {
                        "extension_number": number,
                        "first_name": row.get("firstname"),
                        "last_name": row.get("lastname"),
                        "display_name": name,
                    })
                    result.synced += 1
                    if changed:
                        updated = await ctx.metadata.cascade_extension_name(ctx.tenant_id, extension_id, number, name)
                        self.names_cascaded += updated
                        logger.info(f"🏷️  Extension {number} renamed to {name} ({updated} rows updated)")
                except DestinationWriteError as e:
                    logger.error(f"❌ Failed to sync extension {number} for {ctx.tenant.slug}: {e}")
                    result.add_error(number, e)
        except Exception as e:
            result.failed = True
            result.failure = str(e)
            result.notes = summarize(result, self.describe())
            logger.error(f"❌ extensions sync failed for {ctx.tenant.slug}: {e}")
            try:
                await ctx.checkpoints.mark_error(ctx.tenant_id, entity, str(e), result.synced, result.notes)
            except Exception as record_error:
                logger.error(f"Could not record extensions failure for {ctx.tenant.slug}: {record_error}")
            raise

        result.notes = summarize(result, self.describe())
        if result.errors:
            shown = "; ".join(f"{err.item_id}: {err.error}" for err in result.errors[:ctx.error_limit])
            await ctx.checkpoints.mark_error(ctx.tenant_id, entity, shown, result.synced, result.notes)
        else:
            await ctx.checkpoints.mark_success(ctx.tenant_id, entity, result.synced, result.notes)
            logger.info(f"✅ extensions sync for {ctx.tenant.slug}: {result.notes}")
        return result
