"""
Call Detail Records Pipeline
"""
from typing import Any, Dict

from backup_sync.models.schemas.sync import EntityResult, EntityType
from backup_sync.services.sync.normalize import normalize_call_record
from backup_sync.services.sync.pipelines.base import SYNCED, IncrementalPipeline, PipelineContext


class CallRecordsPipeline(IncrementalPipeline):
    entity_type = EntityType.CDR

    async def fetch_page(self, ctx, since, after, limit):
        return await ctx.source.fetch_call_records(since, after, limit)

    def item_key(self, item):
        return item["call_started_at"], item["call_id"]

    async def process(self, ctx: PipelineContext, item: Dict[str, Any], result: EntityResult) -> str:
        await ctx.metadata.insert_record("call_logs", ctx.tenant_id, normalize_call_record(item))
        return SYNCED
