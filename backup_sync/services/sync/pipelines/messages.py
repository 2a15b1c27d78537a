"""
Chat Messages Pipeline
Live conversations first (so empty group chats show up), then message history.
"""
import logging
from typing import Any, Dict, List, Optional

from backup_sync.core.errors import DestinationWriteError, SourceQueryError
from backup_sync.models.schemas.sync import EntityResult, EntityType
from backup_sync.services.sync.normalize import map_channel, normalize_message, parse_participants
from backup_sync.services.sync.pipelines.base import SYNCED, IncrementalPipeline, PipelineContext

logger = logging.getLogger(__name__)


class MessagesPipeline(IncrementalPipeline):
    entity_type = EntityType.MESSAGES

    def __init__(self):
        super().__init__()
        self._conversation_ids: Dict[str, str] = {}
        self._conversation_meta: Dict[str, Dict[str, Any]] = {}
        self.conversations_created = 0
        self.conversations_updated = 0

    async def prepare(self, ctx: PipelineContext, result: EntityResult):
        try:
            live = await ctx.source.fetch_live_conversations()
        except SourceQueryError as e:
            logger.warning(f"⚠️  Live conversations unavailable for {ctx.tenant.slug}: {e}")
            return

        for conv in live:
            source_id = str(conv["conversation_id"])
            try:
                existing = await ctx.metadata.get_conversation_id(ctx.tenant_id, source_id)
                row = {
                    "threecx_conversation_id": source_id,
                    "conversation_name": conv.get("chat_name"),
                    "is_external": bool(conv.get("is_external")),
                    "is_group_chat": bool(conv.get("is_group_chat")),
                }
                if not existing:
                    row["channel_type"] = "internal"
                conversation_id = await ctx.metadata.upsert_conversation(ctx.tenant_id, row)
                self._conversation_ids[source_id] = conversation_id
                if existing:
                    self.conversations_updated += 1
                else:
                    self.conversations_created += 1
            except DestinationWriteError as e:
                logger.warning(f"⚠️  Failed to sync conversation {source_id}: {e}")

        if self.conversations_created or self.conversations_updated:
            logger.info(
                f"💬 Conversations from live table for {ctx.tenant.slug}: "
                f"{self.conversations_created} created, {self.conversations_updated} updated"
            )

    def describe(self) -> Optional[str]:
        if not (self.conversations_created or self.conversations_updated):
            return None
        return f"Conversations: {self.conversations_created} created, {self.conversations_updated} updated"

    async def fetch_page(self, ctx, since, after, limit) -> List[Dict[str, Any]]:
        page = await ctx.source.fetch_messages(since, after, limit)
        unknown = {str(m["conversation_id"]) for m in page} - set(self._conversation_ids) - set(self._conversation_meta)
        if unknown:
            for conv in await ctx.source.fetch_conversations(sorted(unknown)):
                self._conversation_meta[str(conv["conversation_id"])] = conv
        return page

    def item_key(self, item):
        return item["time_sent"], item["message_id"]

    async def process(self, ctx: PipelineContext, item: Dict[str, Any], result: EntityResult) -> str:
        conversation_id = await self._ensure_conversation(ctx, item)
        record = normalize_message(item, conversation_id)
        await ctx.metadata.insert_message(ctx.tenant_id, record)
        if record["has_media"]:
            ctx.new_media_messages += 1
        return SYNCED

    async def _ensure_conversation(self, ctx: PipelineContext, message: Dict[str, Any]) -> str:
        source_id = str(message["conversation_id"])
        known = self._conversation_ids.get(source_id)
        if known:
            return known

        existing = await ctx.metadata.get_conversation_id(ctx.tenant_id, source_id)
        if existing:
            self._conversation_ids[source_id] = existing
            return existing

        meta: Optional[Dict[str, Any]] = self._conversation_meta.get(source_id)
        participants = parse_participants((meta or {}).get("participants_grp_array"))
        is_external = bool(message.get("is_external"))

        conversation_id = await ctx.metadata.upsert_conversation(ctx.tenant_id, {
            "threecx_conversation_id": source_id,
            "conversation_name": (meta or {}).get("chat_name"),
            "channel_type": map_channel((meta or {}).get("provider_type")),
            "is_external": is_external,
            "is_group_chat": len(participants) > 2,
            "participant_count": max(len(participants), 2),
        })
        self._conversation_ids[source_id] = conversation_id
        self.conversations_created += 1

        participant_type = "external" if is_external else "extension"
        members = {p.extension: p.name for p in participants}
        sender = message.get("sender_participant_no")
        if sender and sender not in members:
            members[sender] = message.get("sender_participant_name") or sender

        for extension, name in members.items():
            await ctx.metadata.upsert_participant(ctx.tenant_id, conversation_id, {
                "external_id": extension,
                "external_name": name,
                "participant_type": participant_type,
            })
        return conversation_id
