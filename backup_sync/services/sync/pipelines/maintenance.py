"""
Post-Sync Maintenance
Housekeeping that runs after a tenant's pipelines.

STEPS:
1. Extension display names pushed onto participants and senders
2. Conversations with identical participant sets merged into one
3. Unlinked chat media attached to the message that sent it

Every step is idempotent; running it twice changes nothing the second time.
"""
import logging
from datetime import datetime, timezone
from typing import Dict, FrozenSet, List, Set

from backup_sync.core.errors import DestinationWriteError
from backup_sync.models.schemas.tenant import Tenant

logger = logging.getLogger(__name__)

_NEVER = datetime.min.replace(tzinfo=timezone.utc)


class Maintenance:
    def __init__(self, metadata):
        self.metadata = metadata

    async def run(self, tenant: Tenant) -> Dict[str, int]:
        counts = {"names_updated": 0, "conversations_merged": 0, "messages_moved": 0, "media_linked": 0}

        try:
            counts["names_updated"] = await self.propagate_names(tenant.id)
        except DestinationWriteError as e:
            logger.warning(f"⚠️  Name propagation failed for {tenant.slug}: {e}")

        try:
            merged, moved = await self.merge_duplicate_conversations(tenant.id)
            counts["conversations_merged"] = merged
            counts["messages_moved"] = moved
        except DestinationWriteError as e:
            logger.warning(f"⚠️  Conversation merge failed for {tenant.slug}: {e}")

        if tenant.backup_chat_media:
            try:
                counts["media_linked"] = await self.link_media(tenant.id)
            except DestinationWriteError as e:
                logger.warning(f"⚠️  Media linking failed for {tenant.slug}: {e}")

        if any(counts.values()):
            logger.info(f"🧹 Maintenance for {tenant.slug}: {counts}")
        return counts

    # ========================================================================
    # NAME PROPAGATION
    # ========================================================================

    async def propagate_names(self, tenant_id: str) -> int:
        updated = 0
        for ext in await self.metadata.list_extensions(tenant_id):
            if not ext.get("display_name"):
                continue
            updated += await self.metadata.cascade_extension_name(
                tenant_id, ext.get("id"), ext["extension_number"], ext["display_name"]
            )
        return updated

    # ========================================================================
    # DUPLICATE CONVERSATIONS
    # ========================================================================

    async def merge_duplicate_conversations(self, tenant_id: str):
        """
        Merge conversations whose participant sets are identical.

        The keeper is the conversation with the most recent message, ties
        broken by message count. A duplicate is only deleted once it holds
        no messages; its source conversation id then resolves to the keeper.

        Returns:
            (conversations merged, messages moved)
        """
        groups: Dict[FrozenSet[str], List[str]] = {}
        for conversation_id, members in (await self.metadata.conversation_participants(tenant_id)).items():
            if len(members) < 2:
                continue
            groups.setdefault(frozenset(members), []).append(conversation_id)

        merged = 0
        moved = 0
        for members, conversation_ids in groups.items():
            if len(conversation_ids) < 2:
                continue

            activity = {}
            for conversation_id in conversation_ids:
                last, count = await self.metadata.conversation_activity(conversation_id)
                activity[conversation_id] = (last or _NEVER, count)
            keeper = max(sorted(conversation_ids), key=lambda cid: activity[cid])

            for duplicate in conversation_ids:
                if duplicate == keeper:
                    continue
                moved += await self.metadata.reassign_conversation(duplicate, keeper)
                _, remaining = await self.metadata.conversation_activity(duplicate)
                if remaining:
                    logger.error(f"❌ Conversation {duplicate} still has {remaining} messages, not merging")
                    continue
                await self.metadata.retire_conversation(tenant_id, duplicate, keeper)
                merged += 1
                logger.info(f"🔀 Merged conversation {duplicate} into {keeper} ({', '.join(sorted(members))})")

        return merged, moved

    # ========================================================================
    # MEDIA LINKING
    # ========================================================================

    async def link_media(self, tenant_id: str) -> int:
        """
        Attach each unlinked media file to the earliest media message that
        mentions its exact filename and has no media yet.
        """
        linked = 0
        taken: Set[str] = set()
        for media in await self.metadata.list_unlinked_media(tenant_id):
            filename = media.get("file_name")
            if not filename:
                continue
            for message in await self.metadata.media_message_candidates(tenant_id, filename):
                if message["id"] in taken or message.get("media_files"):
                    continue
                await self.metadata.link_media(media["id"], message["id"], message.get("conversation_id"))
                taken.add(message["id"])
                linked += 1
                break
        return linked
