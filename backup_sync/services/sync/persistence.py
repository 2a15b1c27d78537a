"""
Metadata Persistence
Idempotent writes of backed-up records into Supabase.

Every record is keyed by (tenant_id, source id). Inserts use
ON CONFLICT DO NOTHING so a re-run writes nothing new; a conflicting
row surfaces as DuplicateRecordError and is counted as skipped.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

import httpx
from dateutil.parser import isoparse
from postgrest.exceptions import APIError

from backup_sync.core.errors import DestinationWriteError, DuplicateRecordError

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"

# table -> natural key (besides tenant_id)
SOURCE_KEYS = {
    "messages": "threecx_message_id",
    "call_logs": "threecx_call_id",
    "call_recordings": "threecx_recording_id",
    "voicemails": "threecx_voicemail_id",
    "faxes": "threecx_fax_id",
    "meeting_recordings": "threecx_meeting_id",
    "media_files": "source_path",
}


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Supabase returns ISO strings; tests and source rows hand us datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    parsed = isoparse(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


async def execute(query, action: str):
    """Run a postgrest query, translating failures into sync errors."""
    try:
        return await query.execute()
    except APIError as e:
        if e.code == UNIQUE_VIOLATION:
            raise DuplicateRecordError(f"{action}: record already exists", {"code": e.code})
        raise DestinationWriteError(f"{action} failed: {e.message}", {"code": e.code})
    except httpx.HTTPError as e:
        raise DestinationWriteError(f"{action} failed: {e}")


class MetadataStore:
    """Supabase-backed metadata store."""

    def __init__(self, client):
        self._client = client

    def _table(self, name: str):
        return self._client.table(name)

    # ========================================================================
    # GENERIC IDEMPOTENT INSERT
    # ========================================================================

    async def insert_record(self, table: str, tenant_id: str, row: Dict[str, Any]) -> Dict[str, Any]:
        """
        Insert one row keyed by (tenant_id, natural key).

        Raises:
            DuplicateRecordError: the key already exists
            DestinationWriteError: any other write failure
        """
        key = SOURCE_KEYS[table]
        payload = {**row, "tenant_id": tenant_id}
        response = await execute(
            self._table(table).upsert(payload, on_conflict=f"tenant_id,{key}", ignore_duplicates=True),
            f"insert {table}",
        )
        if not response.data:
            raise DuplicateRecordError(f"{table} {payload.get(key)} already synced", {"key": payload.get(key)})
        return response.data[0]

    async def record_exists(self, table: str, tenant_id: str, value: Any) -> bool:
        key = SOURCE_KEYS[table]
        response = await execute(
            self._table(table).select("id").eq("tenant_id", tenant_id).eq(key, value).limit(1),
            f"lookup {table}",
        )
        return bool(response.data)

    # ========================================================================
    # CONVERSATIONS / PARTICIPANTS / MESSAGES
    # ========================================================================

    async def _find_alias(self, tenant_id: str, source_conversation_id: str) -> Optional[str]:
        response = await execute(
            self._table("conversation_aliases")
            .select("conversation_id")
            .eq("tenant_id", tenant_id)
            .eq("threecx_conversation_id", source_conversation_id)
            .limit(1),
            "lookup conversation alias",
        )
        return response.data[0]["conversation_id"] if response.data else None

    async def get_conversation_id(self, tenant_id: str, source_conversation_id: str) -> Optional[str]:
        """Conversation id for a source conversation, following a merge to its keeper."""
        response = await execute(
            self._table("conversations")
            .select("id")
            .eq("tenant_id", tenant_id)
            .eq("threecx_conversation_id", source_conversation_id)
            .limit(1),
            "lookup conversation",
        )
        if response.data:
            return response.data[0]["id"]
        return await self._find_alias(tenant_id, source_conversation_id)

    async def upsert_conversation(self, tenant_id: str, row: Dict[str, Any]) -> str:
        # A merged-away source conversation resolves to its keeper, which is left untouched
        keeper = await self._find_alias(tenant_id, row["threecx_conversation_id"])
        if keeper:
            return keeper
        payload = {**row, "tenant_id": tenant_id}
        response = await execute(
            self._table("conversations").upsert(payload, on_conflict="tenant_id,threecx_conversation_id"),
            "upsert conversation",
        )
        return response.data[0]["id"]

    async def upsert_participant(self, tenant_id: str, conversation_id: str, row: Dict[str, Any]):
        """Add a participant unless one with the same external id is already there."""
        existing = await execute(
            self._table("participants")
            .select("id")
            .eq("conversation_id", conversation_id)
            .eq("external_id", row.get("external_id") or "")
            .limit(1),
            "lookup participant",
        )
        if existing.data:
            return

        extension_id = None
        if row.get("external_id") and row.get("participant_type") != "external":
            ext = await execute(
                self._table("extensions")
                .select("id")
                .eq("tenant_id", tenant_id)
                .eq("extension_number", row["external_id"])
                .limit(1),
                "lookup extension",
            )
            extension_id = ext.data[0]["id"] if ext.data else None

        await execute(
            self._table("participants").insert({
                **row,
                "tenant_id": tenant_id,
                "conversation_id": conversation_id,
                "extension_id": extension_id,
                "joined_at": utcnow_iso(),
            }),
            "insert participant",
        )

    async def insert_message(self, tenant_id: str, row: Dict[str, Any]) -> str:
        record = await self.insert_record("messages", tenant_id, row)
        return record["id"]

    # ========================================================================
    # EXTENSIONS
    # ========================================================================

    async def upsert_extension(self, tenant_id: str, row: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
        """
        Upsert one directory entry.

        Returns (display name changed, extension id). A brand new extension
        counts as unchanged since nothing references it yet.
        """
        existing = await execute(
            self._table("extensions")
            .select("id, display_name")
            .eq("tenant_id", tenant_id)
            .eq("extension_number", row["extension_number"])
            .limit(1),
            "lookup extension",
        )
        previous = existing.data[0] if existing.data else None

        response = await execute(
            self._table("extensions").upsert(
                {**row, "tenant_id": tenant_id, "last_synced_at": utcnow_iso()},
                on_conflict="tenant_id,extension_number",
            ),
            "upsert extension",
        )
        extension_id = response.data[0]["id"] if response.data else (previous or {}).get("id")
        changed = bool(previous) and previous.get("display_name") != row.get("display_name")
        return changed, extension_id

    async def list_extensions(self, tenant_id: str) -> List[Dict[str, Any]]:
        response = await execute(
            self._table("extensions").select("id, extension_number, display_name").eq("tenant_id", tenant_id),
            "list extensions",
        )
        return response.data or []

    async def cascade_extension_name(
        self,
        tenant_id: str,
        extension_id: Optional[str],
        extension_number: str,
        display_name: str,
    ) -> int:
        """Push a display name onto participants and message senders. Returns rows updated."""
        updated = 0
        if extension_id:
            updated += await self._rename(
                lambda: self._table("participants")
                .update({"external_name": display_name})
                .eq("extension_id", extension_id),
                "external_name",
                display_name,
                "update participant names",
            )
        updated += await self._rename(
            lambda: self._table("messages")
            .update({"sender_name": display_name})
            .eq("tenant_id", tenant_id)
            .eq("sender_identifier", extension_number),
            "sender_name",
            display_name,
            "update sender names",
        )
        return updated

    async def _rename(self, build, column: str, name: str, action: str) -> int:
        # neq never matches NULL, so unnamed rows need their own update
        updated = 0
        for query in (build().neq(column, name), build().is_(column, "null")):
            response = await execute(query, action)
            updated += len(response.data or [])
        return updated

    # ========================================================================
    # DUPLICATE CONVERSATIONS
    # ========================================================================

    async def conversation_participants(self, tenant_id: str) -> Dict[str, Set[str]]:
        """conversation id -> set of participant external ids."""
        response = await execute(
            self._table("participants").select("conversation_id, external_id").eq("tenant_id", tenant_id),
            "list participants",
        )
        members: Dict[str, Set[str]] = {}
        for row in response.data or []:
            if row.get("external_id"):
                members.setdefault(row["conversation_id"], set()).add(row["external_id"])
        return members

    async def conversation_activity(self, conversation_id: str) -> Tuple[Optional[datetime], int]:
        """(most recent message time, message count) for one conversation."""
        response = await execute(
            self._table("messages")
            .select("sent_at", count="exact")
            .eq("conversation_id", conversation_id)
            .order("sent_at", desc=True)
            .limit(1),
            "conversation activity",
        )
        last = parse_timestamp(response.data[0]["sent_at"]) if response.data else None
        return last, response.count or 0

    async def reassign_conversation(self, from_id: str, to_id: str) -> int:
        """Move messages and media from one conversation to another. Returns messages moved."""
        moved = await execute(
            self._table("messages").update({"conversation_id": to_id}).eq("conversation_id", from_id),
            "reassign messages",
        )
        await execute(
            self._table("media_files").update({"conversation_id": to_id}).eq("conversation_id", from_id),
            "reassign media",
        )
        return len(moved.data or [])

    async def retire_conversation(self, tenant_id: str, conversation_id: str, keeper_id: str):
        """
        Delete a drained duplicate, leaving an alias to its keeper.

        The alias maps the duplicate's source conversation id to the keeper so
        later syncs of that source conversation land there instead of
        recreating the duplicate. Aliases that pointed at the duplicate are
        moved to the keeper.
        """
        found = await execute(
            self._table("conversations").select("threecx_conversation_id").eq("id", conversation_id).limit(1),
            "lookup conversation",
        )
        source_id = found.data[0].get("threecx_conversation_id") if found.data else None
        if source_id:
            await execute(
                self._table("conversation_aliases").upsert(
                    {"tenant_id": tenant_id, "threecx_conversation_id": source_id, "conversation_id": keeper_id},
                    on_conflict="tenant_id,threecx_conversation_id",
                ),
                "record conversation alias",
            )
        await execute(
            self._table("conversation_aliases").update({"conversation_id": keeper_id}).eq("conversation_id", conversation_id),
            "repoint conversation aliases",
        )
        await execute(
            self._table("participants").delete().eq("conversation_id", conversation_id),
            "delete participants",
        )
        await execute(
            self._table("conversations").delete().eq("id", conversation_id),
            "delete conversation",
        )

    # ========================================================================
    # MEDIA LINKING
    # ========================================================================

    async def list_unlinked_media(self, tenant_id: str) -> List[Dict[str, Any]]:
        response = await execute(
            self._table("media_files")
            .select("id, file_name, storage_path")
            .eq("tenant_id", tenant_id)
            .is_("message_id", "null")
            .order("created_at"),
            "list unlinked media",
        )
        return response.data or []

    async def media_message_candidates(self, tenant_id: str, filename: str) -> List[Dict[str, Any]]:
        """Media-bearing messages mentioning `filename`, oldest first, with their linked media."""
        response = await execute(
            self._table("messages")
            .select("id, conversation_id, sent_at, media_files(id)")
            .eq("tenant_id", tenant_id)
            .eq("has_media", True)
            .ilike("content", f"%{filename}%")
            .order("sent_at")
            .order("id"),
            "find media message",
        )
        return response.data or []

    async def link_media(self, media_id: str, message_id: str, conversation_id: Optional[str]):
        payload = {"message_id": message_id}
        if conversation_id:
            payload["conversation_id"] = conversation_id
        await execute(
            self._table("media_files").update(payload).eq("id", media_id),
            "link media",
        )

    # ========================================================================
    # RUN BOOKKEEPING
    # ========================================================================

    async def record_sync_log(self, row: Dict[str, Any]):
        await execute(self._table("sync_logs").insert(row), "insert sync log")

    async def touch_tenant_last_sync(self, tenant_id: str, when: Optional[datetime] = None):
        stamp = (when or datetime.now(timezone.utc)).isoformat()
        await execute(
            self._table("tenants").update({"last_sync_at": stamp}).eq("id", tenant_id),
            "update tenant last sync",
        )
