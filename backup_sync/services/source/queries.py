"""
Source Database Queries
Paged "since" reads against a tenant's PBX database.

Every paged query is ordered by (source timestamp, source id) and accepts:
- since: checkpoint position (records at or after it)
- after: (timestamp, id) of the last record already seen in this run,
  so pages never overlap even when many rows share one timestamp
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

import psycopg

from backup_sync.core.errors import SourceQueryError

logger = logging.getLogger(__name__)

Cursor = Tuple[datetime, Any]


# ============================================================================
# SQL
# ============================================================================

MESSAGES_SQL = """
    SELECT
        message_id,
        conversation_id,
        is_external,
        queue_number,
        sender_participant_name,
        sender_participant_no,
        sender_participant_phone,
        time_sent,
        message
    FROM chat_messages_history_view
    {where}
    ORDER BY time_sent ASC, message_id ASC
    LIMIT %(limit)s
"""

CONVERSATIONS_SQL = """
    SELECT DISTINCT ON (conversation_id)
        conversation_id,
        is_external,
        chat_name,
        participants_grp_array,
        provider_type,
        time_sent
    FROM chat_history_view
    WHERE conversation_id = ANY(%(ids)s)
    ORDER BY conversation_id, time_sent DESC
"""

LIVE_CONVERSATIONS_SQL = """
    SELECT
        c.idconversation::text AS conversation_id,
        COALESCE(c.is_external, false) AS is_external,
        c.chat_name,
        COALESCE(c.participants_count, 0) > 2 AS is_group_chat,
        COALESCE(c.message_count, 0) AS message_count
    FROM chat_conversation c
    ORDER BY c.idconversation
"""

CALL_RECORDS_SQL = """
    SELECT
        call_id,
        caller_number,
        caller_name,
        callee_number,
        callee_name,
        extension_number,
        direction,
        call_type,
        status,
        ring_duration,
        talk_duration,
        total_duration,
        call_started_at,
        call_answered_at,
        call_ended_at,
        has_recording
    FROM call_history_view
    {where}
    ORDER BY call_started_at ASC, call_id ASC
    LIMIT %(limit)s
"""

RECORDINGS_SQL = """
    SELECT
        r.id_recording AS recording_id,
        r.recording_url,
        r.start_time,
        r.end_time,
        r.transcription,
        p.dn AS extension_number,
        p.src AS caller_number,
        p.dst AS callee_number
    FROM recordings r
    LEFT JOIN cl_participants p ON p.idcl_participants = r.cl_participants_id
    {where}
    ORDER BY r.start_time ASC, r.id_recording ASC
    LIMIT %(limit)s
"""

EXTENSIONS_SQL = """
    SELECT
        dn.iddn AS idextension,
        dn.number AS extension_number,
        dn.firstname,
        dn.lastname
    FROM dn
    WHERE dn.number IS NOT NULL
      AND dn.dntype = 0
    ORDER BY dn.number
"""

LEGACY_EXTENSIONS_SQL = """
    SELECT
        e.id AS idextension,
        e.number AS extension_number,
        e.firstname,
        e.lastname
    FROM extensions e
    WHERE e.number IS NOT NULL
    ORDER BY e.number
"""


def build_since_clause(
    ts_column: str,
    id_column: str,
    since: Optional[datetime],
    after: Optional[Cursor],
) -> Tuple[str, Dict[str, Any]]:
    """WHERE clause and params for a keyset page."""
    conditions = []
    params: Dict[str, Any] = {}
    if since is not None:
        conditions.append(f"{ts_column} >= %(since)s")
        params["since"] = since
    if after is not None:
        conditions.append(f"({ts_column}, {id_column}) > (%(after_ts)s, %(after_id)s)")
        params["after_ts"], params["after_id"] = after
    if not conditions:
        return "", params
    return "WHERE " + " AND ".join(conditions), params


class SourceDatabase:
    """Read-only access to one tenant's PBX database through its pool."""

    def __init__(self, pool, tenant_slug: str = ""):
        self._pool = pool
        self.tenant_slug = tenant_slug

    async def _fetch(self, query: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        try:
            async with self._pool.connection() as conn:
                cursor = await conn.execute(query, params or {})
                return await cursor.fetchall()
        except psycopg.Error as e:
            raise SourceQueryError(f"Source query failed for {self.tenant_slug}: {e}")

    async def ping(self) -> bool:
        rows = await self._fetch("SELECT 1 AS ok")
        return bool(rows) and rows[0].get("ok") == 1

    # ------------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------------

    async def fetch_messages(
        self,
        since: Optional[datetime],
        after: Optional[Cursor],
        limit: int,
    ) -> List[Dict[str, Any]]:
        where, params = build_since_clause("time_sent", "message_id", since, after)
        params["limit"] = limit
        rows = await self._fetch(MESSAGES_SQL.format(where=where), params)
        logger.debug(f"Fetched {len(rows)} messages from {self.tenant_slug}")
        return rows

    async def fetch_conversations(self, conversation_ids: Sequence[str]) -> List[Dict[str, Any]]:
        if not conversation_ids:
            return []
        return await self._fetch(CONVERSATIONS_SQL, {"ids": list(conversation_ids)})

    async def fetch_live_conversations(self) -> List[Dict[str, Any]]:
        return await self._fetch(LIVE_CONVERSATIONS_SQL)

    # ------------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------------

    async def fetch_call_records(
        self,
        since: Optional[datetime],
        after: Optional[Cursor],
        limit: int,
    ) -> List[Dict[str, Any]]:
        where, params = build_since_clause("call_started_at", "call_id", since, after)
        params["limit"] = limit
        return await self._fetch(CALL_RECORDS_SQL.format(where=where), params)

    async def fetch_recordings(
        self,
        since: Optional[datetime],
        after: Optional[Cursor],
        limit: int,
    ) -> List[Dict[str, Any]]:
        where, params = build_since_clause("r.start_time", "r.id_recording", since, after)
        params["limit"] = limit
        return await self._fetch(RECORDINGS_SQL.format(where=where), params)

    # ------------------------------------------------------------------------
    # Directory
    # ------------------------------------------------------------------------

    async def fetch_extensions(self) -> List[Dict[str, Any]]:
        """Extensions, trying the V20 schema before the legacy one."""
        try:
            return await self._fetch(EXTENSIONS_SQL)
        except SourceQueryError as e:
            logger.warning(f"V20 extensions query failed for {self.tenant_slug}, trying legacy schema: {e}")
            return await self._fetch(LEGACY_EXTENSIONS_SQL)
