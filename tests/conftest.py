"""
Shared fixtures: environment defaults and in-memory stand-ins for Supabase,
the PBX database and the PBX filesystem.
"""
import itertools
import os
import posixpath
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Set, Tuple

# Settings() is built at import time
os.environ.setdefault("SUPABASE_URL", "https://example.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "service-role-key")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

import pytest

from backup_sync.core.errors import DuplicateRecordError, SourceQueryError
from backup_sync.models.schemas.sync import CheckpointRecord, SyncStatus
from backup_sync.models.schemas.tenant import Tenant
from backup_sync.services.source.files import RemoteFile
from backup_sync.services.sync.checkpoints import POSITION_EPSILON
from backup_sync.services.sync.persistence import SOURCE_KEYS, parse_timestamp
from backup_sync.services.sync.pipelines.base import PipelineContext
from backup_sync.services.sync.transcoder import MediaTranscoder

BASE_TIME = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def make_tenant(**overrides) -> Tenant:
    fields = {
        "id": "tenant-1",
        "name": "Acme Dental",
        "slug": "acme",
        "threecx_host": "pbx.acme.test",
        "threecx_password": "db-secret",
        "sftp_user": "root",
        "sftp_password": "ssh-secret",
    }
    fields.update(overrides)
    return Tenant(**fields)


# ============================================================================
# CHECKPOINTS
# ============================================================================

class FakeCheckpointStore:
    def __init__(self):
        self.rows: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.progress_calls: List[Tuple[str, datetime]] = []
        self.cleared: List[str] = []

    def _row(self, tenant_id: str, sync_type: str) -> Dict[str, Any]:
        return self.rows.setdefault((tenant_id, sync_type), {
            "tenant_id": tenant_id,
            "sync_type": sync_type,
            "status": SyncStatus.IDLE.value,
        })

    async def get(self, tenant_id, sync_type) -> Optional[CheckpointRecord]:
        row = self.rows.get((tenant_id, sync_type))
        return CheckpointRecord(**row) if row else None

    async def get_position(self, tenant_id, sync_type):
        row = self.rows.get((tenant_id, sync_type)) or {}
        return parse_timestamp(row.get("last_synced_message_at"))

    async def list_status(self, tenant_id):
        return [CheckpointRecord(**row) for (tid, _), row in sorted(self.rows.items()) if tid == tenant_id]

    async def mark_running(self, tenant_id, sync_type):
        self._row(tenant_id, sync_type)["status"] = SyncStatus.RUNNING.value

    async def save_progress(self, tenant_id, sync_type, position, items_synced):
        current = await self.get_position(tenant_id, sync_type)
        if position is None or (current is not None and position <= current):
            return False
        row = self._row(tenant_id, sync_type)
        row["last_synced_message_at"] = position
        row["items_synced"] = items_synced
        self.progress_calls.append((sync_type, position))
        return True

    async def mark_success(self, tenant_id, sync_type, items_synced, notes=None):
        row = self._row(tenant_id, sync_type)
        row.update(status=SyncStatus.SUCCESS.value, items_synced=items_synced, notes=notes, last_error=None)

    async def mark_error(self, tenant_id, sync_type, error, items_synced=0, notes=None):
        row = self._row(tenant_id, sync_type)
        row.update(status=SyncStatus.ERROR.value, items_synced=items_synced, notes=notes, last_error=error)

    async def mark_skipped(self, tenant_id, sync_type, reason):
        self._row(tenant_id, sync_type)["notes"] = f"Skipped: {reason}"

    async def request_trigger(self, tenant_id):
        now = datetime.now(timezone.utc)
        self._row(tenant_id, "messages")["trigger_requested_at"] = now
        return now

    async def pending_triggers(self, window_seconds):
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=window_seconds)
        pending = []
        for (tenant_id, _), row in self.rows.items():
            stamp = row.get("trigger_requested_at")
            if stamp and stamp > cutoff and tenant_id not in pending:
                pending.append(tenant_id)
        return pending

    async def clear_trigger(self, tenant_id):
        self.cleared.append(tenant_id)
        for (tid, _), row in self.rows.items():
            if tid == tenant_id:
                row["trigger_requested_at"] = None

    def status(self, tenant_id, sync_type) -> Dict[str, Any]:
        return self.rows[(tenant_id, sync_type)]


# ============================================================================
# METADATA (Supabase tables)
# ============================================================================

class FakeMetadataStore:
    def __init__(self):
        self._ids = itertools.count(1)
        self.tables: Dict[str, Dict[Tuple[str, Any], Dict[str, Any]]] = {t: {} for t in SOURCE_KEYS}
        self.conversations: Dict[str, Dict[str, Any]] = {}
        self.aliases: Dict[Tuple[str, str], str] = {}
        self.participants: List[Dict[str, Any]] = []
        self.extensions: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.sync_logs: List[Dict[str, Any]] = []
        self.last_sync: Dict[str, datetime] = {}

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    # Generic records ---------------------------------------------------------

    async def insert_record(self, table, tenant_id, row):
        key = (tenant_id, row[SOURCE_KEYS[table]])
        if key in self.tables[table]:
            raise DuplicateRecordError(f"{table} {key[1]} already synced")
        stored = {**row, "tenant_id": tenant_id, "id": self._next_id(table)}
        self.tables[table][key] = stored
        return stored

    async def record_exists(self, table, tenant_id, value):
        return (tenant_id, value) in self.tables[table]

    def rows(self, table) -> List[Dict[str, Any]]:
        return list(self.tables[table].values())

    # Conversations -----------------------------------------------------------

    async def get_conversation_id(self, tenant_id, source_conversation_id):
        for conv in self.conversations.values():
            if conv["tenant_id"] == tenant_id and conv.get("threecx_conversation_id") == source_conversation_id:
                return conv["id"]
        return self.aliases.get((tenant_id, source_conversation_id))

    async def upsert_conversation(self, tenant_id, row):
        keeper = self.aliases.get((tenant_id, row["threecx_conversation_id"]))
        if keeper:
            return keeper
        existing = await self.get_conversation_id(tenant_id, row["threecx_conversation_id"])
        if existing:
            self.conversations[existing].update(row)
            return existing
        conversation_id = self._next_id("conv")
        self.conversations[conversation_id] = {**row, "tenant_id": tenant_id, "id": conversation_id}
        return conversation_id

    def add_conversation(self, tenant_id, members, source_id=None) -> str:
        conversation_id = self._next_id("conv")
        self.conversations[conversation_id] = {
            "id": conversation_id,
            "tenant_id": tenant_id,
            "threecx_conversation_id": source_id or conversation_id,
        }
        for member in members:
            self.participants.append({
                "tenant_id": tenant_id,
                "conversation_id": conversation_id,
                "external_id": member,
                "external_name": member,
            })
        return conversation_id

    async def upsert_participant(self, tenant_id, conversation_id, row):
        for p in self.participants:
            if p["conversation_id"] == conversation_id and p["external_id"] == row.get("external_id"):
                return
        ext = self.extensions.get((tenant_id, row.get("external_id")))
        self.participants.append({
            **row,
            "tenant_id": tenant_id,
            "conversation_id": conversation_id,
            "extension_id": ext["id"] if ext else None,
        })

    async def insert_message(self, tenant_id, row):
        record = await self.insert_record("messages", tenant_id, row)
        return record["id"]

    def add_message(self, tenant_id, conversation_id, sent_at, content="hi", has_media=False) -> str:
        source_id = self._next_id("src")
        record = {
            "conversation_id": conversation_id,
            "threecx_message_id": source_id,
            "content": content,
            "has_media": has_media,
            "sent_at": sent_at.isoformat(),
            "sender_identifier": None,
            "sender_name": None,
        }
        stored = {**record, "tenant_id": tenant_id, "id": self._next_id("msg")}
        self.tables["messages"][(tenant_id, source_id)] = stored
        return stored["id"]

    def messages_in(self, conversation_id) -> List[Dict[str, Any]]:
        return [m for m in self.rows("messages") if m["conversation_id"] == conversation_id]

    # Extensions --------------------------------------------------------------

    async def upsert_extension(self, tenant_id, row):
        key = (tenant_id, row["extension_number"])
        previous = self.extensions.get(key)
        if previous:
            changed = previous.get("display_name") != row.get("display_name")
            previous.update(row)
            return changed, previous["id"]
        self.extensions[key] = {**row, "tenant_id": tenant_id, "id": self._next_id("ext")}
        return False, self.extensions[key]["id"]

    async def list_extensions(self, tenant_id):
        return [e for (tid, _), e in self.extensions.items() if tid == tenant_id]

    async def cascade_extension_name(self, tenant_id, extension_id, extension_number, display_name):
        updated = 0
        for p in self.participants:
            if extension_id and p.get("extension_id") == extension_id and p.get("external_name") != display_name:
                p["external_name"] = display_name
                updated += 1
        for m in self.rows("messages"):
            if (
                m["tenant_id"] == tenant_id
                and m.get("sender_identifier") == extension_number
                and m.get("sender_name") != display_name
            ):
                m["sender_name"] = display_name
                updated += 1
        return updated

    # Duplicate conversations -------------------------------------------------

    async def conversation_participants(self, tenant_id):
        members: Dict[str, Set[str]] = {}
        for p in self.participants:
            if p["tenant_id"] == tenant_id and p.get("external_id"):
                members.setdefault(p["conversation_id"], set()).add(p["external_id"])
        return members

    async def conversation_activity(self, conversation_id):
        messages = self.messages_in(conversation_id)
        if not messages:
            return None, 0
        return max(parse_timestamp(m["sent_at"]) for m in messages), len(messages)

    async def reassign_conversation(self, from_id, to_id):
        moved = 0
        for m in self.rows("messages"):
            if m["conversation_id"] == from_id:
                m["conversation_id"] = to_id
                moved += 1
        for media in self.rows("media_files"):
            if media.get("conversation_id") == from_id:
                media["conversation_id"] = to_id
        return moved

    async def retire_conversation(self, tenant_id, conversation_id, keeper_id):
        source_id = self.conversations[conversation_id].get("threecx_conversation_id")
        if source_id:
            self.aliases[(tenant_id, source_id)] = keeper_id
        for key, target in self.aliases.items():
            if target == conversation_id:
                self.aliases[key] = keeper_id
        self.participants = [p for p in self.participants if p["conversation_id"] != conversation_id]
        self.conversations.pop(conversation_id)

    # Media linking -----------------------------------------------------------

    async def list_unlinked_media(self, tenant_id):
        return [m for m in self.rows("media_files") if m["tenant_id"] == tenant_id and not m.get("message_id")]

    async def media_message_candidates(self, tenant_id, filename):
        candidates = []
        for m in self.rows("messages"):
            if m["tenant_id"] != tenant_id or not m.get("has_media"):
                continue
            if filename.lower() not in (m.get("content") or "").lower():
                continue
            linked = [{"id": f["id"]} for f in self.rows("media_files") if f.get("message_id") == m["id"]]
            candidates.append({**m, "media_files": linked})
        return sorted(candidates, key=lambda m: (m["sent_at"], m["id"]))

    async def link_media(self, media_id, message_id, conversation_id):
        for media in self.rows("media_files"):
            if media["id"] == media_id:
                media["message_id"] = message_id
                if conversation_id:
                    media["conversation_id"] = conversation_id

    # Bookkeeping -------------------------------------------------------------

    async def record_sync_log(self, row):
        self.sync_logs.append(row)

    async def touch_tenant_last_sync(self, tenant_id, when=None):
        self.last_sync[tenant_id] = when


# ============================================================================
# BLOB STORE
# ============================================================================

class FakeBlobStore:
    def __init__(self):
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.streamed: List[str] = []

    async def head(self, path):
        obj = self.objects.get(path)
        return {"path": path, "size": len(obj["data"]), "mime_type": obj["content_type"]} if obj else None

    async def exists(self, path):
        return path in self.objects

    async def put_bytes(self, path, data, content_type):
        self.objects[path] = {"data": data, "content_type": content_type}
        return len(data)

    async def put_file(self, path, local_path, content_type):
        with open(local_path, "rb") as handle:
            data = handle.read()
        self.streamed.append(path)
        return await self.put_bytes(path, data, content_type)


# ============================================================================
# PBX SOURCE
# ============================================================================

def _page(rows, ts_key, id_key, since, after, limit):
    # NULL timestamps sort last and never satisfy a comparison, as in Postgres
    ordered = sorted(rows, key=lambda r: (r[ts_key] is None, r[ts_key] or 0, r[id_key]))
    selected = []
    for row in ordered:
        ts = row[ts_key]
        if since is not None and (ts is None or ts < since):
            continue
        if after is not None and (ts is None or after[0] is None or (ts, row[id_key]) <= after):
            continue
        selected.append(row)
        if len(selected) >= limit:
            break
    return selected


class FakeSourceDatabase:
    def __init__(self):
        self.messages: List[Dict[str, Any]] = []
        self.conversations: Dict[str, Dict[str, Any]] = {}
        self.live_conversations: List[Dict[str, Any]] = []
        self.call_records: List[Dict[str, Any]] = []
        self.recordings: List[Dict[str, Any]] = []
        self.extensions: List[Dict[str, Any]] = []
        self.calls: Dict[str, int] = {}
        self.fail_on: Dict[str, int] = {}  # method -> call number that raises

    def _count(self, name):
        self.calls[name] = self.calls.get(name, 0) + 1
        if self.fail_on.get(name) == self.calls[name]:
            raise SourceQueryError(f"{name} failed: connection reset")

    async def ping(self):
        self._count("ping")
        return True

    async def fetch_messages(self, since, after, limit):
        self._count("fetch_messages")
        return _page(self.messages, "time_sent", "message_id", since, after, limit)

    async def fetch_conversations(self, ids):
        self._count("fetch_conversations")
        return [self.conversations[i] for i in ids if i in self.conversations]

    async def fetch_live_conversations(self):
        self._count("fetch_live_conversations")
        return list(self.live_conversations)

    async def fetch_call_records(self, since, after, limit):
        self._count("fetch_call_records")
        return _page(self.call_records, "call_started_at", "call_id", since, after, limit)

    async def fetch_recordings(self, since, after, limit):
        self._count("fetch_recordings")
        return _page(self.recordings, "start_time", "recording_id", since, after, limit)

    async def fetch_extensions(self):
        self._count("fetch_extensions")
        return list(self.extensions)


def make_messages(count: int, conversation_id: str = "c1", start: datetime = BASE_TIME) -> List[Dict[str, Any]]:
    return [
        {
            "message_id": i,
            "conversation_id": conversation_id,
            "time_sent": start + timedelta(seconds=i),
            "message": f"message {i}",
            "sender_participant_no": "101",
            "sender_participant_name": "Front Desk",
            "is_external": False,
        }
        for i in range(1, count + 1)
    ]


class FakeRemoteFiles:
    def __init__(self):
        self.files: Dict[str, Tuple[bytes, datetime]] = {}
        self.downloads: List[str] = []
        self.closed = False

    def add(self, path: str, data: bytes, modified_at: datetime = BASE_TIME):
        self.files[path] = (data, modified_at)

    def _remote(self, path, root) -> RemoteFile:
        data, mtime = self.files[path]
        return RemoteFile(
            path=path,
            relative_path=posixpath.relpath(path, root),
            filename=posixpath.basename(path),
            size=len(data),
            modified_at=mtime,
        )

    async def list_recursive(self, root, extensions=None):
        wanted = {e.lower() for e in extensions} if extensions else None
        found = []
        for path in self.files:
            if not path.startswith(root.rstrip("/") + "/"):
                continue
            if wanted is not None and posixpath.splitext(path)[1].lower() not in wanted:
                continue
            found.append(self._remote(path, root))
        return sorted(found, key=lambda f: (f.modified_at, f.path))

    async def discover(self, candidates, extensions=None):
        for path in candidates:
            files = await self.list_recursive(path, extensions)
            if files:
                return path, files
        return None, []

    async def stat(self, path, root="/"):
        from backup_sync.core.errors import RemoteFileError

        if path not in self.files:
            raise RemoteFileError(f"Cannot stat {path}: no such file")
        return self._remote(path, root)

    async def download(self, path):
        self.downloads.append(path)
        return self.files[path][0]

    async def stream_to(self, path, target, chunk_size=1024):
        data = self.files[path][0]
        for start in range(0, len(data), chunk_size):
            target.write(data[start:start + chunk_size])
        return len(data)

    def close(self):
        self.closed = True


# ============================================================================
# SUPABASE QUERY BUILDER
# ============================================================================

class FakeQuery:
    """The slice of the postgrest builder the stores use, over plain dicts."""

    def __init__(self, db: "FakeSupabase", table: str):
        self._db = db
        self._table = table
        self._op = None
        self._payload = None
        self._conflict: List[str] = []
        self._filters = []
        self._order = None
        self._limit = None
        self._ignore_duplicates = False
        self._count = None

    def select(self, *columns, count=None):
        self._op = self._op or "select"
        self._count = count
        return self

    def insert(self, row):
        self._op, self._payload = "insert", row
        return self

    def upsert(self, row, on_conflict="", ignore_duplicates=False):
        self._op, self._payload = "upsert", row
        self._ignore_duplicates = ignore_duplicates
        self._conflict = [c for c in on_conflict.split(",") if c]
        return self

    def update(self, fields):
        self._op, self._payload = "update", fields
        return self

    def delete(self):
        self._op = "delete"
        return self

    def eq(self, column, value):
        self._filters.append(lambda r: r.get(column) == value)
        return self

    def neq(self, column, value):
        self._filters.append(lambda r: r.get(column) is not None and r.get(column) != value)
        return self

    def gt(self, column, value):
        self._filters.append(lambda r: r.get(column) is not None and str(r.get(column)) > str(value))
        return self

    def is_(self, column, value):
        self._filters.append(lambda r: r.get(column) is None)
        return self

    def ilike(self, column, pattern):
        needle = pattern.strip("%").lower()
        self._filters.append(lambda r: needle in str(r.get(column) or "").lower())
        return self

    def order(self, column, desc=False):
        self._order = (column, desc)
        return self

    def limit(self, count):
        self._limit = count
        return self

    def _matching(self):
        return [r for r in self._db.rows(self._table) if all(f(r) for f in self._filters)]

    async def execute(self):
        rows = self._db.rows(self._table)
        if self._op == "insert":
            data = [self._db.add(self._table, dict(self._payload))]
        elif self._op == "upsert":
            existing = next(
                (r for r in rows if all(r.get(c) == self._payload.get(c) for c in self._conflict)),
                None,
            ) if self._conflict else None
            if existing is not None and self._ignore_duplicates:
                data = []
            elif existing is not None:
                existing.update(self._payload)
                data = [existing]
            else:
                data = [self._db.add(self._table, dict(self._payload))]
        elif self._op == "update":
            data = self._matching()
            for row in data:
                row.update(self._payload)
        elif self._op == "delete":
            data = self._matching()
            self._db.tables[self._table] = [r for r in rows if r not in data]
        total = None
        if self._op not in ("insert", "upsert", "update", "delete"):
            data = self._matching()
            total = len(data)
            if self._order:
                column, desc = self._order
                data.sort(key=lambda r: str(r.get(column) or ""), reverse=desc)
            if self._limit is not None:
                data = data[:self._limit]
        count = total if self._op == "select" and self._count else None
        return SimpleNamespace(data=[dict(r) for r in data], count=count)


class FakeSupabase:
    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self._ids = itertools.count(1)

    def rows(self, table) -> List[Dict[str, Any]]:
        return self.tables.setdefault(table, [])

    def add(self, table, row) -> Dict[str, Any]:
        row.setdefault("id", f"{table}-{next(self._ids)}")
        self.rows(table).append(row)
        return row

    def table(self, name) -> FakeQuery:
        return FakeQuery(self, name)


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def supabase():
    return FakeSupabase()


@pytest.fixture
def tenant():
    return make_tenant()


@pytest.fixture
def checkpoints():
    return FakeCheckpointStore()


@pytest.fixture
def metadata():
    return FakeMetadataStore()


@pytest.fixture
def blobs():
    return FakeBlobStore()


@pytest.fixture
def source():
    return FakeSourceDatabase()


@pytest.fixture
def remote_files():
    return FakeRemoteFiles()


@pytest.fixture
def transcoder():
    return MediaTranscoder(enabled=False)


@pytest.fixture
def ctx(tenant, checkpoints, metadata, blobs, source, remote_files, transcoder):
    async def opener():
        return remote_files

    return PipelineContext(
        tenant=tenant,
        checkpoints=checkpoints,
        metadata=metadata,
        blobs=blobs,
        transcoder=transcoder,
        source=source,
        files_opener=opener,
        batch_size=100,
        error_limit=5,
        buffer_threshold_bytes=1024,
        max_file_size_bytes=4096,
    )


__all__ = ["BASE_TIME", "POSITION_EPSILON", "make_tenant", "make_messages"]
