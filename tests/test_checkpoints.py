"""
Checkpoint store over the sync_status table.
"""
from datetime import datetime, timedelta, timezone

from backup_sync.models.schemas.sync import SyncStatus
from backup_sync.services.sync.checkpoints import POSITION_EPSILON, CheckpointStore, advance

T0 = datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)


async def test_position_only_moves_forward(supabase):
    store = CheckpointStore(supabase)

    assert await store.save_progress("t1", "messages", T0, 10) is True
    assert await store.save_progress("t1", "messages", T0 - timedelta(hours=1), 20) is False
    assert await store.save_progress("t1", "messages", T0, 20) is False
    assert await store.save_progress("t1", "messages", None, 20) is False

    assert await store.get_position("t1", "messages") == T0
    record = await store.get("t1", "messages")
    assert record.items_synced == 10


async def test_advance_adds_one_microsecond():
    assert advance(T0) == T0 + POSITION_EPSILON
    assert advance(T0.replace(tzinfo=None)) == T0 + POSITION_EPSILON


async def test_status_transitions_keep_position(supabase):
    store = CheckpointStore(supabase)
    await store.mark_running("t1", "cdr")
    await store.save_progress("t1", "cdr", T0, 5)
    await store.mark_error("t1", "cdr", "boom", 5, "Synced 5")

    record = await store.get("t1", "cdr")
    assert record.status == SyncStatus.ERROR
    assert record.last_error == "boom"
    assert record.last_synced_message_at == T0

    await store.mark_success("t1", "cdr", 7, "Synced 7")
    record = await store.get("t1", "cdr")
    assert record.status == SyncStatus.SUCCESS
    assert record.last_error is None
    assert record.last_success_at is not None
    assert record.last_synced_message_at == T0


async def test_skip_leaves_status_alone(supabase):
    store = CheckpointStore(supabase)
    await store.mark_success("t1", "messages", 3)

    await store.mark_skipped("t1", "messages", "circuit open")

    record = await store.get("t1", "messages")
    assert record.status == SyncStatus.SUCCESS
    assert record.notes == "Skipped: circuit open"


async def test_list_status_is_per_tenant(supabase):
    store = CheckpointStore(supabase)
    await store.mark_running("t1", "messages")
    await store.mark_running("t1", "cdr")
    await store.mark_running("t2", "messages")

    records = await store.list_status("t1")

    assert [r.sync_type for r in records] == ["cdr", "messages"]


async def test_trigger_round_trip(supabase):
    store = CheckpointStore(supabase)

    requested = await store.request_trigger("t1")

    assert requested.tzinfo is not None
    assert await store.pending_triggers(120) == ["t1"]

    await store.clear_trigger("t1")
    assert await store.pending_triggers(120) == []


async def test_trigger_outside_window_is_ignored(supabase):
    store = CheckpointStore(supabase)
    stale = (datetime.now(timezone.utc) - timedelta(minutes=10)).isoformat()
    supabase.add("sync_status", {"tenant_id": "t1", "sync_type": "messages", "trigger_requested_at": stale})

    assert await store.pending_triggers(120) == []


async def test_trigger_marks_every_status_row(supabase):
    store = CheckpointStore(supabase)
    await store.mark_running("t1", "messages")
    await store.mark_running("t1", "cdr")

    await store.request_trigger("t1")

    assert all(r["trigger_requested_at"] for r in supabase.rows("sync_status"))
    assert await store.pending_triggers(120) == ["t1"]
