"""
Post-sync maintenance: name propagation, duplicate conversation merge, media linking.
"""
from datetime import timedelta

from backup_sync.core.errors import DestinationWriteError
from backup_sync.services.sync.pipelines.maintenance import Maintenance
from backup_sync.services.sync.pipelines.messages import MessagesPipeline

from conftest import BASE_TIME, make_messages, make_tenant

TENANT = "tenant-1"


def add_messages(metadata, conversation_id, count, start):
    return [
        metadata.add_message(TENANT, conversation_id, start + timedelta(seconds=i))
        for i in range(count)
    ]


async def test_merges_conversations_with_identical_participants(metadata):
    recent = metadata.add_conversation(TENANT, ["101", "102"])
    older = metadata.add_conversation(TENANT, ["102", "101"])
    other = metadata.add_conversation(TENANT, ["101", "103"])
    ids = add_messages(metadata, recent, 3, BASE_TIME + timedelta(hours=1))
    ids += add_messages(metadata, older, 10, BASE_TIME)
    add_messages(metadata, other, 2, BASE_TIME)

    merged, moved = await Maintenance(metadata).merge_duplicate_conversations(TENANT)

    assert (merged, moved) == (1, 10)
    assert older not in metadata.conversations
    assert await metadata.get_conversation_id(TENANT, older) == recent
    assert sorted(m["id"] for m in metadata.messages_in(recent)) == sorted(ids)
    assert len(metadata.messages_in(recent)) == 13
    assert len(metadata.messages_in(other)) == 2
    assert not [p for p in metadata.participants if p["conversation_id"] == older]


async def test_merge_is_idempotent(metadata):
    first = metadata.add_conversation(TENANT, ["101", "102"])
    second = metadata.add_conversation(TENANT, ["101", "102"])
    add_messages(metadata, first, 2, BASE_TIME)
    add_messages(metadata, second, 2, BASE_TIME)
    maintenance = Maintenance(metadata)

    assert await maintenance.merge_duplicate_conversations(TENANT) == (1, 2)
    assert await maintenance.merge_duplicate_conversations(TENANT) == (0, 0)
    assert len(metadata.rows("messages")) == 4


async def test_tie_keeps_same_conversation_every_time(metadata):
    a = metadata.add_conversation(TENANT, ["101", "102"])
    b = metadata.add_conversation(TENANT, ["101", "102"])
    add_messages(metadata, a, 2, BASE_TIME)
    add_messages(metadata, b, 2, BASE_TIME)

    await Maintenance(metadata).merge_duplicate_conversations(TENANT)

    assert min(a, b) in metadata.conversations
    assert max(a, b) not in metadata.conversations


async def test_single_member_conversations_left_alone(metadata):
    metadata.add_conversation(TENANT, ["101"])
    metadata.add_conversation(TENANT, ["101"])

    assert await Maintenance(metadata).merge_duplicate_conversations(TENANT) == (0, 0)
    assert len(metadata.conversations) == 2


async def test_duplicate_kept_when_messages_remain(metadata, monkeypatch):
    a = metadata.add_conversation(TENANT, ["101", "102"])
    b = metadata.add_conversation(TENANT, ["101", "102"])
    add_messages(metadata, a, 1, BASE_TIME)
    add_messages(metadata, b, 1, BASE_TIME + timedelta(minutes=1))

    async def stuck(from_id, to_id):
        return 0

    monkeypatch.setattr(metadata, "reassign_conversation", stuck)

    assert await Maintenance(metadata).merge_duplicate_conversations(TENANT) == (0, 0)
    assert a in metadata.conversations and b in metadata.conversations


async def test_merged_conversation_stays_merged_after_sync(ctx, source, metadata):
    keeper = metadata.add_conversation(TENANT, ["101", "102"], source_id="s-big")
    duplicate = metadata.add_conversation(TENANT, ["101", "102"], source_id="s-small")
    add_messages(metadata, keeper, 10, BASE_TIME + timedelta(hours=1))
    add_messages(metadata, duplicate, 3, BASE_TIME)
    maintenance = Maintenance(metadata)
    assert await maintenance.merge_duplicate_conversations(TENANT) == (1, 3)

    source.live_conversations = [{"conversation_id": "s-small", "chat_name": "Front Desk", "is_group_chat": False}]
    source.messages = make_messages(1, conversation_id="s-small", start=BASE_TIME + timedelta(hours=2))
    await MessagesPipeline().run(ctx)

    assert set(metadata.conversations) == {keeper}
    assert metadata.aliases == {(TENANT, "s-small"): keeper}
    synced = next(m for m in metadata.rows("messages") if m["threecx_message_id"] == "1")
    assert synced["conversation_id"] == keeper
    assert len(metadata.messages_in(keeper)) == 14
    assert await maintenance.merge_duplicate_conversations(TENANT) == (0, 0)


async def test_merge_chain_points_at_final_keeper(metadata):
    a = metadata.add_conversation(TENANT, ["101", "102"])
    b = metadata.add_conversation(TENANT, ["101", "102"])
    add_messages(metadata, b, 1, BASE_TIME + timedelta(minutes=1))
    await metadata.retire_conversation(TENANT, a, b)
    c = metadata.add_conversation(TENANT, ["101", "102"])
    add_messages(metadata, c, 1, BASE_TIME + timedelta(minutes=2))

    assert await Maintenance(metadata).merge_duplicate_conversations(TENANT) == (1, 1)
    assert await metadata.get_conversation_id(TENANT, a) == c
    assert await metadata.get_conversation_id(TENANT, b) == c


async def test_propagates_extension_names(metadata):
    conversation = metadata.add_conversation(TENANT, [])
    message = metadata.add_message(TENANT, conversation, BASE_TIME)
    row = next(m for m in metadata.rows("messages") if m["id"] == message)
    row.update(sender_identifier="101", sender_name="101")
    metadata.extensions[(TENANT, "101")] = {
        "id": "ext-101", "tenant_id": TENANT, "extension_number": "101", "display_name": "Dr Smith",
    }
    metadata.participants.append({
        "tenant_id": TENANT, "conversation_id": conversation, "external_id": "101",
        "external_name": "101", "extension_id": "ext-101",
    })
    maintenance = Maintenance(metadata)

    assert await maintenance.propagate_names(TENANT) == 2
    assert row["sender_name"] == "Dr Smith"
    assert metadata.participants[0]["external_name"] == "Dr Smith"
    assert await maintenance.propagate_names(TENANT) == 0


async def add_media(metadata, path):
    return await metadata.insert_record("media_files", TENANT, {
        "source_path": path,
        "file_name": path.rsplit("/", 1)[-1],
    })


async def test_links_media_to_earliest_free_message(metadata):
    conversation = metadata.add_conversation(TENANT, ["101", "102"])
    first = metadata.add_message(TENANT, conversation, BASE_TIME, content="xray.jpg", has_media=True)
    second = metadata.add_message(TENANT, conversation, BASE_TIME + timedelta(minutes=5), content="xray.jpg", has_media=True)
    metadata.add_message(TENANT, conversation, BASE_TIME - timedelta(minutes=5), content="see xray.jpg", has_media=False)
    one = await add_media(metadata, "a/xray.jpg")
    two = await add_media(metadata, "b/xray.jpg")

    linked = await Maintenance(metadata).link_media(TENANT)

    assert linked == 2
    media = {m["id"]: m for m in metadata.rows("media_files")}
    assert media[one["id"]]["message_id"] == first
    assert media[two["id"]]["message_id"] == second
    assert media[one["id"]]["conversation_id"] == conversation
    assert await Maintenance(metadata).link_media(TENANT) == 0


async def test_media_without_matching_message_stays_unlinked(metadata):
    conversation = metadata.add_conversation(TENANT, ["101", "102"])
    metadata.add_message(TENANT, conversation, BASE_TIME, content="scan.pdf", has_media=True)
    await add_media(metadata, "a/xray.jpg")

    assert await Maintenance(metadata).link_media(TENANT) == 0
    assert metadata.rows("media_files")[0].get("message_id") is None


async def test_run_reports_counts_and_survives_step_failure(metadata, monkeypatch):
    a = metadata.add_conversation(TENANT, ["101", "102"])
    b = metadata.add_conversation(TENANT, ["101", "102"])
    add_messages(metadata, a, 1, BASE_TIME)
    add_messages(metadata, b, 1, BASE_TIME)

    async def broken(tenant_id):
        raise DestinationWriteError("list extensions failed: timeout")

    monkeypatch.setattr(metadata, "list_extensions", broken)

    counts = await Maintenance(metadata).run(make_tenant())

    assert counts == {"names_updated": 0, "conversations_merged": 1, "messages_moved": 1, "media_linked": 0}


async def test_media_linking_skipped_when_media_backup_disabled(metadata):
    conversation = metadata.add_conversation(TENANT, ["101", "102"])
    metadata.add_message(TENANT, conversation, BASE_TIME, content="xray.jpg", has_media=True)
    await add_media(metadata, "a/xray.jpg")

    counts = await Maintenance(metadata).run(make_tenant(backup_chat_media=False))

    assert counts["media_linked"] == 0
    assert metadata.rows("media_files")[0].get("message_id") is None
