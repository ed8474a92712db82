from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo.errors import AutoReconnect, ServerSelectionTimeoutError

from chatsync.errors import TransientSyncFailure
from chatsync.repositories.conversation_repository import ConversationRepository
from chatsync.repositories.message_repository import MessageRepository, from_millis, to_record
from chatsync.repositories.read_marker_repository import ReadMarkerRepository
from chatsync.schemas.conversation import ConversationRef
from chatsync.schemas.sync import ReadMarker


def make_collection(rows=None):
    cursor = MagicMock()
    cursor.sort.return_value = cursor
    cursor.limit.return_value = cursor
    cursor.to_list = AsyncMock(return_value=list(rows or []))
    collection = MagicMock()
    collection.find.return_value = cursor
    collection.bulk_write = AsyncMock()
    collection.count_documents = AsyncMock(return_value=0)
    collection.create_index = AsyncMock()
    return collection


async def test_upsert_uses_max_so_markers_never_regress():
    collection = make_collection()
    repo = ReadMarkerRepository({"read_markers": collection}, "A")

    await repo.upsert_read_markers(
        [
            ReadMarker(conversation_key="club:42", read_through_ms=1500),
            ReadMarker(conversation_key="dm:7", read_through_ms=900),
        ]
    )

    ops, = collection.bulk_write.await_args.args
    assert collection.bulk_write.await_args.kwargs == {"ordered": False}
    assert [op._filter for op in ops] == [
        {"user_id": "A", "conversation_key": "club:42"},
        {"user_id": "A", "conversation_key": "dm:7"},
    ]
    assert ops[0]._doc["$max"] == {"read_through": 1500}
    assert ops[1]._doc["$setOnInsert"] == {"kind": "direct", "conversation_id": "7"}
    assert all(op._upsert for op in ops)


async def test_empty_batch_does_not_hit_the_database():
    collection = make_collection()
    repo = ReadMarkerRepository({"read_markers": collection}, "A")
    await repo.upsert_read_markers([])
    collection.bulk_write.assert_not_awaited()


async def test_upsert_failure_is_transient():
    collection = make_collection()
    collection.bulk_write.side_effect = AutoReconnect("primary stepped down")
    repo = ReadMarkerRepository({"read_markers": collection}, "A")

    with pytest.raises(TransientSyncFailure):
        await repo.upsert_read_markers([ReadMarker(conversation_key="dm:7", read_through_ms=1)])


async def test_get_markers_maps_keys_to_timestamps():
    collection = make_collection([{"conversation_key": "dm:7", "read_through": 700}, {"conversation_key": "club:1"}])
    repo = ReadMarkerRepository({"read_markers": collection}, "A")
    assert await repo.get_markers() == {"dm:7": 700, "club:1": 0}


def test_to_record_shapes_club_and_direct_rows():
    ts = from_millis(1_700_000_000_000)
    club = to_record({"_id": "m1", "conversation_kind": "club", "conversation_id": "42", "sender_id": "B", "content": "hey", "timestamp": ts})
    direct = to_record({"_id": "m2", "conversation_kind": "direct", "conversation_id": "7", "sender_id": "B", "timestamp": ts.replace(tzinfo=None)})

    assert club == {"id": "m1", "club_id": "42", "sender_id": "B", "content": "hey", "timestamp": 1_700_000_000_000}
    assert direct["conversation_id"] == "7"
    assert direct["timestamp"] == 1_700_000_000_000


async def test_catch_up_query_is_inclusive_and_ascending():
    collection = make_collection([{"_id": "m1", "conversation_kind": "club", "conversation_id": "42", "timestamp": from_millis(1000)}])
    repo = MessageRepository({"messages": collection})

    records = await repo.get_for_conversation_since(ConversationRef.club("42"), 1000)

    query = collection.find.call_args.args[0]
    assert query["conversation_kind"] == "club"
    assert query["timestamp"] == {"$gte": datetime.fromtimestamp(1.0, tz=timezone.utc)}
    assert records[0]["club_id"] == "42"


async def test_catch_up_without_watermark_returns_recent_history_oldest_first():
    rows = [
        {"_id": "m2", "conversation_kind": "direct", "conversation_id": "7", "timestamp": from_millis(2000)},
        {"_id": "m1", "conversation_kind": "direct", "conversation_id": "7", "timestamp": from_millis(1000)},
    ]
    repo = MessageRepository({"messages": make_collection(rows)})

    records = await repo.get_for_conversation_since(ConversationRef.direct("7"), None)

    assert [r["id"] for r in records] == ["m1", "m2"]


async def test_history_failure_is_transient():
    collection = make_collection()
    collection.find.return_value.to_list.side_effect = ServerSelectionTimeoutError("no servers")
    repo = MessageRepository({"messages": collection})

    with pytest.raises(TransientSyncFailure):
        await repo.get_recent(ConversationRef.direct("7"))


async def test_fetch_unread_counts_combines_markers_and_messages():
    conversations = make_collection([{"_id": "7"}])
    markers = make_collection([{"conversation_key": "dm:7", "read_through": 500}])
    messages = make_collection()
    messages.count_documents.side_effect = lambda query: {"7": 2, "42": 3}[query["conversation_id"]]
    db = {"conversations": conversations, "read_markers": markers, "messages": messages}

    counts = await ConversationRepository(db).fetch_unread_counts("A", ["42"])

    assert counts.per_conversation == {"dm:7": 2, "club:42": 3}
    assert counts.direct == 2
    assert counts.clubs == 3
    dm_query = messages.count_documents.await_args_list[0].args[0]
    assert dm_query["sender_id"] == {"$ne": "A"}
    assert dm_query["timestamp"] == {"$gt": from_millis(500)}


async def test_fetch_unread_counts_failure_is_transient():
    markers = make_collection()
    markers.find.return_value.to_list.side_effect = AutoReconnect("down")
    db = {"conversations": make_collection(), "read_markers": markers, "messages": make_collection()}

    with pytest.raises(TransientSyncFailure):
        await ConversationRepository(db).fetch_unread_counts("A")
