import asyncio

from chatsync.schemas.conversation import ConversationRef
from chatsync.schemas.sync import ReadMarker, RemoteUnreadCounts
from chatsync.services.engine import ChatSyncEngine
from chatsync.services.subscription_manager import SubscriptionScope, SubscriptionState
from chatsync.utils.change_feed import ChannelStatus
from chatsync.utils.event_bus import SyncWarning

from tests.conftest import club_record, dm_record, settle

CLUB = ConversationRef.club("42")
DM = ConversationRef.direct("7")


async def test_background_message_counts_as_unread(engine, feed):
    feed.latest.on_insert(club_record("m1", timestamp=1000))

    snapshot = engine.unread_snapshot()
    assert snapshot.per_conversation == {"club:42": 1}
    assert snapshot.total == 1


async def test_redelivered_message_is_not_counted_twice(engine, feed):
    feed.latest.on_insert(club_record("m1", timestamp=1000))
    feed.latest.on_insert(club_record("m1", timestamp=1000))

    assert engine.unread.count("club:42") == 1
    assert len(engine.messages(CLUB)) == 1


async def test_opening_conversation_clears_unread_and_syncs_once(engine, feed, sink, clock):
    feed.latest.on_insert(club_record("m1", timestamp=1000))

    await engine.open_conversation(CLUB)
    assert engine.unread.count("club:42") == 0
    assert [item.conversation_key for item in engine.queued()] == ["club:42"]

    await settle()
    assert sink.calls == [[ReadMarker(conversation_key="club:42", read_through_ms=clock.now)]]
    assert engine.queued() == []


async def test_failed_upserts_retry_until_success_without_warning(engine, sink):
    warnings = []
    engine.bus.subscribe(SyncWarning, warnings.append)
    sink.failures = 2

    await engine.open_conversation(CLUB)
    await settle(0.005)
    assert [item.conversation_key for item in engine.queued()] == ["club:42"]

    await settle(0.2)
    assert len(sink.calls) == 3
    assert engine.queued() == []
    assert warnings == []


async def test_message_already_read_is_shown_but_not_counted(engine, feed):
    engine.mark_read(DM, 600)
    await engine.subscriptions.open(SubscriptionScope.direct("7"))

    feed.latest.on_insert(dm_record("m1", timestamp=500))

    assert [m.id for m in engine.messages(DM)] == ["m1"]
    assert engine.unread.count("dm:7") == 0


async def test_messages_in_active_conversation_advance_read_marker(engine, feed, clock):
    await engine.open_conversation(CLUB)
    clock.advance(5000)

    feed.latest.on_insert(club_record("m2", timestamp=clock.now))

    assert engine.unread.count("club:42") == 0
    assert engine.read_status.get_read_through("club:42") == clock.now


async def test_own_messages_do_not_count(engine, feed):
    feed.latest.on_insert(club_record("m1", sender_id="A"))
    assert engine.unread_snapshot().total == 0


async def test_channel_error_resubscribes_and_reconciles(engine, feed, remote_counts):
    club_sub = engine.subscriptions.get("clubs")
    old_id = club_sub.subscription_id
    remote_counts["value"] = RemoteUnreadCounts(clubs=4, per_conversation={"club:42": 4})

    feed.latest.on_status(ChannelStatus.CHANNEL_ERROR)
    await engine.subscriptions.check_health()
    await settle()
    assert club_sub.state == SubscriptionState.RESETTING

    await settle(1.2)

    assert club_sub.subscription_id != old_id
    assert club_sub.state == SubscriptionState.SUBSCRIBED
    assert engine.unread.count("club:42") == 4


async def test_reconcile_holds_active_conversation_at_zero(engine, remote_counts):
    await engine.open_conversation(CLUB)
    await settle()
    remote_counts["value"] = RemoteUnreadCounts(per_conversation={"club:42": 3, "dm:9": 2})

    assert await engine.reconcile()

    snapshot = engine.unread_snapshot()
    assert snapshot.per_conversation == {"dm:9": 2}
    assert snapshot.total == 2


async def test_reconcile_keeps_counts_for_unsynced_reads(engine, sink, feed, remote_counts):
    sink.failures = 100
    feed.latest.on_insert(club_record("m1"))
    engine.mark_read(CLUB)
    remote_counts["value"] = RemoteUnreadCounts(per_conversation={"club:42": 1})

    assert await engine.reconcile()
    assert engine.unread.count("club:42") == 0


async def test_reconcile_failure_keeps_local_counts(kv, sink, feed, settings, clock):
    async def slow_counts():
        await asyncio.sleep(5)
        return RemoteUnreadCounts(per_conversation={"club:42": 9})

    engine = ChatSyncEngine("A", kv, sink, feed, settings=settings, club_ids=["42"], counts_source=slow_counts, clock=clock)
    await engine.start()
    feed.latest.on_insert(club_record("m1"))

    assert not await engine.reconcile()
    assert engine.unread.count("club:42") == 1
    await engine.shutdown()


async def test_open_and_close_direct_conversation(engine, feed):
    async def history(ref):
        return [dm_record("h1", timestamp=10), dm_record("h2", timestamp=20)]

    engine._history = history
    await engine.open_conversation(DM)

    assert engine.subscriptions.get("dm:7") is not None
    assert [m.id for m in engine.messages(DM)] == ["h1", "h2"]
    assert engine.tracker.is_active("dm:7")

    await engine.close_conversation(DM)

    assert engine.subscriptions.get("dm:7") is None
    assert engine.messages(DM) == []
    assert not engine.tracker.is_active("dm:7")
    assert feed.channels[-1].closed


async def test_shutdown_fires_final_flush(kv, sink, feed, settings, clock):
    settings = settings.model_copy(update={"debounce_ms": 60_000})
    engine = ChatSyncEngine("A", kv, sink, feed, settings=settings, club_ids=["42"], clock=clock)
    await engine.start()
    engine.mark_read(CLUB, 1234)

    task = await engine.shutdown()
    await task

    assert sink.calls == [[ReadMarker(conversation_key="club:42", read_through_ms=1234)]]


async def test_queued_markers_from_previous_run_are_flushed_on_start(kv, sink, feed, settings, clock):
    sink.failures = 100
    first = ChatSyncEngine("A", kv, sink, feed, settings=settings, clock=clock)
    await first.start()
    first.mark_read(DM, 50)
    await first.shutdown()
    await settle()

    sink.failures = 0
    second = ChatSyncEngine("A", kv, sink, feed, settings=settings, clock=clock)
    await second.start()
    await settle()

    assert second.queued() == []
    assert second.read_status.get_read_through("dm:7") == 50
    assert sink.calls[-1] == [ReadMarker(conversation_key="dm:7", read_through_ms=50)]
    await second.shutdown()


async def test_opening_club_keeps_history_older_than_live_messages(kv, sink, feed, settings, clock):
    async def history(ref):
        return [club_record("m0", timestamp=500), club_record("m1", timestamp=1000)]

    engine = ChatSyncEngine("A", kv, sink, feed, settings=settings, club_ids=["42"], history=history, clock=clock)
    await engine.start()
    feed.latest.on_insert(club_record("m1", timestamp=1000))

    await engine.open_conversation(CLUB)

    assert [m.id for m in engine.messages(CLUB)] == ["m0", "m1"]
    assert engine.last_messages()["club:42"].id == "m1"
    await engine.shutdown()


async def test_direct_message_for_closed_conversation_updates_badge(kv, sink, feed, settings, clock):
    engine = ChatSyncEngine("A", kv, sink, feed, settings=settings, club_ids=["42"], direct_ids=["7", "8"], clock=clock)
    await engine.start()

    direct_channel = next(c for c in feed.channels if "chat:dm:7" in c.feed_filter.channels)
    direct_channel.on_insert(dm_record("m1", conversation_id="7", timestamp=1000))

    snapshot = engine.unread_snapshot()
    assert snapshot.per_conversation == {"dm:7": 1}
    assert snapshot.direct == 1
    await engine.shutdown()


async def test_opening_known_direct_conversation_reuses_shared_channel(kv, sink, feed, settings, clock):
    engine = ChatSyncEngine("A", kv, sink, feed, settings=settings, direct_ids=["7"], clock=clock)
    await engine.start()
    channels_before = len(feed.channels)

    await engine.open_conversation(DM)
    await engine.close_conversation(DM)

    assert len(feed.channels) == channels_before
    assert engine.subscriptions.get("direct") is not None
    assert not feed.latest.closed
    await engine.shutdown()
