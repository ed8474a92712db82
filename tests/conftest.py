import asyncio
from typing import List

import pytest

from chatsync.config import Settings
from chatsync.errors import TransientSyncFailure
from chatsync.schemas.sync import ReadMarker, RemoteUnreadCounts
from chatsync.services.engine import ChatSyncEngine
from chatsync.utils.change_feed import ChannelStatus
from chatsync.utils.event_bus import EventBus
from chatsync.utils.kv_store import MemoryStore


class FakeClock:

    def __init__(self, now: int = 1_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeSink:

    def __init__(self) -> None:
        self.calls: List[List[ReadMarker]] = []
        self.failures = 0
        self.delay = 0.0

    async def upsert_read_markers(self, batch: List[ReadMarker]) -> None:
        self.calls.append(list(batch))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            self.failures -= 1
            raise TransientSyncFailure("remote unavailable")


class FakeChannel:

    def __init__(self, feed_filter, subscription_id, on_insert, on_delete, on_status) -> None:
        self.feed_filter = feed_filter
        self.subscription_id = subscription_id
        self.on_insert = on_insert
        self.on_delete = on_delete
        self.on_status = on_status
        self.closed = False

    async def unsubscribe(self) -> None:
        self.closed = True


class FakeChangeFeed:

    def __init__(self) -> None:
        self.channels: List[FakeChannel] = []
        self.initial_status = ChannelStatus.SUBSCRIBED

    async def subscribe(self, feed_filter, subscription_id, on_insert, on_delete, on_status):
        channel = FakeChannel(feed_filter, subscription_id, on_insert, on_delete, on_status)
        self.channels.append(channel)
        if self.initial_status is not None:
            on_status(self.initial_status)
        return channel

    @property
    def latest(self) -> FakeChannel:
        return self.channels[-1]


def club_record(message_id, club_id="42", sender_id="B", timestamp=1000, content="hi"):
    return {"id": message_id, "club_id": club_id, "sender_id": sender_id, "message": content, "timestamp": timestamp}


def dm_record(message_id, conversation_id="7", sender_id="B", timestamp=1000, content="hi"):
    return {"id": message_id, "conversation_id": conversation_id, "sender_id": sender_id, "text": content, "timestamp": timestamp}


async def settle(seconds: float = 0.05) -> None:
    await asyncio.sleep(seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def kv():
    return MemoryStore()


@pytest.fixture
def sink():
    return FakeSink()


@pytest.fixture
def feed():
    return FakeChangeFeed()


@pytest.fixture
def settings():
    return Settings(
        user_id="A",
        debounce_ms=10,
        health_interval_s=3600,
        reset_cooldown_s=1.0,
        reconcile_interval_s=3600,
        reconcile_timeout_s=0.2,
    )


@pytest.fixture
def remote_counts():
    return {"value": RemoteUnreadCounts()}


@pytest.fixture
async def engine(kv, sink, feed, settings, clock, remote_counts):
    async def counts():
        return remote_counts["value"]

    eng = ChatSyncEngine(
        user_id="A",
        kv=kv,
        sink=sink,
        feed=feed,
        settings=settings,
        club_ids=["42"],
        counts_source=counts,
        clock=clock,
    )
    await eng.start()
    # let the startup reconciliation finish before the test drives events
    await settle()
    yield eng
    await eng.shutdown()
    await settle()
