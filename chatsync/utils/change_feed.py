import asyncio
import json
import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional, Protocol, Tuple

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, TimeoutError as RedisTimeoutError

from chatsync.errors import SubscriptionFailure
from chatsync.schemas.conversation import ConversationRef


logger = logging.getLogger(__name__)


class ChannelStatus(str, Enum):

    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"


InsertCallback = Callable[[Dict[str, Any]], None]
DeleteCallback = Callable[[Dict[str, Any]], None]
StatusCallback = Callable[[ChannelStatus], None]


def channel_for(ref: ConversationRef) -> str:
    return f"chat:{ref.key}"


@dataclass(frozen=True)
class FeedFilter:
    channels: Tuple[str, ...]

    @classmethod
    def for_conversations(cls, refs: Iterable[ConversationRef]) -> "FeedFilter":
        return cls(tuple(channel_for(ref) for ref in refs))


class ChannelHandle(Protocol):

    subscription_id: str

    async def unsubscribe(self) -> None:
        ...


class ChangeFeed(Protocol):

    async def subscribe(
        self,
        feed_filter: FeedFilter,
        subscription_id: str,
        on_insert: InsertCallback,
        on_delete: DeleteCallback,
        on_status: StatusCallback,
    ) -> ChannelHandle:
        ...


def encode_event(event_type: str, record: Dict[str, Any]) -> str:
    return json.dumps({"type": event_type, "record": record}, default=str)


class _NoopHandle:

    def __init__(self, subscription_id: str) -> None:
        self.subscription_id = subscription_id

    async def unsubscribe(self) -> None:
        return


class NoopChangeFeed:

    async def subscribe(self, feed_filter, subscription_id, on_insert, on_delete, on_status):
        on_status(ChannelStatus.SUBSCRIBED)
        return _NoopHandle(subscription_id)


class _RedisHandle:

    def __init__(self, subscription_id: str, pubsub, channels: Tuple[str, ...]) -> None:
        self.subscription_id = subscription_id
        self._pubsub = pubsub
        self._channels = channels
        self._running = True
        self._task: Optional[asyncio.Task] = None

    def start(self, on_insert: InsertCallback, on_delete: DeleteCallback, on_status: StatusCallback) -> None:
        self._task = asyncio.get_running_loop().create_task(self._run(on_insert, on_delete, on_status))

    async def _run(self, on_insert, on_delete, on_status) -> None:
        while self._running:
            try:
                msg = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except RedisTimeoutError:
                logger.warning("Change feed %s timed out", self.subscription_id)
                on_status(ChannelStatus.TIMED_OUT)
                return
            except (RedisConnectionError, RedisError, OSError):
                logger.warning("Change feed %s lost its connection", self.subscription_id, exc_info=True)
                on_status(ChannelStatus.CHANNEL_ERROR)
                return
            if not msg or msg.get("type") not in ("message", "pmessage"):
                continue
            data = msg.get("data")
            if isinstance(data, bytes):
                data = data.decode("utf-8", errors="replace")
            try:
                envelope = json.loads(data)
                event_type = envelope["type"]
                record = envelope["record"]
            except (TypeError, ValueError, KeyError):
                logger.warning("Dropping undecodable change-feed frame on %s: %r", msg.get("channel"), data)
                continue
            if event_type == "insert":
                on_insert(record)
            elif event_type == "delete":
                on_delete(record)
            else:
                logger.debug("Ignoring change-feed event type %r", event_type)

    async def unsubscribe(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        try:
            await self._pubsub.unsubscribe(*self._channels)
            await self._pubsub.aclose()
        except (RedisError, OSError):
            logger.debug("Ignoring error while closing change feed %s", self.subscription_id, exc_info=True)


class RedisChangeFeed:
    """Change feed over Redis pub/sub.

    Producers publish ``{"type": "insert" | "delete", "record": {...}}``
    frames on ``chat:dm:<id>`` / ``chat:club:<id>``.
    """

    def __init__(self, url: str) -> None:
        self._redis = redis.from_url(url)

    async def subscribe(self, feed_filter, subscription_id, on_insert, on_delete, on_status):
        pubsub = self._redis.pubsub()
        handle = _RedisHandle(subscription_id, pubsub, feed_filter.channels)
        try:
            if feed_filter.channels:
                await pubsub.subscribe(*feed_filter.channels)
        except RedisTimeoutError:
            on_status(ChannelStatus.TIMED_OUT)
            return handle
        except (RedisError, OSError) as exc:
            raise SubscriptionFailure(f"could not subscribe {subscription_id}: {exc}") from exc
        on_status(ChannelStatus.SUBSCRIBED)
        if feed_filter.channels:
            handle.start(on_insert, on_delete, on_status)
        return handle

    async def close(self) -> None:
        await self._redis.aclose()


_feed = None


async def get_change_feed(url: Optional[str] = None):
    global _feed
    if _feed is not None:
        return _feed
    url = url or os.getenv("REDIS_URL")
    if not url:
        _feed = NoopChangeFeed()
        return _feed
    _feed = RedisChangeFeed(url)
    return _feed


async def close_change_feed() -> None:
    global _feed
    feed, _feed = _feed, None
    if isinstance(feed, RedisChangeFeed):
        await feed.close()
