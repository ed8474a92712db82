import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from chatsync.errors import DataIntegrityAnomaly, SubscriptionFailure
from chatsync.schemas.conversation import ConversationRef
from chatsync.schemas.message import ChatMessage, parse_delete, parse_insert
from chatsync.services.dedup_cache import MessageDedupCache
from chatsync.services.unread_aggregator import UnreadAggregator
from chatsync.utils.change_feed import ChangeFeed, ChannelHandle, ChannelStatus, FeedFilter
from chatsync.utils.clock import Clock, now_ms
from chatsync.utils.event_bus import (
    ConnectivityWarning,
    EventBus,
    MessageDeleted,
    MessageReceived,
    Resubscribed,
)


logger = logging.getLogger(__name__)

CatchUp = Callable[[ConversationRef, Optional[int]], Awaitable[List[Dict[str, Any]]]]

_FAILED_STATUSES = (ChannelStatus.CHANNEL_ERROR, ChannelStatus.TIMED_OUT)


class SubscriptionState(str, Enum):

    CONNECTING = "CONNECTING"
    SUBSCRIBED = "SUBSCRIBED"
    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    RESETTING = "RESETTING"
    CLOSED = "CLOSED"


@dataclass(frozen=True)
class SubscriptionScope:

    name: str
    conversations: Tuple[ConversationRef, ...]

    @classmethod
    def clubs(cls, club_ids: Iterable[str]) -> "SubscriptionScope":
        return cls("clubs", tuple(ConversationRef.club(club_id) for club_id in club_ids))

    @classmethod
    def directs(cls, conversation_ids: Iterable[str]) -> "SubscriptionScope":
        return cls("direct", tuple(ConversationRef.direct(cid) for cid in conversation_ids))

    @classmethod
    def direct(cls, conversation_id: str) -> "SubscriptionScope":
        ref = ConversationRef.direct(conversation_id)
        return cls(ref.key, (ref,))

    @property
    def feed_filter(self) -> FeedFilter:
        return FeedFilter.for_conversations(self.conversations)


@dataclass
class Subscription:

    scope: SubscriptionScope
    state: SubscriptionState = SubscriptionState.CONNECTING
    subscription_id: str = ""
    handle: Optional[ChannelHandle] = None
    last_status: Optional[ChannelStatus] = None
    subscribed_at_ms: Optional[int] = None
    last_event_ms: Optional[int] = None
    failed_resets: int = 0
    warned: bool = False
    needs_catch_up: bool = False
    tasks: set = field(default_factory=set)


class SubscriptionManager:
    """Keeps one change-feed channel per scope alive and routes its events.

    Silence on a channel is normal and only marks it DEGRADED. A channel is
    torn down and reopened only when the transport reports CHANNEL_ERROR or
    TIMED_OUT, which the health loop checks every ``health_interval``
    seconds. This manager is the only writer of per-conversation message
    lists.
    """

    def __init__(
        self,
        feed: ChangeFeed,
        dedup: MessageDedupCache,
        aggregator: UnreadAggregator,
        bus: EventBus,
        user_id: str,
        clock: Clock = now_ms,
        health_interval: float = 15.0,
        silence_window_ms: int = 30_000,
        reset_cooldown: float = 2.0,
        max_failed_resets: int = 3,
        catch_up: Optional[CatchUp] = None,
    ) -> None:
        self._feed = feed
        self._dedup = dedup
        self._aggregator = aggregator
        self._bus = bus
        self._user_id = user_id
        self._clock = clock
        self._health_interval = health_interval
        self._silence_window_ms = silence_window_ms
        self._reset_cooldown = reset_cooldown
        self._max_failed_resets = max_failed_resets
        self._catch_up = catch_up
        self._subscriptions: Dict[str, Subscription] = {}
        self._messages: Dict[str, List[ChatMessage]] = {}
        self._last: Dict[str, ChatMessage] = {}
        self._health_task: Optional[asyncio.Task] = None

    # lifecycle

    def start(self) -> None:
        if self._health_task is None:
            self._health_task = asyncio.get_running_loop().create_task(self._health_loop())

    async def stop(self) -> None:
        if self._health_task is not None:
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
            self._health_task = None
        await self.close_all()

    async def open(self, scope: SubscriptionScope) -> Subscription:
        existing = self._subscriptions.get(scope.name)
        if existing is not None:
            if existing.scope == scope:
                return existing
            await self.close(scope.name)
        sub = Subscription(scope=scope)
        self._subscriptions[scope.name] = sub
        await self._connect(sub)
        return sub

    async def close(self, scope_name: str) -> None:
        sub = self._subscriptions.pop(scope_name, None)
        if sub is None:
            return
        sub.state = SubscriptionState.CLOSED
        for task in list(sub.tasks):
            task.cancel()
        await self._teardown(sub)
        logger.info("Closed subscription %s", scope_name)

    async def close_all(self) -> None:
        for name in list(self._subscriptions):
            await self.close(name)

    def get(self, scope_name: str) -> Optional[Subscription]:
        return self._subscriptions.get(scope_name)

    def subscriptions(self) -> List[Subscription]:
        return list(self._subscriptions.values())

    def covers(self, ref: ConversationRef) -> bool:
        return any(ref in sub.scope.conversations for sub in self._subscriptions.values())

    # channel handling

    async def _connect(self, sub: Subscription) -> None:
        sub.subscription_id = uuid.uuid4().hex
        sub.state = SubscriptionState.CONNECTING
        sub.last_status = None
        sub_id = sub.subscription_id
        logger.info("Subscribing %s as %s", sub.scope.name, sub_id)
        try:
            sub.handle = await self._feed.subscribe(
                sub.scope.feed_filter,
                sub_id,
                lambda record: self._on_insert(sub, record),
                lambda record: self._on_delete(sub, record),
                lambda status: self._on_status(sub, sub_id, status),
            )
        except SubscriptionFailure as exc:
            logger.warning("Subscribing %s failed: %s", sub.scope.name, exc)
            self._on_status(sub, sub_id, ChannelStatus.CHANNEL_ERROR)
        except Exception:
            logger.exception("Unexpected error subscribing %s", sub.scope.name)
            self._on_status(sub, sub_id, ChannelStatus.CHANNEL_ERROR)

    async def _teardown(self, sub: Subscription) -> None:
        handle, sub.handle = sub.handle, None
        if handle is None:
            return
        try:
            await handle.unsubscribe()
        except Exception:
            logger.warning("Error while unsubscribing %s", sub.scope.name, exc_info=True)

    def _on_status(self, sub: Subscription, sub_id: str, status: ChannelStatus) -> None:
        if sub.subscription_id != sub_id or sub.state == SubscriptionState.CLOSED:
            logger.debug("Ignoring %s from superseded channel %s", status, sub_id)
            return
        sub.last_status = status
        logger.info("Subscription %s (%s) reported %s", sub.scope.name, sub_id, status.value)
        if status == ChannelStatus.SUBSCRIBED:
            sub.state = SubscriptionState.SUBSCRIBED
            sub.subscribed_at_ms = self._clock()
            sub.failed_resets = 0
            sub.warned = False
            if sub.needs_catch_up:
                sub.needs_catch_up = False
                self._spawn(sub, self._after_resubscribe(sub, sub_id))
        elif status in _FAILED_STATUSES and sub.state != SubscriptionState.RESETTING:
            sub.state = SubscriptionState.DEGRADED

    def _spawn(self, sub: Subscription, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        sub.tasks.add(task)
        task.add_done_callback(sub.tasks.discard)
        return task

    async def reset(self, sub: Subscription) -> None:
        if sub.state in (SubscriptionState.RESETTING, SubscriptionState.CLOSED):
            return
        sub.state = SubscriptionState.RESETTING
        logger.warning("Resetting subscription %s after %s", sub.scope.name, sub.last_status)
        await self._teardown(sub)
        await asyncio.sleep(self._reset_cooldown)
        if sub.state == SubscriptionState.CLOSED:
            return
        sub.failed_resets += 1
        sub.needs_catch_up = True
        await self._connect(sub)

    async def _after_resubscribe(self, sub: Subscription, sub_id: str) -> None:
        if self._catch_up is not None:
            for ref in sub.scope.conversations:
                since = self._dedup.watermark(ref.key)
                try:
                    records = await self._catch_up(ref, since)
                except Exception:
                    logger.warning("Catch-up fetch for %s failed", ref.key, exc_info=True)
                    continue
                applied = sum(1 for record in records if self.ingest(record))
                if applied:
                    logger.info("Caught up %d messages for %s", applied, ref.key)
        self._bus.publish(Resubscribed(sub.scope.name, sub_id))

    # health

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self._health_interval)
            try:
                await self.check_health()
            except Exception:
                logger.exception("Subscription health check failed")

    async def check_health(self) -> None:
        now = self._clock()
        for sub in list(self._subscriptions.values()):
            if sub.state in (SubscriptionState.RESETTING, SubscriptionState.CLOSED):
                continue
            if sub.last_status in _FAILED_STATUSES:
                if sub.failed_resets >= self._max_failed_resets and not sub.warned:
                    sub.warned = True
                    logger.error(
                        "Subscription %s still failing after %d resets",
                        sub.scope.name,
                        sub.failed_resets,
                    )
                    self._bus.publish(ConnectivityWarning(sub.scope.name, sub.failed_resets))
                self._spawn(sub, self.reset(sub))
                continue
            if sub.state == SubscriptionState.CONNECTING:
                continue
            last = sub.last_event_ms or sub.subscribed_at_ms or now
            if now - last >= self._silence_window_ms:
                sub.state = SubscriptionState.DEGRADED
            else:
                sub.state = SubscriptionState.HEALTHY

    # events

    def _on_insert(self, sub: Subscription, record: Dict[str, Any]) -> None:
        self._touch(sub)
        self.ingest(record)

    def _on_delete(self, sub: Subscription, record: Dict[str, Any]) -> None:
        self._touch(sub)
        self.remove(record)

    def _touch(self, sub: Subscription) -> None:
        sub.last_event_ms = self._clock()
        if sub.state == SubscriptionState.DEGRADED and sub.last_status == ChannelStatus.SUBSCRIBED:
            sub.state = SubscriptionState.HEALTHY

    def ingest(self, record: Dict[str, Any]) -> bool:
        """Apply an inserted message. Returns True if it was new."""
        try:
            message = parse_insert(record)
        except DataIntegrityAnomaly as exc:
            logger.warning("Dropping message: %s", exc)
            return False
        key = message.conversation_key
        result = self._dedup.accept(key, message.id, message.timestamp_ms)
        if not result.accepted:
            logger.debug("Rejected %s message %s in %s", result.reason, message.id, key)
            return False
        self._messages.setdefault(key, []).append(message)
        self._remember(message)
        self._bus.publish(MessageReceived(key, message.id))
        self._aggregator.on_inbound_message(
            key,
            sender_is_self=message.sender_id == self._user_id,
            message_timestamp_ms=message.timestamp_ms,
        )
        return True

    def seed(self, records: Iterable[Dict[str, Any]]) -> int:
        """Merge history into message lists without touching unread counts.

        History may be older than messages already pushed live, so only ids
        are deduplicated here; lists stay in timestamp order.
        """
        added: Dict[str, List[ChatMessage]] = {}
        for record in records:
            try:
                message = parse_insert(record)
            except DataIntegrityAnomaly as exc:
                logger.warning("Dropping history message: %s", exc)
                continue
            key = message.conversation_key
            if self._dedup.record(key, message.id, message.timestamp_ms):
                added.setdefault(key, []).append(message)
        for key, messages in added.items():
            merged = self._messages.get(key, []) + messages
            merged.sort(key=lambda m: m.timestamp_ms)
            self._messages[key] = merged
            self._remember(merged[-1])
        return sum(len(messages) for messages in added.values())

    def remove(self, record: Dict[str, Any]) -> bool:
        try:
            deleted = parse_delete(record)
        except DataIntegrityAnomaly as exc:
            logger.warning("Dropping delete event: %s", exc)
            return False
        key = deleted.conversation.key
        self._dedup.forget(key, deleted.id)
        messages = self._messages.get(key)
        if messages:
            self._messages[key] = [m for m in messages if m.id != deleted.id]
        last = self._last.get(key)
        if last is not None and last.id == deleted.id:
            remaining = self._messages.get(key)
            if remaining:
                self._last[key] = remaining[-1]
            else:
                del self._last[key]
        self._bus.publish(MessageDeleted(key, deleted.id))
        return True

    # message lists

    def messages(self, conversation_key: str) -> List[ChatMessage]:
        return list(self._messages.get(conversation_key, []))

    def discard(self, conversation_key: str) -> None:
        # the last-message preview outlives the open view
        self._messages.pop(conversation_key, None)
        self._dedup.reset(conversation_key)

    def _remember(self, message: ChatMessage) -> None:
        last = self._last.get(message.conversation_key)
        if last is None or message.timestamp_ms >= last.timestamp_ms:
            self._last[message.conversation_key] = message

    def last_messages(self) -> Dict[str, ChatMessage]:
        return dict(self._last)
