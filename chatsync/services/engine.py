import asyncio
import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from chatsync.config import Settings
from chatsync.schemas.conversation import ConversationRef
from chatsync.schemas.message import ChatMessage
from chatsync.schemas.sync import QueuedSync, RemoteUnreadCounts, UnreadSnapshot
from chatsync.services.active_tracker import ActiveConversationTracker
from chatsync.services.dedup_cache import MessageDedupCache
from chatsync.services.read_status_store import LocalReadStatusStore
from chatsync.services.subscription_manager import CatchUp, SubscriptionManager, SubscriptionScope
from chatsync.services.sync_queue import SyncQueue
from chatsync.services.sync_service import CoalescedSyncService, ReadMarkerSink
from chatsync.services.unread_aggregator import UnreadAggregator
from chatsync.utils.change_feed import ChangeFeed
from chatsync.utils.clock import Clock, now_ms
from chatsync.utils.event_bus import ActiveChanged, EventBus, MessageReceived, Resubscribed
from chatsync.utils.kv_store import KeyValueStore


logger = logging.getLogger(__name__)

CountsSource = Callable[[], Awaitable[RemoteUnreadCounts]]
HistorySource = Callable[[ConversationRef], Awaitable[List[Dict]]]


class ChatSyncEngine:
    """Owns every piece of sync state for one signed-in user.

    UI code talks to this object only; the stores, queue and counters it
    holds are never shared with anything else.
    """

    def __init__(
        self,
        user_id: str,
        kv: KeyValueStore,
        sink: ReadMarkerSink,
        feed: ChangeFeed,
        settings: Optional[Settings] = None,
        club_ids: Iterable[str] = (),
        direct_ids: Iterable[str] = (),
        counts_source: Optional[CountsSource] = None,
        catch_up: Optional[CatchUp] = None,
        history: Optional[HistorySource] = None,
        clock: Clock = now_ms,
        bus: Optional[EventBus] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.user_id = user_id
        self.club_ids = list(club_ids)
        self.direct_ids = list(direct_ids)
        self.bus = bus or EventBus()
        self._clock = clock
        self._counts_source = counts_source
        self._history = history

        self.queue = SyncQueue(kv)
        self.tracker = ActiveConversationTracker(self.bus, clock, self.settings.active_ttl_ms)
        self.read_status = LocalReadStatusStore(kv, self.queue, self.bus, clock)
        self.dedup = MessageDedupCache()
        self.unread = UnreadAggregator(self.bus, self.tracker.is_active, self.read_status.is_read_since)
        self.sync = CoalescedSyncService(
            self.queue,
            sink,
            self.bus,
            is_active=self.tracker.is_active,
            debounce_seconds=self.settings.debounce_seconds,
            batch_size=self.settings.batch_size,
            max_retries=self.settings.max_retries,
            remote_attempts=self.settings.remote_attempts,
        )
        self.subscriptions = SubscriptionManager(
            feed,
            self.dedup,
            self.unread,
            self.bus,
            user_id,
            clock=clock,
            health_interval=self.settings.health_interval_s,
            silence_window_ms=int(self.settings.silence_window_s * 1000),
            reset_cooldown=self.settings.reset_cooldown_s,
            max_failed_resets=self.settings.max_failed_resets,
            catch_up=catch_up,
        )
        self._unsubscribers: List[Callable[[], None]] = []
        self._reconcile_task: Optional[asyncio.Task] = None
        self._tasks: set = set()
        self._started = False

    # lifecycle

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self.unread.attach()
        self.sync.attach()
        self._unsubscribers = [
            self.bus.subscribe(ActiveChanged, self._on_active_changed),
            self.bus.subscribe(MessageReceived, self._on_message_received),
            self.bus.subscribe(Resubscribed, self._on_resubscribed),
        ]
        if self.club_ids:
            await self.subscriptions.open(SubscriptionScope.clubs(self.club_ids))
        if self.direct_ids:
            await self.subscriptions.open(SubscriptionScope.directs(self.direct_ids))
        self.subscriptions.start()
        self._reconcile_task = asyncio.get_running_loop().create_task(self._reconcile_loop())
        if len(self.queue):
            # markers left over from a previous run
            self.sync.request_flush()
        logger.info(
            "Sync engine started for user %s with %d clubs and %d direct conversations",
            self.user_id,
            len(self.club_ids),
            len(self.direct_ids),
        )

    async def shutdown(self) -> asyncio.Task:
        """Stop background work and fire one last flush without waiting for it."""
        if self._reconcile_task is not None:
            self._reconcile_task.cancel()
            self._reconcile_task = None
        for task in list(self._tasks):
            task.cancel()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        await self.subscriptions.stop()
        self.unread.detach()
        self.sync.detach()
        self._started = False
        logger.info("Sync engine stopping; %d read markers still queued", len(self.queue))
        return self.sync.flush_now_nowait()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # bus handlers

    def _on_active_changed(self, event: ActiveChanged) -> None:
        if event.active:
            self.read_status.mark_read(event.conversation_key)

    def _on_message_received(self, event: MessageReceived) -> None:
        # keep the read marker ahead of messages arriving on screen
        if self.tracker.is_active(event.conversation_key):
            self.tracker.touch(event.conversation_key)
            self.read_status.mark_read(event.conversation_key)

    def _on_resubscribed(self, event: Resubscribed) -> None:
        self._spawn(self.reconcile())

    # conversation views

    async def open_conversation(self, ref: ConversationRef) -> None:
        if ref.kind == "direct" and not self.subscriptions.covers(ref):
            # conversation started after the engine did
            await self.subscriptions.open(SubscriptionScope.direct(ref.id))
        self.tracker.set_active(ref.key)
        if self._history is not None:
            try:
                records = await self._history(ref)
            except Exception:
                logger.warning("Could not load history for %s", ref.key, exc_info=True)
            else:
                self.subscriptions.seed(records)

    async def close_conversation(self, ref: ConversationRef) -> None:
        self.tracker.clear_active(ref.key)
        self.subscriptions.discard(ref.key)
        if ref.kind == "direct":
            await self.subscriptions.close(SubscriptionScope.direct(ref.id).name)

    def mark_read(self, ref: ConversationRef, at_ms: Optional[int] = None) -> int:
        return self.read_status.mark_read(ref.key, at_ms)

    # queries

    def unread_snapshot(self) -> UnreadSnapshot:
        return self.unread.snapshot()

    def messages(self, ref: ConversationRef) -> List[ChatMessage]:
        return self.subscriptions.messages(ref.key)

    def last_messages(self) -> Dict[str, ChatMessage]:
        return self.subscriptions.last_messages()

    def queued(self) -> List[QueuedSync]:
        return self.queue.items()

    # reconciliation

    async def reconcile(self) -> bool:
        if self._counts_source is None:
            return False
        try:
            remote = await asyncio.wait_for(self._counts_source(), timeout=self.settings.reconcile_timeout_s)
        except asyncio.TimeoutError:
            logger.warning("Unread count fetch timed out; keeping local counts")
            return False
        except Exception:
            logger.warning("Unread count fetch failed; keeping local counts", exc_info=True)
            return False
        keep = [item.conversation_key for item in self.queue.items()]
        self.unread.reconcile(remote, keep_local=keep)
        return True

    async def _reconcile_loop(self) -> None:
        while True:
            await self.reconcile()
            await asyncio.sleep(self.settings.reconcile_interval_s)
