import logging
from typing import Callable, Dict, Iterable, List

from chatsync.schemas.conversation import kind_of
from chatsync.schemas.sync import RemoteUnreadCounts, UnreadSnapshot
from chatsync.utils.event_bus import ActiveChanged, EventBus, ReadStatusChanged, UnreadChanged


logger = logging.getLogger(__name__)


class UnreadAggregator:
    """Owns the unread counts shown to the user.

    Each count is a confirmed baseline (last reconciliation) plus a pending
    overlay of local increments since then. Marking read clears both
    optimistically; reconciliation replaces the baseline and drops the
    overlay, except for conversations currently on screen, which stay at zero.
    """

    def __init__(
        self,
        bus: EventBus,
        is_active: Callable[[str], bool],
        is_read_since: Callable[[str, int], bool],
    ) -> None:
        self._bus = bus
        self._is_active = is_active
        self._is_read_since = is_read_since
        self._confirmed: Dict[str, int] = {}
        self._pending: Dict[str, int] = {}
        self._unsubscribers: List[Callable[[], None]] = []

    def attach(self) -> None:
        if self._unsubscribers:
            return
        self._unsubscribers = [
            self._bus.subscribe(ReadStatusChanged, lambda event: self.on_marked_read(event.conversation_key)),
            self._bus.subscribe(ActiveChanged, self._on_active_changed),
        ]

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def _on_active_changed(self, event: ActiveChanged) -> None:
        if event.active:
            self.on_marked_read(event.conversation_key)

    def on_inbound_message(self, conversation_key: str, sender_is_self: bool, message_timestamp_ms: int) -> bool:
        if sender_is_self:
            return False
        if self._is_active(conversation_key):
            logger.debug("Not counting message in active conversation %s", conversation_key)
            return False
        if self._is_read_since(conversation_key, message_timestamp_ms):
            logger.debug("Not counting message already read in %s", conversation_key)
            return False
        self._pending[conversation_key] = self._pending.get(conversation_key, 0) + 1
        self._publish(conversation_key)
        return True

    def on_marked_read(self, conversation_key: str) -> None:
        had = self._raw_count(conversation_key)
        self._confirmed.pop(conversation_key, None)
        self._pending.pop(conversation_key, None)
        if had:
            self._publish(conversation_key)

    def reconcile(self, remote: RemoteUnreadCounts, keep_local: Iterable[str] = ()) -> None:
        """Replace the baseline with remote counts.

        Keys in ``keep_local`` have a local read the remote store has not
        confirmed yet; their current local count is kept.
        """
        before = {key: self.count(key) for key in self._keys()}
        keep = set(keep_local)
        confirmed: Dict[str, int] = {key: self._raw_count(key) for key in keep if self._raw_count(key)}
        for key, value in remote.per_conversation.items():
            value = max(0, int(value))
            if not value or key in keep:
                continue
            try:
                kind_of(key)
            except ValueError:
                logger.warning("Ignoring remote unread count for malformed key %r", key)
                continue
            if self._is_active(key):
                # remote may lag what the user is looking at
                continue
            confirmed[key] = value
        self._confirmed = confirmed
        self._pending = {}
        logger.info("Reconciled unread counts: %d conversations, total %d", len(confirmed), self.total())
        for key in set(before) | set(self._confirmed):
            if before.get(key, 0) != self.count(key):
                self._publish(key)

    def _raw_count(self, conversation_key: str) -> int:
        return self._confirmed.get(conversation_key, 0) + self._pending.get(conversation_key, 0)

    def _keys(self):
        return set(self._confirmed) | set(self._pending)

    def count(self, conversation_key: str) -> int:
        if self._is_active(conversation_key):
            return 0
        return max(0, self._raw_count(conversation_key))

    def total(self) -> int:
        return max(0, sum(self.count(key) for key in self._keys()))

    def snapshot(self) -> UnreadSnapshot:
        per_conversation: Dict[str, int] = {}
        direct = clubs = 0
        for key in sorted(self._keys()):
            value = self.count(key)
            if not value:
                continue
            per_conversation[key] = value
            if kind_of(key) == "club":
                clubs += value
            else:
                direct += value
        return UnreadSnapshot(per_conversation=per_conversation, total=direct + clubs, direct=direct, clubs=clubs)

    def _publish(self, conversation_key: str) -> None:
        self._bus.publish(UnreadChanged(conversation_key, self.count(conversation_key), self.total()))
