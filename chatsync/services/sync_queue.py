import logging
from typing import Dict, Iterable, List, Optional

from chatsync.errors import PersistenceFailure
from chatsync.schemas.conversation import ConversationKind, kind_of
from chatsync.schemas.sync import QueuedSync, SyncState
from chatsync.utils.kv_store import KeyValueStore


logger = logging.getLogger(__name__)

SYNC_QUEUE_KEY = "read_sync_queue"


class SyncQueue:
    """Durable work list of read markers awaiting remote confirmation.

    Holds at most one entry per conversation key. Entries keep insertion
    order so batches drain oldest first.
    """

    def __init__(self, kv: KeyValueStore) -> None:
        self._kv = kv
        self._items: Dict[str, QueuedSync] = self._load()
        # timestamp handed to the remote store for each in-flight key
        self._in_flight: Dict[str, int] = {}

    def _load(self) -> Dict[str, QueuedSync]:
        try:
            raw = self._kv.get(SYNC_QUEUE_KEY) or []
        except PersistenceFailure:
            logger.warning("Could not load sync queue, starting empty", exc_info=True)
            return {}
        items: Dict[str, QueuedSync] = {}
        for entry in raw if isinstance(raw, list) else []:
            try:
                item = QueuedSync.model_validate(entry)
            except ValueError:
                logger.warning("Skipping malformed sync queue entry %r", entry)
                continue
            # anything syncing when the process stopped is retried
            item.state = SyncState.PENDING
            items[item.conversation_key] = item
        if items:
            logger.info("Restored %d pending read-status syncs", len(items))
        return items

    def _persist(self) -> None:
        payload = [item.model_dump(mode="json") for item in self._items.values()]
        try:
            self._kv.set(SYNC_QUEUE_KEY, payload)
        except PersistenceFailure:
            logger.warning("Could not persist sync queue; keeping it in memory", exc_info=True)

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, conversation_key: str) -> bool:
        return conversation_key in self._items

    def get(self, conversation_key: str) -> Optional[QueuedSync]:
        return self._items.get(conversation_key)

    def items(self) -> List[QueuedSync]:
        return [item.model_copy() for item in self._items.values()]

    def pending_count(self) -> int:
        return sum(1 for item in self._items.values() if item.state == SyncState.PENDING)

    def enqueue(self, conversation_key: str, kind: Optional[ConversationKind], at_ms: int) -> QueuedSync:
        kind = kind or kind_of(conversation_key)
        item = self._items.get(conversation_key)
        if item is None:
            item = QueuedSync(conversation_key=conversation_key, kind=kind, read_through_ms=int(at_ms))
            self._items[conversation_key] = item
        elif at_ms > item.read_through_ms:
            item.read_through_ms = int(at_ms)
        else:
            return item.model_copy()
        self._persist()
        return item.model_copy()

    def take_batch(self, size: int) -> List[QueuedSync]:
        batch: List[QueuedSync] = []
        for item in self._items.values():
            if len(batch) >= size:
                break
            if item.state != SyncState.PENDING:
                continue
            item.state = SyncState.SYNCING
            self._in_flight[item.conversation_key] = item.read_through_ms
            batch.append(item.model_copy())
        return batch

    def confirm(self, batch: Iterable[QueuedSync]) -> List[str]:
        """Remove confirmed entries; returns the keys actually removed.

        An entry that received a newer timestamp while its write was in
        flight stays queued as PENDING with that newer timestamp.
        """
        removed: List[str] = []
        for sent in batch:
            key = sent.conversation_key
            sent_ts = self._in_flight.pop(key, sent.read_through_ms)
            item = self._items.get(key)
            if item is None:
                continue
            if item.read_through_ms <= sent_ts:
                del self._items[key]
                removed.append(key)
            else:
                item.state = SyncState.PENDING
                item.retry_count = 0
        self._persist()
        return removed

    def fail(self, batch: Iterable[QueuedSync], max_retries: int) -> List[QueuedSync]:
        """Count a failed attempt for each entry; returns the dropped ones."""
        dropped: List[QueuedSync] = []
        for sent in batch:
            key = sent.conversation_key
            self._in_flight.pop(key, None)
            item = self._items.get(key)
            if item is None:
                continue
            item.retry_count += 1
            item.state = SyncState.PENDING
            if item.retry_count > max_retries:
                del self._items[key]
                dropped.append(item)
                logger.warning(
                    "Dropping read-status sync for %s after %d failed attempts",
                    key,
                    item.retry_count,
                )
        self._persist()
        return dropped
