import logging
from typing import Dict, Optional

from chatsync.errors import PersistenceFailure
from chatsync.schemas.conversation import kind_of
from chatsync.services.sync_queue import SyncQueue
from chatsync.utils.clock import Clock, now_ms
from chatsync.utils.event_bus import EventBus, ReadStatusChanged
from chatsync.utils.kv_store import KeyValueStore


logger = logging.getLogger(__name__)

READ_STATUS_KEY = "read_status"


class LocalReadStatusStore:
    """Per-conversation read-through timestamps acknowledged by the user.

    The stored value only ever moves forward. No network I/O happens here:
    a write persists the map, publishes ``ReadStatusChanged`` and hands the
    marker to the sync queue.
    """

    def __init__(self, kv: KeyValueStore, queue: SyncQueue, bus: EventBus, clock: Clock = now_ms) -> None:
        self._kv = kv
        self._queue = queue
        self._bus = bus
        self._clock = clock
        self._read_through: Dict[str, int] = self._load()

    def _load(self) -> Dict[str, int]:
        try:
            raw = self._kv.get(READ_STATUS_KEY) or {}
        except PersistenceFailure:
            logger.warning("Could not load read status, starting empty", exc_info=True)
            return {}
        result: Dict[str, int] = {}
        if not isinstance(raw, dict):
            logger.warning("Ignoring stored read status of type %s", type(raw).__name__)
            return result
        for key, value in raw.items():
            try:
                kind_of(key)
                result[key] = int(value)
            except (TypeError, ValueError):
                logger.warning("Skipping malformed read status entry %r=%r", key, value)
        return result

    def _persist(self) -> None:
        try:
            self._kv.set(READ_STATUS_KEY, dict(self._read_through))
        except PersistenceFailure:
            logger.warning("Could not persist read status; keeping it in memory", exc_info=True)

    def mark_read(self, conversation_key: str, at_ms: Optional[int] = None) -> int:
        kind = kind_of(conversation_key)
        at = self._clock() if at_ms is None else int(at_ms)
        current = self._read_through.get(conversation_key, 0)
        read_through = max(current, at)
        if read_through != current:
            self._read_through[conversation_key] = read_through
            self._persist()
        logger.debug("Marked %s read through %s", conversation_key, read_through)
        self._queue.enqueue(conversation_key, kind, read_through)
        self._bus.publish(ReadStatusChanged(conversation_key, read_through))
        return read_through

    def is_read_since(self, conversation_key: str, message_timestamp_ms: int) -> bool:
        stored = self._read_through.get(conversation_key)
        return stored is not None and stored >= message_timestamp_ms

    def get_read_through(self, conversation_key: str) -> int:
        return self._read_through.get(conversation_key, 0)

    def snapshot(self) -> Dict[str, int]:
        return dict(self._read_through)
