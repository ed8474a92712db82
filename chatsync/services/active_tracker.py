import logging
from typing import Dict, List

from pydantic import BaseModel

from chatsync.utils.clock import Clock, now_ms
from chatsync.utils.event_bus import ActiveChanged, EventBus


logger = logging.getLogger(__name__)

ACTIVE_TTL_MS = 5 * 60 * 1000


class ActiveConversationRecord(BaseModel):

    conversation_key: str
    started_at_ms: int


class ActiveConversationTracker:
    """Which conversations the user is looking at right now.

    A record only counts while it is younger than the TTL, so a view whose
    teardown never fired stops suppressing unread counts on its own.
    """

    def __init__(self, bus: EventBus, clock: Clock = now_ms, ttl_ms: int = ACTIVE_TTL_MS) -> None:
        self._bus = bus
        self._clock = clock
        self._ttl_ms = ttl_ms
        self._records: Dict[str, ActiveConversationRecord] = {}

    def set_active(self, conversation_key: str) -> None:
        self._records[conversation_key] = ActiveConversationRecord(
            conversation_key=conversation_key,
            started_at_ms=self._clock(),
        )
        logger.debug("Conversation %s is active", conversation_key)
        self._bus.publish(ActiveChanged(conversation_key, True))

    def touch(self, conversation_key: str) -> bool:
        if not self.is_active(conversation_key):
            return False
        self._records[conversation_key].started_at_ms = self._clock()
        return True

    def clear_active(self, conversation_key: str) -> None:
        if self._records.pop(conversation_key, None) is not None:
            logger.debug("Conversation %s is no longer active", conversation_key)
            self._bus.publish(ActiveChanged(conversation_key, False))

    def clear_all(self) -> None:
        for key in list(self._records):
            self.clear_active(key)

    def is_active(self, conversation_key: str) -> bool:
        record = self._records.get(conversation_key)
        if record is None:
            return False
        if self._clock() - record.started_at_ms < self._ttl_ms:
            return True
        logger.info("Active flag for %s expired", conversation_key)
        del self._records[conversation_key]
        self._bus.publish(ActiveChanged(conversation_key, False))
        return False

    def active_keys(self) -> List[str]:
        return [key for key in list(self._records) if self.is_active(key)]
