from dataclasses import dataclass
from typing import Dict, Optional, Set


@dataclass(frozen=True)
class AcceptResult:
    accepted: bool
    reason: Optional[str] = None


DUPLICATE = "duplicate"
STALE = "stale"


class _ConversationSeen:

    __slots__ = ("ids", "watermark")

    def __init__(self) -> None:
        self.ids: Set[str] = set()
        self.watermark: Optional[int] = None


class MessageDedupCache:
    """Seen message ids and newest accepted timestamp per conversation.

    Guards the message lists and unread counters against reconnect
    replays and pushes that arrive after a newer one.
    """

    def __init__(self) -> None:
        self._seen: Dict[str, _ConversationSeen] = {}

    def accept(self, conversation_key: str, message_id: str, timestamp_ms: int) -> AcceptResult:
        seen = self._seen.setdefault(conversation_key, _ConversationSeen())
        if message_id in seen.ids:
            return AcceptResult(False, DUPLICATE)
        if seen.watermark is not None and timestamp_ms < seen.watermark:
            return AcceptResult(False, STALE)
        seen.ids.add(message_id)
        seen.watermark = timestamp_ms
        return AcceptResult(True)

    def record(self, conversation_key: str, message_id: str, timestamp_ms: int) -> bool:
        """Mark a history message as seen. Only the id is checked; the
        watermark moves up to the newest recorded timestamp.
        """
        seen = self._seen.setdefault(conversation_key, _ConversationSeen())
        if message_id in seen.ids:
            return False
        seen.ids.add(message_id)
        if seen.watermark is None or timestamp_ms > seen.watermark:
            seen.watermark = timestamp_ms
        return True

    def forget(self, conversation_key: str, message_id: str) -> None:
        seen = self._seen.get(conversation_key)
        if seen is not None:
            seen.ids.discard(message_id)

    def reset(self, conversation_key: str) -> None:
        self._seen.pop(conversation_key, None)

    def watermark(self, conversation_key: str) -> Optional[int]:
        seen = self._seen.get(conversation_key)
        return seen.watermark if seen else None
