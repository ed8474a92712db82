from enum import Enum
from typing import Dict

from pydantic import BaseModel, Field

from chatsync.schemas.conversation import ConversationKind


class ReadMarker(BaseModel):

    conversation_key: str
    read_through_ms: int


class SyncState(str, Enum):

    PENDING = "pending"
    SYNCING = "syncing"


class QueuedSync(BaseModel):

    conversation_key: str
    kind: ConversationKind
    read_through_ms: int
    retry_count: int = 0
    state: SyncState = SyncState.PENDING

    def marker(self) -> ReadMarker:
        return ReadMarker(conversation_key=self.conversation_key, read_through_ms=self.read_through_ms)


class RemoteUnreadCounts(BaseModel):

    direct: int = 0
    clubs: int = 0
    per_conversation: Dict[str, int] = Field(default_factory=dict)


class UnreadSnapshot(BaseModel):

    per_conversation: Dict[str, int] = Field(default_factory=dict)
    total: int = 0
    direct: int = 0
    clubs: int = 0
