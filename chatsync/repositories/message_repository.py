from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

from chatsync.errors import TransientSyncFailure
from chatsync.models.message import MessageDocument
from chatsync.schemas.conversation import ConversationRef


def from_millis(ts_ms: int) -> datetime:
    return datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc)


def to_record(doc: MessageDocument) -> Dict[str, Any]:
    """Shape a stored message like a change-feed insert row."""
    ts = doc.get("timestamp")
    if isinstance(ts, datetime):
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        ts = int(ts.timestamp() * 1000)
    record: Dict[str, Any] = {
        "id": str(doc.get("_id")),
        "sender_id": doc.get("sender_id"),
        "content": doc.get("content", ""),
        "timestamp": ts,
    }
    if doc.get("conversation_kind") == "club":
        record["club_id"] = str(doc.get("conversation_id"))
    else:
        record["conversation_id"] = str(doc.get("conversation_id"))
    return record


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index(
            [("conversation_kind", ASCENDING), ("conversation_id", ASCENDING), ("timestamp", ASCENDING)]
        )

    def _query(self, ref: ConversationRef) -> Dict[str, Any]:
        return {"conversation_kind": ref.kind, "conversation_id": ref.id}

    async def get_for_conversation_since(self, ref: ConversationRef, since_ms: Optional[int], limit: int = 200) -> List[Dict[str, Any]]:
        """Messages at or after ``since_ms``, oldest first.

        Without a starting point only the latest ``limit`` messages are
        returned.
        """
        if since_ms is None:
            return await self.get_recent(ref, limit=limit)
        query = self._query(ref)
        # inclusive: messages sharing the watermark timestamp may be unseen
        query["timestamp"] = {"$gte": from_millis(since_ms)}
        try:
            cur = self.collection.find(query).sort([("timestamp", ASCENDING), ("_id", ASCENDING)]).limit(limit)
            items = await cur.to_list(length=limit)
        except PyMongoError as exc:
            raise TransientSyncFailure(f"catch-up fetch for {ref.key} failed: {exc}") from exc
        return [to_record(it) for it in items]

    async def get_recent(self, ref: ConversationRef, limit: int = 50) -> List[Dict[str, Any]]:
        try:
            cur = self.collection.find(self._query(ref)).sort([("timestamp", DESCENDING), ("_id", DESCENDING)]).limit(limit)
            items = await cur.to_list(length=limit)
        except PyMongoError as exc:
            raise TransientSyncFailure(f"history fetch for {ref.key} failed: {exc}") from exc
        # ascending chronological order for the message list
        return [to_record(it) for it in reversed(items)]

    async def count_unread(self, ref: ConversationRef, user_id: str, read_through_ms: int) -> int:
        query = self._query(ref)
        query["sender_id"] = {"$ne": user_id}
        if read_through_ms:
            query["timestamp"] = {"$gt": from_millis(read_through_ms)}
        return await self.collection.count_documents(query)
