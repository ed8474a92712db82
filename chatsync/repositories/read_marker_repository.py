from datetime import datetime, timezone
from typing import Dict, List

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, UpdateOne
from pymongo.errors import PyMongoError

from chatsync.errors import TransientSyncFailure
from chatsync.models.read_marker import ReadMarkerDocument
from chatsync.schemas.conversation import ConversationRef
from chatsync.schemas.sync import ReadMarker


class ReadMarkerRepository:

    def __init__(self, db: AsyncIOMotorDatabase, user_id: str) -> None:
        self._db = db
        self._user_id = user_id

    @property
    def collection(self):
        return self._db["read_markers"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("user_id", ASCENDING), ("conversation_key", ASCENDING)], unique=True)

    async def upsert_read_markers(self, batch: List[ReadMarker]) -> None:
        """Idempotent upsert keyed by user + conversation.

        ``$max`` keeps the stored timestamp from moving backwards when an
        older marker is replayed.
        """
        if not batch:
            return
        now = datetime.now(timezone.utc)
        ops = []
        for marker in batch:
            ref = ConversationRef.parse(marker.conversation_key)
            ops.append(
                UpdateOne(
                    {"user_id": self._user_id, "conversation_key": ref.key},
                    {
                        "$max": {"read_through": int(marker.read_through_ms)},
                        "$set": {"updated_at": now},
                        "$setOnInsert": {"kind": ref.kind, "conversation_id": ref.id},
                    },
                    upsert=True,
                )
            )
        try:
            await self.collection.bulk_write(ops, ordered=False)
        except PyMongoError as exc:
            raise TransientSyncFailure(f"read marker upsert failed: {exc}") from exc

    async def get_markers(self) -> Dict[str, int]:
        try:
            cur = self.collection.find({"user_id": self._user_id}, {"conversation_key": 1, "read_through": 1})
            items: List[ReadMarkerDocument] = await cur.to_list(length=None)
        except PyMongoError as exc:
            raise TransientSyncFailure(f"read marker fetch failed: {exc}") from exc
        return {it["conversation_key"]: int(it.get("read_through") or 0) for it in items}
