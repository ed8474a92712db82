from typing import Dict, Iterable, List

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING
from pymongo.errors import PyMongoError

from chatsync.errors import TransientSyncFailure
from chatsync.models.conversation import ConversationDocument
from chatsync.repositories.message_repository import MessageRepository
from chatsync.repositories.read_marker_repository import ReadMarkerRepository
from chatsync.schemas.conversation import ConversationRef
from chatsync.schemas.sync import RemoteUnreadCounts


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("participants", ASCENDING)])

    async def list_direct_ids(self, user_id: str, limit: int = 500) -> List[str]:
        cur = self.collection.find({"participants": {"$in": [user_id]}}, {"_id": 1}).limit(limit)
        items: List[ConversationDocument] = await cur.to_list(length=limit)
        return [str(it["_id"]) for it in items]

    async def fetch_unread_counts(self, user_id: str, club_ids: Iterable[str] = ()) -> RemoteUnreadCounts:
        """Authoritative unread counts: messages from others newer than the read marker."""
        messages = MessageRepository(self._db)
        markers = ReadMarkerRepository(self._db, user_id)
        try:
            read_through = await markers.get_markers()
            refs = [ConversationRef.direct(cid) for cid in await self.list_direct_ids(user_id)]
            refs += [ConversationRef.club(cid) for cid in club_ids]
            per_conversation: Dict[str, int] = {}
            direct = clubs = 0
            for ref in refs:
                count = await messages.count_unread(ref, user_id, read_through.get(ref.key, 0))
                if not count:
                    continue
                per_conversation[ref.key] = count
                if ref.kind == "club":
                    clubs += count
                else:
                    direct += count
        except PyMongoError as exc:
            raise TransientSyncFailure(f"unread count fetch failed: {exc}") from exc
        return RemoteUnreadCounts(direct=direct, clubs=clubs, per_conversation=per_conversation)
