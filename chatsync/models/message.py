from datetime import datetime
from typing import Literal, TypedDict


class MessageDocument(TypedDict, total=False):
    _id: str
    conversation_kind: Literal["direct", "club"]
    # conversation _id for direct messages, club id for club messages
    conversation_id: str
    sender_id: str
    content: str
    timestamp: datetime
