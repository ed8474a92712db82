from datetime import datetime
from typing import Literal, TypedDict


class ReadMarkerDocument(TypedDict, total=False):
    _id: str
    user_id: str
    conversation_key: str
    kind: Literal["direct", "club"]
    conversation_id: str
    # epoch millis; only ever raised via $max
    read_through: int
    updated_at: datetime
