from typing import List, TypedDict


class ConversationDocument(TypedDict, total=False):
    _id: str
    participants: List[str]
