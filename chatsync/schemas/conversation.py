from typing import Literal

from pydantic import BaseModel, ConfigDict, field_validator

from chatsync.errors import InvalidConversationKey


ConversationKind = Literal["direct", "club"]

_KEY_PREFIX = {"direct": "dm", "club": "club"}
_PREFIX_KIND = {"dm": "direct", "direct": "direct", "club": "club"}


class ConversationRef(BaseModel):
    """Identity of a direct or club conversation.

    All per-conversation state is keyed by ``ref.key`` (``dm:7``, ``club:42``).
    """

    model_config = ConfigDict(frozen=True)

    kind: ConversationKind
    id: str

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_str(cls, value):
        if value is None:
            raise ValueError("conversation id is required")
        value = str(value).strip()
        if not value:
            raise ValueError("conversation id is required")
        return value

    @property
    def key(self) -> str:
        return f"{_KEY_PREFIX[self.kind]}:{self.id}"

    @classmethod
    def direct(cls, conversation_id) -> "ConversationRef":
        return cls(kind="direct", id=conversation_id)

    @classmethod
    def club(cls, club_id) -> "ConversationRef":
        return cls(kind="club", id=club_id)

    @classmethod
    def parse(cls, key: str) -> "ConversationRef":
        prefix, sep, ident = (key or "").partition(":")
        kind = _PREFIX_KIND.get(prefix)
        if not sep or kind is None or not ident.strip():
            raise InvalidConversationKey(key)
        return cls(kind=kind, id=ident)

    def __str__(self) -> str:
        return self.key


def kind_of(key: str) -> ConversationKind:
    return ConversationRef.parse(key).kind
