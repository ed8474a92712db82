from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from chatsync.errors import DataIntegrityAnomaly
from chatsync.schemas.conversation import ConversationRef


def to_millis(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("timestamp must not be a boolean")
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return int(text)
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        return to_millis(parsed)
    raise ValueError(f"unsupported timestamp: {value!r}")


class ChatMessage(BaseModel):

    model_config = ConfigDict(frozen=True)

    id: str
    conversation: ConversationRef
    sender_id: Optional[str] = None
    content: str = ""
    timestamp_ms: int

    @property
    def conversation_key(self) -> str:
        return self.conversation.key


class InsertRecord(BaseModel):
    """Row pushed by the change feed for a new message.

    Club rows carry ``club_id`` and ``message``; direct rows carry
    ``conversation_id`` and ``text``. Both shapes are accepted.
    """

    model_config = ConfigDict(extra="ignore")

    id: str
    club_id: Optional[str] = None
    conversation_id: Optional[str] = None
    sender_id: Optional[str] = None
    content: str = ""
    timestamp_ms: int = Field(alias="timestamp")

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data):
        if not isinstance(data, dict):
            raise ValueError("record must be an object")
        data = dict(data)
        if "content" not in data:
            data["content"] = data.get("message") or data.get("text") or ""
        if "timestamp" not in data and "created_at" in data:
            data["timestamp"] = data["created_at"]
        for field in ("id", "club_id", "conversation_id", "sender_id"):
            if data.get(field) is not None:
                data[field] = str(data[field])
        return data

    @field_validator("timestamp_ms", mode="before")
    @classmethod
    def _timestamp(cls, value):
        return to_millis(value)

    @model_validator(mode="after")
    def _has_conversation(self):
        if not self.club_id and not self.conversation_id:
            raise ValueError("record has no club_id or conversation_id")
        return self

    def to_message(self) -> ChatMessage:
        if self.club_id:
            ref = ConversationRef.club(self.club_id)
        else:
            ref = ConversationRef.direct(self.conversation_id)
        return ChatMessage(
            id=self.id,
            conversation=ref,
            sender_id=self.sender_id,
            content=self.content,
            timestamp_ms=self.timestamp_ms,
        )


class DeleteRecord(BaseModel):

    model_config = ConfigDict(extra="ignore")

    id: str
    club_id: Optional[str] = None
    conversation_id: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data):
        if not isinstance(data, dict):
            raise ValueError("record must be an object")
        return {k: (str(v) if v is not None else None) for k, v in data.items()}

    @model_validator(mode="after")
    def _has_conversation(self):
        if not self.club_id and not self.conversation_id:
            raise ValueError("record has no club_id or conversation_id")
        return self

    @property
    def conversation(self) -> ConversationRef:
        if self.club_id:
            return ConversationRef.club(self.club_id)
        return ConversationRef.direct(self.conversation_id)


def parse_insert(record: Dict[str, Any]) -> ChatMessage:
    try:
        return InsertRecord.model_validate(record).to_message()
    except (ValidationError, ValueError) as exc:
        raise DataIntegrityAnomaly(f"malformed insert payload: {exc}") from exc


def parse_delete(record: Dict[str, Any]) -> DeleteRecord:
    try:
        return DeleteRecord.model_validate(record)
    except (ValidationError, ValueError) as exc:
        raise DataIntegrityAnomaly(f"malformed delete payload: {exc}") from exc
